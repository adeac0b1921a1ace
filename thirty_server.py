# Thirty Challenge (single file)
# Setup:
#   python -m venv .venv
#   source .venv/bin/activate      (Windows: .venv\Scripts\activate)
#   pip install -e .
# Optional:
#   DAILY_API_KEY=your_key in .env enables the video room endpoints.
# Run:
#   python thirty_server.py --port 5000
# Flow: host creates a session on / -> control room -> share the game code ->
#       players join as playerA / playerB -> Start Game -> WSHA, AUCT, BELL,
#       SING, REMO -> final scores.
# API: /api/games/<code>/state, /api/games/<code>/actions, Daily.co proxies under
#      /api/*-daily-*, /api/health-check, /api/game-event, /api/session-event.
# Tests: python thirty_server.py --test  OR  python -m unittest thirty_server

from __future__ import annotations

import argparse
import base64
import copy
import datetime
import io
import json
import logging
import math
import os
import random
import re
import secrets
import socket
import sys
import threading
import time
import unicodedata
import unittest
from typing import Any, Dict, List, Optional, Tuple
from unittest import mock

import qrcode
import qrcode.image.svg
import requests
from dotenv import load_dotenv
from flask import Flask, jsonify, make_response, redirect, render_template_string, request, url_for
from flask_cors import CORS
from waitress import serve

APP_TITLE = "تحدي الثلاثين"
SERVICE_NAME = "thirty-challenge-api"
SERVICE_VERSION = "1.0.0"

SEGMENT_ORDER: List[str] = ["WSHA", "AUCT", "BELL", "SING", "REMO"]

SEGMENT_LABELS = {
    "WSHA": "وش تعرف",
    "AUCT": "المزاد",
    "BELL": "فقرة الجرس",
    "SING": "سين وجيم",
    "REMO": "التعويض",
}

SEGMENT_DESCRIPTIONS = {
    "WSHA": "اذكر أكبر عدد من الإجابات قبل أن تجمع ثلاث أخطاء.",
    "AUCT": "زايد على عدد الإجابات التي تستطيع ذكرها ثم أثبتها.",
    "BELL": "أول من يضغط الجرس يجيب.",
    "SING": "أسئلة سريعة بإجابة واحدة.",
    "REMO": "خمّن اللاعب من تلميحات مسيرته.",
}

PHASES = ("CONFIG", "PLAYING", "COMPLETED")

PHASE_LABELS = {
    "CONFIG": "الإعداد",
    "PLAYING": "اللعب",
    "COMPLETED": "انتهت",
}

PLAYER_IDS = ("playerA", "playerB")

PLAYER_LABELS = {
    "playerA": "اللاعب أ",
    "playerB": "اللاعب ب",
}

SPECIAL_BUTTONS = ("LOCK_BUTTON", "TRAVELER_BUTTON", "PIT_BUTTON")

# Each special button may only be pressed during its own segment.
BUTTON_SEGMENTS = {
    "LOCK_BUTTON": "AUCT",
    "TRAVELER_BUTTON": "BELL",
    "PIT_BUTTON": "SING",
}

BUTTON_LABELS = {
    "LOCK_BUTTON": "القفل",
    "TRAVELER_BUTTON": "المسافر",
    "PIT_BUTTON": "الحفرة",
}

DEFAULT_SEGMENT_SETTINGS: Dict[str, int] = {"WSHA": 4, "AUCT": 4, "BELL": 10, "SING": 10, "REMO": 4}

GAME_CODE_CHARS = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
GAME_CODE_LENGTH = 6
NAME_MAX_LEN = 24
CLUB_MAX_LEN = 32
HOST_CODE_MAX_LEN = 32
MAX_QUESTIONS_PER_SEGMENT = 50
MAX_STRIKES = 3
MAX_BID = 30
LOCK_BUTTON_THRESHOLD = 40
TIMER_DEFAULT_SECONDS = 30
TIMER_MAX_SECONDS = 600
MAX_GAME_EVENTS = 200
COMPLETED_GAME_RETENTION_SECONDS = 6 * 60 * 60
ABANDONED_GAME_RETENTION_SECONDS = 24 * 60 * 60
PUBLIC_POLL_MS = 2000
HOST_POLL_MS = 1500
HOST_TIMER_POLL_MS = 1000

SUPPORTED_SESSION_EVENTS = ["session_start", "session_end", "player_join", "player_leave", "game_action"]
DAILY_ROOM_ACTIONS = ["list", "search", "cleanup"]
DAILY_ROOM_NAME_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")
DAILY_ROOM_DEFAULTS: Dict[str, Any] = {
    "max_participants": 10,
    "enable_screenshare": True,
    "enable_chat": True,
    "start_video_off": False,
    "start_audio_off": False,
}

COMMON_FLAGS: List[Tuple[str, str]] = [
    ("sa", "السعودية"),
    ("ae", "الإمارات"),
    ("eg", "مصر"),
    ("jo", "الأردن"),
    ("lb", "لبنان"),
    ("sy", "سوريا"),
    ("iq", "العراق"),
    ("kw", "الكويت"),
    ("qa", "قطر"),
    ("bh", "البحرين"),
    ("om", "عمان"),
    ("ye", "اليمن"),
    ("ps", "فلسطين"),
    ("ma", "المغرب"),
    ("tn", "تونس"),
    ("dz", "الجزائر"),
    ("ly", "ليبيا"),
    ("sd", "السودان"),
    ("so", "الصومال"),
    ("dj", "جيبوتي"),
    ("km", "جزر القمر"),
    ("mr", "موريتانيا"),
]
FLAG_CODES = {code for code, _ in COMMON_FLAGS}


def env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        return default


load_dotenv()
DAILY_API_URL = os.environ.get("DAILY_API_URL", "https://api.daily.co/v1").rstrip("/")
HTTP_TIMEOUT_SECONDS = env_int("HTTP_TIMEOUT_SECONDS", 10)
AUTO_ADVANCE_SEGMENTS = env_flag("AUTO_ADVANCE_SEGMENTS", True)

LOGGER = logging.getLogger("thirty_challenge")

QUESTION_BANK: Dict[str, List[Dict[str, Any]]] = {
    "WSHA": [
        {
            "id": "wsha-1",
            "text": "من هو اللاعب الذي سجل أكبر عدد من الأهداف في تاريخ كأس العالم؟",
            "answers": ["ميروسلاف كلوزه", "كلوزه", "Miroslav Klose"],
            "difficulty": "medium",
            "points": 1,
        },
        {
            "id": "wsha-2",
            "text": "أي نادي فاز بدوري أبطال أوروبا أكثر من أي نادي آخر؟",
            "answers": ["ريال مدريد", "Real Madrid", "ريال"],
            "difficulty": "easy",
            "points": 1,
        },
        {
            "id": "wsha-3",
            "text": "في أي عام فازت البرازيل بكأس العالم لأول مرة؟",
            "answers": ["1958"],
            "difficulty": "hard",
            "points": 1,
        },
        {
            "id": "wsha-4",
            "text": "من هو المدرب الذي فاز بكأس العالم مع ألمانيا عام 2014؟",
            "answers": ["يواخيم لوف", "لوف", "Joachim Löw", "Löw"],
            "difficulty": "medium",
            "points": 1,
        },
        {
            "id": "wsha-5",
            "text": "كم عدد اللاعبين في فريق كرة القدم على أرض الملعب؟",
            "answers": ["11", "أحد عشر"],
            "difficulty": "easy",
            "points": 1,
        },
    ],
    "AUCT": [
        {
            "id": "auct-1",
            "text": "هذا اللاعب فاز بالكرة الذهبية 7 مرات وسجل أكثر من 800 هدف في مسيرته",
            "answers": ["ليونيل ميسي", "ميسي", "Messi", "Lionel Messi"],
            "difficulty": "easy",
            "points": 2,
        },
        {
            "id": "auct-2",
            "text": "هذا المنتخب فاز بكأس العالم 5 مرات وآخرها كان عام 2002",
            "answers": ["البرازيل", "Brazil", "منتخب البرازيل"],
            "difficulty": "easy",
            "points": 2,
        },
        {
            "id": "auct-3",
            "text": "هذا اللاعب الفرنسي فاز بكأس العالم وكان قائد المنتخب عام 1998",
            "answers": ["زين الدين زيدان", "زيدان", "Zidane", "Zinedine Zidane"],
            "difficulty": "medium",
            "points": 2,
        },
        {
            "id": "auct-4",
            "text": "هذا اللاعب البرتغالي فاز بالكرة الذهبية 5 مرات ولعب لريال مدريد",
            "answers": ["كريستيانو رونالدو", "رونالدو", "Cristiano Ronaldo", "CR7"],
            "difficulty": "easy",
            "points": 2,
        },
    ],
    "BELL": [
        {
            "id": "bell-1",
            "text": "من هو الهداف التاريخي لنادي برشلونة؟",
            "answers": ["ليونيل ميسي", "ميسي", "Messi"],
            "difficulty": "easy",
            "points": 1,
        },
        {
            "id": "bell-2",
            "text": "كم عدد المرات التي فاز فيها ريال مدريد بدوري أبطال أوروبا؟",
            "answers": ["15", "خمسة عشر", "خمس عشرة"],
            "difficulty": "medium",
            "points": 1,
        },
        {
            "id": "bell-3",
            "text": "في أي عام فازت إسبانيا بكأس العالم لأول مرة؟",
            "answers": ["2010"],
            "difficulty": "easy",
            "points": 1,
        },
        {
            "id": "bell-4",
            "text": "أي نادي إيطالي يُلقب بـ \"السيدة العجوز\"؟",
            "answers": ["يوفنتوس", "Juventus", "يوفي"],
            "difficulty": "easy",
            "points": 1,
        },
        {
            "id": "bell-5",
            "text": "من هو اللاعب الذي سجل هدفاً لفرنسا في نهائي كأس العالم 2018 وهو في التاسعة عشرة؟",
            "answers": ["كيليان مبابي", "مبابي", "Mbappé", "Kylian Mbappé"],
            "difficulty": "medium",
            "points": 1,
        },
    ],
    "SING": [
        {
            "id": "sing-1",
            "text": "أكمل شعار نادي ليفربول: \"You'll Never Walk...\"",
            "answers": ["Alone", "وحيداً", "وحيدا"],
            "difficulty": "easy",
            "points": 1,
        },
        {
            "id": "sing-2",
            "text": "ما هو لقب مدرج جماهير بوروسيا دورتموند الجنوبي؟",
            "answers": ["الجدار الأصفر", "Yellow Wall"],
            "difficulty": "medium",
            "points": 1,
        },
        {
            "id": "sing-3",
            "text": "ما هي العبارة المشهورة التي يرددها مشجعو برشلونة؟",
            "answers": ["فيسكا برسا", "Visca Barça", "Força Barça"],
            "difficulty": "easy",
            "points": 1,
        },
    ],
    "REMO": [
        {
            "id": "remo-1",
            "text": "لاعب برازيلي، فاز بكأس العالم 3 مرات، يُعتبر من أعظم اللاعبين في التاريخ",
            "answers": ["بيليه", "Pelé", "Pele"],
            "difficulty": "easy",
            "points": 3,
            "clues_key": "pele",
        },
        {
            "id": "remo-2",
            "text": "لاعب أرجنتيني، قاد منتخب بلاده للقب كأس العالم 1986، توفي عام 2020",
            "answers": ["دييجو مارادونا", "مارادونا", "Maradona", "Diego Maradona"],
            "difficulty": "easy",
            "points": 3,
            "clues_key": "maradona",
        },
        {
            "id": "remo-3",
            "text": "لاعب ألماني، قائد المنتخب في كأس العالم 2014، لعب لبايرن ميونخ",
            "answers": ["فيليب لام", "لام", "Philipp Lahm", "Lahm"],
            "difficulty": "medium",
            "points": 3,
            "clues_key": "lahm",
        },
    ],
}

CAREER_CLUES: Dict[str, List[str]] = {
    "pele": [
        "وُلد في البرازيل عام 1940",
        "بدأ مسيرته مع نادي سانتوس",
        "فاز بكأس العالم وهو في السابعة عشرة",
        "سجل أكثر من 1000 هدف في مسيرته",
        "يُلقب بـ \"ملك كرة القدم\"",
    ],
    "maradona": [
        "وُلد في الأرجنتين عام 1960",
        "لعب لنادي بوكا جونيورز في شبابه",
        "انتقل إلى نابولي وأصبح أسطورة",
        "سجل \"هدف القرن\" ضد إنجلترا 1986",
        "قاد الأرجنتين لكأس العالم 1986",
    ],
    "lahm": [
        "لاعب ألماني وُلد عام 1983",
        "قضى معظم مسيرته مع بايرن ميونخ",
        "لعب في مركز الظهير الأيمن والأيسر",
        "قائد المنتخب الألماني لسنوات",
        "رفع كأس العالم 2014 في البرازيل",
    ],
}

GAMES: Dict[str, Dict[str, Any]] = {}

STATE_LOCK = threading.Lock()


class ApiError(Exception):
    """Error with an HTTP status and a machine-readable code for JSON responses."""

    def __init__(self, message: str, code: str, status: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}


class GameActionError(ApiError):
    def __init__(self, message: str, code: str = "INVALID_ACTION", status: int = 400) -> None:
        super().__init__(message, code, status)


class DailyApiError(ApiError):
    def __init__(self, message: str, status: int = 500, code: str = "DAILY_API_ERROR") -> None:
        super().__init__(message, code, status)


BASE_TEMPLATE = """
<!doctype html>
<html lang="ar" dir="rtl">
  <head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <title>{{ title }}</title>
    <style>
      :root {
        --bg: #0b1d13;
        --card: #12291c;
        --card-2: #183626;
        --accent: #f2b632;
        --accent-2: #3fb37f;
        --text: #f4f7f2;
        --muted: #a9c2b3;
        --border: #24493a;
        --good: #3fb37f;
        --bad: #e5534b;
      }
      * { box-sizing: border-box; }
      body {
        margin: 0;
        color: var(--text);
        background: radial-gradient(1100px 520px at 80% -10%, #1f4d35 0%, #0b1d13 65%);
        font-family: "Tajawal", "Segoe UI", "Tahoma", sans-serif;
      }
      body.host { font-size: 18px; }
      .wrap { max-width: 1080px; margin: 0 auto; padding: 24px; }
      .card {
        background: var(--card);
        border: 1px solid var(--border);
        border-radius: 16px;
        padding: 18px;
        margin-bottom: 16px;
      }
      .hero { padding: 24px; }
      h1, h2, h3 { margin: 0 0 10px 0; }
      .title { font-size: 2.1rem; font-weight: 800; }
      .muted { color: var(--muted); }
      .row { display: flex; gap: 12px; flex-wrap: wrap; align-items: center; }
      .space-between { justify-content: space-between; }
      .stack { display: grid; gap: 10px; }
      .grid-2 { display: grid; gap: 16px; }
      @media (min-width: 900px) { .grid-2 { grid-template-columns: 1fr 1fr; } }
      .btn {
        display: inline-flex;
        justify-content: center;
        align-items: center;
        background: var(--accent);
        color: #1b1400;
        border: none;
        padding: 12px 16px;
        border-radius: 12px;
        font-size: 1rem;
        font-weight: 800;
        cursor: pointer;
        text-decoration: none;
      }
      .btn.secondary { background: var(--accent-2); color: #fff; }
      .btn.danger { background: var(--bad); color: #fff; }
      .btn.full { width: 100%; }
      .btn:disabled { opacity: 0.45; cursor: not-allowed; }
      .input {
        width: 100%;
        padding: 10px 12px;
        border: 1px solid var(--border);
        border-radius: 10px;
        font-size: 1rem;
        background: var(--card-2);
        color: inherit;
      }
      .input.small { width: 90px; }
      .chip {
        display: inline-flex;
        padding: 5px 10px;
        border-radius: 999px;
        background: rgba(255, 255, 255, 0.1);
        font-weight: 700;
        font-size: 0.85rem;
      }
      .pill { display: inline-flex; padding: 5px 12px; border-radius: 999px; background: var(--accent-2); color: #fff; font-weight: 700; }
      .pill.bad { background: var(--bad); }
      .alert {
        padding: 10px 12px;
        border-radius: 10px;
        background: rgba(242, 182, 50, 0.15);
        border: 1px solid rgba(242, 182, 50, 0.4);
        margin-bottom: 10px;
      }
      .timer { font-size: 1.5rem; font-weight: 800; padding: 6px 12px; border-radius: 10px; background: rgba(63, 179, 127, 0.25); }
      .code-box {
        font-size: 2rem;
        font-weight: 900;
        letter-spacing: 0.3rem;
        padding: 10px 16px;
        border-radius: 14px;
        background: var(--card-2);
        border: 1px dashed var(--border);
        direction: ltr;
        display: inline-block;
      }
      .list { display: grid; gap: 8px; }
      .list-item {
        display: flex;
        justify-content: space-between;
        align-items: center;
        padding: 10px 12px;
        border-radius: 10px;
        background: var(--card-2);
        border: 1px solid var(--border);
      }
      .question { font-size: 1.5rem; font-weight: 700; line-height: 1.6; }
      img.qr { width: 160px; height: 160px; background: #fff; border-radius: 10px; padding: 6px; }
    </style>
  </head>
  <body class="{{ body_class }}">
    <div class="wrap">
      __BODY__
    </div>
  </body>
</html>
"""

LANDING_BODY = """
<div class="card hero">
  <div class="title">{{ app_title }}</div>
  <p class="muted">مسابقة كرة قدم بين لاعبين ومقدم، مع غرفة فيديو مباشرة.</p>
  {% if error %}
  <div class="alert">{{ error }}</div>
  {% endif %}
</div>
<div class="grid-2">
  <div class="card">
    <h2>جلسة جديدة</h2>
    <form method="post" action="{{ url_for('create_session') }}" class="stack">
      <label class="muted">اسم المقدم</label>
      <input class="input" type="text" name="host_name" maxlength="{{ name_max_len }}" placeholder="المقدم">
      <label class="muted">كود المقدم (اختياري)</label>
      <input class="input" type="text" name="host_code" maxlength="{{ host_code_max_len }}" placeholder="ABC123-HOST">
      {% for seg in segments %}
      <div class="row space-between">
        <span>{{ seg.label }} <span class="chip">{{ seg.code }}</span></span>
        <input class="input small" type="number" min="0" max="{{ max_questions }}" name="seg_{{ seg.code }}" value="{{ seg.count }}">
      </div>
      {% endfor %}
      <button class="btn full" type="submit">إنشاء الجلسة</button>
    </form>
  </div>
  <div class="card">
    <h2>انضم كلاعب</h2>
    <form method="post" action="{{ url_for('join') }}" class="stack">
      <label class="muted">كود اللعبة</label>
      <input class="input" type="text" name="game_code" maxlength="8" placeholder="ABC123" required>
      <label class="muted">المقعد</label>
      <select class="input" name="player_id">
        {% for pid, label in player_labels.items() %}
        <option value="{{ pid }}">{{ label }}</option>
        {% endfor %}
      </select>
      <label class="muted">الاسم</label>
      <input class="input" type="text" name="name" maxlength="{{ name_max_len }}" required>
      <label class="muted">العلم</label>
      <select class="input" name="flag">
        <option value="">--</option>
        {% for code, label in flags %}
        <option value="{{ code }}">{{ label }}</option>
        {% endfor %}
      </select>
      <label class="muted">النادي</label>
      <input class="input" type="text" name="club" maxlength="{{ club_max_len }}" placeholder="real-madrid">
      <button class="btn secondary full" type="submit">انضم</button>
    </form>
  </div>
</div>
{% if active_games %}
<div class="card">
  <h2>الجلسات النشطة</h2>
  <div class="list">
    {% for game in active_games %}
    <div class="list-item">
      <span><span class="code-box" style="font-size:1rem">{{ game.gameId }}</span> {{ game.hostName or "" }}</span>
      <span class="muted">{{ game.phaseLabel }} · {{ game.connectedPlayers }}/2</span>
    </div>
    {% endfor %}
  </div>
</div>
{% endif %}
"""

HOST_LOCKED_BODY = """
<div class="card hero">
  <div class="title">غرفة التحكم</div>
  <p class="muted">{{ lock_message }}</p>
  <form method="get" action="{{ url_for('host', game_id=game_id) }}" class="stack">
    <input class="input" type="text" name="code" maxlength="{{ host_code_max_len }}" placeholder="كود المقدم">
    <button class="btn full" type="submit">دخول</button>
  </form>
</div>
"""

HOST_BODY = """
<div class="card hero">
  <div class="row space-between">
    <div>
      <div class="muted">كود اللعبة</div>
      <div class="code-box">{{ game.gameId }}</div>
      <div class="muted">المقدم: {{ game.hostName or "--" }}</div>
    </div>
    <div class="row">
      <span class="pill">{{ game.phaseLabel }}</span>
      {% if game.currentSegment %}
      <span class="pill">{{ game.segmentLabel }} · {{ game.currentQuestionIndex + 1 }}/{{ game.segmentSettings[game.currentSegment] }}</span>
      {% endif %}
      <span class="timer" id="timer-badge">{{ game.timer }}s</span>
    </div>
    {% if join_qr %}
    <img class="qr" src="{{ join_qr }}" alt="QR">
    {% endif %}
  </div>
  {% if game.hostMessage %}
  <div class="alert">{{ game.hostMessage }}</div>
  {% endif %}
</div>

{% if game.phase == "CONFIG" %}
<div class="card">
  <h2>الإعداد</h2>
  <form method="post" action="{{ url_for('host_action', game_id=game.gameId) }}" class="stack">
    <input type="hidden" name="action" value="update_host_name">
    <input class="input" type="text" name="hostName" maxlength="{{ name_max_len }}" value="{{ game.hostName or '' }}">
    <button class="btn secondary" type="submit">حفظ اسم المقدم</button>
  </form>
  <form method="post" action="{{ url_for('host_action', game_id=game.gameId) }}" class="stack">
    <input type="hidden" name="action" value="update_segment_settings">
    {% for code in segment_order %}
    <div class="row space-between">
      <span>{{ segment_labels[code] }} <span class="chip">{{ code }}</span></span>
      <input class="input small" type="number" min="0" max="{{ max_questions }}" name="seg_{{ code }}" value="{{ game.segmentSettings[code] }}">
    </div>
    {% endfor %}
    <button class="btn secondary" type="submit">حفظ عدد الأسئلة</button>
  </form>
  <form method="post" action="{{ url_for('host_action', game_id=game.gameId) }}">
    <input type="hidden" name="action" value="start_game">
    <button class="btn full" type="submit">ابدأ اللعبة</button>
  </form>
</div>
{% endif %}

{% if game.phase == "PLAYING" %}
<div class="card">
  <div class="row space-between">
    <h2>{{ game.segmentLabel }}</h2>
    <span class="muted">{{ segment_descriptions.get(game.currentSegment, "") }}</span>
  </div>
  {% if game.question %}
  <div class="question">{{ game.question.text }}</div>
  <p class="muted">الإجابات: {{ game.question.answers | join("، ") }} · النقاط: {{ game.question.points }}</p>
  {% if game.question.clues is not none %}
  <div class="list">
    {% for clue in game.question.clues %}
    <div class="list-item">{{ clue }}</div>
    {% endfor %}
  </div>
  <p class="muted">التلميحات: {{ game.segmentState.cluesRevealed }}/{{ game.question.totalClues }}</p>
  {% endif %}
  {% else %}
  <p class="muted">انتهت أسئلة هذه الفقرة.</p>
  {% endif %}
  {% if game.currentSegment == "BELL" %}
  <p>الجرس: <strong id="bell-winner">{{ player_labels.get(game.segmentState.bellWinner, "--") }}</strong></p>
  {% endif %}
  {% if game.currentSegment == "AUCT" %}
  <p>المزايدات:
    {% for pid, amount in game.segmentState.bids.items() %}<span class="chip">{{ player_labels[pid] }}: {{ amount }}</span> {% endfor %}
    {% if game.segmentState.auctionWinner %}<span class="pill">الفائز: {{ player_labels[game.segmentState.auctionWinner] }}</span>{% endif %}
  </p>
  {% endif %}
  <div class="row">
    {% for action, label in flow_actions %}
    <form method="post" action="{{ url_for('host_action', game_id=game.gameId) }}">
      <input type="hidden" name="action" value="{{ action }}">
      <button class="btn secondary" type="submit">{{ label }}</button>
    </form>
    {% endfor %}
  </div>
  <form method="post" action="{{ url_for('host_action', game_id=game.gameId) }}" class="row">
    <input type="hidden" name="action" value="start_timer">
    <input class="input small" type="number" min="1" max="{{ timer_max }}" name="duration" value="{{ timer_default }}">
    <button class="btn" type="submit">تشغيل المؤقت</button>
  </form>
</div>
{% endif %}

<div class="grid-2">
  {% for pid, player in game.players.items() %}
  <div class="card">
    <div class="row space-between">
      <h3>{{ player.name or player_labels[pid] }} {% if player.flag %}<span class="chip">{{ player.flag }}</span>{% endif %}</h3>
      <span class="pill {% if not player.isConnected %}bad{% endif %}">{{ "متصل" if player.isConnected else "غير متصل" }}</span>
    </div>
    <div class="title" id="score-{{ pid }}">{{ player.score }}</div>
    <p class="muted">الأخطاء: {{ player.strikes }}/{{ max_strikes }}</p>
    <p>
      {% for button, available in player.specialButtons.items() %}
      <span class="chip">{{ button_labels[button] }}: {{ "متاح" if available else "--" }}</span>
      {% endfor %}
    </p>
    {% if game.phase == "PLAYING" %}
    <div class="row">
      {% for points in score_steps %}
      <form method="post" action="{{ url_for('host_action', game_id=game.gameId) }}">
        <input type="hidden" name="action" value="score">
        <input type="hidden" name="playerId" value="{{ pid }}">
        <input type="hidden" name="points" value="{{ points }}">
        <button class="btn {% if points < 0 %}danger{% endif %}" type="submit">{{ "%+d" % points }}</button>
      </form>
      {% endfor %}
      <form method="post" action="{{ url_for('host_action', game_id=game.gameId) }}">
        <input type="hidden" name="action" value="strike">
        <input type="hidden" name="playerId" value="{{ pid }}">
        <button class="btn danger" type="submit">خطأ</button>
      </form>
    </div>
    {% endif %}
  </div>
  {% endfor %}
</div>

<div class="card">
  <h2>غرفة الفيديو</h2>
  {% if game.videoRoomCreated %}
  <p><a class="chip" href="{{ game.videoRoomUrl }}" target="_blank" rel="noopener">{{ game.videoRoomUrl }}</a></p>
  <form method="post" action="{{ url_for('host_action', game_id=game.gameId) }}">
    <input type="hidden" name="action" value="end_video_room">
    <button class="btn danger" type="submit">إغلاق الغرفة</button>
  </form>
  {% else %}
  <form method="post" action="{{ url_for('host_action', game_id=game.gameId) }}">
    <input type="hidden" name="action" value="create_video_room">
    <button class="btn secondary" type="submit">إنشاء غرفة فيديو</button>
  </form>
  {% endif %}
</div>

{% if game.scoreHistory %}
<div class="card">
  <h2>سجل النقاط</h2>
  <div class="list">
    {% for event in game.scoreHistory[-10:] | reverse %}
    <div class="list-item">
      <span>{{ player_labels[event.player_id] }} · {{ event.segment }} #{{ event.question_index + 1 }}</span>
      <span class="chip">{{ "%+d" % event.points }}</span>
    </div>
    {% endfor %}
  </div>
</div>
{% endif %}

{% if game.phase != "CONFIG" %}
<div class="card">
  <div class="row">
    {% if game.phase == "PLAYING" %}
    <form method="post" action="{{ url_for('host_action', game_id=game.gameId) }}">
      <input type="hidden" name="action" value="complete_game">
      <button class="btn danger" type="submit">إنهاء اللعبة</button>
    </form>
    {% endif %}
    <form method="post" action="{{ url_for('host_action', game_id=game.gameId) }}">
      <input type="hidden" name="action" value="reset_game">
      <button class="btn danger" type="submit">إعادة الضبط</button>
    </form>
  </div>
</div>
{% endif %}

<script>
  (function () {
    const revision = {{ game.revision }};
    async function poll() {
      try {
        const res = await fetch("{{ url_for('api_game_state', game_id=game.gameId) }}", { cache: "no-store" });
        if (!res.ok) { return; }
        const data = await res.json();
        if (data.revision !== revision) { window.location.reload(); }
      } catch (err) {
        return;
      }
    }
    async function pollTimer() {
      try {
        const res = await fetch("{{ url_for('api_game_timer', game_id=game.gameId) }}", { cache: "no-store" });
        if (!res.ok) { return; }
        const data = await res.json();
        const badge = document.getElementById("timer-badge");
        if (badge) { badge.textContent = data.timer + "s"; }
      } catch (err) {
        return;
      }
    }
    setInterval(poll, {{ host_poll_ms }});
    setInterval(pollTimer, {{ host_timer_poll_ms }});
  })();
</script>
"""

PLAY_BODY = """
<div class="card hero">
  <div class="row space-between">
    <div>
      <div class="muted">{{ player_labels[player_id] }} · {{ game.gameId }}</div>
      <div class="title">{{ player.name }}</div>
    </div>
    <div class="row">
      <span class="pill">{{ game.phaseLabel }}</span>
      {% if game.currentSegment %}<span class="pill">{{ game.segmentLabel }}</span>{% endif %}
      <span class="timer">{{ game.timer }}s</span>
    </div>
  </div>
  {% if msg %}
  <div class="alert">{{ msg }}</div>
  {% endif %}
</div>

{% if game.phase == "PLAYING" and game.question %}
<div class="card">
  <div class="question">{{ game.question.text }}</div>
  {% if game.question.answers %}
  <p class="muted">الإجابة: {{ game.question.answers[0] }}</p>
  {% endif %}
  {% if game.question.clues %}
  <div class="list">
    {% for clue in game.question.clues %}
    <div class="list-item">{{ clue }}</div>
    {% endfor %}
  </div>
  {% endif %}
</div>
{% endif %}

{% if game.phase == "PLAYING" and game.currentSegment == "BELL" %}
<div class="card">
  <form method="post" action="{{ url_for('player_action', game_id=game.gameId) }}">
    <input type="hidden" name="action" value="ring_bell">
    <button class="btn full" type="submit" {% if game.segmentState.bellWinner %}disabled{% endif %}>🔔 الجرس</button>
  </form>
  {% if game.segmentState.bellWinner %}
  <p class="muted">ضغط الجرس: {{ player_labels[game.segmentState.bellWinner] }}</p>
  {% endif %}
</div>
{% endif %}

{% if game.phase == "PLAYING" and game.currentSegment == "AUCT" and not game.segmentState.auctionClosed %}
<div class="card">
  <form method="post" action="{{ url_for('player_action', game_id=game.gameId) }}" class="row">
    <input type="hidden" name="action" value="place_bid">
    <input class="input small" type="number" min="1" max="{{ max_bid }}" name="amount" value="1">
    <button class="btn" type="submit">زايد</button>
  </form>
  <p>
    {% for pid, amount in game.segmentState.bids.items() %}<span class="chip">{{ player_labels[pid] }}: {{ amount }}</span> {% endfor %}
  </p>
</div>
{% endif %}

<div class="card">
  <div class="row space-between">
    <div>
      <div class="muted">نقاطك</div>
      <div class="title">{{ player.score }}</div>
    </div>
    <span class="muted">الأخطاء: {{ player.strikes }}/{{ max_strikes }}</span>
  </div>
  <div class="row">
    {% for button, available in player.specialButtons.items() %}
    <form method="post" action="{{ url_for('player_action', game_id=game.gameId) }}">
      <input type="hidden" name="action" value="use_button">
      <input type="hidden" name="buttonType" value="{{ button }}">
      <button class="btn secondary" type="submit" {% if not available or game.currentSegment != button_segments[button] %}disabled{% endif %}>{{ button_labels[button] }}</button>
    </form>
    {% endfor %}
  </div>
</div>

<div class="card">
  <h2>النتيجة</h2>
  <div class="list">
    {% for row in game.scoreboard %}
    <div class="list-item"><span>{{ row.name or player_labels[row.playerId] }}</span><span class="chip">{{ row.score }}</span></div>
    {% endfor %}
  </div>
  {% if game.phase == "COMPLETED" %}
  <p class="pill">{{ ("الفائز: " ~ (game.players[game.winner].name or player_labels[game.winner])) if game.winner else "تعادل" }}</p>
  {% endif %}
</div>

{% if game.videoRoomUrl %}
<div class="card">
  <a class="btn secondary full" href="{{ game.videoRoomUrl }}" target="_blank" rel="noopener">دخول غرفة الفيديو</a>
</div>
{% endif %}

<form method="post" action="{{ url_for('player_action', game_id=game.gameId) }}">
  <input type="hidden" name="action" value="leave">
  <button class="btn danger" type="submit">مغادرة</button>
</form>

<script>
  (function () {
    const revision = {{ game.revision }};
    async function poll() {
      try {
        const res = await fetch("{{ url_for('api_game_state', game_id=game.gameId) }}", { cache: "no-store" });
        if (!res.ok) { return; }
        const data = await res.json();
        if (data.revision !== revision) { window.location.reload(); }
      } catch (err) {
        return;
      }
    }
    setInterval(poll, {{ public_poll_ms }});
  })();
</script>
"""

HOST_FLOW_ACTIONS: List[Tuple[str, str]] = [
    ("next_question", "السؤال التالي"),
    ("next_segment", "الفقرة التالية"),
    ("stop_timer", "إيقاف المؤقت"),
    ("reset_strikes", "تصفير الأخطاء"),
    ("reveal_answer", "كشف الإجابة"),
    ("reveal_clue", "تلميح جديد"),
    ("close_auction", "إغلاق المزاد"),
]

HOST_FORM_ACTIONS = {
    "start_game": "START_GAME",
    "next_question": "NEXT_QUESTION",
    "next_segment": "NEXT_SEGMENT",
    "complete_game": "COMPLETE_GAME",
    "reset_game": "RESET_GAME",
    "score": "UPDATE_SCORE",
    "strike": "ADD_STRIKE",
    "reset_strikes": "RESET_STRIKES",
    "use_button": "USE_SPECIAL_BUTTON",
    "start_timer": "START_TIMER",
    "stop_timer": "STOP_TIMER",
    "reveal_clue": "REVEAL_CLUE",
    "reveal_answer": "REVEAL_ANSWER",
    "close_auction": "CLOSE_AUCTION",
    "update_host_name": "UPDATE_HOST_NAME",
    "update_segment_settings": "UPDATE_SEGMENT_SETTINGS",
    "set_segment": "SET_CURRENT_SEGMENT",
}

PLAYER_FORM_ACTIONS = {
    "ring_bell": "RING_BELL",
    "place_bid": "PLACE_BID",
    "use_button": "USE_SPECIAL_BUTTON",
    "leave": "LEAVE_GAME",
}

SCORE_STEPS = [1, 2, 3, -1]


def render_page(body: str, *, title: str, body_class: str, **context: Any) -> str:
    template = BASE_TEMPLATE.replace("__BODY__", body)
    return render_template_string(template, title=title, body_class=body_class, **context)


def get_lan_ip() -> str:
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.connect(("8.8.8.8", 80))
        ip = sock.getsockname()[0]
        sock.close()
        return ip
    except OSError:
        try:
            return socket.gethostbyname(socket.gethostname())
        except OSError:
            return "127.0.0.1"


def iso_now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def get_environment() -> str:
    return os.environ.get("APP_ENV") or os.environ.get("NODE_ENV") or "development"


ARABIC_LETTER_MAP = str.maketrans({"ة": "ه", "ى": "ي", "ـ": None})
ARTICLES = ("the", "a", "an")


def normalize_text(text: str) -> str:
    # NFKD splits hamza/madda off alef and drops harakat as combining marks.
    decomposed = unicodedata.normalize("NFKD", text)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    words = re.findall(r"\w+", stripped.translate(ARABIC_LETTER_MAP).lower())
    if len(words) > 1 and words[0] in ARTICLES:
        words = words[1:]
    words = [word[2:] if word.startswith("ال") and len(word) > 3 else word for word in words]
    return " ".join(words)


def answer_matches(guess: str, answers: List[str]) -> bool:
    normalized = normalize_text(guess)
    if not normalized:
        return False
    return any(normalized == normalize_text(answer) for answer in answers)


def normalize_game_code(code: str) -> str:
    return "".join(ch for ch in code.upper() if ch.isalnum())


def normalize_host_code(code: str) -> str:
    return code.strip().upper()[:HOST_CODE_MAX_LEN]


def make_game_code(existing: Dict[str, Any], length: int = GAME_CODE_LENGTH) -> str:
    while True:
        code = "".join(secrets.choice(GAME_CODE_CHARS) for _ in range(length))
        if code not in existing:
            return code


def clean_text(text: str, limit: int = NAME_MAX_LEN) -> str:
    cleaned = " ".join(text.split())
    return cleaned[:limit].strip()


def parse_int(value: Any, field: str, *, minimum: int, maximum: int) -> int:
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise GameActionError(f"{field} must be an integer.", "INVALID_VALUE")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise GameActionError(f"{field} must be an integer.", "INVALID_VALUE") from None
    if number < minimum or number > maximum:
        raise GameActionError(f"{field} must be between {minimum} and {maximum}.", "INVALID_VALUE")
    return number


def build_qr_data_url(data: str) -> Optional[str]:
    try:
        img = qrcode.make(data, image_factory=qrcode.image.svg.SvgPathImage, border=1)
        buffer = io.BytesIO()
        img.save(buffer)
    except (ValueError, OSError) as exc:
        LOGGER.warning("QR code rendering failed: %s", exc)
        return None
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/svg+xml;base64,{encoded}"


def make_player(player_id: str) -> Dict[str, Any]:
    return {
        "id": player_id,
        "name": "",
        "flag": "",
        "club": "",
        "role": player_id,
        "score": 0,
        "strikes": 0,
        "is_connected": False,
        "special_buttons": {button: False for button in SPECIAL_BUTTONS},
        "used_buttons": [],
        "lock_granted": False,
        "session_token": None,
    }


def make_segment_state(segment: Optional[str]) -> Dict[str, Any]:
    return {
        "segment": segment,
        "bell_pid": None,
        "bell_ts": None,
        "bids": {},
        "bid_ts": {},
        "auction_closed": False,
        "auction_winner": None,
        "clues_revealed": 0,
        "answer_revealed": False,
        "buttons_used": [],
    }


def validate_segment_settings(raw: Dict[str, Any]) -> Dict[str, int]:
    if not isinstance(raw, dict):
        raise GameActionError("Segment settings must be an object.", "INVALID_SEGMENT_SETTINGS")
    settings: Dict[str, int] = {}
    for code, value in raw.items():
        if code not in SEGMENT_ORDER:
            raise GameActionError(f"Unknown segment: {code}", "UNKNOWN_SEGMENT")
        settings[code] = parse_int(value, code, minimum=0, maximum=MAX_QUESTIONS_PER_SEGMENT)
    return settings


def merge_segment_settings(base: Dict[str, int], raw: Optional[Dict[str, Any]]) -> Dict[str, int]:
    merged = dict(base)
    if raw:
        merged.update(validate_segment_settings(raw))
    if not any(count > 0 for count in merged.values()):
        raise GameActionError("At least one segment needs questions.", "NO_SEGMENTS")
    return merged


def make_game_state(
    game_id: str,
    host_code: str,
    host_name: Optional[str] = None,
    segment_settings: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    now = time.time()
    return {
        "game_id": game_id,
        "host_code": host_code,
        "host_name": host_name or None,
        "host_is_connected": False,
        "phase": "CONFIG",
        "current_segment": None,
        "current_question_index": 0,
        "timer": 0,
        "is_timer_running": False,
        "timer_start_ts": None,
        "timer_duration": None,
        "timer_expired": False,
        "video_room_url": None,
        "video_room_created": False,
        "segment_settings": merge_segment_settings(DEFAULT_SEGMENT_SETTINGS, segment_settings),
        "players": {pid: make_player(pid) for pid in PLAYER_IDS},
        "score_history": [],
        "question_order": {},
        "segment_state": make_segment_state(None),
        "auto_advance": AUTO_ADVANCE_SEGMENTS,
        "host_message": "",
        "events": [],
        "revision": 0,
        "created_at": now,
        "updated_at": now,
        "completed_at": None,
    }


def touch_locked(state: Dict[str, Any]) -> None:
    state["updated_at"] = time.time()
    state["revision"] = state.get("revision", 0) + 1


def record_event_locked(state: Dict[str, Any], event_type: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    event = {
        "event_id": f"{state['game_id']}-{event_type}-{int(time.time() * 1000)}",
        "event_type": event_type,
        "data": data or {},
        "timestamp": iso_now(),
    }
    events = state.setdefault("events", [])
    events.append(event)
    if len(events) > MAX_GAME_EVENTS:
        del events[:-MAX_GAME_EVENTS]
    return event


def get_player_locked(state: Dict[str, Any], player_id: Any) -> Dict[str, Any]:
    player = state["players"].get(player_id) if isinstance(player_id, str) else None
    if player is None:
        raise GameActionError(f"Unknown player: {player_id}", "UNKNOWN_PLAYER")
    return player


def require_phase(state: Dict[str, Any], phase: str) -> None:
    if state.get("phase") != phase:
        raise GameActionError(f"Action requires phase {phase}.", "INVALID_PHASE", 409)


def require_segment(state: Dict[str, Any], segment: str) -> None:
    require_phase(state, "PLAYING")
    if state.get("current_segment") != segment:
        raise GameActionError(f"Action requires segment {segment}.", "WRONG_SEGMENT", 409)


def next_active_segment(settings: Dict[str, int], current: Optional[str]) -> Optional[str]:
    start = 0 if current is None else SEGMENT_ORDER.index(current) + 1
    for segment in SEGMENT_ORDER[start:]:
        if settings.get(segment, 0) > 0:
            return segment
    return None


def build_question_order(segment: str, count: int) -> List[int]:
    """Shuffle bank indices in bags so nothing repeats until the bank runs out."""
    bank_size = len(QUESTION_BANK.get(segment, []))
    if not bank_size:
        return []
    order: List[int] = []
    while len(order) < count:
        bag = list(range(bank_size))
        random.shuffle(bag)
        if order and bank_size > 1 and bag[0] == order[-1]:
            bag[0], bag[-1] = bag[-1], bag[0]
        order.extend(bag)
    return order[:count]


def get_current_question(state: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    segment = state.get("current_segment")
    if not segment:
        return None
    order = state.get("question_order", {}).get(segment) or []
    index = state.get("current_question_index", 0)
    if index >= len(order):
        return None
    return QUESTION_BANK[segment][order[index]]


def get_question_clues(question: Optional[Dict[str, Any]]) -> List[str]:
    if not question or not question.get("clues_key"):
        return []
    return CAREER_CLUES.get(question["clues_key"], [])


# Timer helpers. The timer is wall-clock based: start time + duration while running,
# frozen remaining seconds in "timer" otherwise.


def clear_timer_locked(state: Dict[str, Any]) -> None:
    state["timer"] = 0
    state["is_timer_running"] = False
    state["timer_start_ts"] = None
    state["timer_duration"] = None
    state["timer_expired"] = False


def get_timer_remaining(state: Dict[str, Any]) -> int:
    if not state.get("is_timer_running"):
        return int(state.get("timer", 0))
    start = state.get("timer_start_ts")
    duration = state.get("timer_duration")
    if not start or not duration:
        return int(state.get("timer", 0))
    return max(0, math.ceil(duration - (time.time() - start)))


def start_timer_locked(state: Dict[str, Any], seconds: Any = None) -> int:
    duration = parse_int(
        TIMER_DEFAULT_SECONDS if seconds in (None, "") else seconds,
        "duration",
        minimum=1,
        maximum=TIMER_MAX_SECONDS,
    )
    state["timer"] = duration
    state["is_timer_running"] = True
    state["timer_start_ts"] = time.time()
    state["timer_duration"] = duration
    state["timer_expired"] = False
    return duration


def stop_timer_locked(state: Dict[str, Any]) -> int:
    remaining = get_timer_remaining(state)
    state["timer"] = remaining
    state["is_timer_running"] = False
    state["timer_start_ts"] = None
    state["timer_duration"] = None
    return remaining


def tick_timer_locked(state: Dict[str, Any]) -> int:
    if not state.get("is_timer_running"):
        return int(state.get("timer", 0))
    remaining = get_timer_remaining(state)
    state["timer"] = remaining
    if remaining > 0:
        return remaining
    stop_timer_locked(state)
    state["timer_expired"] = True
    state["host_message"] = "انتهى الوقت."
    touch_locked(state)
    return 0


def update_timer_locked(state: Dict[str, Any], timer: Any, is_running: Any) -> None:
    seconds = parse_int(timer, "timer", minimum=0, maximum=TIMER_MAX_SECONDS)
    if is_running and seconds > 0:
        start_timer_locked(state, seconds)
        return
    state["timer"] = seconds
    state["is_timer_running"] = False
    state["timer_start_ts"] = None
    state["timer_duration"] = None
    state["timer_expired"] = False


# Reducer-level transitions.


def set_phase_locked(state: Dict[str, Any], phase: Any) -> None:
    if phase not in PHASES:
        raise GameActionError(f"Unknown phase: {phase}", "UNKNOWN_PHASE")
    if phase == "COMPLETED":
        complete_game_locked(state)
        return
    state["phase"] = phase
    if phase == "CONFIG":
        state["current_segment"] = None
        state["segment_state"] = make_segment_state(None)


def set_current_segment_locked(state: Dict[str, Any], segment: Any) -> None:
    if segment is not None and segment not in SEGMENT_ORDER:
        raise GameActionError(f"Unknown segment: {segment}", "UNKNOWN_SEGMENT")
    state["current_segment"] = segment
    state["current_question_index"] = 0
    clear_timer_locked(state)
    state["segment_state"] = make_segment_state(segment)
    if segment and segment not in state.setdefault("question_order", {}):
        state["question_order"][segment] = build_question_order(segment, state["segment_settings"].get(segment, 0))


def reset_strikes_locked(state: Dict[str, Any]) -> None:
    for player in state["players"].values():
        player["strikes"] = 0


def advance_question_locked(state: Dict[str, Any]) -> None:
    state["current_question_index"] += 1
    clear_timer_locked(state)
    reset_strikes_locked(state)
    state["segment_state"] = make_segment_state(state.get("current_segment"))


def add_player_locked(state: Dict[str, Any], player: Dict[str, Any]) -> None:
    if player.get("id") not in PLAYER_IDS:
        raise GameActionError(f"Unknown player: {player.get('id')}", "UNKNOWN_PLAYER")
    state["players"][player["id"]] = player


PLAYER_TEXT_FIELDS = {"name": NAME_MAX_LEN, "flag": 8, "club": CLUB_MAX_LEN, "role": 16}


def update_player_locked(state: Dict[str, Any], player_id: Any, partial: Any) -> None:
    player = get_player_locked(state, player_id)
    if not isinstance(partial, dict):
        raise GameActionError("Player update must be an object.", "INVALID_PLAYER_UPDATE")
    updates: Dict[str, Any] = {}
    for key, value in partial.items():
        if key in PLAYER_TEXT_FIELDS:
            updates[key] = clean_text(str(value or ""), PLAYER_TEXT_FIELDS[key])
        elif key == "score":
            updates[key] = parse_int(value, key, minimum=-9999, maximum=9999)
        elif key == "strikes":
            updates[key] = parse_int(value, key, minimum=0, maximum=MAX_STRIKES)
        elif key in ("isConnected", "is_connected"):
            updates["is_connected"] = bool(value)
        elif key in ("specialButtons", "special_buttons") and isinstance(value, dict):
            buttons = dict(player["special_buttons"])
            for button, available in value.items():
                if button not in SPECIAL_BUTTONS:
                    raise GameActionError(f"Unknown button: {button}", "UNKNOWN_BUTTON")
                buttons[button] = bool(available)
            updates["special_buttons"] = buttons
        else:
            raise GameActionError(f"Player field cannot be updated: {key}", "INVALID_PLAYER_FIELD")
    player.update(updates)


def push_score_event_locked(state: Dict[str, Any], event: Dict[str, Any]) -> None:
    state["score_history"].append(event)


def complete_game_locked(state: Dict[str, Any]) -> None:
    if state.get("is_timer_running"):
        stop_timer_locked(state)
    state["phase"] = "COMPLETED"
    state["is_timer_running"] = False
    state["completed_at"] = time.time()
    winner = get_winner(state)
    state["host_message"] = "انتهت اللعبة." if winner is None else f"انتهت اللعبة. الفائز: {display_name(state, winner)}"
    record_event_locked(state, "game_completed", {"winner": winner, "scores": final_scores(state)})


# Action-level transitions.


def start_game_locked(state: Dict[str, Any]) -> None:
    require_phase(state, "CONFIG")
    settings = state["segment_settings"]
    first = next_active_segment(settings, None)
    if first is None:
        raise GameActionError("At least one segment needs questions.", "NO_SEGMENTS")
    state["question_order"] = {
        segment: build_question_order(segment, count) for segment, count in settings.items() if count > 0
    }
    state["phase"] = "PLAYING"
    set_current_segment_locked(state, first)
    reset_strikes_locked(state)
    state["host_message"] = f"بدأت اللعبة: {SEGMENT_LABELS[first]}"
    record_event_locked(state, "game_started", {"segment": first})


def join_game_locked(
    state: Dict[str, Any],
    player_id: Any,
    name: str,
    flag: str = "",
    club: str = "",
    token: Optional[str] = None,
) -> str:
    if state.get("phase") == "COMPLETED":
        raise GameActionError("Game is already completed.", "GAME_COMPLETED", 409)
    player = get_player_locked(state, player_id)
    clean_name = clean_text(name or "", NAME_MAX_LEN)
    if not clean_name:
        raise GameActionError("Display name is required.", "NAME_REQUIRED")
    flag = (flag or "").strip().lower()
    if flag and flag not in FLAG_CODES:
        raise GameActionError(f"Unknown flag: {flag}", "INVALID_FLAG")
    existing_token = player.get("session_token")
    if existing_token and player.get("is_connected") and token != existing_token:
        raise GameActionError("This seat is already taken.", "SLOT_TAKEN", 409)
    if existing_token is None:
        # First claim of the seat hands out the one-use buttons; LOCK comes later with points.
        player["special_buttons"]["TRAVELER_BUTTON"] = True
        player["special_buttons"]["PIT_BUTTON"] = True
    if not token or token != existing_token:
        token = secrets.token_urlsafe(16)
    player["session_token"] = token
    player["name"] = clean_name
    player["flag"] = flag
    player["club"] = clean_text(club or "", CLUB_MAX_LEN)
    player["is_connected"] = True
    state["host_message"] = f"انضم {clean_name} ({PLAYER_LABELS[player['id']]})"
    record_event_locked(state, "player_join", {"playerId": player["id"], "name": clean_name})
    return token


def leave_game_locked(state: Dict[str, Any], player_id: Any) -> None:
    player = get_player_locked(state, player_id)
    player["is_connected"] = False
    state["host_message"] = f"غادر {display_name(state, player['id'])}"
    record_event_locked(state, "player_leave", {"playerId": player["id"]})


def update_host_name_locked(state: Dict[str, Any], host_name: Any) -> None:
    state["host_name"] = clean_text(str(host_name or ""), NAME_MAX_LEN) or None


def update_segment_settings_locked(state: Dict[str, Any], settings: Any) -> None:
    require_phase(state, "CONFIG")
    state["segment_settings"] = merge_segment_settings(state["segment_settings"], settings)
    state["host_message"] = "تم حفظ عدد الأسئلة."


def next_segment_locked(state: Dict[str, Any]) -> Optional[str]:
    require_phase(state, "PLAYING")
    upcoming = next_active_segment(state["segment_settings"], state.get("current_segment"))
    if upcoming is None:
        complete_game_locked(state)
        return None
    set_current_segment_locked(state, upcoming)
    reset_strikes_locked(state)
    state["host_message"] = f"الفقرة التالية: {SEGMENT_LABELS[upcoming]}"
    record_event_locked(state, "segment_started", {"segment": upcoming})
    return upcoming


def next_question_locked(state: Dict[str, Any]) -> None:
    require_phase(state, "PLAYING")
    advance_question_locked(state)
    segment = state.get("current_segment")
    total = state["segment_settings"].get(segment, 0) if segment else 0
    if state["current_question_index"] >= total and state.get("auto_advance", True):
        next_segment_locked(state)
        return
    state["host_message"] = ""


def update_score_locked(state: Dict[str, Any], player_id: Any, points: Any) -> Dict[str, Any]:
    require_phase(state, "PLAYING")
    player = get_player_locked(state, player_id)
    delta = parse_int(points, "points", minimum=-100, maximum=100)
    if delta == 0:
        raise GameActionError("points must not be zero.", "INVALID_VALUE")
    player["score"] += delta
    event = {
        "player_id": player["id"],
        "points": delta,
        "timestamp": int(time.time() * 1000),
        "segment": state.get("current_segment"),
        "question_index": state.get("current_question_index", 0),
    }
    push_score_event_locked(state, event)
    if player["score"] >= LOCK_BUTTON_THRESHOLD and not player.get("lock_granted"):
        player["lock_granted"] = True
        player["special_buttons"]["LOCK_BUTTON"] = True
        state["host_message"] = f"{display_name(state, player['id'])} حصل على زر القفل."
    return event


def add_strike_locked(state: Dict[str, Any], player_id: Any) -> int:
    require_phase(state, "PLAYING")
    player = get_player_locked(state, player_id)
    player["strikes"] = min(MAX_STRIKES, player.get("strikes", 0) + 1)
    if player["strikes"] >= MAX_STRIKES:
        state["host_message"] = f"{display_name(state, player['id'])} جمع {MAX_STRIKES} أخطاء."
    return player["strikes"]


def use_special_button_locked(state: Dict[str, Any], player_id: Any, button: Any) -> None:
    require_phase(state, "PLAYING")
    if button not in SPECIAL_BUTTONS:
        raise GameActionError(f"Unknown button: {button}", "UNKNOWN_BUTTON")
    player = get_player_locked(state, player_id)
    if not player["special_buttons"].get(button):
        raise GameActionError("Button is not available.", "BUTTON_UNAVAILABLE", 409)
    if state.get("current_segment") != BUTTON_SEGMENTS[button]:
        raise GameActionError(f"{button} can only be used during {BUTTON_SEGMENTS[button]}.", "WRONG_SEGMENT", 409)
    player["special_buttons"][button] = False
    player["used_buttons"].append(button)
    state["segment_state"]["buttons_used"].append({"player_id": player["id"], "button": button})
    state["host_message"] = f"{display_name(state, player['id'])} استخدم زر {BUTTON_LABELS[button]}."
    record_event_locked(state, "special_button", {"playerId": player["id"], "button": button})


def reset_game_locked(state: Dict[str, Any]) -> None:
    fresh = make_game_state(state["game_id"], state["host_code"], state.get("host_name"), state["segment_settings"])
    kept_players = state["players"]
    kept = {
        key: state[key]
        for key in ("host_is_connected", "video_room_url", "video_room_created", "events", "revision", "created_at")
    }
    state.clear()
    state.update(fresh)
    state.update(kept)
    for pid, old in kept_players.items():
        player = make_player(pid)
        for key in ("name", "flag", "club", "role", "is_connected", "session_token"):
            player[key] = old.get(key, player[key])
        if player["session_token"]:
            player["special_buttons"]["TRAVELER_BUTTON"] = True
            player["special_buttons"]["PIT_BUTTON"] = True
        add_player_locked(state, player)
    state["host_message"] = "تمت إعادة ضبط اللعبة."
    record_event_locked(state, "game_reset")


# Segment mechanics.


def select_buzz_winner(
    current_pid: Optional[str],
    current_ts: Optional[float],
    new_pid: str,
    new_ts: float,
) -> Tuple[str, float]:
    if current_pid is None or current_ts is None:
        return new_pid, new_ts
    if new_ts < current_ts:
        return new_pid, new_ts
    return current_pid, current_ts


def ring_bell_locked(state: Dict[str, Any], player_id: Any, ts: Optional[float] = None) -> bool:
    require_segment(state, "BELL")
    player = get_player_locked(state, player_id)
    segment_state = state["segment_state"]
    winner, winner_ts = select_buzz_winner(
        segment_state.get("bell_pid"),
        segment_state.get("bell_ts"),
        player["id"],
        time.time() if ts is None else ts,
    )
    if winner != segment_state.get("bell_pid"):
        segment_state["bell_pid"] = winner
        segment_state["bell_ts"] = winner_ts
        if state.get("is_timer_running"):
            stop_timer_locked(state)
        state["host_message"] = f"{display_name(state, winner)} ضغط الجرس."
    return winner == player["id"]


def resolve_auction(bids: Dict[str, int], bid_ts: Dict[str, float]) -> Optional[str]:
    if not bids:
        return None
    return min(bids, key=lambda pid: (-bids[pid], bid_ts.get(pid, 0.0)))


def place_bid_locked(state: Dict[str, Any], player_id: Any, amount: Any) -> int:
    require_segment(state, "AUCT")
    player = get_player_locked(state, player_id)
    segment_state = state["segment_state"]
    if segment_state.get("auction_closed"):
        raise GameActionError("Auction is closed.", "AUCTION_CLOSED", 409)
    bid = parse_int(amount, "amount", minimum=1, maximum=MAX_BID)
    rival_bids = [value for pid, value in segment_state["bids"].items() if pid != player["id"]]
    if rival_bids and bid <= max(rival_bids):
        raise GameActionError("Bid must beat the current highest bid.", "BID_TOO_LOW", 409)
    segment_state["bids"][player["id"]] = bid
    segment_state["bid_ts"][player["id"]] = time.time()
    return bid


def close_auction_locked(state: Dict[str, Any]) -> Optional[str]:
    require_segment(state, "AUCT")
    segment_state = state["segment_state"]
    winner = resolve_auction(segment_state["bids"], segment_state["bid_ts"])
    segment_state["auction_closed"] = True
    segment_state["auction_winner"] = winner
    if winner:
        state["host_message"] = f"فاز بالمزاد {display_name(state, winner)} بـ {segment_state['bids'][winner]}."
    else:
        state["host_message"] = "أُغلق المزاد بدون مزايدات."
    return winner


def reveal_clue_locked(state: Dict[str, Any]) -> int:
    require_segment(state, "REMO")
    clues = get_question_clues(get_current_question(state))
    segment_state = state["segment_state"]
    if segment_state["clues_revealed"] >= len(clues):
        raise GameActionError("No more clues for this question.", "NO_MORE_CLUES", 409)
    segment_state["clues_revealed"] += 1
    return segment_state["clues_revealed"]


def reveal_answer_locked(state: Dict[str, Any]) -> None:
    require_phase(state, "PLAYING")
    state["segment_state"]["answer_revealed"] = True


def check_answer_locked(state: Dict[str, Any], player_id: Any, answer: Any) -> bool:
    require_phase(state, "PLAYING")
    question = get_current_question(state)
    if question is None:
        raise GameActionError("No active question.", "NO_QUESTION", 409)
    if answer_matches(str(answer or ""), question["answers"]):
        update_score_locked(state, player_id, question.get("points", 1))
        return True
    add_strike_locked(state, player_id)
    return False


def display_name(state: Dict[str, Any], player_id: str) -> str:
    player = state["players"].get(player_id, {})
    return player.get("name") or PLAYER_LABELS.get(player_id, player_id)


def final_scores(state: Dict[str, Any]) -> Dict[str, int]:
    return {pid: info.get("score", 0) for pid, info in state["players"].items()}


def get_winner(state: Dict[str, Any]) -> Optional[str]:
    scores = final_scores(state)
    best = max(scores.values())
    leaders = [pid for pid, score in scores.items() if score == best]
    return leaders[0] if len(leaders) == 1 else None


def get_scoreboard(state: Dict[str, Any]) -> List[Dict[str, Any]]:
    rows = []
    for pid, info in state["players"].items():
        rows.append({"playerId": pid, "name": info.get("name", ""), "score": info.get("score", 0)})
    rows.sort(key=lambda row: (-row["score"], row["playerId"]))
    return rows


def get_segment_progress(state: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    settings = state["segment_settings"]
    current = state.get("current_segment")
    phase = state.get("phase")
    current_pos = SEGMENT_ORDER.index(current) if current else -1
    progress = {}
    for pos, segment in enumerate(SEGMENT_ORDER):
        total = settings.get(segment, 0)
        if segment == current and phase == "PLAYING":
            done = state.get("current_question_index", 0)
        elif phase == "COMPLETED" or (phase == "PLAYING" and pos < current_pos):
            done = total
        else:
            done = 0
        progress[segment] = {
            "isActive": segment == current and phase == "PLAYING",
            "questionsTotal": total,
            "currentQuestion": min(done, total),
            "isComplete": done >= total,
        }
    return progress


def apply_game_action_locked(state: Dict[str, Any], action_type: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Apply one reducer-style action to a game.

    ``action_type`` uses the upper-case action names of the client (START_GAME,
    UPDATE_SCORE, ...); ``payload`` carries the camelCase fields of that action.
    Raises GameActionError without mutating the game when the action is invalid.
    """
    kind = (action_type or "").strip().upper()
    data = payload or {}
    result: Dict[str, Any] = {"type": kind}
    if kind == "START_GAME":
        start_game_locked(state)
    elif kind == "JOIN_GAME":
        player_data = data.get("playerData") or {}
        if not isinstance(player_data, dict):
            raise GameActionError("playerData must be an object.", "INVALID_REQUEST_DATA")
        result["playerId"] = data.get("playerId")
        result["token"] = join_game_locked(
            state,
            data.get("playerId"),
            str(player_data.get("name") or ""),
            str(player_data.get("flag") or ""),
            str(player_data.get("club") or ""),
            data.get("token"),
        )
    elif kind == "LEAVE_GAME":
        leave_game_locked(state, data.get("playerId"))
    elif kind == "UPDATE_HOST_NAME":
        update_host_name_locked(state, data.get("hostName"))
    elif kind == "UPDATE_SEGMENT_SETTINGS":
        update_segment_settings_locked(state, data.get("settings"))
    elif kind == "NEXT_QUESTION":
        next_question_locked(state)
    elif kind == "NEXT_SEGMENT":
        result["segment"] = next_segment_locked(state)
    elif kind == "UPDATE_SCORE":
        result["event"] = update_score_locked(state, data.get("playerId"), data.get("points"))
    elif kind == "ADD_STRIKE":
        result["strikes"] = add_strike_locked(state, data.get("playerId"))
    elif kind == "USE_SPECIAL_BUTTON":
        use_special_button_locked(state, data.get("playerId"), data.get("buttonType"))
    elif kind == "START_TIMER":
        result["timer"] = start_timer_locked(state, data.get("duration"))
    elif kind == "STOP_TIMER":
        result["timer"] = stop_timer_locked(state)
    elif kind == "TICK_TIMER":
        result["timer"] = tick_timer_locked(state)
    elif kind == "RESET_GAME":
        reset_game_locked(state)
    elif kind == "SET_PHASE":
        set_phase_locked(state, data.get("phase"))
    elif kind == "SET_CURRENT_SEGMENT":
        segment = data.get("segment") or None
        if segment is not None:
            require_phase(state, "PLAYING")
        set_current_segment_locked(state, segment)
    elif kind == "ADVANCE_QUESTION":
        require_phase(state, "PLAYING")
        advance_question_locked(state)
    elif kind == "UPDATE_PLAYER":
        update_player_locked(state, data.get("playerId"), data.get("partial"))
    elif kind == "UPDATE_TIMER":
        update_timer_locked(state, data.get("timer"), data.get("isRunning"))
    elif kind == "RESET_STRIKES":
        reset_strikes_locked(state)
    elif kind == "COMPLETE_GAME":
        complete_game_locked(state)
    elif kind == "RING_BELL":
        result["won"] = ring_bell_locked(state, data.get("playerId"))
    elif kind == "PLACE_BID":
        result["bid"] = place_bid_locked(state, data.get("playerId"), data.get("amount"))
    elif kind == "CLOSE_AUCTION":
        result["winner"] = close_auction_locked(state)
    elif kind == "REVEAL_CLUE":
        result["cluesRevealed"] = reveal_clue_locked(state)
    elif kind == "REVEAL_ANSWER":
        reveal_answer_locked(state)
    elif kind == "CHECK_ANSWER":
        result["correct"] = check_answer_locked(state, data.get("playerId"), data.get("answer"))
    else:
        raise GameActionError(f"Unknown action: {action_type}", "UNKNOWN_ACTION")
    touch_locked(state)
    return result


# Game registry.


def prune_games_locked(now: Optional[float] = None) -> List[str]:
    current = time.time() if now is None else now
    removed = []
    for game_id, state in list(GAMES.items()):
        completed_at = state.get("completed_at")
        if completed_at and current - completed_at > COMPLETED_GAME_RETENTION_SECONDS:
            removed.append(game_id)
        elif current - state.get("updated_at", current) > ABANDONED_GAME_RETENTION_SECONDS:
            removed.append(game_id)
    for game_id in removed:
        del GAMES[game_id]
        LOGGER.info("Discarded game %s", game_id)
    return removed


def create_game_locked(
    host_name: Optional[str] = None,
    host_code: Optional[str] = None,
    segment_settings: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    prune_games_locked()
    game_id = make_game_code(GAMES)
    code = normalize_host_code(host_code or "") or f"{game_id}-HOST"
    state = make_game_state(game_id, code, clean_text(host_name or "", NAME_MAX_LEN) or None, segment_settings)
    GAMES[game_id] = state
    record_event_locked(state, "session_start", {"hostName": state["host_name"]})
    LOGGER.info("Created game %s", game_id)
    return state


def get_game_locked(game_id: str) -> Dict[str, Any]:
    state = GAMES.get(normalize_game_code(game_id or ""))
    if state is None:
        raise GameActionError("Game not found.", "GAME_NOT_FOUND", 404)
    return state


def host_code_matches(state: Dict[str, Any], code: Any) -> bool:
    if not code or not isinstance(code, str):
        return False
    given = normalize_host_code(code).encode("utf-8")
    return secrets.compare_digest(given, state["host_code"].encode("utf-8"))


def player_token_matches(state: Dict[str, Any], player_id: Optional[str], token: Optional[str]) -> bool:
    if not player_id or not token or player_id not in state["players"]:
        return False
    expected = state["players"][player_id].get("session_token")
    if not expected:
        return False
    return secrets.compare_digest(token.encode("utf-8"), expected.encode("utf-8"))


def build_public_state(state: Dict[str, Any], *, include_answers: bool = False) -> Dict[str, Any]:
    """Camel-cased snapshot for pages and the JSON API. Never carries secrets."""
    players = {}
    for pid, info in state["players"].items():
        players[pid] = {
            "id": pid,
            "name": info.get("name", ""),
            "flag": info.get("flag", ""),
            "club": info.get("club", ""),
            "role": info.get("role", pid),
            "score": info.get("score", 0),
            "strikes": info.get("strikes", 0),
            "isConnected": info.get("is_connected", False),
            "specialButtons": dict(info.get("special_buttons", {})),
            "usedButtons": list(info.get("used_buttons", [])),
        }
    segment_state = state.get("segment_state") or make_segment_state(None)
    question = get_current_question(state)
    question_view = None
    if question:
        clues = get_question_clues(question)
        question_view = {
            "id": question["id"],
            "text": question["text"],
            "points": question.get("points", 1),
            "difficulty": question.get("difficulty"),
            "answers": list(question["answers"]) if include_answers or segment_state["answer_revealed"] else None,
            "clues": clues[: segment_state["clues_revealed"]] if clues else None,
            "totalClues": len(clues),
        }
    segment = state.get("current_segment")
    return {
        "gameId": state["game_id"],
        "hostName": state.get("host_name"),
        "hostIsConnected": state.get("host_is_connected", False),
        "phase": state["phase"],
        "phaseLabel": PHASE_LABELS.get(state["phase"], state["phase"]),
        "currentSegment": segment,
        "segmentLabel": SEGMENT_LABELS.get(segment, "") if segment else "",
        "currentQuestionIndex": state.get("current_question_index", 0),
        "timer": get_timer_remaining(state),
        "isTimerRunning": state.get("is_timer_running", False),
        "videoRoomUrl": state.get("video_room_url"),
        "videoRoomCreated": state.get("video_room_created", False),
        "segmentSettings": dict(state["segment_settings"]),
        "segmentProgress": get_segment_progress(state),
        "players": players,
        "scoreHistory": copy.deepcopy(state.get("score_history", [])),
        "scoreboard": get_scoreboard(state),
        "winner": get_winner(state) if state["phase"] == "COMPLETED" else None,
        "question": question_view,
        "segmentState": {
            "bellWinner": segment_state.get("bell_pid"),
            "bids": dict(segment_state.get("bids", {})),
            "auctionClosed": segment_state.get("auction_closed", False),
            "auctionWinner": segment_state.get("auction_winner"),
            "cluesRevealed": segment_state.get("clues_revealed", 0),
            "answerRevealed": segment_state.get("answer_revealed", False),
            "buttonsUsed": list(segment_state.get("buttons_used", [])),
        },
        "hostMessage": state.get("host_message", ""),
        "revision": state.get("revision", 0),
    }


def get_game_snapshot(game_id: str) -> Optional[Dict[str, Any]]:
    with STATE_LOCK:
        state = GAMES.get(normalize_game_code(game_id or ""))
        return copy.deepcopy(state) if state is not None else None


def list_active_games() -> List[Dict[str, Any]]:
    with STATE_LOCK:
        games = [state for state in GAMES.values() if state.get("phase") != "COMPLETED"]
        rows = [
            {
                "gameId": state["game_id"],
                "hostName": state.get("host_name"),
                "phase": state["phase"],
                "phaseLabel": PHASE_LABELS.get(state["phase"], state["phase"]),
                "connectedPlayers": sum(1 for info in state["players"].values() if info.get("is_connected")),
                "createdAt": state.get("created_at"),
            }
            for state in games
        ]
    rows.sort(key=lambda row: row["createdAt"] or 0, reverse=True)
    return rows


# Daily.co REST API.


def daily_api_key() -> str:
    return os.environ.get("DAILY_API_KEY", "").strip()


def require_daily_api_key() -> str:
    api_key = daily_api_key()
    if not api_key:
        LOGGER.error("DAILY_API_KEY environment variable is missing")
        raise DailyApiError("Daily API key not configured", 500, "MISSING_API_KEY")
    return api_key


def validate_room_name(room_name: Any) -> str:
    if not room_name:
        raise DailyApiError("Room name is required", 400, "MISSING_ROOM_NAME")
    if not isinstance(room_name, str) or not DAILY_ROOM_NAME_RE.match(room_name):
        raise DailyApiError("Invalid room name", 400, "INVALID_ROOM_NAME")
    return room_name


def daily_request(
    method: str,
    path: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> requests.Response:
    api_key = require_daily_api_key()
    url = f"{DAILY_API_URL}/{path.lstrip('/')}"
    try:
        return requests.request(
            method,
            url,
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            params=params,
            json=payload,
            timeout=HTTP_TIMEOUT_SECONDS,
        )
    except requests.RequestException as exc:
        LOGGER.error("Daily.co request failed: %s %s: %s", method, path, exc)
        raise DailyApiError("Daily.co is unreachable", 502, "DAILY_UNREACHABLE") from exc


def raise_for_daily_error(resp: requests.Response, message: str, code: str = "DAILY_API_ERROR", *, gateway: bool = False) -> None:
    if resp.ok:
        return
    LOGGER.error("Daily.co API error (%s): %s", resp.status_code, resp.text)
    status = 502 if gateway and resp.status_code >= 500 else resp.status_code
    raise DailyApiError(message, status, code)


def create_daily_room(room_name: Any, properties: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    require_daily_api_key()
    name = validate_room_name(room_name)
    if properties is not None and not isinstance(properties, dict):
        raise DailyApiError("properties must be an object", 400, "INVALID_PROPERTIES")
    merged = dict(DAILY_ROOM_DEFAULTS)
    merged.update(properties or {})
    resp = daily_request("POST", "rooms", payload={"name": name, "properties": merged})
    raise_for_daily_error(resp, "Failed to create room")
    room = resp.json()
    return {"roomName": room.get("name"), "url": room.get("url"), "created": room.get("created_at")}


def create_daily_token(room: Any, user: Any, is_host: bool = False) -> str:
    require_daily_api_key()
    if not room or not user:
        raise DailyApiError("Room and user are required", 400, "MISSING_FIELDS")
    properties = {
        "room_name": validate_room_name(room),
        "user_name": clean_text(str(user), NAME_MAX_LEN),
        "is_owner": bool(is_host),
        "enable_screenshare": bool(is_host),
        "enable_recording": False,
    }
    resp = daily_request("POST", "meeting-tokens", payload={"properties": properties})
    raise_for_daily_error(resp, "Failed to create token")
    return resp.json().get("token")


def check_daily_room(room_name: Any) -> Dict[str, Any]:
    require_daily_api_key()
    name = validate_room_name(room_name)
    resp = daily_request("GET", f"rooms/{name}")
    if resp.status_code == 404:
        return {"exists": False, "roomName": name}
    raise_for_daily_error(resp, "Failed to check room status")
    room = resp.json()
    return {
        "exists": True,
        "roomName": room.get("name"),
        "url": room.get("url"),
        "created": room.get("created_at"),
        "config": room.get("config"),
        "participants": room.get("participants") or [],
    }


def delete_daily_room(room_name: Any, *, missing_ok: bool = False) -> bool:
    require_daily_api_key()
    name = validate_room_name(room_name)
    resp = daily_request("DELETE", f"rooms/{name}")
    if resp.status_code == 404 and missing_ok:
        return False
    raise_for_daily_error(resp, "Failed to delete room")
    return True


def list_daily_rooms(params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    resp = daily_request("GET", "rooms", params=params or None)
    raise_for_daily_error(resp, "Failed to list rooms", "LIST_FAILED", gateway=True)
    return resp.json()


def search_daily_rooms(pattern: Any, fields: Optional[List[str]] = None) -> Dict[str, Any]:
    if not pattern:
        raise DailyApiError("Search pattern is required", 400, "MISSING_PATTERN")
    search_fields = fields or ["name"]
    needle = str(pattern).lower()
    data = list_daily_rooms({"limit": 100})
    matches = [
        room
        for room in data.get("data") or []
        if any(room.get(field) and needle in str(room.get(field)).lower() for field in search_fields)
    ]
    return {"data": matches, "total_count": len(matches), "search_pattern": pattern, "search_fields": search_fields}


def cleanup_daily_rooms(now: Optional[float] = None) -> Dict[str, Any]:
    current = time.time() if now is None else now
    data = list_daily_rooms({"limit": 100})
    deleted = []
    for room in data.get("data") or []:
        expires = (room.get("config") or {}).get("exp")
        if isinstance(expires, (int, float)) and expires < current and room.get("name"):
            if delete_daily_room(room["name"], missing_ok=True):
                deleted.append(room["name"])
    LOGGER.info("Cleaned up %d expired Daily.co rooms", len(deleted))
    return {"deleted": deleted, "deleted_count": len(deleted), "checked_count": len(data.get("data") or [])}


def create_video_room_for_game(game_id: str) -> str:
    with STATE_LOCK:
        state = get_game_locked(game_id)
        room_name = state["game_id"]
        if state.get("video_room_created") and state.get("video_room_url"):
            return state["video_room_url"]
    try:
        url = create_daily_room(room_name)["url"]
    except DailyApiError as exc:
        # A room left over from an earlier run keeps the same name; reuse it.
        if exc.status != 400:
            raise
        existing = check_daily_room(room_name)
        if not existing.get("exists"):
            raise
        url = existing["url"]
    with STATE_LOCK:
        state = get_game_locked(game_id)
        state["video_room_url"] = url
        state["video_room_created"] = True
        state["host_message"] = "تم إنشاء غرفة الفيديو."
        record_event_locked(state, "video_room_created", {"url": url})
        touch_locked(state)
    return url


def end_video_room_for_game(game_id: str) -> None:
    with STATE_LOCK:
        room_name = get_game_locked(game_id)["game_id"]
    delete_daily_room(room_name, missing_ok=True)
    with STATE_LOCK:
        state = get_game_locked(game_id)
        state["video_room_url"] = None
        state["video_room_created"] = False
        state["host_message"] = "تم إغلاق غرفة الفيديو."
        record_event_locked(state, "video_room_ended")
        touch_locked(state)


def create_participant_token(game_id: str, player_id: Optional[str], is_host: bool) -> Dict[str, Any]:
    with STATE_LOCK:
        state = get_game_locked(game_id)
        if not state.get("video_room_created"):
            raise GameActionError("Video room has not been created.", "NO_VIDEO_ROOM", 409)
        room_name = state["game_id"]
        user = (state.get("host_name") or "المقدم") if is_host else display_name(state, player_id or "")
        url = state["video_room_url"]
    return {"token": create_daily_token(room_name, user, is_host), "url": url, "userName": user}


def probe_service(url: str, headers: Dict[str, str]) -> Dict[str, Any]:
    started = time.time()
    try:
        resp = requests.head(url, headers=headers, timeout=HTTP_TIMEOUT_SECONDS)
    except requests.RequestException as exc:
        return {"status": "error", "error": str(exc)}
    return {"status": "connected" if resp.ok else "error", "responseTime": int((time.time() - started) * 1000)}


def build_health_status() -> Dict[str, Any]:
    status: Dict[str, Any] = {
        "status": "healthy",
        "timestamp": iso_now(),
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "environment": get_environment(),
    }
    with STATE_LOCK:
        status["games"] = {
            "total": len(GAMES),
            "active": sum(1 for state in GAMES.values() if state.get("phase") != "COMPLETED"),
        }
    supabase_url = (os.environ.get("SUPABASE_URL") or os.environ.get("VITE_SUPABASE_URL") or "").rstrip("/")
    if supabase_url:
        anon_key = os.environ.get("SUPABASE_ANON_KEY") or os.environ.get("VITE_SUPABASE_ANON_KEY") or ""
        status["supabase"] = probe_service(f"{supabase_url}/rest/v1/", {"apikey": anon_key})
        status["supabase"]["url"] = supabase_url
    api_key = daily_api_key()
    if api_key:
        status["daily"] = probe_service(f"{DAILY_API_URL}/", {"Authorization": f"Bearer {api_key}"})
    return status


def read_json_body() -> Dict[str, Any]:
    raw = request.get_data(as_text=True)
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        raise ApiError("Invalid JSON in request body", "INVALID_JSON") from None
    if not isinstance(data, dict):
        raise ApiError("Request body must be a valid JSON object", "INVALID_REQUEST_DATA")
    return data


def payload_from_form(form: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    for key in ("playerId", "points", "buttonType", "duration", "hostName", "segment", "phase", "amount"):
        value = form.get(key)
        if value not in (None, ""):
            payload[key] = value
    if "hostName" in form:
        payload["hostName"] = form.get("hostName", "")
    settings = {code: form.get(f"seg_{code}") for code in SEGMENT_ORDER if form.get(f"seg_{code}") not in (None, "")}
    if settings:
        payload["settings"] = settings
    return payload


def host_cookie_name(game_id: str) -> str:
    return f"host_{game_id}"


def player_cookie_name(game_id: str) -> str:
    return f"player_{game_id}"


def read_player_cookie(game_id: str) -> Tuple[Optional[str], Optional[str]]:
    raw = request.cookies.get(player_cookie_name(game_id)) or ""
    if ":" not in raw:
        return None, None
    player_id, token = raw.split(":", 1)
    return player_id, token


def is_host_request(game_id: str) -> bool:
    code = request.cookies.get(host_cookie_name(game_id)) or request.headers.get("X-Host-Code")
    with STATE_LOCK:
        state = GAMES.get(game_id)
        return state is not None and host_code_matches(state, code)


def current_player_id(game_id: str) -> Optional[str]:
    player_id, token = read_player_cookie(game_id)
    with STATE_LOCK:
        state = GAMES.get(game_id)
        if state is None or not player_token_matches(state, player_id, token):
            return None
    return player_id


def set_host_message(game_id: str, message: str) -> None:
    with STATE_LOCK:
        state = GAMES.get(game_id)
        if state is not None:
            state["host_message"] = message
            touch_locked(state)


def register_routes(app: Flask) -> None:
    @app.errorhandler(ApiError)
    def handle_api_error(exc: ApiError) -> Any:
        return jsonify(exc.to_dict()), exc.status

    @app.errorhandler(405)
    def handle_method_not_allowed(exc: Any) -> Any:
        return jsonify({"error": "Method not allowed"}), 405

    @app.get("/")
    def index() -> str:
        return render_page(
            LANDING_BODY,
            title=APP_TITLE,
            body_class="player",
            app_title=APP_TITLE,
            error=request.args.get("error"),
            segments=[
                {"code": code, "label": SEGMENT_LABELS[code], "count": DEFAULT_SEGMENT_SETTINGS[code]}
                for code in SEGMENT_ORDER
            ],
            player_labels=PLAYER_LABELS,
            flags=COMMON_FLAGS,
            active_games=list_active_games(),
            name_max_len=NAME_MAX_LEN,
            club_max_len=CLUB_MAX_LEN,
            host_code_max_len=HOST_CODE_MAX_LEN,
            max_questions=MAX_QUESTIONS_PER_SEGMENT,
        )

    @app.post("/create")
    def create_session() -> Any:
        settings = {
            code: request.form.get(f"seg_{code}")
            for code in SEGMENT_ORDER
            if request.form.get(f"seg_{code}") not in (None, "")
        }
        with STATE_LOCK:
            try:
                state = create_game_locked(request.form.get("host_name"), request.form.get("host_code"), settings)
            except GameActionError as exc:
                return redirect(url_for("index", error=exc.message))
            game_id = state["game_id"]
            host_code = state["host_code"]
        resp = make_response(redirect(url_for("host", game_id=game_id)))
        resp.set_cookie(host_cookie_name(game_id), host_code, max_age=60 * 60 * 24, samesite="Lax", httponly=True)
        return resp

    @app.post("/join")
    def join() -> Any:
        game_id = normalize_game_code(request.form.get("game_code") or "")
        player_id = request.form.get("player_id") or ""
        _, token = read_player_cookie(game_id)
        with STATE_LOCK:
            try:
                state = get_game_locked(game_id)
                token = join_game_locked(
                    state,
                    player_id,
                    request.form.get("name") or "",
                    request.form.get("flag") or "",
                    request.form.get("club") or "",
                    token,
                )
                touch_locked(state)
            except GameActionError as exc:
                return redirect(url_for("index", error=exc.message))
        resp = make_response(redirect(url_for("play", game_id=game_id)))
        resp.set_cookie(
            player_cookie_name(game_id),
            f"{player_id}:{token}",
            max_age=60 * 60 * 24,
            samesite="Lax",
            httponly=True,
        )
        return resp

    @app.get("/host/<game_id>")
    def host(game_id: str) -> Any:
        game_id = normalize_game_code(game_id)
        snapshot = get_game_snapshot(game_id)
        if snapshot is None:
            return redirect(url_for("index", error="Game not found."))
        code = request.args.get("code")
        if code:
            if host_code_matches(snapshot, code):
                resp = make_response(redirect(url_for("host", game_id=game_id)))
                resp.set_cookie(
                    host_cookie_name(game_id),
                    normalize_host_code(code),
                    max_age=60 * 60 * 24,
                    samesite="Lax",
                    httponly=True,
                )
                return resp
            lock_message = "كود المقدم غير صحيح."
        else:
            lock_message = "أدخل كود المقدم لفتح غرفة التحكم."
        if not is_host_request(game_id):
            return render_page(
                HOST_LOCKED_BODY,
                title=f"{APP_TITLE} - غرفة التحكم",
                body_class="host",
                lock_message=lock_message,
                game_id=game_id,
                host_code_max_len=HOST_CODE_MAX_LEN,
            )
        with STATE_LOCK:
            state = get_game_locked(game_id)
            if not state.get("host_is_connected"):
                state["host_is_connected"] = True
                touch_locked(state)
            tick_timer_locked(state)
            game = build_public_state(state, include_answers=True)
        join_url = app.config.get("JOIN_URL") or url_for("index", _external=True)
        return render_page(
            HOST_BODY,
            title=f"{APP_TITLE} - {game_id}",
            body_class="host",
            game=game,
            join_qr=build_qr_data_url(join_url),
            segment_order=SEGMENT_ORDER,
            segment_labels=SEGMENT_LABELS,
            segment_descriptions=SEGMENT_DESCRIPTIONS,
            player_labels=PLAYER_LABELS,
            button_labels=BUTTON_LABELS,
            flow_actions=HOST_FLOW_ACTIONS,
            score_steps=SCORE_STEPS,
            max_strikes=MAX_STRIKES,
            max_questions=MAX_QUESTIONS_PER_SEGMENT,
            name_max_len=NAME_MAX_LEN,
            timer_default=TIMER_DEFAULT_SECONDS,
            timer_max=TIMER_MAX_SECONDS,
            host_poll_ms=HOST_POLL_MS,
            host_timer_poll_ms=HOST_TIMER_POLL_MS,
        )

    @app.post("/host/<game_id>/action")
    def host_action(game_id: str) -> Any:
        game_id = normalize_game_code(game_id)
        if not is_host_request(game_id):
            return "Host access required.", 403

        action = request.form.get("action", "")
        if action == "create_video_room":
            try:
                create_video_room_for_game(game_id)
            except ApiError as exc:
                set_host_message(game_id, f"تعذر إنشاء غرفة الفيديو: {exc.message}")
            return redirect(url_for("host", game_id=game_id))

        if action == "end_video_room":
            try:
                end_video_room_for_game(game_id)
            except ApiError as exc:
                set_host_message(game_id, f"تعذر إغلاق غرفة الفيديو: {exc.message}")
            return redirect(url_for("host", game_id=game_id))

        with STATE_LOCK:
            state = get_game_locked(game_id)
            action_type = HOST_FORM_ACTIONS.get(action)
            if action_type is None:
                state["host_message"] = "Unknown action."
            else:
                try:
                    apply_game_action_locked(state, action_type, payload_from_form(request.form))
                except GameActionError as exc:
                    state["host_message"] = exc.message
                    touch_locked(state)
        return redirect(url_for("host", game_id=game_id))

    @app.get("/play/<game_id>")
    def play(game_id: str) -> Any:
        game_id = normalize_game_code(game_id)
        player_id = current_player_id(game_id)
        if player_id is None:
            return redirect(url_for("index", error="انضم إلى اللعبة أولاً."))
        with STATE_LOCK:
            state = get_game_locked(game_id)
            tick_timer_locked(state)
            game = build_public_state(state)
        return render_page(
            PLAY_BODY,
            title=f"{APP_TITLE} - {game_id}",
            body_class="player",
            game=game,
            player_id=player_id,
            player=game["players"][player_id],
            msg=request.args.get("msg"),
            player_labels=PLAYER_LABELS,
            button_labels=BUTTON_LABELS,
            button_segments=BUTTON_SEGMENTS,
            max_strikes=MAX_STRIKES,
            max_bid=MAX_BID,
            public_poll_ms=PUBLIC_POLL_MS,
        )

    @app.post("/play/<game_id>/action")
    def player_action(game_id: str) -> Any:
        game_id = normalize_game_code(game_id)
        player_id = current_player_id(game_id)
        if player_id is None:
            return redirect(url_for("index", error="انضم إلى اللعبة أولاً."))
        action_type = PLAYER_FORM_ACTIONS.get(request.form.get("action", ""))
        if action_type is None:
            return redirect(url_for("play", game_id=game_id, msg="Unknown action."))
        payload = payload_from_form(request.form)
        payload["playerId"] = player_id
        with STATE_LOCK:
            state = get_game_locked(game_id)
            try:
                apply_game_action_locked(state, action_type, payload)
            except GameActionError as exc:
                return redirect(url_for("play", game_id=game_id, msg=exc.message))
        if action_type == "LEAVE_GAME":
            resp = make_response(redirect(url_for("index")))
            resp.delete_cookie(player_cookie_name(game_id))
            return resp
        return redirect(url_for("play", game_id=game_id))

    @app.get("/api/games")
    def api_games() -> Any:
        return jsonify({"games": list_active_games()})

    @app.get("/api/games/<game_id>/state")
    def api_game_state(game_id: str) -> Any:
        game_id = normalize_game_code(game_id)
        include_answers = is_host_request(game_id)
        with STATE_LOCK:
            state = get_game_locked(game_id)
            return jsonify(build_public_state(state, include_answers=include_answers))

    @app.get("/api/games/<game_id>/timer")
    def api_game_timer(game_id: str) -> Any:
        game_id = normalize_game_code(game_id)
        if not is_host_request(game_id):
            return jsonify({"error": "host required", "code": "HOST_REQUIRED"}), 403
        with STATE_LOCK:
            state = get_game_locked(game_id)
            remaining = tick_timer_locked(state)
            running = state.get("is_timer_running", False)
        return jsonify({"timer": remaining, "isTimerRunning": running})

    @app.post("/api/games/<game_id>/actions")
    def api_game_action(game_id: str) -> Any:
        game_id = normalize_game_code(game_id)
        body = read_json_body()
        code = request.headers.get("X-Host-Code") or body.get("hostCode")
        with STATE_LOCK:
            state = get_game_locked(game_id)
            if not host_code_matches(state, code):
                return jsonify({"error": "host required", "code": "HOST_REQUIRED"}), 403
            payload = body.get("payload") or {}
            if not isinstance(payload, dict):
                raise GameActionError("payload must be an object.", "INVALID_REQUEST_DATA")
            result = apply_game_action_locked(state, str(body.get("type") or ""), payload)
            snapshot = build_public_state(state, include_answers=True)
        LOGGER.info("Game %s action %s", game_id, result["type"])
        return jsonify({"success": True, "result": result, "state": snapshot})

    @app.post("/api/games/<game_id>/daily-token")
    def api_game_daily_token(game_id: str) -> Any:
        game_id = normalize_game_code(game_id)
        if is_host_request(game_id):
            return jsonify(create_participant_token(game_id, None, True))
        player_id = current_player_id(game_id)
        if player_id is None:
            return jsonify({"error": "participant required", "code": "PARTICIPANT_REQUIRED"}), 403
        return jsonify(create_participant_token(game_id, player_id, False))

    @app.post("/api/create-daily-room")
    def api_create_daily_room() -> Any:
        body = read_json_body()
        return jsonify(create_daily_room(body.get("roomName"), body.get("properties")))

    @app.post("/api/create-daily-token")
    def api_create_daily_token() -> Any:
        body = read_json_body()
        return jsonify({"token": create_daily_token(body.get("room"), body.get("user"), bool(body.get("isHost")))})

    @app.post("/api/check-daily-room")
    def api_check_daily_room() -> Any:
        body = read_json_body()
        return jsonify(check_daily_room(body.get("roomName")))

    @app.post("/api/delete-daily-room")
    def api_delete_daily_room() -> Any:
        body = read_json_body()
        delete_daily_room(body.get("roomName"))
        return jsonify({"success": True})

    @app.route("/api/daily-rooms", methods=["GET", "POST"])
    def api_daily_rooms() -> Any:
        if request.method == "GET":
            return jsonify(list_daily_rooms(request.args.to_dict()))
        body = read_json_body()
        action = body.get("action")
        data = body.get("data") or {}
        if not action:
            return (
                jsonify({"error": "Action is required", "code": "MISSING_ACTION", "availableActions": DAILY_ROOM_ACTIONS}),
                400,
            )
        if action == "list":
            params = {key: data[key] for key in ("limit", "ending_before", "starting_after") if data.get(key)}
            return jsonify(list_daily_rooms(params))
        if action == "search":
            return jsonify(search_daily_rooms(data.get("pattern"), data.get("fields")))
        if action == "cleanup":
            return jsonify(cleanup_daily_rooms())
        return (
            jsonify({"error": f"Unknown action: {action}", "code": "UNKNOWN_ACTION", "availableActions": DAILY_ROOM_ACTIONS}),
            400,
        )

    @app.get("/api/health-check")
    def api_health_check() -> Any:
        resp = jsonify(build_health_status())
        resp.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
        return resp

    @app.route("/api/game-event", methods=["GET", "POST"])
    def api_game_event() -> Any:
        body = read_json_body()
        game_id = normalize_game_code(str(body.get("gameId") or ""))
        recorded = False
        if game_id:
            with STATE_LOCK:
                state = GAMES.get(game_id)
                if state is not None:
                    record_event_locked(state, str(body.get("eventType") or "game_event"), body.get("data") or {})
                    recorded = True
        return jsonify(
            {
                "success": True,
                "received": body,
                "recorded": recorded,
                "timestamp": iso_now(),
                "method": request.method,
                "message": "Game event processed successfully",
            }
        )

    @app.route("/api/session-event", methods=["GET", "POST"])
    def api_session_event() -> Any:
        if request.method == "GET":
            session_id = normalize_game_code(request.args.get("sessionId") or "")
            if not session_id:
                return jsonify({"error": "Session ID is required", "code": "MISSING_SESSION_ID"}), 400
            snapshot = get_game_snapshot(session_id)
            if snapshot is None:
                return jsonify({"error": "Session not found", "code": "SESSION_NOT_FOUND", "sessionId": session_id}), 404
            return jsonify(
                {
                    "sessionId": session_id,
                    "status": "completed" if snapshot["phase"] == "COMPLETED" else "active",
                    "phase": snapshot["phase"],
                    "timestamp": iso_now(),
                    "message": "Session status retrieved successfully",
                }
            )

        body = read_json_body()
        session_id = body.get("sessionId")
        event_type = body.get("eventType")
        data = body.get("data") or {}
        if not session_id:
            return jsonify({"error": "Session ID is required", "code": "MISSING_SESSION_ID"}), 400
        if not event_type:
            return (
                jsonify(
                    {
                        "error": "Event type is required",
                        "code": "MISSING_EVENT_TYPE",
                        "supportedEvents": SUPPORTED_SESSION_EVENTS,
                    }
                ),
                400,
            )
        if not isinstance(session_id, str) or not normalize_game_code(session_id):
            return jsonify({"error": "Invalid session ID format", "code": "INVALID_SESSION_ID"}), 400
        if not isinstance(data, dict):
            return jsonify({"error": "data must be an object", "code": "INVALID_REQUEST_DATA"}), 400

        session_id = normalize_game_code(session_id)
        event_id = f"{session_id}-{event_type}-{int(time.time() * 1000)}"
        with STATE_LOCK:
            state = GAMES.get(session_id)
            if state is not None:
                if event_type == "player_join" and data.get("playerId") in PLAYER_IDS:
                    state["players"][data["playerId"]]["is_connected"] = True
                elif event_type == "player_leave" and data.get("playerId") in PLAYER_IDS:
                    state["players"][data["playerId"]]["is_connected"] = False
                elif event_type == "session_end" and state["phase"] != "COMPLETED":
                    complete_game_locked(state)
                event_id = record_event_locked(state, event_type, data)["event_id"]
                touch_locked(state)
        if event_type in SUPPORTED_SESSION_EVENTS:
            LOGGER.info("Session event %s for %s: %s", event_type, session_id, data)
        else:
            LOGGER.warning("Unknown event type %s in session %s", event_type, session_id)
        return jsonify(
            {
                "success": True,
                "eventId": event_id,
                "sessionId": session_id,
                "eventType": event_type,
                "recorded": state is not None,
                "timestamp": iso_now(),
                "message": "Session event processed successfully",
            }
        )


app = Flask(__name__)
app.json.ensure_ascii = False
CORS(app, resources={r"/api/*": {"origins": "*"}})
register_routes(app)


def print_startup_info(port: int) -> str:
    ip = get_lan_ip()
    join_url = f"http://{ip}:{port}"
    print("=" * 60)
    print(f"{APP_TITLE} - Thirty Challenge")
    print("Setup:")
    print("  python -m venv .venv")
    print("  pip install -e .")
    print("Video rooms:")
    print("  DAILY_API_KEY=... in .env or the environment")
    print("-" * 60)
    print(f"Open: {join_url}")
    print(f"Daily.co: {'configured' if daily_api_key() else 'not configured'}")
    print(f"Environment: {get_environment()}")
    print("=" * 60)
    qr = qrcode.QRCode(border=1)
    qr.add_data(join_url)
    qr.make(fit=True)
    print("Scan to open:")
    for row in qr.get_matrix():
        print("".join(["##" if cell else "  " for cell in row]))
    print("=" * 60)
    return join_url


def run_tests() -> int:
    suite = unittest.defaultTestLoader.loadTestsFromModule(sys.modules[__name__])
    runner = unittest.TextTestRunner(verbosity=2)
    result = runner.run(suite)
    return 0 if result.wasSuccessful() else 1


def fake_daily_response(status: int, data: Optional[Dict[str, Any]] = None) -> mock.Mock:
    resp = mock.Mock()
    resp.status_code = status
    resp.ok = status < 400
    resp.json.return_value = data or {}
    resp.text = json.dumps(data or {})
    return resp


class ThirtyChallengeTests(unittest.TestCase):
    def setUp(self) -> None:
        self._games_backup = copy.deepcopy(GAMES)
        GAMES.clear()

    def tearDown(self) -> None:
        GAMES.clear()
        GAMES.update(copy.deepcopy(self._games_backup))

    def make_game(self, **counts: int) -> Dict[str, Any]:
        settings = {code: 0 for code in SEGMENT_ORDER}
        settings.update(counts)
        with STATE_LOCK:
            return create_game_locked("Host", None, settings)

    def make_playing_game(self, **counts: int) -> Dict[str, Any]:
        state = self.make_game(**counts)
        with STATE_LOCK:
            join_game_locked(state, "playerA", "Ali")
            join_game_locked(state, "playerB", "Omar")
            start_game_locked(state)
        return state

    def test_normalize_text(self) -> None:
        self.assertEqual(normalize_text("  The   Alone  "), "alone")
        self.assertEqual(normalize_text("الجدار الأصفر"), "جدار اصفر")
        self.assertEqual(normalize_text("مُحَمَّد"), "محمد")

    def test_answer_matches_arabic_and_latin_variants(self) -> None:
        self.assertTrue(answer_matches("pele", ["بيليه", "Pelé"]))
        self.assertTrue(answer_matches("ميسى", ["ميسي"]))
        self.assertTrue(answer_matches("وحيدا", ["Alone", "وحيداً"]))
        self.assertFalse(answer_matches("", ["Alone"]))
        self.assertFalse(answer_matches("Ronaldo", ["Messi"]))

    def test_check_answer_scores_or_strikes(self) -> None:
        state = self.make_playing_game(AUCT=1)
        with STATE_LOCK:
            question = get_current_question(state)
            result = apply_game_action_locked(
                state, "CHECK_ANSWER", {"playerId": "playerA", "answer": question["answers"][-1].upper()}
            )
            self.assertTrue(result["correct"])
            self.assertEqual(state["players"]["playerA"]["score"], question["points"])
            result = apply_game_action_locked(state, "CHECK_ANSWER", {"playerId": "playerB", "answer": "nobody"})
        self.assertFalse(result["correct"])
        self.assertEqual(state["players"]["playerB"]["strikes"], 1)

    def test_game_code_shape(self) -> None:
        code = make_game_code({})
        self.assertEqual(len(code), GAME_CODE_LENGTH)
        self.assertTrue(all(ch in GAME_CODE_CHARS for ch in code))
        self.assertEqual(normalize_game_code(" ab-c12 "), "ABC12")

    def test_new_game_defaults(self) -> None:
        with STATE_LOCK:
            state = create_game_locked()
        self.assertEqual(state["phase"], "CONFIG")
        self.assertIsNone(state["current_segment"])
        self.assertEqual(state["host_code"], f"{state['game_id']}-HOST")
        self.assertEqual(state["segment_settings"], DEFAULT_SEGMENT_SETTINGS)
        self.assertEqual(set(state["players"]), set(PLAYER_IDS))
        self.assertFalse(any(state["players"]["playerA"]["special_buttons"].values()))

    def test_segment_settings_validation(self) -> None:
        with self.assertRaises(GameActionError) as ctx:
            validate_segment_settings({"XXXX": 1})
        self.assertEqual(ctx.exception.code, "UNKNOWN_SEGMENT")
        with self.assertRaises(GameActionError):
            validate_segment_settings({"WSHA": -1})
        with self.assertRaises(GameActionError):
            validate_segment_settings({"WSHA": MAX_QUESTIONS_PER_SEGMENT + 1})
        with self.assertRaises(GameActionError):
            validate_segment_settings({"WSHA": "many"})
        with self.assertRaises(GameActionError) as ctx:
            merge_segment_settings(DEFAULT_SEGMENT_SETTINGS, {code: 0 for code in SEGMENT_ORDER})
        self.assertEqual(ctx.exception.code, "NO_SEGMENTS")

    def test_update_segment_settings_only_in_config(self) -> None:
        state = self.make_game(WSHA=2)
        with STATE_LOCK:
            apply_game_action_locked(state, "UPDATE_SEGMENT_SETTINGS", {"settings": {"BELL": "3"}})
            self.assertEqual(state["segment_settings"]["BELL"], 3)
            start_game_locked(state)
            with self.assertRaises(GameActionError) as ctx:
                apply_game_action_locked(state, "UPDATE_SEGMENT_SETTINGS", {"settings": {"BELL": 5}})
        self.assertEqual(ctx.exception.code, "INVALID_PHASE")
        self.assertEqual(state["segment_settings"]["BELL"], 3)

    def test_start_game_skips_empty_segments(self) -> None:
        state = self.make_game(AUCT=2, SING=1)
        with STATE_LOCK:
            start_game_locked(state)
        self.assertEqual(state["phase"], "PLAYING")
        self.assertEqual(state["current_segment"], "AUCT")
        self.assertEqual(state["current_question_index"], 0)
        self.assertEqual(set(state["question_order"]), {"AUCT", "SING"})
        with STATE_LOCK:
            with self.assertRaises(GameActionError):
                start_game_locked(state)

    def test_set_phase_config_clears_segment(self) -> None:
        state = self.make_playing_game(WSHA=1)
        with STATE_LOCK:
            set_phase_locked(state, "CONFIG")
            self.assertIsNone(state["current_segment"])
            with self.assertRaises(GameActionError):
                set_phase_locked(state, "LOBBY")

    def test_next_question_rolls_into_next_segment(self) -> None:
        state = self.make_playing_game(WSHA=2, AUCT=1)
        with STATE_LOCK:
            add_strike_locked(state, "playerA")
            start_timer_locked(state, 20)
            next_question_locked(state)
            self.assertEqual(state["current_segment"], "WSHA")
            self.assertEqual(state["current_question_index"], 1)
            self.assertEqual(state["players"]["playerA"]["strikes"], 0)
            self.assertFalse(state["is_timer_running"])
            self.assertEqual(state["timer"], 0)
            next_question_locked(state)
            self.assertEqual(state["current_segment"], "AUCT")
            self.assertEqual(state["current_question_index"], 0)
            next_question_locked(state)
        self.assertEqual(state["phase"], "COMPLETED")
        self.assertFalse(state["is_timer_running"])

    def test_next_question_without_auto_advance_stays(self) -> None:
        state = self.make_playing_game(WSHA=1, BELL=1)
        with STATE_LOCK:
            state["auto_advance"] = False
            next_question_locked(state)
            self.assertEqual(state["current_segment"], "WSHA")
            self.assertIsNone(get_current_question(state))
            self.assertEqual(next_segment_locked(state), "BELL")

    def test_next_segment_completes_after_last(self) -> None:
        state = self.make_playing_game(REMO=2)
        with STATE_LOCK:
            self.assertIsNone(next_segment_locked(state))
        self.assertEqual(state["phase"], "COMPLETED")
        self.assertIsNotNone(state["completed_at"])

    def test_update_score_records_history_and_grants_lock(self) -> None:
        state = self.make_playing_game(WSHA=3)
        with STATE_LOCK:
            event = update_score_locked(state, "playerA", 3)
            self.assertEqual(event["segment"], "WSHA")
            self.assertEqual(event["question_index"], 0)
            update_score_locked(state, "playerB", -2)
            self.assertEqual(state["players"]["playerB"]["score"], -2)
            self.assertFalse(state["players"]["playerA"]["special_buttons"]["LOCK_BUTTON"])
            update_score_locked(state, "playerA", 37)
            self.assertTrue(state["players"]["playerA"]["special_buttons"]["LOCK_BUTTON"])
            state["players"]["playerA"]["special_buttons"]["LOCK_BUTTON"] = False
            update_score_locked(state, "playerA", 1)
            self.assertFalse(state["players"]["playerA"]["special_buttons"]["LOCK_BUTTON"])
            with self.assertRaises(GameActionError):
                update_score_locked(state, "playerC", 1)
        self.assertEqual(len(state["score_history"]), 4)

    def test_update_score_requires_playing(self) -> None:
        state = self.make_game(WSHA=1)
        with STATE_LOCK:
            with self.assertRaises(GameActionError) as ctx:
                update_score_locked(state, "playerA", 1)
        self.assertEqual(ctx.exception.code, "INVALID_PHASE")
        self.assertEqual(state["score_history"], [])

    def test_add_strike_is_capped(self) -> None:
        state = self.make_playing_game(WSHA=1)
        with STATE_LOCK:
            for _ in range(5):
                add_strike_locked(state, "playerB")
            self.assertEqual(state["players"]["playerB"]["strikes"], MAX_STRIKES)
            reset_strikes_locked(state)
        self.assertEqual(state["players"]["playerB"]["strikes"], 0)

    def test_special_buttons_are_single_use_and_segment_bound(self) -> None:
        state = self.make_playing_game(WSHA=1, BELL=1)
        with STATE_LOCK:
            with self.assertRaises(GameActionError) as ctx:
                use_special_button_locked(state, "playerA", "TRAVELER_BUTTON")
            self.assertEqual(ctx.exception.code, "WRONG_SEGMENT")
            set_current_segment_locked(state, "BELL")
            use_special_button_locked(state, "playerA", "TRAVELER_BUTTON")
            self.assertFalse(state["players"]["playerA"]["special_buttons"]["TRAVELER_BUTTON"])
            self.assertEqual(state["players"]["playerA"]["used_buttons"], ["TRAVELER_BUTTON"])
            with self.assertRaises(GameActionError) as ctx:
                use_special_button_locked(state, "playerA", "TRAVELER_BUTTON")
            self.assertEqual(ctx.exception.code, "BUTTON_UNAVAILABLE")
            with self.assertRaises(GameActionError):
                use_special_button_locked(state, "playerA", "ROCKET_BUTTON")

    def test_join_game_slot_rules(self) -> None:
        state = self.make_game(WSHA=1)
        with STATE_LOCK:
            token = join_game_locked(state, "playerA", "Ali", "sa", "Al Hilal")
            player = state["players"]["playerA"]
            self.assertTrue(player["is_connected"])
            self.assertTrue(player["special_buttons"]["TRAVELER_BUTTON"])
            self.assertTrue(player["special_buttons"]["PIT_BUTTON"])
            self.assertFalse(player["special_buttons"]["LOCK_BUTTON"])
            with self.assertRaises(GameActionError) as ctx:
                join_game_locked(state, "playerA", "Sara")
            self.assertEqual(ctx.exception.code, "SLOT_TAKEN")
            self.assertEqual(join_game_locked(state, "playerA", "Ali", token=token), token)
            leave_game_locked(state, "playerA")
            self.assertFalse(player["is_connected"])
            self.assertNotEqual(join_game_locked(state, "playerA", "Sara"), token)
            with self.assertRaises(GameActionError):
                join_game_locked(state, "playerB", "   ")
            with self.assertRaises(GameActionError):
                join_game_locked(state, "playerB", "Omar", flag="zz")
            complete_game_locked(state)
            with self.assertRaises(GameActionError) as ctx:
                join_game_locked(state, "playerB", "Omar")
        self.assertEqual(ctx.exception.code, "GAME_COMPLETED")

    def test_update_player_merges_known_fields(self) -> None:
        state = self.make_game(WSHA=1)
        with STATE_LOCK:
            update_player_locked(state, "playerB", {"name": "  Omar  ", "score": 7, "isConnected": True})
            with self.assertRaises(GameActionError):
                update_player_locked(state, "playerB", {"session_token": "x"})
        player = state["players"]["playerB"]
        self.assertEqual(player["name"], "Omar")
        self.assertEqual(player["score"], 7)
        self.assertTrue(player["is_connected"])
        self.assertIsNone(player["session_token"])

    def test_timer_start_tick_and_stop(self) -> None:
        state = self.make_playing_game(WSHA=1)
        with STATE_LOCK:
            with mock.patch.object(time, "time", return_value=1000.0):
                start_timer_locked(state, 30)
            with mock.patch.object(time, "time", return_value=1010.2):
                self.assertEqual(tick_timer_locked(state), 20)
            with mock.patch.object(time, "time", return_value=1031.0):
                self.assertEqual(tick_timer_locked(state), 0)
            self.assertFalse(state["is_timer_running"])
            self.assertTrue(state["timer_expired"])
            with mock.patch.object(time, "time", return_value=2000.0):
                start_timer_locked(state, 30)
            with mock.patch.object(time, "time", return_value=2005.0):
                self.assertEqual(stop_timer_locked(state), 25)
            self.assertEqual(get_timer_remaining(state), 25)
            with self.assertRaises(GameActionError):
                start_timer_locked(state, TIMER_MAX_SECONDS + 1)
            update_timer_locked(state, 12, False)
        self.assertEqual(state["timer"], 12)
        self.assertFalse(state["is_timer_running"])

    def test_reset_game_keeps_identity(self) -> None:
        state = self.make_playing_game(WSHA=2)
        game_id = state["game_id"]
        token = state["players"]["playerA"]["session_token"]
        with STATE_LOCK:
            update_score_locked(state, "playerA", 5)
            add_strike_locked(state, "playerB")
            apply_game_action_locked(state, "RESET_GAME")
        self.assertEqual(state["game_id"], game_id)
        self.assertEqual(state["phase"], "CONFIG")
        self.assertIsNone(state["current_segment"])
        self.assertEqual(state["score_history"], [])
        self.assertEqual(state["players"]["playerA"]["name"], "Ali")
        self.assertEqual(state["players"]["playerA"]["score"], 0)
        self.assertEqual(state["players"]["playerB"]["strikes"], 0)
        self.assertEqual(state["players"]["playerA"]["session_token"], token)
        self.assertEqual(state["segment_settings"]["WSHA"], 2)

    def test_select_buzz_winner(self) -> None:
        winner_pid, winner_ts = select_buzz_winner(None, None, "playerA", 10.0)
        self.assertEqual((winner_pid, winner_ts), ("playerA", 10.0))
        winner_pid, winner_ts = select_buzz_winner("playerA", 10.0, "playerB", 5.0)
        self.assertEqual((winner_pid, winner_ts), ("playerB", 5.0))
        winner_pid, winner_ts = select_buzz_winner("playerA", 10.0, "playerB", 12.0)
        self.assertEqual((winner_pid, winner_ts), ("playerA", 10.0))

    def test_bell_first_press_wins(self) -> None:
        state = self.make_playing_game(BELL=2)
        with STATE_LOCK:
            self.assertTrue(ring_bell_locked(state, "playerB", ts=5.0))
            self.assertFalse(ring_bell_locked(state, "playerA", ts=6.0))
            self.assertEqual(state["segment_state"]["bell_pid"], "playerB")
            next_question_locked(state)
            self.assertIsNone(state["segment_state"]["bell_pid"])

    def test_auction_bids_must_beat_rival(self) -> None:
        state = self.make_playing_game(AUCT=1)
        with STATE_LOCK:
            place_bid_locked(state, "playerA", 5)
            with self.assertRaises(GameActionError) as ctx:
                place_bid_locked(state, "playerB", 5)
            self.assertEqual(ctx.exception.code, "BID_TOO_LOW")
            place_bid_locked(state, "playerB", 6)
            place_bid_locked(state, "playerA", 7)
            self.assertEqual(close_auction_locked(state), "playerA")
            with self.assertRaises(GameActionError):
                place_bid_locked(state, "playerB", 9)
        self.assertEqual(resolve_auction({"playerA": 5, "playerB": 5}, {"playerA": 2.0, "playerB": 1.0}), "playerB")
        self.assertIsNone(resolve_auction({}, {}))

    def test_reveal_clues_one_at_a_time(self) -> None:
        state = self.make_playing_game(REMO=1)
        with STATE_LOCK:
            total = len(get_question_clues(get_current_question(state)))
            self.assertEqual(total, 5)
            reveal_clue_locked(state)
            reveal_clue_locked(state)
            public = build_public_state(state)
            self.assertEqual(len(public["question"]["clues"]), 2)
            for _ in range(total - 2):
                reveal_clue_locked(state)
            with self.assertRaises(GameActionError) as ctx:
                reveal_clue_locked(state)
        self.assertEqual(ctx.exception.code, "NO_MORE_CLUES")

    def test_question_order_no_repeat_until_exhausted(self) -> None:
        bank_size = len(QUESTION_BANK["WSHA"])
        self.assertEqual(sorted(build_question_order("WSHA", bank_size)), list(range(bank_size)))
        order = build_question_order("WSHA", bank_size * 3)
        self.assertEqual(len(order), bank_size * 3)
        self.assertTrue(all(a != b for a, b in zip(order, order[1:])))
        self.assertEqual(build_question_order("NOPE", 3), [])

    def test_segment_progress(self) -> None:
        state = self.make_playing_game(WSHA=2, AUCT=1)
        with STATE_LOCK:
            progress = get_segment_progress(state)
            self.assertTrue(progress["WSHA"]["isActive"])
            self.assertEqual(progress["WSHA"]["currentQuestion"], 0)
            self.assertFalse(progress["AUCT"]["isComplete"])
            next_question_locked(state)
            next_question_locked(state)
            progress = get_segment_progress(state)
        self.assertTrue(progress["WSHA"]["isComplete"])
        self.assertEqual(progress["WSHA"]["currentQuestion"], 2)
        self.assertTrue(progress["AUCT"]["isActive"])

    def test_public_state_hides_secrets(self) -> None:
        state = self.make_playing_game(WSHA=1)
        with STATE_LOCK:
            public = build_public_state(state)
            host_view = build_public_state(state, include_answers=True)
        self.assertNotIn("session_token", json.dumps(public))
        self.assertNotIn(state["host_code"], json.dumps(public))
        self.assertIsNone(public["question"]["answers"])
        self.assertTrue(host_view["question"]["answers"])

    def test_dispatch_rejects_unknown_action_without_changes(self) -> None:
        state = self.make_game(WSHA=1)
        revision = state["revision"]
        with STATE_LOCK:
            with self.assertRaises(GameActionError) as ctx:
                apply_game_action_locked(state, "FLY_AWAY", {})
        self.assertEqual(ctx.exception.code, "UNKNOWN_ACTION")
        self.assertEqual(state["revision"], revision)

    def test_invalid_actions_leave_game_untouched(self) -> None:
        state = self.make_playing_game(AUCT=1)
        with STATE_LOCK:
            place_bid_locked(state, "playerA", 3)
            before = copy.deepcopy(state)
            for action_type, payload in (
                ("UPDATE_PLAYER", {"playerId": "playerA", "partial": {"name": "Sara", "session_token": "x"}}),
                ("USE_SPECIAL_BUTTON", {"playerId": "playerA", "buttonType": "PIT_BUTTON"}),
                ("PLACE_BID", {"playerId": "playerB", "amount": MAX_BID + 1}),
                ("PLACE_BID", {"playerId": "playerB", "amount": 2}),
            ):
                with self.assertRaises(GameActionError):
                    apply_game_action_locked(state, action_type, payload)
                self.assertEqual(state, before)

    def test_fractional_numbers_are_rejected(self) -> None:
        with STATE_LOCK:
            state = create_game_locked("Host", "secret", {"WSHA": 1})
            with self.assertRaises(GameActionError) as ctx:
                update_segment_settings_locked(state, {"BELL": 3.7})
            self.assertEqual(ctx.exception.code, "INVALID_VALUE")
            update_segment_settings_locked(state, {"BELL": 3.0})
        self.assertEqual(state["segment_settings"]["BELL"], 3)
        game_id = state["game_id"]
        client = app.test_client()
        headers = {"X-Host-Code": "SECRET"}
        client.post(f"/api/games/{game_id}/actions", json={"type": "START_GAME"}, headers=headers)
        resp = client.post(
            f"/api/games/{game_id}/actions",
            json={"type": "UPDATE_SCORE", "payload": {"playerId": "playerA", "points": 2.5}},
            headers=headers,
        )
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()["code"], "INVALID_VALUE")
        self.assertEqual(GAMES[game_id]["players"]["playerA"]["score"], 0)
        self.assertEqual(GAMES[game_id]["score_history"], [])

    def test_api_malformed_payloads_return_json_errors(self) -> None:
        with STATE_LOCK:
            state = create_game_locked("Host", "secret", {"WSHA": 1})
        game_id = state["game_id"]
        client = app.test_client()
        resp = client.post(f"/api/games/{game_id}/actions", json={"type": "START_GAME", "hostCode": 123})
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.get_json()["code"], "HOST_REQUIRED")
        resp = client.post(
            f"/api/games/{game_id}/actions",
            json={"type": "JOIN_GAME", "payload": {"playerId": "playerA", "playerData": "Ali"}},
            headers={"X-Host-Code": "SECRET"},
        )
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()["code"], "INVALID_REQUEST_DATA")
        self.assertIsNone(GAMES[game_id]["players"]["playerA"]["session_token"])

    def test_prune_games(self) -> None:
        done = self.make_game(WSHA=1)
        live = self.make_game(WSHA=1)
        now = time.time()
        with STATE_LOCK:
            done["completed_at"] = now - COMPLETED_GAME_RETENTION_SECONDS - 1
            removed = prune_games_locked(now)
        self.assertEqual(removed, [done["game_id"]])
        self.assertIn(live["game_id"], GAMES)

    def test_flask_create_join_and_host_lock(self) -> None:
        client = app.test_client()
        resp = client.post("/create", data={"host_name": "Host", "seg_WSHA": "2"})
        self.assertEqual(resp.status_code, 302)
        game_id = resp.headers["Location"].rstrip("/").split("/")[-1]
        self.assertIn(game_id, GAMES)
        self.assertIn(f"host_{game_id}=", resp.headers.get("Set-Cookie", ""))
        self.assertEqual(GAMES[game_id]["segment_settings"]["WSHA"], 2)

        resp = client.get(f"/host/{game_id}")
        self.assertEqual(resp.status_code, 200)
        self.assertIn(game_id, resp.get_data(as_text=True))

        stranger = app.test_client()
        resp = stranger.post(f"/host/{game_id}/action", data={"action": "start_game"})
        self.assertEqual(resp.status_code, 403)
        resp = stranger.get(f"/host/{game_id}?code=wrong")
        self.assertIn("كود المقدم غير صحيح", resp.get_data(as_text=True))

        player = app.test_client()
        resp = player.post(
            "/join",
            data={"game_code": game_id.lower(), "player_id": "playerA", "name": "Ali", "flag": "sa"},
        )
        self.assertEqual(resp.status_code, 302)
        self.assertIn(f"player_{game_id}=", resp.headers.get("Set-Cookie", ""))
        resp = player.get(f"/play/{game_id}")
        self.assertEqual(resp.status_code, 200)
        self.assertIn("Ali", resp.get_data(as_text=True))

        resp = client.post(f"/host/{game_id}/action", data={"action": "start_game"})
        self.assertEqual(resp.status_code, 302)
        self.assertEqual(GAMES[game_id]["phase"], "PLAYING")
        resp = client.post(f"/host/{game_id}/action", data={"action": "score", "playerId": "playerA", "points": "2"})
        self.assertEqual(GAMES[game_id]["players"]["playerA"]["score"], 2)
        resp = client.get(f"/host/{game_id}")
        self.assertEqual(resp.status_code, 200)

    def test_flask_player_rings_bell(self) -> None:
        state = self.make_game(BELL=2)
        game_id = state["game_id"]
        player = app.test_client()
        player.post("/join", data={"game_code": game_id, "player_id": "playerB", "name": "Omar"})
        with STATE_LOCK:
            start_game_locked(state)
        resp = player.post(f"/play/{game_id}/action", data={"action": "ring_bell"})
        self.assertEqual(resp.status_code, 302)
        self.assertEqual(GAMES[game_id]["segment_state"]["bell_pid"], "playerB")
        resp = app.test_client().post(f"/play/{game_id}/action", data={"action": "ring_bell"})
        self.assertEqual(resp.status_code, 302)
        self.assertEqual(GAMES[game_id]["segment_state"]["bell_pid"], "playerB")

    def test_api_dispatch_requires_host_code(self) -> None:
        with STATE_LOCK:
            state = create_game_locked("Host", "secret", {"WSHA": 1})
        game_id = state["game_id"]
        client = app.test_client()
        resp = client.post(f"/api/games/{game_id}/actions", json={"type": "START_GAME"})
        self.assertEqual(resp.status_code, 403)
        headers = {"X-Host-Code": "SECRET"}
        resp = client.post(f"/api/games/{game_id}/actions", json={"type": "START_GAME"}, headers=headers)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()["state"]["phase"], "PLAYING")
        resp = client.post(
            f"/api/games/{game_id}/actions",
            json={"type": "UPDATE_SCORE", "payload": {"playerId": "playerA", "points": 3}},
            headers=headers,
        )
        self.assertEqual(resp.get_json()["state"]["players"]["playerA"]["score"], 3)
        resp = client.post(f"/api/games/{game_id}/actions", json={"type": "BOGUS"}, headers=headers)
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()["code"], "UNKNOWN_ACTION")

        resp = client.get(f"/api/games/{game_id}/state")
        self.assertEqual(resp.status_code, 200)
        self.assertNotIn("session_token", resp.get_data(as_text=True))
        resp = client.get("/api/games/NOPE99/state")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.get_json()["code"], "GAME_NOT_FOUND")

    def test_daily_room_requires_api_key(self) -> None:
        client = app.test_client()
        with mock.patch.dict(os.environ, {"DAILY_API_KEY": ""}):
            resp = client.post("/api/create-daily-room", json={"roomName": "abc"})
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.get_json()["code"], "MISSING_API_KEY")

    def test_daily_key_is_checked_before_fields(self) -> None:
        client = app.test_client()
        with mock.patch.dict(os.environ, {"DAILY_API_KEY": ""}):
            for path in ("/api/create-daily-room", "/api/create-daily-token", "/api/check-daily-room", "/api/delete-daily-room"):
                resp = client.post(path, json={})
                self.assertEqual(resp.status_code, 500)
                self.assertEqual(resp.get_json()["code"], "MISSING_API_KEY")

    def test_game_daily_token_for_host_and_player(self) -> None:
        host = app.test_client()
        resp = host.post("/create", data={"host_name": "Host", "seg_WSHA": "1"})
        game_id = resp.headers["Location"].rstrip("/").split("/")[-1]
        player = app.test_client()
        player.post("/join", data={"game_code": game_id, "player_id": "playerA", "name": "Ali"})

        resp = host.post(f"/api/games/{game_id}/daily-token")
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.get_json()["code"], "NO_VIDEO_ROOM")

        with STATE_LOCK:
            GAMES[game_id]["video_room_created"] = True
            GAMES[game_id]["video_room_url"] = f"https://example.daily.co/{game_id}"
        with mock.patch.dict(os.environ, {"DAILY_API_KEY": "test-key"}):
            with mock.patch.object(requests, "request", return_value=fake_daily_response(200, {"token": "tok"})) as fake:
                host_resp = host.post(f"/api/games/{game_id}/daily-token")
                host_props = fake.call_args[1]["json"]["properties"]
                player_resp = player.post(f"/api/games/{game_id}/daily-token")
                player_props = fake.call_args[1]["json"]["properties"]
                stranger = app.test_client().post(f"/api/games/{game_id}/daily-token")
        self.assertEqual(host_resp.status_code, 200)
        self.assertEqual(host_resp.get_json()["token"], "tok")
        self.assertTrue(host_props["is_owner"])
        self.assertEqual(host_props["user_name"], "Host")
        self.assertEqual(host_props["room_name"], game_id)
        self.assertEqual(player_resp.get_json()["userName"], "Ali")
        self.assertFalse(player_props["is_owner"])
        self.assertFalse(player_props["enable_screenshare"])
        self.assertEqual(player_props["user_name"], "Ali")
        self.assertEqual(stranger.status_code, 403)
        self.assertEqual(stranger.get_json()["code"], "PARTICIPANT_REQUIRED")
        self.assertEqual(fake.call_count, 2)

    def test_daily_create_room_merges_defaults(self) -> None:
        client = app.test_client()
        room = {"name": "abc", "url": "https://example.daily.co/abc", "created_at": "2024-01-01T00:00:00Z"}
        with mock.patch.dict(os.environ, {"DAILY_API_KEY": "test-key"}):
            with mock.patch.object(requests, "request", return_value=fake_daily_response(200, room)) as fake:
                resp = client.post("/api/create-daily-room", json={"roomName": "abc", "properties": {"max_participants": 4}})
                missing = client.post("/api/create-daily-room", json={})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json(), {"roomName": "abc", "url": room["url"], "created": room["created_at"]})
        args, kwargs = fake.call_args
        self.assertEqual(args[0], "POST")
        self.assertTrue(args[1].endswith("/rooms"))
        self.assertEqual(kwargs["json"]["properties"]["max_participants"], 4)
        self.assertTrue(kwargs["json"]["properties"]["enable_chat"])
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer test-key")
        self.assertEqual(kwargs["timeout"], HTTP_TIMEOUT_SECONDS)
        self.assertEqual(missing.status_code, 400)

    def test_daily_token_follows_host_flag(self) -> None:
        client = app.test_client()
        with mock.patch.dict(os.environ, {"DAILY_API_KEY": "test-key"}):
            with mock.patch.object(requests, "request", return_value=fake_daily_response(200, {"token": "tok"})) as fake:
                resp = client.post("/api/create-daily-token", json={"room": "abc", "user": "Host", "isHost": True})
                missing = client.post("/api/create-daily-token", json={"room": "abc"})
        self.assertEqual(resp.get_json(), {"token": "tok"})
        properties = fake.call_args[1]["json"]["properties"]
        self.assertTrue(properties["is_owner"])
        self.assertTrue(properties["enable_screenshare"])
        self.assertFalse(properties["enable_recording"])
        self.assertEqual(missing.status_code, 400)
        self.assertEqual(missing.get_json()["code"], "MISSING_FIELDS")

    def test_daily_check_and_delete_room(self) -> None:
        client = app.test_client()
        with mock.patch.dict(os.environ, {"DAILY_API_KEY": "test-key"}):
            with mock.patch.object(requests, "request", return_value=fake_daily_response(404, {"error": "not-found"})):
                resp = client.post("/api/check-daily-room", json={"roomName": "gone"})
                delete_resp = client.post("/api/delete-daily-room", json={"roomName": "gone"})
            with mock.patch.object(requests, "request", return_value=fake_daily_response(200, {"deleted": True})):
                ok_resp = client.post("/api/delete-daily-room", json={"roomName": "abc"})
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(resp.get_json()["exists"])
        self.assertEqual(delete_resp.status_code, 404)
        self.assertEqual(ok_resp.get_json(), {"success": True})

    def test_daily_rooms_actions(self) -> None:
        now = time.time()
        rooms = {
            "data": [
                {"name": "abc-old", "config": {"exp": now - 100}},
                {"name": "xyz", "config": {"exp": now + 1000}},
            ],
            "total_count": 2,
        }

        def fake_request(method: str, url: str, **kwargs: Any) -> mock.Mock:
            if method == "GET":
                return fake_daily_response(200, rooms)
            return fake_daily_response(200, {"deleted": True})

        client = app.test_client()
        with mock.patch.dict(os.environ, {"DAILY_API_KEY": "test-key"}):
            with mock.patch.object(requests, "request", side_effect=fake_request) as fake:
                listed = client.get("/api/daily-rooms?limit=5")
                searched = client.post("/api/daily-rooms", json={"action": "search", "data": {"pattern": "ABC"}})
                cleaned = client.post("/api/daily-rooms", json={"action": "cleanup"})
                unknown = client.post("/api/daily-rooms", json={"action": "explode"})
                missing = client.post("/api/daily-rooms", json={})
            self.assertEqual(fake.call_args_list[0][1]["params"], {"limit": "5"})
            with mock.patch.object(requests, "request", return_value=fake_daily_response(503, {})):
                failed = client.post("/api/daily-rooms", json={"action": "list"})
        self.assertEqual(listed.get_json()["total_count"], 2)
        self.assertEqual(searched.get_json()["total_count"], 1)
        self.assertEqual(cleaned.get_json()["deleted"], ["abc-old"])
        self.assertEqual(unknown.status_code, 400)
        self.assertEqual(unknown.get_json()["availableActions"], DAILY_ROOM_ACTIONS)
        self.assertEqual(missing.status_code, 400)
        self.assertEqual(failed.status_code, 502)

    def test_daily_unreachable_maps_to_bad_gateway(self) -> None:
        client = app.test_client()
        with mock.patch.dict(os.environ, {"DAILY_API_KEY": "test-key"}):
            with mock.patch.object(requests, "request", side_effect=requests.ConnectionError("down")):
                resp = client.post("/api/check-daily-room", json={"roomName": "abc"})
        self.assertEqual(resp.status_code, 502)
        self.assertEqual(resp.get_json()["code"], "DAILY_UNREACHABLE")

    def test_daily_proxy_methods_and_preflight(self) -> None:
        client = app.test_client()
        resp = client.get("/api/create-daily-room")
        self.assertEqual(resp.status_code, 405)
        self.assertIn("error", resp.get_json())
        resp = client.options("/api/create-daily-room", headers={"Origin": "http://example.com"})
        self.assertEqual(resp.status_code, 200)
        self.assertIn(resp.headers.get("Access-Control-Allow-Origin"), ("*", "http://example.com"))

    def test_video_room_for_game_reuses_existing_room(self) -> None:
        state = self.make_game(WSHA=1)
        game_id = state["game_id"]
        url = f"https://example.daily.co/{game_id}"

        def fake_request(method: str, request_url: str, **kwargs: Any) -> mock.Mock:
            if method == "POST":
                return fake_daily_response(400, {"error": "invalid-request-error", "info": "already exists"})
            return fake_daily_response(200, {"name": game_id, "url": url})

        with mock.patch.dict(os.environ, {"DAILY_API_KEY": "test-key"}):
            with mock.patch.object(requests, "request", side_effect=fake_request):
                self.assertEqual(create_video_room_for_game(game_id), url)
            self.assertTrue(GAMES[game_id]["video_room_created"])
            with mock.patch.object(requests, "request", return_value=fake_daily_response(404, {})):
                end_video_room_for_game(game_id)
        self.assertFalse(GAMES[game_id]["video_room_created"])
        self.assertIsNone(GAMES[game_id]["video_room_url"])

    def test_health_check(self) -> None:
        client = app.test_client()
        env = {"DAILY_API_KEY": "", "SUPABASE_URL": "", "VITE_SUPABASE_URL": "", "APP_ENV": "test"}
        with mock.patch.dict(os.environ, env):
            resp = client.get("/api/health-check")
        data = resp.get_json()
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(data["status"], "healthy")
        self.assertEqual(data["service"], SERVICE_NAME)
        self.assertEqual(data["environment"], "test")
        self.assertNotIn("daily", data)
        self.assertIn("no-cache", resp.headers.get("Cache-Control", ""))

    def test_health_check_reports_supabase_probe(self) -> None:
        env = {"DAILY_API_KEY": "", "SUPABASE_URL": "https://db.example.com", "SUPABASE_ANON_KEY": "anon"}
        with mock.patch.dict(os.environ, env):
            with mock.patch.object(requests, "head", return_value=fake_daily_response(200)) as fake:
                status = build_health_status()
        self.assertEqual(status["supabase"]["status"], "connected")
        self.assertEqual(fake.call_args[0][0], "https://db.example.com/rest/v1/")

    def test_game_event_endpoint(self) -> None:
        state = self.make_game(WSHA=1)
        client = app.test_client()
        resp = client.post("/api/game-event", data="{bad", content_type="application/json")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()["code"], "INVALID_JSON")
        resp = client.post("/api/game-event", json={"gameId": state["game_id"], "eventType": "answer", "data": {"ok": 1}})
        self.assertTrue(resp.get_json()["recorded"])
        self.assertEqual(GAMES[state["game_id"]]["events"][-1]["event_type"], "answer")
        resp = client.get("/api/game-event")
        self.assertEqual(resp.get_json()["method"], "GET")

    def test_session_event_endpoint(self) -> None:
        state = self.make_game(WSHA=1)
        game_id = state["game_id"]
        client = app.test_client()
        resp = client.post("/api/session-event", json={"eventType": "player_join"})
        self.assertEqual(resp.get_json()["code"], "MISSING_SESSION_ID")
        resp = client.post("/api/session-event", json={"sessionId": game_id})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()["supportedEvents"], SUPPORTED_SESSION_EVENTS)
        resp = client.post(
            "/api/session-event",
            json={"sessionId": game_id, "eventType": "player_join", "data": {"playerId": "playerB"}},
        )
        self.assertTrue(resp.get_json()["recorded"])
        self.assertTrue(GAMES[game_id]["players"]["playerB"]["is_connected"])
        resp = client.get(f"/api/session-event?sessionId={game_id}")
        self.assertEqual(resp.get_json()["status"], "active")
        resp = client.post("/api/session-event", json={"sessionId": game_id, "eventType": "session_end"})
        self.assertEqual(GAMES[game_id]["phase"], "COMPLETED")
        resp = client.get("/api/session-event?sessionId=NOPE99")
        self.assertEqual(resp.status_code, 404)
        resp = client.get("/api/session-event")
        self.assertEqual(resp.status_code, 400)


def main() -> None:
    parser = argparse.ArgumentParser(description="Thirty Challenge server")
    parser.add_argument("--port", type=int, default=env_int("PORT", 5000), help="Port to listen on")
    parser.add_argument("--host", default="0.0.0.0", help="Interface to bind")
    parser.add_argument("--test", action="store_true", help="Run tests and exit")
    args = parser.parse_args()

    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.test:
        raise SystemExit(run_tests())

    join_url = print_startup_info(args.port)
    app.config["JOIN_URL"] = join_url

    serve(app, host=args.host, port=args.port, threads=8)


if __name__ == "__main__":
    main()
