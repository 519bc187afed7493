from __future__ import annotations

"""Server-side timestamps, normalized to the configured chat timezone."""

import os
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

DEFAULT_TIMEZONE = "Asia/Kolkata"


def chat_timezone() -> ZoneInfo:
    return ZoneInfo(os.getenv("CHAT_TIMEZONE", DEFAULT_TIMEZONE))


def now() -> datetime:
    return datetime.now(chat_timezone())


def now_iso() -> str:
    return now().isoformat()


def iso_in(delta: timedelta) -> str:
    return (now() + delta).isoformat()


def parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)
