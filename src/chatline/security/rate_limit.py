from __future__ import annotations

"""Fixed-window, in-memory rate limiting for credential endpoints."""

import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Dict, Tuple

from fastapi import HTTPException, status


@dataclass
class _Window:
    count: int
    window_end: datetime


@dataclass(frozen=True)
class RateLimitRule:
    action: str
    limit_env: str
    window_env: str
    default_limit: int
    default_window_seconds: int


LOGIN_RULE = RateLimitRule("login", "LOGIN_LIMIT", "LOGIN_WINDOW_SEC", 10, 900)
RESET_REQUEST_RULE = RateLimitRule("forgot_password", "RESET_REQUEST_LIMIT", "RESET_REQUEST_WINDOW_SEC", 5, 900)

_WINDOWS: Dict[Tuple[str, str], _Window] = {}
_LOCK = Lock()


class RateLimitExceeded(Exception):
    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__("Rate limit exceeded")
        self.retry_after_seconds = retry_after_seconds


def hit(rule: RateLimitRule, identifier: str) -> None:
    """Count one attempt of ``rule.action`` for ``identifier``.

    Raises:
        RateLimitExceeded once the window's allowance is used up.
    """

    if _rate_limiting_disabled():
        return

    limit = _env_int(rule.limit_env, rule.default_limit)
    window_seconds = _env_int(rule.window_env, rule.default_window_seconds)
    now = datetime.now(timezone.utc)
    key = (rule.action, identifier)

    with _LOCK:
        window = _WINDOWS.get(key)
        if window and window.window_end > now:
            if window.count >= limit:
                retry_after = int((window.window_end - now).total_seconds())
                raise RateLimitExceeded(max(retry_after, 1))
            window.count += 1
            return
        _WINDOWS[key] = _Window(count=1, window_end=now + timedelta(seconds=window_seconds))


def enforce(rule: RateLimitRule, identifier: str, message: str) -> None:
    try:
        hit(rule, identifier)
    except RateLimitExceeded as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=message,
            headers={"Retry-After": str(exc.retry_after_seconds)},
        ) from exc


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def _rate_limiting_disabled() -> bool:
    flag = os.getenv("CHATLINE_RATE_LIMIT_DISABLED")
    if flag is not None:
        return flag.lower() in {"1", "true", "yes", "on"}
    if os.getenv("PYTEST_CURRENT_TEST"):
        return True
    return False


def reset_rate_limits() -> None:
    """Clear in-memory counters (useful for tests)."""

    with _LOCK:
        _WINDOWS.clear()
