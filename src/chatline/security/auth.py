from __future__ import annotations

"""Session authentication shared by the HTTP routers and the realtime handshake.

This module provides:
- Session cookie configuration loaded from the environment
- Argon2id password hashing helpers
- Signed session cookie encode/decode (PyJWT, HS256)
- ``validate_session``: the single cookie -> identity check used by both transports
- FastAPI dependencies to get the current session identity

Env vars:
- SESSION_SECRET (required in prod; default for dev)
- SESSION_MAX_AGE_SECONDS (default 7 days)
- SESSION_COOKIE_NAME (default chat.sid)
- SESSION_COOKIE_SECURE (default off)
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Mapping, Optional

import logging
import os
import jwt
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError
from fastapi import Depends, HTTPException, Request, status

from ..domain.chat_models import SessionIdentity
from ..domain.errors import AuthorizationError
from ..infrastructure.session_store import SessionStore, get_session_store


logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class SessionConfig:
    secret: str
    algorithm: str = "HS256"
    max_age_seconds: int = 60 * 60 * 24 * 7
    cookie_name: str = "chat.sid"
    secure: bool = False

    @staticmethod
    def from_env() -> "SessionConfig":
        return SessionConfig(
            secret=os.getenv("SESSION_SECRET", "dev-secret-please-change"),
            max_age_seconds=int(os.getenv("SESSION_MAX_AGE_SECONDS", str(60 * 60 * 24 * 7))),
            cookie_name=os.getenv("SESSION_COOKIE_NAME", "chat.sid"),
            secure=_env_flag("SESSION_COOKIE_SECURE"),
        )


_hasher = PasswordHasher(
    type=Type.ID,
    time_cost=int(os.getenv("ARGON2_TIME_COST", "2")),
    memory_cost=int(os.getenv("ARGON2_MEMORY_COST", "19456")),
    parallelism=1,
)


def hash_password(password: str) -> str:
    return _hasher.hash(password)


def verify_password(password_hash: str, password: str) -> bool:
    try:
        return _hasher.verify(password_hash, password)
    except (VerificationError, InvalidHashError):
        return False


def encode_session_cookie(session_id: str, cfg: Optional[SessionConfig] = None) -> str:
    cfg = cfg or SessionConfig.from_env()
    now = datetime.now(timezone.utc)
    payload = {
        "sid": session_id,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=cfg.max_age_seconds)).timestamp()),
    }
    return jwt.encode(payload, cfg.secret, algorithm=cfg.algorithm)


def decode_session_cookie(value: str, cfg: Optional[SessionConfig] = None) -> str:
    cfg = cfg or SessionConfig.from_env()
    try:
        data = jwt.decode(value, cfg.secret, algorithms=[cfg.algorithm])
    except jwt.ExpiredSignatureError:
        raise AuthorizationError("Session expired")
    except jwt.InvalidTokenError:
        raise AuthorizationError("Invalid session cookie")
    sid = data.get("sid")
    if not isinstance(sid, str) or not sid:
        raise AuthorizationError("Invalid session cookie")
    return sid


async def validate_session(
    cookies: Mapping[str, str],
    sessions: SessionStore,
    cfg: Optional[SessionConfig] = None,
) -> SessionIdentity:
    """Resolve the session named by the request cookies.

    Raises ``AuthorizationError`` when the cookie is missing, tampered with,
    points at an unknown or expired session, or the session carries no user.
    """

    cfg = cfg or SessionConfig.from_env()
    raw = cookies.get(cfg.cookie_name)
    if not raw:
        raise AuthorizationError("Missing session cookie")
    session_id = decode_session_cookie(raw, cfg)
    record = await sessions.get(session_id)
    if record is None:
        raise AuthorizationError("Unknown session")
    user = record.user or {}
    if "id" not in user or not user.get("username"):
        raise AuthorizationError("Session has no user")
    return SessionIdentity(
        user_id=int(user["id"]),
        username=str(user["username"]),
        fullname=user.get("fullname") or None,
        session_id=session_id,
    )


def get_client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


async def get_optional_session(
    request: Request,
    sessions: SessionStore = Depends(get_session_store),
) -> Optional[SessionIdentity]:
    try:
        return await validate_session(request.cookies, sessions)
    except AuthorizationError:
        return None


async def get_current_session(
    request: Request,
    sessions: SessionStore = Depends(get_session_store),
) -> SessionIdentity:
    try:
        return await validate_session(request.cookies, sessions)
    except AuthorizationError as exc:
        logger.info("session_rejected", extra={"reason": str(exc), "path": request.url.path})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
