from __future__ import annotations

"""Credential lifecycle: signup, login/logout, single-use password reset tokens."""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Tuple

import hashlib
import logging
import secrets

from ..domain.auth_models import UserPublic
from ..domain.errors import AuthorizationError, ClientInputError, PersistenceError
from ..infrastructure.credential_store import CredentialStore
from ..infrastructure.session_store import SessionRecord, SessionStore
from ..security.auth import MIN_PASSWORD_LENGTH, SessionConfig, hash_password, verify_password
from . import clock

logger = logging.getLogger(__name__)

RESET_TOKEN_TTL = timedelta(minutes=30)


class UsernameTakenError(ClientInputError):
    pass


class UnknownUserError(ClientInputError):
    pass


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _check_password(password: str) -> None:
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        raise ClientInputError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")


@dataclass
class IssuedResetToken:
    token: str
    expires_at: str


class AuthService:
    def __init__(self, store: CredentialStore, sessions: SessionStore, cfg: Optional[SessionConfig] = None) -> None:
        self._store = store
        self._sessions = sessions
        self._cfg = cfg or SessionConfig.from_env()

    async def signup(self, username: str, password: str, fullname: Optional[str] = None, email: Optional[str] = None) -> UserPublic:
        _check_password(password)
        if await self._store.get_user_by_username(username):
            raise UsernameTakenError("Username already exists")
        try:
            user = await self._store.create_user(
                username,
                hash_password(password),
                clock.now_iso(),
                fullname=fullname,
                email=email,
            )
        except ValueError as exc:
            raise UsernameTakenError(str(exc)) from exc
        logger.info("user_signed_up", extra={"user_id": user.id, "username": username})
        return UserPublic(id=user.id, username=user.username, fullname=user.fullname)

    async def login(self, username: str, password: str, ip_address: Optional[str] = None) -> Tuple[UserPublic, SessionRecord]:
        user = await self._store.get_user_by_username(username)
        if user is None or not verify_password(user.password_hash, password):
            raise AuthorizationError("Invalid credentials")

        public = UserPublic(id=user.id, username=user.username, fullname=user.fullname)
        session = await self._sessions.create(public.model_dump(), self._cfg.max_age_seconds)

        now = clock.now_iso()
        await self._store.update_last_login(user.id, now)
        await self._store.insert_login_log(
            user.id,
            user.username,
            user.fullname,
            session.session_id,
            now,
            ip_address=ip_address,
        )
        logger.info("user_logged_in", extra={"user_id": user.id, "session_id": session.session_id})
        return public, session

    async def logout(self, session_id: str) -> None:
        try:
            await self._store.close_login_by_session(session_id, clock.now_iso())
        except PersistenceError:
            logger.warning("logout_audit_failed", exc_info=True, extra={"session_id": session_id})
        await self._sessions.destroy(session_id)
        logger.info("user_logged_out", extra={"session_id": session_id})

    async def issue_reset_token(self, username: str) -> IssuedResetToken:
        user = await self._store.get_user_by_username(username)
        if user is None:
            raise UnknownUserError("Username not found")
        token = secrets.token_hex(32)
        expires_at = clock.iso_in(RESET_TOKEN_TTL)
        await self._store.insert_reset_token(user.id, user.username, hash_reset_token(token), expires_at)
        logger.info("reset_token_issued", extra={"user_id": user.id, "expires_at": expires_at})
        return IssuedResetToken(token=token, expires_at=expires_at)

    async def reset_password(self, token: str, new_password: str) -> None:
        _check_password(new_password)
        token_hash = hash_reset_token(token)
        record = await self._store.get_reset_token(token_hash)
        if record is None or record.consumed_at is not None:
            raise AuthorizationError("Invalid or expired token")
        if clock.now() > clock.parse_iso(record.expires_at):
            raise AuthorizationError("Token has expired")
        # Conditional consume; only one caller can win it.
        if not await self._store.consume_reset_token(token_hash, clock.now_iso()):
            raise AuthorizationError("Invalid or expired token")
        await self._store.update_user_password(record.user_id, hash_password(new_password))
        logger.info("password_reset", extra={"user_id": record.user_id})
