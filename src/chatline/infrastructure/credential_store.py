from __future__ import annotations

from datetime import UTC, datetime
from threading import RLock
from typing import Dict, List, Optional, Protocol
import logging
import os
import uuid

from ..domain.auth_models import LoginLog, ResetToken, UserRecord
from ..domain.chat_models import ChatMessage

logger = logging.getLogger(__name__)


class CredentialStore(Protocol):
    async def get_user_by_username(self, username: str) -> Optional[UserRecord]: ...

    async def get_user(self, user_id: int) -> Optional[UserRecord]: ...

    async def create_user(self, username: str, password_hash: str, created_at: str, fullname: Optional[str] = None, email: Optional[str] = None) -> UserRecord: ...

    async def update_last_login(self, user_id: int, last_login_at: str) -> None: ...

    async def update_user_password(self, user_id: int, password_hash: str) -> None: ...

    async def insert_login_log(self, user_id: Optional[int], username: Optional[str], fullname: Optional[str], session_id: Optional[str], login_time: str, ip_address: Optional[str] = None) -> LoginLog: ...

    async def close_login_by_session(self, session_id: str, logout_time: str) -> bool: ...

    async def list_login_logs(self, session_id: Optional[str] = None) -> List[LoginLog]: ...

    async def insert_reset_token(self, user_id: int, username: str, token_hash: str, expires_at: str) -> ResetToken: ...

    async def get_reset_token(self, token_hash: str) -> Optional[ResetToken]: ...

    async def consume_reset_token(self, token_hash: str, consumed_at: str) -> bool: ...

    async def insert_message(self, user_id: Optional[int], username: Optional[str], fullname: Optional[str], message: str, timestamp: str, message_type: str = "text") -> ChatMessage: ...

    async def list_recent_messages(self, limit: int = 50) -> List[ChatMessage]: ...


class InMemoryCredentialStore:
    def __init__(self) -> None:
        self._users: Dict[int, UserRecord] = {}
        self._by_username: Dict[str, int] = {}
        self._login_logs: List[LoginLog] = []
        self._reset_tokens: Dict[str, ResetToken] = {}
        self._messages: List[ChatMessage] = []
        self._next_user_id = 1
        self._next_log_id = 1
        self._lock = RLock()

    def _now_iso(self) -> str:
        return datetime.now(UTC).isoformat().replace("+00:00", "Z")

    async def get_user_by_username(self, username: str) -> Optional[UserRecord]:
        with self._lock:
            uid = self._by_username.get(username)
            if uid is None:
                return None
            return self._users[uid].model_copy()

    async def get_user(self, user_id: int) -> Optional[UserRecord]:
        with self._lock:
            user = self._users.get(user_id)
            return user.model_copy() if user else None

    async def create_user(
        self,
        username: str,
        password_hash: str,
        created_at: str,
        fullname: Optional[str] = None,
        email: Optional[str] = None,
    ) -> UserRecord:
        with self._lock:
            if username in self._by_username:
                raise ValueError("Username already exists")
            user = UserRecord(
                id=self._next_user_id,
                username=username,
                password_hash=password_hash,
                fullname=fullname or None,
                email=email or None,
                created_at=created_at,
            )
            self._next_user_id += 1
            self._users[user.id] = user
            self._by_username[username] = user.id
            return user.model_copy()

    async def update_last_login(self, user_id: int, last_login_at: str) -> None:
        with self._lock:
            user = self._users.get(user_id)
            if user:
                user.last_login_at = last_login_at

    async def update_user_password(self, user_id: int, password_hash: str) -> None:
        with self._lock:
            user = self._users.get(user_id)
            if not user:
                raise KeyError("User not found")
            user.password_hash = password_hash

    async def insert_login_log(
        self,
        user_id: Optional[int],
        username: Optional[str],
        fullname: Optional[str],
        session_id: Optional[str],
        login_time: str,
        ip_address: Optional[str] = None,
    ) -> LoginLog:
        with self._lock:
            row = LoginLog(
                id=self._next_log_id,
                user_id=user_id,
                username=username,
                fullname=fullname,
                session_id=session_id,
                login_time=login_time,
                ip_address=ip_address,
            )
            self._next_log_id += 1
            self._login_logs.append(row)
            return row.model_copy()

    async def close_login_by_session(self, session_id: str, logout_time: str) -> bool:
        # Most recent open row only; closed rows are never rewritten.
        with self._lock:
            for row in reversed(self._login_logs):
                if row.session_id == session_id and row.logout_time is None:
                    row.logout_time = logout_time
                    return True
            return False

    async def list_login_logs(self, session_id: Optional[str] = None) -> List[LoginLog]:
        with self._lock:
            return [
                row.model_copy()
                for row in self._login_logs
                if session_id is None or row.session_id == session_id
            ]

    async def insert_reset_token(self, user_id: int, username: str, token_hash: str, expires_at: str) -> ResetToken:
        with self._lock:
            record = ResetToken(token_hash=token_hash, user_id=user_id, username=username, expires_at=expires_at)
            self._reset_tokens[token_hash] = record
            return record.model_copy()

    async def get_reset_token(self, token_hash: str) -> Optional[ResetToken]:
        with self._lock:
            record = self._reset_tokens.get(token_hash)
            return record.model_copy() if record else None

    async def consume_reset_token(self, token_hash: str, consumed_at: str) -> bool:
        with self._lock:
            record = self._reset_tokens.get(token_hash)
            if record is None or record.consumed_at is not None:
                return False
            record.consumed_at = consumed_at
            return True

    async def insert_message(
        self,
        user_id: Optional[int],
        username: Optional[str],
        fullname: Optional[str],
        message: str,
        timestamp: str,
        message_type: str = "text",
    ) -> ChatMessage:
        with self._lock:
            msg = ChatMessage(
                message_id=uuid.uuid4().hex,
                user_id=user_id,
                username=username,
                fullname=fullname,
                message=message,
                message_type=message_type,
                timestamp=timestamp,
                created_at=self._now_iso(),
            )
            self._messages.append(msg)
            return msg.model_copy()

    async def list_recent_messages(self, limit: int = 50) -> List[ChatMessage]:
        if limit <= 0:
            return []
        with self._lock:
            ordered = sorted(self._messages, key=lambda m: m.timestamp)
            return [m.model_copy() for m in ordered[-limit:]]


_store: CredentialStore | None = None


def get_credential_store() -> CredentialStore:
    global _store
    if _store is not None:
        return _store
    impl = (os.getenv("CHATLINE_STORE_IMPL") or os.getenv("DB_MODE") or "memory").lower()
    if impl == "mongo":
        try:
            from .credential_store_mongo import MongoCredentialStore

            _store = MongoCredentialStore()
            return _store
        except Exception:
            logger.exception("mongo_store_init_failed")
            _store = None
    if _store is None:
        _store = InMemoryCredentialStore()
    return _store


def reset_credential_store(store: Optional[CredentialStore] = None) -> None:
    """Swap the process-wide store (useful for tests)."""

    global _store
    _store = store
