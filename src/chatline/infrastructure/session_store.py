from __future__ import annotations

"""Server-side session records keyed by an opaque session id."""

from dataclasses import dataclass, field
from threading import RLock
from typing import Any, Dict, Optional, Protocol
import secrets
import time


@dataclass
class SessionRecord:
    session_id: str
    expires_at: float
    user: Optional[Dict[str, Any]] = None
    data: Dict[str, Any] = field(default_factory=dict)


class SessionStore(Protocol):
    async def create(self, user: Dict[str, Any], max_age_seconds: int) -> SessionRecord: ...

    async def get(self, session_id: str) -> Optional[SessionRecord]: ...

    async def destroy(self, session_id: str) -> bool: ...


class InMemorySessionStore:
    def __init__(self, clock=time.time) -> None:
        self._sessions: Dict[str, SessionRecord] = {}
        self._lock = RLock()
        self._clock = clock

    async def create(self, user: Dict[str, Any], max_age_seconds: int) -> SessionRecord:
        with self._lock:
            sid = secrets.token_urlsafe(24)
            record = SessionRecord(session_id=sid, expires_at=self._clock() + max_age_seconds, user=dict(user))
            self._sessions[sid] = record
            return record

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        with self._lock:
            record = self._sessions.get(session_id)
            if record is None:
                return None
            if record.expires_at <= self._clock():
                self._sessions.pop(session_id, None)
                return None
            return record

    async def destroy(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


_sessions: SessionStore | None = None


def get_session_store() -> SessionStore:
    global _sessions
    if _sessions is None:
        _sessions = InMemorySessionStore()
    return _sessions


def reset_session_store(store: Optional[SessionStore] = None) -> None:
    global _sessions
    _sessions = store
