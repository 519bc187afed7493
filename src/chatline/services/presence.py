from __future__ import annotations

"""Realtime presence tracking and chat broadcast.

``PresenceRegistry`` owns the process-wide mapping of open connections to
their session binding. ``ChatEngine`` reacts to connect, message, typing and
disconnect events, keeps presence in sync and fans events out to peers.

All mutation happens on the event loop, one handler at a time, so the
registry needs no lock. Two quick connect/disconnect events are ordered only
by the event queue: a broadcast reflects the registry at the moment its
handler ran, nothing more.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol, Set

from pydantic import ValidationError

from ..domain.chat_models import (
    INBOUND_EVENTS,
    SessionIdentity,
    TypingPayload,
    UserMessagePayload,
    WsInbound,
)
from ..domain.errors import ClientInputError
from ..infrastructure.credential_store import CredentialStore
from ..observability.metrics import REALTIME_CONNECTIONS, REALTIME_EVENTS
from . import clock

LOG = logging.getLogger("chatline.realtime")


class Peer(Protocol):
    async def send(self, event: str, data: Any) -> None: ...


@dataclass(frozen=True)
class ConnectionBinding:
    connection_id: str
    identity: SessionIdentity

    @property
    def display_name(self) -> str:
        return self.identity.display_name

    @property
    def session_id(self) -> Optional[str]:
        return self.identity.session_id


class PresenceRegistry:
    def __init__(self) -> None:
        self._bindings: Dict[str, ConnectionBinding] = {}
        self._peers: Dict[str, Peer] = {}

    def bind(self, connection_id: str, identity: SessionIdentity, peer: Peer) -> ConnectionBinding:
        if connection_id in self._bindings:
            raise ValueError(f"Connection {connection_id} is already bound")
        binding = ConnectionBinding(connection_id=connection_id, identity=identity)
        self._bindings[connection_id] = binding
        self._peers[connection_id] = peer
        return binding

    def unbind(self, connection_id: str) -> Optional[ConnectionBinding]:
        self._peers.pop(connection_id, None)
        return self._bindings.pop(connection_id, None)

    def get(self, connection_id: str) -> Optional[ConnectionBinding]:
        return self._bindings.get(connection_id)

    def snapshot(self) -> List[str]:
        """Distinct display names of the open connections, in bind order."""
        return list(dict.fromkeys(b.display_name for b in self._bindings.values()))

    def peers(self, exclude: Optional[str] = None) -> Dict[str, Peer]:
        return {cid: peer for cid, peer in self._peers.items() if cid != exclude}

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._bindings

    def __len__(self) -> int:
        return len(self._bindings)


class ChatEngine:
    def __init__(self, store: CredentialStore, registry: Optional[PresenceRegistry] = None) -> None:
        self._store = store
        self.registry = registry or PresenceRegistry()
        self._pending: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def connect(self, connection_id: str, identity: SessionIdentity, peer: Peer) -> ConnectionBinding:
        binding = self.registry.bind(connection_id, identity, peer)
        REALTIME_CONNECTIONS.set(len(self.registry))
        LOG.info(
            "realtime_connected",
            extra={"connection_id": connection_id, "user_id": identity.user_id, "session_id": identity.session_id},
        )
        await self._broadcast_presence()
        return binding

    async def disconnect(self, connection_id: str) -> None:
        binding = self.registry.unbind(connection_id)
        if binding is None:
            return
        REALTIME_CONNECTIONS.set(len(self.registry))
        LOG.info("realtime_disconnected", extra={"connection_id": connection_id, "user_id": binding.identity.user_id})
        if binding.session_id:
            try:
                await self._store.close_login_by_session(binding.session_id, clock.now_iso())
            except Exception:
                LOG.warning(
                    "logout_time_update_failed",
                    exc_info=True,
                    extra={"connection_id": connection_id, "session_id": binding.session_id},
                )
        await self._broadcast_presence()

    async def drain(self) -> None:
        """Wait for in-flight message persistence to settle."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------
    async def handle_frame(self, connection_id: str, frame: Any) -> None:
        if not isinstance(frame, Mapping):
            raise ClientInputError("Frame must be a JSON object")
        try:
            envelope = WsInbound.model_validate(frame)
        except ValidationError as exc:
            raise ClientInputError("Frame must carry an event name and an object payload") from exc
        if envelope.event not in INBOUND_EVENTS:
            raise ClientInputError(f"Unknown event: {envelope.event}")
        try:
            if envelope.event == "user-message":
                await self.on_user_message(connection_id, UserMessagePayload.model_validate(envelope.data))
            else:
                payload = TypingPayload.model_validate(envelope.data)
                await self.on_typing(connection_id, payload, stopped=envelope.event == "stop-typing")
        except ValidationError as exc:
            raise ClientInputError(f"Invalid payload for {envelope.event}") from exc

    async def on_user_message(self, connection_id: str, payload: UserMessagePayload) -> Dict[str, Any]:
        REALTIME_EVENTS.labels(event="user-message").inc()
        timestamp = clock.now_iso()
        binding = self.registry.get(connection_id)
        if binding is not None:
            self._schedule_persist(binding, payload, timestamp)
        else:
            LOG.warning("message_from_unbound_connection", extra={"connection_id": connection_id})
        stamped = {**payload.model_dump(), "timestamp": timestamp}
        await self.broadcast("broadcast", stamped)
        return stamped

    async def on_typing(self, connection_id: str, payload: TypingPayload, *, stopped: bool = False) -> None:
        event = "user-stop-typing" if stopped else "user-typing"
        REALTIME_EVENTS.labels(event=event).inc()
        await self.broadcast(event, {"username": payload.name}, exclude=connection_id)

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------
    async def broadcast(self, event: str, data: Any, exclude: Optional[str] = None) -> None:
        peers = self.registry.peers(exclude=exclude)
        if not peers:
            return
        ids = list(peers)
        results = await asyncio.gather(*(peers[cid].send(event, data) for cid in ids), return_exceptions=True)
        for cid, result in zip(ids, results):
            if isinstance(result, Exception):
                LOG.warning("broadcast_send_failed", extra={"connection_id": cid, "event": event, "err": str(result)})

    async def _broadcast_presence(self) -> None:
        REALTIME_EVENTS.labels(event="update-users").inc()
        await self.broadcast("update-users", self.registry.snapshot())

    def _schedule_persist(self, binding: ConnectionBinding, payload: UserMessagePayload, timestamp: str) -> None:
        task = asyncio.create_task(self._persist(binding, payload, timestamp))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _persist(self, binding: ConnectionBinding, payload: UserMessagePayload, timestamp: str) -> None:
        identity = binding.identity
        try:
            await self._store.insert_message(
                identity.user_id,
                identity.username,
                identity.fullname,
                payload.message,
                timestamp,
                message_type="text",
            )
        except Exception:
            LOG.error(
                "message_persist_failed",
                exc_info=True,
                extra={"connection_id": binding.connection_id, "user_id": identity.user_id},
            )


_engine: ChatEngine | None = None


def get_chat_engine() -> ChatEngine:
    global _engine
    if _engine is None:
        from ..infrastructure.credential_store import get_credential_store

        _engine = ChatEngine(get_credential_store())
    return _engine


def reset_chat_engine(engine: Optional[ChatEngine] = None) -> None:
    global _engine
    _engine = engine
