from __future__ import annotations

"""Websocket endpoint carrying the chat's realtime events.

Frames are JSON envelopes ``{"event": <name>, "data": <payload>}`` in both
directions. The handshake is authorized with the same session cookie as the
HTTP routes; an unauthorized socket is closed before it is accepted.
"""

import json
import logging
import uuid
from typing import Any, Mapping

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from ...domain.chat_models import WsOutbound
from ...domain.errors import AuthorizationError, ClientInputError
from ...infrastructure.session_store import get_session_store
from ...security.auth import validate_session
from ...services.presence import get_chat_engine

LOG = logging.getLogger("chatline.realtime")

router = APIRouter(tags=["realtime"])


class WebSocketPeer:
    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket

    async def send(self, event: str, data: Any) -> None:
        await self._ws.send_json(WsOutbound(event=event, data=data).model_dump())


def _connection_id() -> str:
    return f"conn_{uuid.uuid4().hex[:12]}"


def _decode_frame(message: Mapping[str, Any]) -> Any:
    text = message.get("text")
    if text is None:
        raise ClientInputError("Frames must be JSON text")
    try:
        return json.loads(text)
    except ValueError as exc:
        raise ClientInputError("Frame is not valid JSON") from exc


@router.websocket("/ws")
async def chat_socket(websocket: WebSocket) -> None:
    connection_id = _connection_id()
    try:
        identity = await validate_session(websocket.cookies, get_session_store())
    except AuthorizationError as exc:
        LOG.info("realtime_handshake_rejected", extra={"connection_id": connection_id, "reason": str(exc)})
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Unauthorized")
        return

    await websocket.accept()
    engine = get_chat_engine()
    peer = WebSocketPeer(websocket)
    try:
        await engine.connect(connection_id, identity, peer)
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            try:
                await engine.handle_frame(connection_id, _decode_frame(message))
            except ClientInputError as exc:
                await peer.send("error", {"detail": str(exc)})
    except WebSocketDisconnect:
        pass
    finally:
        await engine.disconnect(connection_id)
