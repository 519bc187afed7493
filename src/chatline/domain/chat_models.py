from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


@dataclass(frozen=True)
class SessionIdentity:
    """Identity bound to a validated session."""

    user_id: int
    username: str
    fullname: Optional[str]
    session_id: str

    @property
    def display_name(self) -> str:
        return self.fullname or self.username


# Client -> server realtime events
INBOUND_EVENTS = ("user-message", "typing", "stop-typing")


class WsInbound(BaseModel):
    event: str
    data: Dict[str, Any] = Field(default_factory=dict)


class WsOutbound(BaseModel):
    event: str
    data: Any = None


class UserMessagePayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    message: str = Field(min_length=1)


class TypingPayload(BaseModel):
    name: str


class ChatMessage(BaseModel):
    message_id: str
    user_id: Optional[int] = None
    username: Optional[str] = None
    fullname: Optional[str] = None
    message: str
    message_type: str = "text"
    timestamp: str
    created_at: str


class ChatHistory(BaseModel):
    messages: List[ChatMessage]
