from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ...domain.chat_models import ChatHistory, SessionIdentity
from ...domain.errors import PersistenceError
from ...infrastructure.credential_store import CredentialStore, get_credential_store
from ...security.auth import get_current_session

logger = logging.getLogger(__name__)

router = APIRouter(tags=["messages"])


@router.get("/messages", response_model=ChatHistory)
async def recent_messages(
    limit: int = Query(50, ge=1, le=500),
    identity: SessionIdentity = Depends(get_current_session),
    store: CredentialStore = Depends(get_credential_store),
) -> ChatHistory:
    try:
        messages = await store.list_recent_messages(limit)
    except PersistenceError as exc:
        logger.error("message_history_failed", extra={"user_id": identity.user_id, "err": str(exc)})
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Message history unavailable")
    return ChatHistory(messages=messages)
