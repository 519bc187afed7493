from __future__ import annotations

from datetime import UTC, datetime
import logging
import os
from typing import Any, Dict, List, Optional
import uuid

from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from motor.motor_asyncio import AsyncIOMotorClient

from ..domain.auth_models import LoginLog, ResetToken, UserRecord
from ..domain.chat_models import ChatMessage
from ..domain.errors import PersistenceError

logger = logging.getLogger(__name__)


class MongoCredentialStore:
    """Credential store backed by MongoDB through motor.

    Conditional updates (``logout_time: None``, ``consumed_at: None``) are
    single-document operations, so check-then-set stays atomic across tasks.
    """

    def __init__(self, client: Any = None) -> None:
        mongo_url = os.getenv("MONGO_URL", "mongodb://localhost:27017")
        mongo_db = os.getenv("MONGO_DB", "chatline")
        self._client = client or AsyncIOMotorClient(mongo_url, serverSelectionTimeoutMS=500)
        self._db = self._client[mongo_db]
        self._indexes_ready = False

    def _now_iso(self) -> str:
        return datetime.now(UTC).isoformat().replace("+00:00", "Z")

    async def _ensure_indexes(self) -> None:
        if self._indexes_ready:
            return
        db = self._db
        await db["users"].create_index("username", unique=True)
        await db["users"].create_index("id", unique=True)
        await db["login_logs"].create_index("user_id")
        await db["login_logs"].create_index("session_id")
        await db["messages"].create_index("timestamp")
        await db["reset_tokens"].create_index("token_hash", unique=True)
        self._indexes_ready = True
        logger.info("mongo_indexes_ready")

    async def _next_id(self, name: str) -> int:
        doc = await self._db["counters"].find_one_and_update(
            {"_id": name},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(doc["seq"])

    @staticmethod
    def _strip(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if doc is None:
            return None
        out = dict(doc)
        out.pop("_id", None)
        return out

    async def get_user_by_username(self, username: str) -> Optional[UserRecord]:
        try:
            await self._ensure_indexes()
            doc = self._strip(await self._db["users"].find_one({"username": username}))
        except PyMongoError as exc:
            raise PersistenceError(f"User lookup failed: {exc}") from exc
        return UserRecord(**doc) if doc else None

    async def get_user(self, user_id: int) -> Optional[UserRecord]:
        try:
            doc = self._strip(await self._db["users"].find_one({"id": user_id}))
        except PyMongoError as exc:
            raise PersistenceError(f"User lookup failed: {exc}") from exc
        return UserRecord(**doc) if doc else None

    async def create_user(
        self,
        username: str,
        password_hash: str,
        created_at: str,
        fullname: Optional[str] = None,
        email: Optional[str] = None,
    ) -> UserRecord:
        try:
            await self._ensure_indexes()
            user = UserRecord(
                id=await self._next_id("users"),
                username=username,
                password_hash=password_hash,
                fullname=fullname or None,
                email=email or None,
                created_at=created_at,
            )
            await self._db["users"].insert_one(user.model_dump())
        except DuplicateKeyError as exc:
            raise ValueError("Username already exists") from exc
        except PyMongoError as exc:
            raise PersistenceError(f"User insert failed: {exc}") from exc
        return user

    async def update_last_login(self, user_id: int, last_login_at: str) -> None:
        try:
            await self._db["users"].update_one({"id": user_id}, {"$set": {"last_login_at": last_login_at}})
        except PyMongoError as exc:
            raise PersistenceError(f"Last login update failed: {exc}") from exc

    async def update_user_password(self, user_id: int, password_hash: str) -> None:
        try:
            result = await self._db["users"].update_one({"id": user_id}, {"$set": {"password_hash": password_hash}})
        except PyMongoError as exc:
            raise PersistenceError(f"Password update failed: {exc}") from exc
        if not result.matched_count:
            raise KeyError("User not found")

    async def insert_login_log(
        self,
        user_id: Optional[int],
        username: Optional[str],
        fullname: Optional[str],
        session_id: Optional[str],
        login_time: str,
        ip_address: Optional[str] = None,
    ) -> LoginLog:
        try:
            await self._ensure_indexes()
            row = LoginLog(
                id=await self._next_id("login_logs"),
                user_id=user_id,
                username=username,
                fullname=fullname,
                session_id=session_id,
                login_time=login_time,
                ip_address=ip_address,
            )
            await self._db["login_logs"].insert_one(row.model_dump())
        except PyMongoError as exc:
            raise PersistenceError(f"Login log insert failed: {exc}") from exc
        return row

    async def close_login_by_session(self, session_id: str, logout_time: str) -> bool:
        try:
            doc = await self._db["login_logs"].find_one_and_update(
                {"session_id": session_id, "logout_time": None},
                {"$set": {"logout_time": logout_time}},
                sort=[("id", DESCENDING)],
            )
        except PyMongoError as exc:
            raise PersistenceError(f"Logout update failed: {exc}") from exc
        return doc is not None

    async def list_login_logs(self, session_id: Optional[str] = None) -> List[LoginLog]:
        query: Dict[str, Any] = {} if session_id is None else {"session_id": session_id}
        try:
            cursor = self._db["login_logs"].find(query).sort("id", 1)
            docs = await cursor.to_list(length=1000)
        except PyMongoError as exc:
            raise PersistenceError(f"Login log query failed: {exc}") from exc
        return [LoginLog(**self._strip(doc)) for doc in docs]

    async def insert_reset_token(self, user_id: int, username: str, token_hash: str, expires_at: str) -> ResetToken:
        record = ResetToken(token_hash=token_hash, user_id=user_id, username=username, expires_at=expires_at)
        try:
            await self._ensure_indexes()
            await self._db["reset_tokens"].insert_one(record.model_dump())
        except PyMongoError as exc:
            raise PersistenceError(f"Reset token insert failed: {exc}") from exc
        return record

    async def get_reset_token(self, token_hash: str) -> Optional[ResetToken]:
        try:
            doc = self._strip(await self._db["reset_tokens"].find_one({"token_hash": token_hash}))
        except PyMongoError as exc:
            raise PersistenceError(f"Reset token lookup failed: {exc}") from exc
        return ResetToken(**doc) if doc else None

    async def consume_reset_token(self, token_hash: str, consumed_at: str) -> bool:
        try:
            result = await self._db["reset_tokens"].update_one(
                {"token_hash": token_hash, "consumed_at": None},
                {"$set": {"consumed_at": consumed_at}},
            )
        except PyMongoError as exc:
            raise PersistenceError(f"Reset token update failed: {exc}") from exc
        return bool(result.modified_count)

    async def insert_message(
        self,
        user_id: Optional[int],
        username: Optional[str],
        fullname: Optional[str],
        message: str,
        timestamp: str,
        message_type: str = "text",
    ) -> ChatMessage:
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
        try:
            await self._ensure_indexes()
            await self._db["messages"].insert_one(msg.model_dump())
        except PyMongoError as exc:
            raise PersistenceError(f"Message insert failed: {exc}") from exc
        return msg

    async def list_recent_messages(self, limit: int = 50) -> List[ChatMessage]:
        if limit <= 0:
            return []
        try:
            cursor = self._db["messages"].find({}).sort("timestamp", DESCENDING).limit(limit)
            docs = await cursor.to_list(length=limit)
        except PyMongoError as exc:
            raise PersistenceError(f"Message query failed: {exc}") from exc
        return [ChatMessage(**self._strip(doc)) for doc in reversed(docs)]
