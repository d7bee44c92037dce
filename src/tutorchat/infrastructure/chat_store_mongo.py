from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional
import uuid

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from ..domain.chat_models import ChatMessage, ChatMessageDraft, ChatSession
from ..domain.errors import PersistenceFailure, SessionClosedError
from .chat_store import DEFAULT_SESSION_TITLE, now_iso


logger = logging.getLogger("tutorchat.store.mongo")


class MongoHistoryStore:
    """History store backed by MongoDB through motor.

    ``chat_sessions`` holds one document per session; ``chat_messages`` is the
    append-only message log. Messages are ordered by a ``seq``
    counter document rather than by timestamp.
    """

    def __init__(self, client: AsyncIOMotorClient, db_name: str = "tutorchat") -> None:
        self._client = client
        db = client[db_name]
        self._sessions: AsyncIOMotorCollection = db["chat_sessions"]
        self._messages: AsyncIOMotorCollection = db["chat_messages"]
        self._counters: AsyncIOMotorCollection = db["counters"]
        self._indexes_ready = False

    @classmethod
    def from_env(cls) -> "MongoHistoryStore":
        mongo_url = os.getenv("MONGO_URL", "mongodb://localhost:27017")
        mongo_db = os.getenv("MONGO_DB", "tutorchat")
        client = AsyncIOMotorClient(mongo_url, serverSelectionTimeoutMS=500)
        return cls(client, mongo_db)

    async def _ensure_indexes(self) -> None:
        if self._indexes_ready:
            return
        await self._sessions.create_index("id", unique=True)
        await self._sessions.create_index([("user_id", ASCENDING), ("goal_id", ASCENDING), ("ended_at", ASCENDING)])
        await self._messages.create_index("session_id")
        await self._messages.create_index([("user_id", ASCENDING), ("goal_id", ASCENDING), ("seq", DESCENDING)])
        self._indexes_ready = True

    async def _next_seq(self) -> int:
        doc = await self._counters.find_one_and_update(
            {"_id": "chat_messages"},
            {"$inc": {"value": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(doc["value"])

    async def create_session(self, user_id: int, goal_id: Optional[int] = None, title: Optional[str] = None) -> ChatSession:
        doc = {
            "id": uuid.uuid4().hex,
            "user_id": user_id,
            "goal_id": goal_id,
            "title": title or DEFAULT_SESSION_TITLE,
            "summary": None,
            "key_learning_points": [],
            "action_items": [],
            "message_count": 0,
            "started_at": now_iso(),
            "ended_at": None,
        }
        try:
            await self._ensure_indexes()
            await self._sessions.insert_one(dict(doc))
        except PyMongoError as exc:
            raise PersistenceFailure(f"create_session failed: {exc}") from exc
        return self._to_session(doc)

    async def get_or_create_open_session(self, user_id: int, goal_id: Optional[int] = None, title: Optional[str] = None) -> ChatSession:
        try:
            doc = await self._sessions.find_one(
                {"user_id": user_id, "goal_id": goal_id, "ended_at": None},
                sort=[("started_at", DESCENDING)],
            )
        except PyMongoError as exc:
            raise PersistenceFailure(f"session lookup failed: {exc}") from exc
        if doc:
            return self._to_session(doc)
        return await self.create_session(user_id, goal_id, title)

    async def get_session(self, session_id: str) -> Optional[ChatSession]:
        try:
            doc = await self._sessions.find_one({"id": session_id})
        except PyMongoError as exc:
            raise PersistenceFailure(f"get_session failed: {exc}") from exc
        return self._to_session(doc) if doc else None

    async def list_sessions(self, user_id: int, goal_id: Optional[int] = None) -> List[ChatSession]:
        query: Dict[str, Any] = {"user_id": user_id}
        if goal_id is not None:
            query["goal_id"] = goal_id
        try:
            cursor = self._sessions.find(query).sort("started_at", DESCENDING)
            docs = await cursor.to_list(length=200)
        except PyMongoError as exc:
            raise PersistenceFailure(f"list_sessions failed: {exc}") from exc
        return [self._to_session(doc) for doc in docs]

    async def close_session(
        self,
        session_id: str,
        summary: str,
        key_learning_points: Optional[List[str]] = None,
        action_items: Optional[List[str]] = None,
    ) -> ChatSession:
        try:
            updated = await self._sessions.find_one_and_update(
                {"id": session_id, "ended_at": None},
                {
                    "$set": {
                        "summary": summary,
                        "key_learning_points": list(key_learning_points or []),
                        "action_items": list(action_items or []),
                        "ended_at": now_iso(),
                    }
                },
                return_document=ReturnDocument.AFTER,
            )
            if updated:
                return self._to_session(updated)
            existing = await self._sessions.find_one({"id": session_id})
        except PyMongoError as exc:
            raise PersistenceFailure(f"close_session failed: {exc}") from exc
        if not existing:
            raise KeyError("Session not found")
        raise SessionClosedError(f"Session {session_id} is already closed")

    async def persist_message(self, draft: ChatMessageDraft) -> ChatMessage:
        try:
            # Counting first doubles as the closed-session guard.
            bumped = await self._sessions.find_one_and_update(
                {"id": draft.session_id, "ended_at": None},
                {"$inc": {"message_count": 1}},
            )
            if not bumped:
                existing = await self._sessions.find_one({"id": draft.session_id})
                if not existing:
                    raise KeyError("Session not found")
                raise SessionClosedError(f"Session {draft.session_id} is closed")
        except PyMongoError as exc:
            raise PersistenceFailure(f"persist_message failed: {exc}") from exc

        doc = {
            "id": uuid.uuid4().hex,
            "user_id": draft.user_id,
            "session_id": draft.session_id,
            "role": draft.role,
            "content": draft.content,
            "goal_id": draft.goal_id,
            "milestone_id": draft.milestone_id,
            "context_data": dict(draft.context_data) if draft.context_data else None,
        }
        try:
            doc["seq"] = await self._next_seq()
            doc["created_at"] = now_iso()
            await self._messages.insert_one(dict(doc))
        except PyMongoError as exc:
            await self._uncount_message(draft.session_id)
            raise PersistenceFailure(f"persist_message failed: {exc}") from exc
        return self._to_message(doc)

    async def _uncount_message(self, session_id: str) -> None:
        try:
            await self._sessions.find_one_and_update({"id": session_id}, {"$inc": {"message_count": -1}})
        except PyMongoError:
            logger.warning("message_count_rollback_failed", extra={"session_id": session_id}, exc_info=True)

    async def list_messages(self, session_id: str) -> List[ChatMessage]:
        try:
            cursor = self._messages.find({"session_id": session_id}).sort("seq", ASCENDING)
            docs = await cursor.to_list(length=1000)
        except PyMongoError as exc:
            raise PersistenceFailure(f"list_messages failed: {exc}") from exc
        return [self._to_message(doc) for doc in docs]

    async def fetch_history(self, user_id: int, goal_id: Optional[int], limit: int, offset: int = 0) -> List[ChatMessage]:
        if limit <= 0:
            return []
        try:
            cursor = (
                self._messages.find({"user_id": user_id, "goal_id": goal_id})
                .sort("seq", DESCENDING)
                .skip(max(0, offset))
                .limit(limit)
            )
            docs = await cursor.to_list(length=limit)
        except PyMongoError as exc:
            raise PersistenceFailure(f"fetch_history failed: {exc}") from exc
        docs.reverse()
        return [self._to_message(doc) for doc in docs]

    def _to_session(self, doc: Dict[str, Any]) -> ChatSession:
        data = dict(doc)
        return ChatSession(
            id=str(data.get("id")),
            user_id=int(data.get("user_id")),
            goal_id=data.get("goal_id"),
            title=data.get("title"),
            summary=data.get("summary"),
            key_learning_points=list(data.get("key_learning_points") or []),
            action_items=list(data.get("action_items") or []),
            message_count=int(data.get("message_count") or 0),
            started_at=str(data.get("started_at") or now_iso()),
            ended_at=data.get("ended_at"),
        )

    def _to_message(self, doc: Dict[str, Any]) -> ChatMessage:
        data = dict(doc)
        return ChatMessage(
            id=str(data.get("id")),
            user_id=int(data.get("user_id")),
            session_id=str(data.get("session_id")),
            role=str(data.get("role", "assistant")),
            content=str(data.get("content", "")),
            created_at=str(data.get("created_at") or now_iso()),
            goal_id=data.get("goal_id"),
            milestone_id=data.get("milestone_id"),
            context_data=data.get("context_data") or None,
        )
