from __future__ import annotations

"""Read-only MongoDB lookups owned by the wider platform.

The gateway never writes to ``users``, ``goals`` or ``milestones``; it only
reads what it needs to verify a learner and frame the tutor prompt.
"""

import os
from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection
from pymongo import ASCENDING
from pymongo.errors import PyMongoError

from ..domain.chat_models import GoalContext, Identity
from ..domain.errors import PersistenceFailure
from .goal_directory import Goal, Milestone, goal_context


def _client_from_env() -> tuple[AsyncIOMotorClient, str]:
    mongo_url = os.getenv("MONGO_URL", "mongodb://localhost:27017")
    mongo_db = os.getenv("MONGO_DB", "tutorchat")
    return AsyncIOMotorClient(mongo_url, serverSelectionTimeoutMS=500), mongo_db


class MongoGoalDirectory:
    def __init__(self, client: AsyncIOMotorClient, db_name: str = "tutorchat") -> None:
        db = client[db_name]
        self._goals: AsyncIOMotorCollection = db["goals"]
        self._milestones: AsyncIOMotorCollection = db["milestones"]

    @classmethod
    def from_env(cls) -> "MongoGoalDirectory":
        client, db_name = _client_from_env()
        return cls(client, db_name)

    async def get_goal_context(self, user_id: int, goal_id: int) -> Optional[GoalContext]:
        try:
            doc = await self._goals.find_one({"id": goal_id, "user_id": user_id})
            if not doc:
                return None
            cursor = self._milestones.find({"goal_id": goal_id}).sort([("milestone_order", ASCENDING), ("id", ASCENDING)])
            rows = await cursor.to_list(length=500)
        except PyMongoError as exc:
            raise PersistenceFailure(f"goal lookup failed: {exc}") from exc
        return goal_context(self._to_goal(doc, rows))

    def _to_goal(self, doc: Dict[str, Any], rows: list[Dict[str, Any]]) -> Goal:
        milestones = [
            Milestone(
                id=int(row.get("id")),
                title=str(row.get("title") or ""),
                order=int(row.get("milestone_order") or 0),
                completed=bool(row.get("completed")),
            )
            for row in rows
        ]
        return Goal(
            id=int(doc.get("id")),
            user_id=int(doc.get("user_id")),
            title=str(doc.get("title") or ""),
            milestones=milestones,
        )


class MongoUserDirectory:
    def __init__(self, client: AsyncIOMotorClient, db_name: str = "tutorchat") -> None:
        self._users: AsyncIOMotorCollection = client[db_name]["users"]

    @classmethod
    def from_env(cls) -> "MongoUserDirectory":
        client, db_name = _client_from_env()
        return cls(client, db_name)

    async def find_user(self, user_id: int) -> Optional[Identity]:
        try:
            doc = await self._users.find_one({"id": user_id})
        except PyMongoError as exc:
            raise PersistenceFailure(f"user lookup failed: {exc}") from exc
        if not doc or not doc.get("email"):
            return None
        return Identity(user_id=int(doc["id"]), email=str(doc["email"]), name=doc.get("name"))
