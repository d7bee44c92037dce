from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from threading import RLock
from typing import Any, Dict, List, Optional, Protocol, Tuple
import logging
import os
import uuid

from ..domain.chat_models import ChatMessage, ChatMessageDraft, ChatSession
from ..domain.errors import SessionClosedError


logger = logging.getLogger("tutorchat.store")

DEFAULT_SESSION_TITLE = "Tutoring Session"


class HistoryStore(Protocol):
    async def create_session(self, user_id: int, goal_id: Optional[int] = None, title: Optional[str] = None) -> ChatSession: ...

    async def get_or_create_open_session(self, user_id: int, goal_id: Optional[int] = None, title: Optional[str] = None) -> ChatSession: ...

    async def get_session(self, session_id: str) -> Optional[ChatSession]: ...

    async def list_sessions(self, user_id: int, goal_id: Optional[int] = None) -> List[ChatSession]: ...

    async def close_session(
        self,
        session_id: str,
        summary: str,
        key_learning_points: Optional[List[str]] = None,
        action_items: Optional[List[str]] = None,
    ) -> ChatSession: ...

    async def persist_message(self, draft: ChatMessageDraft) -> ChatMessage: ...

    async def list_messages(self, session_id: str) -> List[ChatMessage]: ...

    async def fetch_history(self, user_id: int, goal_id: Optional[int], limit: int, offset: int = 0) -> List[ChatMessage]: ...


def now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


@dataclass
class _Session:
    id: str
    user_id: int
    goal_id: Optional[int]
    title: Optional[str]
    started_at: str
    summary: Optional[str] = None
    key_learning_points: List[str] = field(default_factory=list)
    action_items: List[str] = field(default_factory=list)
    message_count: int = 0
    ended_at: Optional[str] = None


@dataclass
class _Message:
    id: str
    seq: int
    user_id: int
    session_id: str
    role: str
    content: str
    created_at: str
    goal_id: Optional[int] = None
    milestone_id: Optional[int] = None
    context_data: Dict[str, Any] | None = None


class InMemoryHistoryStore:
    """Process-local history store.

    Messages of a ``(user, goal)`` context are ordered by ``seq``, which only
    ever grows, so history order never depends on clock resolution.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, _Session] = {}
        self._open: Dict[Tuple[int, Optional[int]], str] = {}
        self._messages: Dict[str, List[_Message]] = {}
        self._by_context: Dict[Tuple[int, Optional[int]], List[_Message]] = {}
        self._seq = 0
        self._lock = RLock()

    def _session_model(self, sess: _Session) -> ChatSession:
        data = dict(sess.__dict__)
        data["key_learning_points"] = list(sess.key_learning_points)
        data["action_items"] = list(sess.action_items)
        return ChatSession(**data)

    def _message_model(self, message: _Message) -> ChatMessage:
        data = dict(message.__dict__)
        data.pop("seq")
        return ChatMessage(**data)

    def _new_session(self, user_id: int, goal_id: Optional[int], title: Optional[str]) -> _Session:
        sess = _Session(
            id=uuid.uuid4().hex,
            user_id=user_id,
            goal_id=goal_id,
            title=title or DEFAULT_SESSION_TITLE,
            started_at=now_iso(),
        )
        self._sessions[sess.id] = sess
        self._messages[sess.id] = []
        # An explicitly created session becomes the open one for its context.
        self._open[(user_id, goal_id)] = sess.id
        logger.debug("chat_session_created", extra={"session_id": sess.id, "user_id": user_id, "goal_id": goal_id})
        return sess

    async def create_session(self, user_id: int, goal_id: Optional[int] = None, title: Optional[str] = None) -> ChatSession:
        with self._lock:
            return self._session_model(self._new_session(user_id, goal_id, title))

    async def get_or_create_open_session(self, user_id: int, goal_id: Optional[int] = None, title: Optional[str] = None) -> ChatSession:
        with self._lock:
            sid = self._open.get((user_id, goal_id))
            sess = self._sessions.get(sid) if sid else None
            if sess is None or sess.ended_at is not None:
                sess = self._new_session(user_id, goal_id, title)
            return self._session_model(sess)

    async def get_session(self, session_id: str) -> Optional[ChatSession]:
        with self._lock:
            sess = self._sessions.get(session_id)
            if not sess:
                return None
            return self._session_model(sess)

    async def list_sessions(self, user_id: int, goal_id: Optional[int] = None) -> List[ChatSession]:
        with self._lock:
            out = [
                self._session_model(sess)
                for sess in self._sessions.values()
                if sess.user_id == user_id and (goal_id is None or sess.goal_id == goal_id)
            ]
            # Newest first
            return sorted(out, key=lambda s: s.started_at, reverse=True)

    async def close_session(
        self,
        session_id: str,
        summary: str,
        key_learning_points: Optional[List[str]] = None,
        action_items: Optional[List[str]] = None,
    ) -> ChatSession:
        with self._lock:
            sess = self._sessions.get(session_id)
            if not sess:
                raise KeyError("Session not found")
            if sess.ended_at is not None:
                raise SessionClosedError(f"Session {session_id} is already closed")
            sess.summary = summary
            sess.key_learning_points = list(key_learning_points or [])
            sess.action_items = list(action_items or [])
            sess.ended_at = now_iso()
            context = (sess.user_id, sess.goal_id)
            if self._open.get(context) == session_id:
                del self._open[context]
            return self._session_model(sess)

    async def persist_message(self, draft: ChatMessageDraft) -> ChatMessage:
        with self._lock:
            sess = self._sessions.get(draft.session_id)
            if not sess:
                raise KeyError("Session not found")
            if sess.ended_at is not None:
                raise SessionClosedError(f"Session {draft.session_id} is closed")
            self._seq += 1
            msg = _Message(
                id=uuid.uuid4().hex,
                seq=self._seq,
                user_id=draft.user_id,
                session_id=draft.session_id,
                role=draft.role,
                content=draft.content,
                created_at=now_iso(),
                goal_id=draft.goal_id,
                milestone_id=draft.milestone_id,
                context_data=dict(draft.context_data) if draft.context_data else None,
            )
            self._messages[sess.id].append(msg)
            self._by_context.setdefault((draft.user_id, draft.goal_id), []).append(msg)
            sess.message_count += 1
            return self._message_model(msg)

    async def list_messages(self, session_id: str) -> List[ChatMessage]:
        with self._lock:
            return [self._message_model(m) for m in self._messages.get(session_id, [])]

    async def fetch_history(self, user_id: int, goal_id: Optional[int], limit: int, offset: int = 0) -> List[ChatMessage]:
        """Return the newest ``limit`` messages after skipping ``offset`` newer ones, oldest first."""
        if limit <= 0:
            return []
        offset = max(0, offset)
        with self._lock:
            rows = sorted(self._by_context.get((user_id, goal_id), []), key=lambda m: m.seq)
            end = len(rows) - offset
            if end <= 0:
                return []
            start = max(0, end - limit)
            return [self._message_model(m) for m in rows[start:end]]


_store: HistoryStore | None = None


def get_history_store() -> HistoryStore:
    global _store
    if _store is not None:
        return _store
    impl = os.getenv("TUTORCHAT_CHAT_STORE_IMPL", "memory").lower()
    if impl == "mongo":
        try:
            from .chat_store_mongo import MongoHistoryStore

            _store = MongoHistoryStore.from_env()
            return _store
        except Exception:
            logger.exception("Mongo history store unavailable; falling back to in-memory store")
            _store = None
    if _store is None:
        _store = InMemoryHistoryStore()
    return _store


def reset_history_store() -> None:
    """Drop the cached store (useful for tests)."""
    global _store
    _store = None
