from __future__ import annotations

import asyncio
import copy
from typing import Any, Dict, List, Optional, Tuple

from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from src.tutorchat.core.config import ChatGatewayConfig
from src.tutorchat.domain.chat_models import Identity
from src.tutorchat.domain.errors import GenerationFailure
from src.tutorchat.infrastructure.chat_store import HistoryStore, InMemoryHistoryStore
from src.tutorchat.infrastructure.goal_directory import GoalDirectory
from src.tutorchat.security.auth import JwtConfig, create_access_token
from src.tutorchat.services.connection_session import ConnectionSession
from src.tutorchat.services.tutor_ai import GeneratedReply


TEST_JWT = JwtConfig(secret="tutorchat-test-secret-0123456789abcdef")
LEARNER = Identity(user_id=1, email="learner@example.com", name="Ada Learner")
OTHER_LEARNER = Identity(user_id=2, email="other@example.com", name="Grace Hopper")

# No pauses between chunks so tests run instantly.
FAST = ChatGatewayConfig(chunk_delay_ms=0)

REPLY_TEXT = "Gradient descent walks downhill on the loss surface, one small step at a time."


def token_for(identity: Identity = LEARNER, cfg: JwtConfig = TEST_JWT) -> str:
    return create_access_token(identity, cfg)


def auth_headers(identity: Identity = LEARNER) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token_for(identity)}"}


class RecordingTransport:
    """Collects outbound events; sending after close fails like a dead socket."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, Any]] = []
        self.closed: Optional[Tuple[int, str]] = None

    async def send(self, event: str, data: Any) -> None:
        if self.closed is not None:
            raise RuntimeError("socket closed")
        self.events.append((event, data))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = (code, reason)

    def names(self) -> List[str]:
        return [name for name, _ in self.events]

    def of(self, name: str) -> List[Any]:
        return [data for event, data in self.events if event == name]


class StaticGenerator:
    def __init__(self, text: str = REPLY_TEXT, provider: str = "fake", model: str = "fake-tutor") -> None:
        self.text = text
        self.provider = provider
        self.model = model
        self.calls: List[Dict[str, Any]] = []

    async def generate(self, message, history, goal_context, milestone_context) -> GeneratedReply:
        self.calls.append(
            {
                "message": message,
                "history": list(history),
                "goal_context": goal_context,
                "milestone_context": milestone_context,
            }
        )
        return GeneratedReply(text=self.text, provider=self.provider, model=self.model)


class FailingGenerator(StaticGenerator):
    def __init__(self, exc: Optional[Exception] = None) -> None:
        super().__init__()
        self.exc = exc or GenerationFailure("Failed to generate tutor response")

    async def generate(self, message, history, goal_context, milestone_context) -> GeneratedReply:
        await super().generate(message, history, goal_context, milestone_context)
        raise self.exc


class FlakyGenerator(StaticGenerator):
    """Fails the first ``fail_times`` calls, then answers."""

    def __init__(self, fail_times: int = 1, text: str = REPLY_TEXT) -> None:
        super().__init__(text)
        self.remaining_failures = fail_times

    async def generate(self, message, history, goal_context, milestone_context) -> GeneratedReply:
        reply = await super().generate(message, history, goal_context, milestone_context)
        if self.remaining_failures > 0:
            self.remaining_failures -= 1
            raise GenerationFailure("provider unavailable")
        return reply


class GatedGenerator(StaticGenerator):
    """Blocks inside ``generate`` until ``release`` is set."""

    def __init__(self, text: str = REPLY_TEXT) -> None:
        super().__init__(text)
        self.release = asyncio.Event()
        self.entered = asyncio.Event()

    async def generate(self, message, history, goal_context, milestone_context) -> GeneratedReply:
        reply = await super().generate(message, history, goal_context, milestone_context)
        self.entered.set()
        await self.release.wait()
        return reply


def make_session(
    transport: Optional[RecordingTransport] = None,
    *,
    store: Optional[HistoryStore] = None,
    generator: Any = None,
    goals: Optional[GoalDirectory] = None,
    config: ChatGatewayConfig = FAST,
    identity: Identity = LEARNER,
    typing_hook=None,
) -> ConnectionSession:
    return ConnectionSession(
        "conn-test",
        identity,
        transport or RecordingTransport(),
        store=store or InMemoryHistoryStore(),
        generator=generator or StaticGenerator(),
        goals=goals,
        config=config,
        typing_hook=typing_hook,
    )


async def seed_messages(store: HistoryStore, user_id: int, goal_id: Optional[int], contents: List[str]) -> None:
    """Persist alternating user/assistant messages in order."""
    from src.tutorchat.domain.chat_models import ChatMessageDraft

    sess = await store.get_or_create_open_session(user_id, goal_id)
    for index, content in enumerate(contents):
        role = "user" if index % 2 == 0 else "assistant"
        await store.persist_message(
            ChatMessageDraft(user_id=user_id, session_id=sess.id, role=role, content=content, goal_id=goal_id)
        )


class InMemoryUserDirectory:
    def __init__(self) -> None:
        self._users: Dict[int, Identity] = {}

    def add_user(self, identity: Identity) -> Identity:
        self._users[identity.user_id] = identity
        return identity

    async def find_user(self, user_id: int) -> Optional[Identity]:
        return self._users.get(user_id)


# In-memory stand-ins for the motor collection calls the Mongo adapters make.


def _matches(doc, query):
    return all(doc.get(key) == value for key, value in query.items())


def _sorted(docs, spec, direction=None):
    keys = spec if isinstance(spec, list) else [(spec, direction)]
    out = list(docs)
    for field, order in reversed(keys):
        out.sort(key=lambda d: d.get(field), reverse=order == DESCENDING)
    return out


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs
        self._skip = 0
        self._limit = None

    def sort(self, spec, direction=None):
        self._docs = _sorted(self._docs, spec, direction)
        return self

    def skip(self, n):
        self._skip = n
        return self

    def limit(self, n):
        self._limit = n
        return self

    async def to_list(self, length=None):
        docs = self._docs[self._skip :]
        if self._limit is not None:
            docs = docs[: self._limit]
        return [copy.deepcopy(d) for d in docs[:length]]


class FakeCollection:
    def __init__(self):
        self.docs = []
        self.fail = False

    def _check(self):
        if self.fail:
            raise PyMongoError("connection reset")

    async def create_index(self, *args, **kwargs):
        return "ok"

    async def insert_one(self, doc):
        self._check()
        self.docs.append(copy.deepcopy(doc))

    async def find_one(self, query, sort=None):
        self._check()
        docs = [d for d in self.docs if _matches(d, query)]
        if sort:
            docs = _sorted(docs, sort)
        return copy.deepcopy(docs[0]) if docs else None

    def find(self, query):
        self._check()
        return FakeCursor([d for d in self.docs if _matches(d, query)])

    async def find_one_and_update(self, query, update, upsert=False, return_document=ReturnDocument.BEFORE):
        self._check()
        doc = next((d for d in self.docs if _matches(d, query)), None)
        if doc is None:
            if not upsert:
                return None
            doc = dict(query)
            self.docs.append(doc)
        before = copy.deepcopy(doc)
        for key, value in update.get("$inc", {}).items():
            doc[key] = doc.get(key, 0) + value
        doc.update(update.get("$set", {}))
        return copy.deepcopy(doc) if return_document == ReturnDocument.AFTER else before


class FakeDB:
    def __init__(self):
        self.collections = {}

    def __getitem__(self, name):
        return self.collections.setdefault(name, FakeCollection())


class FakeMongoClient:
    def __init__(self):
        self.dbs = {}

    def __getitem__(self, name):
        return self.dbs.setdefault(name, FakeDB())


