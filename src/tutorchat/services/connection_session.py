from __future__ import annotations

"""Per-socket chat state and the READY/GENERATING state machine.

A ConnectionSession is created by the gateway once the handshake token has
been verified and lives until the socket goes away. Inbound events are
handed to the ``handle_*`` coroutines; everything sent back to the client
goes through :meth:`ConnectionSession.emit`, which silently drops events once
the session has been detached from its socket.
"""

import asyncio
import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from ..core.config import ChatGatewayConfig
from ..core.state_machine import ConnectionPhase, transition
from ..domain.chat_models import ChatMessage, ChatMessageDraft, GoalContext, Identity
from ..domain.errors import BusyError, ChatGatewayError, GenerationFailure, ProtocolViolation, SessionClosedError
from ..domain.protocol import (
    EVENT_AI_TYPING,
    EVENT_CHAT_HISTORY,
    EVENT_CHAT_MESSAGE,
    EVENT_ERROR,
    EVENT_GET_CHAT_HISTORY,
    EVENT_TYPING,
    ChatMessageIn,
    HistoryRequestIn,
    TypingIn,
    error_payload,
    history_payload,
    message_payload,
    parse_payload,
)
from ..infrastructure.chat_store import HistoryStore, now_iso
from ..infrastructure.goal_directory import GoalDirectory
from ..observability.metrics import (
    CHUNKS_EMITTED,
    GENERATION_FAILURES,
    GENERATION_LATENCY,
    record_persistence_failure,
)
from ..security.rate_limit import RateLimitExceeded, limit_chat_message
from .streaming import ChunkStreamer
from .tutor_ai import GeneratedReply, ResponseGenerator


logger = logging.getLogger("tutorchat.session")

TypingHook = Callable[[Identity, bool], None]


def clamp_history_limit(limit: Optional[int], config: ChatGatewayConfig) -> int:
    if limit is None:
        limit = config.history_default_limit
    return max(1, min(limit, config.history_max_limit))


async def fetch_history_page(
    store: HistoryStore,
    config: ChatGatewayConfig,
    user_id: int,
    goal_id: Optional[int],
    limit: Optional[int] = None,
    offset: Optional[int] = None,
) -> Tuple[List[ChatMessage], bool]:
    """Newest page of a conversation in ascending order, plus whether older messages exist."""
    limit = clamp_history_limit(limit, config)
    offset = max(0, offset or 0)
    # One extra row tells us whether an older page exists.
    rows = await store.fetch_history(user_id, goal_id, limit + 1, offset)
    has_more = len(rows) > limit
    return (rows[-limit:] if has_more else rows), has_more


class Transport(Protocol):
    async def send(self, event: str, data: Any) -> None: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


class ConnectionSession:
    def __init__(
        self,
        connection_id: str,
        identity: Identity,
        transport: Transport,
        *,
        store: HistoryStore,
        generator: ResponseGenerator,
        goals: Optional[GoalDirectory] = None,
        config: Optional[ChatGatewayConfig] = None,
        typing_hook: Optional[TypingHook] = None,
    ) -> None:
        self.connection_id = connection_id
        self.identity = identity
        self.goal_id: Optional[int] = None
        self.phase = ConnectionPhase.READY
        self.user_typing = False
        self._transport = transport
        self._store = store
        self._generator = generator
        self._goals = goals
        self._config = config or ChatGatewayConfig()
        self._typing_hook = typing_hook
        self._typing_handle: Optional[asyncio.TimerHandle] = None
        self._generation: Optional[asyncio.Task] = None
        self._attached = True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def attached(self) -> bool:
        return self._attached

    @property
    def is_generating(self) -> bool:
        return self.phase is ConnectionPhase.GENERATING

    @property
    def generation_task(self) -> Optional[asyncio.Task]:
        return self._generation

    def detach(self) -> Optional[asyncio.Task]:
        """Disconnect from the socket; returns the still-running generation, if any.

        The generation is not cancelled. Whatever it produces later is dropped.
        """
        self._attached = False
        if self._typing_handle is not None:
            self._typing_handle.cancel()
            self._typing_handle = None
        task = self._generation
        if task is not None and task.done():
            return None
        return task

    async def wait_for_generation(self) -> None:
        task = self._generation
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def emit(self, event: str, data: Any) -> None:
        if not self._attached:
            return
        await self._transport.send(event, data)

    async def _safe_emit(self, event: str, data: Any) -> None:
        try:
            await self.emit(event, data)
        except Exception:
            logger.debug("emit_failed", extra={"connection_id": self.connection_id, "event": event}, exc_info=True)

    async def _emit_error(self, error: ChatGatewayError) -> None:
        await self.emit(EVENT_ERROR, error_payload(error.message, error.kind))

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    async def handle(self, event: str, payload: Any) -> None:
        handlers = {
            EVENT_CHAT_MESSAGE: self.handle_chat_message,
            EVENT_GET_CHAT_HISTORY: self.handle_get_chat_history,
            EVENT_TYPING: self.handle_typing,
        }
        handler = handlers.get(event)
        if handler is None:
            logger.debug("ignoring_unknown_event", extra={"connection_id": self.connection_id, "event": event})
            return
        await handler(payload)

    async def handle_chat_message(self, payload: Any) -> None:
        try:
            request: ChatMessageIn = parse_payload(ChatMessageIn, payload, EVENT_CHAT_MESSAGE)
            if len(request.message) > self._config.max_message_chars:
                raise ProtocolViolation(f"Message is longer than {self._config.max_message_chars} characters")
        except ProtocolViolation as exc:
            await self._emit_error(exc)
            return

        if self.is_generating:
            await self._emit_error(BusyError("A response is still being generated. Please wait for it to finish."))
            return

        try:
            limit_chat_message(self.identity.user_id)
        except RateLimitExceeded as exc:
            await self.emit(
                EVENT_ERROR,
                error_payload(f"Too many messages. Try again in {exc.retry_after_seconds} seconds.", "RateLimited"),
            )
            return

        # Claim the generation slot before the first suspension point so no
        # second message on this connection can slip in.
        self.phase = transition(self.phase, ConnectionPhase.GENERATING)
        try:
            self.goal_id = request.goal_id
            goal = await self._resolve_goal(request.goal_id)
            user_message = await self._persist_user_message(request, goal)
            await self.emit(EVENT_CHAT_MESSAGE, message_payload(user_message))
            await self.emit(EVENT_AI_TYPING, True)
        except BaseException:
            self.phase = transition(self.phase, ConnectionPhase.READY)
            raise

        self._generation = asyncio.create_task(
            self._run_generation(request, goal, user_message),
            name=f"tutorchat-generation-{self.connection_id}",
        )

    async def handle_get_chat_history(self, payload: Any) -> None:
        try:
            request: HistoryRequestIn = parse_payload(HistoryRequestIn, payload, EVENT_GET_CHAT_HISTORY)
        except ProtocolViolation as exc:
            await self._emit_error(exc)
            return
        messages, has_more = await self.load_history(request.goal_id, request.limit, request.offset)
        await self.emit(EVENT_CHAT_HISTORY, history_payload(messages, has_more))

    async def handle_typing(self, payload: Any) -> None:
        try:
            request: TypingIn = parse_payload(TypingIn, payload, EVENT_TYPING)
        except ProtocolViolation as exc:
            await self._emit_error(exc)
            return
        self._set_user_typing(request.is_typing)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def load_history(
        self,
        goal_id: Optional[int],
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> Tuple[List[ChatMessage], bool]:
        try:
            return await fetch_history_page(self._store, self._config, self.identity.user_id, goal_id, limit, offset)
        except Exception:
            logger.exception("history_read_failed", extra={"user_id": self.identity.user_id, "goal_id": goal_id})
            record_persistence_failure("fetch_history")
            return [], False

    async def _history_window(self, goal_id: Optional[int], exclude_id: str) -> List[Dict[str, str]]:
        window = self._config.history_window
        if window <= 0:
            return []
        try:
            rows = await self._store.fetch_history(self.identity.user_id, goal_id, window + 1, 0)
        except Exception:
            logger.exception("history_window_failed", extra={"user_id": self.identity.user_id, "goal_id": goal_id})
            record_persistence_failure("fetch_history")
            return []
        rows = [m for m in rows if m.id != exclude_id][-window:]
        return [{"role": m.role, "content": m.content} for m in rows]

    # ------------------------------------------------------------------
    # Persistence (never surfaced to the client)
    # ------------------------------------------------------------------

    async def _resolve_goal(self, goal_id: Optional[int]) -> Optional[GoalContext]:
        if goal_id is None or self._goals is None:
            return None
        try:
            return await self._goals.get_goal_context(self.identity.user_id, goal_id)
        except Exception:
            logger.exception("goal_lookup_failed", extra={"user_id": self.identity.user_id, "goal_id": goal_id})
            return None

    async def _persist(self, draft_fields: Dict[str, Any], goal_id: Optional[int], title: Optional[str]) -> ChatMessage:
        user_id = self.identity.user_id
        chat_session = await self._store.get_or_create_open_session(user_id, goal_id, title=title)
        try:
            return await self._store.persist_message(
                ChatMessageDraft(user_id=user_id, session_id=chat_session.id, goal_id=goal_id, **draft_fields)
            )
        except SessionClosedError:
            # Closed between lookup and append: retry once on a fresh session.
            logger.info("chat_session_closed_during_append", extra={"session_id": chat_session.id})
        chat_session = await self._store.get_or_create_open_session(user_id, goal_id, title=title)
        return await self._store.persist_message(
            ChatMessageDraft(user_id=user_id, session_id=chat_session.id, goal_id=goal_id, **draft_fields)
        )

    async def _persist_user_message(self, request: ChatMessageIn, goal: Optional[GoalContext]) -> ChatMessage:
        context: Dict[str, Any] = {}
        if goal is not None:
            context = {"goalTitle": goal.goal_title, "milestoneTitle": goal.milestone_title}
        fields = {
            "role": "user",
            "content": request.message,
            "milestone_id": goal.milestone_id if goal else None,
            "context_data": context or None,
        }
        try:
            return await self._persist(fields, request.goal_id, goal.goal_title if goal else None)
        except Exception:
            logger.exception(
                "user_message_persist_failed",
                extra={"connection_id": self.connection_id, "user_id": self.identity.user_id},
            )
            record_persistence_failure("persist_user_message")
            # Echo with a provisional id so the conversation carries on.
            return ChatMessage(
                id=uuid.uuid4().hex,
                user_id=self.identity.user_id,
                session_id="",
                role="user",
                content=request.message,
                created_at=now_iso(),
                goal_id=request.goal_id,
                milestone_id=goal.milestone_id if goal else None,
            )

    async def _persist_assistant_message(self, text: str, reply: GeneratedReply, goal_id: Optional[int], goal: Optional[GoalContext]) -> None:
        fields = {
            "role": "assistant",
            "content": text,
            "milestone_id": goal.milestone_id if goal else None,
            "context_data": {"provider": reply.provider, "model": reply.model},
        }
        try:
            await self._persist(fields, goal_id, goal.goal_title if goal else None)
        except Exception:
            logger.exception(
                "assistant_message_persist_failed",
                extra={"connection_id": self.connection_id, "user_id": self.identity.user_id},
            )
            record_persistence_failure("persist_assistant_message")

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def _run_generation(self, request: ChatMessageIn, goal: Optional[GoalContext], user_message: ChatMessage) -> None:
        try:
            await self._generate_and_stream(request, goal, user_message)
        finally:
            self.phase = transition(self.phase, ConnectionPhase.READY)

    async def _generate_and_stream(self, request: ChatMessageIn, goal: Optional[GoalContext], user_message: ChatMessage) -> None:
        history = await self._history_window(request.goal_id, exclude_id=user_message.id)

        started = time.perf_counter()
        try:
            reply = await self._generator.generate(
                request.message,
                history,
                goal.goal_title if goal else None,
                goal.milestone_title if goal else None,
            )
        except Exception as exc:
            GENERATION_FAILURES.inc()
            failure = exc if isinstance(exc, GenerationFailure) else GenerationFailure("Failed to generate tutor response")
            if not self._attached:
                logger.info("generation_failed_after_disconnect", extra={"connection_id": self.connection_id})
                return
            logger.warning(
                "generation_failed",
                extra={"connection_id": self.connection_id, "user_id": self.identity.user_id, "err": str(exc)},
            )
            await self._safe_emit(EVENT_AI_TYPING, False)
            await self._safe_emit(EVENT_ERROR, error_payload(failure.message, failure.kind))
            return
        GENERATION_LATENCY.observe(time.perf_counter() - started)

        if not self._attached:
            logger.info("dropping_reply_for_closed_connection", extra={"connection_id": self.connection_id})
            return

        streamer = ChunkStreamer(
            reply.text,
            words_per_chunk=self._config.chunk_words,
            max_chunk_chars=self._config.chunk_max_chars,
            delay_ms=self._config.chunk_delay_ms,
            typing_active=True,
        )
        try:
            text = await streamer.deliver(self.emit)
        except Exception:
            GENERATION_FAILURES.inc()
            logger.warning("stream_delivery_failed", extra={"connection_id": self.connection_id}, exc_info=True)
            await self._safe_emit(EVENT_ERROR, error_payload("Failed to deliver the tutor response", GenerationFailure.kind))
            return
        CHUNKS_EMITTED.inc(len(streamer.chunks))

        if not self._attached:
            logger.info("stream_interrupted_by_disconnect", extra={"connection_id": self.connection_id})
            return
        await self._persist_assistant_message(text, reply, request.goal_id, goal)

    # ------------------------------------------------------------------
    # Typing
    # ------------------------------------------------------------------

    def _set_user_typing(self, is_typing: bool) -> None:
        if self._typing_handle is not None:
            self._typing_handle.cancel()
            self._typing_handle = None
        self.user_typing = is_typing
        if is_typing:
            loop = asyncio.get_running_loop()
            self._typing_handle = loop.call_later(self._config.typing_timeout_seconds, self._typing_expired)
        if self._typing_hook is not None:
            try:
                self._typing_hook(self.identity, is_typing)
            except Exception:
                logger.exception("typing_hook_failed", extra={"connection_id": self.connection_id})

    def _typing_expired(self) -> None:
        self._typing_handle = None
        self.user_typing = False
        if self._typing_hook is not None:
            try:
                self._typing_hook(self.identity, False)
            except Exception:
                logger.exception("typing_hook_failed", extra={"connection_id": self.connection_id})
