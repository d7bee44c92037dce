from __future__ import annotations

"""Connection registry and the authenticated entry point for chat sockets."""

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional, Set

from ..core.config import ChatGatewayConfig
from ..domain.errors import AuthenticationFailure
from ..domain.protocol import EVENT_ERROR, EVENT_READY, INBOUND_EVENTS, error_payload, ready_payload
from ..infrastructure.chat_store import HistoryStore
from ..infrastructure.events import publish_event
from ..infrastructure.goal_directory import GoalDirectory
from ..observability.metrics import ACTIVE_CONNECTIONS, AUTH_FAILURES, INBOUND_EVENTS_TOTAL
from ..security.auth import CredentialVerifier
from .connection_session import ConnectionSession, Transport, TypingHook
from .tutor_ai import ResponseGenerator


logger = logging.getLogger("tutorchat.gateway")

# Application close code for a rejected handshake (4000-4999 are free for apps).
UNAUTHORIZED_CLOSE_CODE = 4401


class ConnectionRegistry:
    """Live sessions keyed by connection id. Mutations never suspend."""

    def __init__(self) -> None:
        self._sessions: Dict[str, ConnectionSession] = {}

    def add(self, session: ConnectionSession) -> None:
        self._sessions[session.connection_id] = session
        ACTIVE_CONNECTIONS.set(len(self._sessions))

    def remove(self, connection_id: str) -> Optional[ConnectionSession]:
        session = self._sessions.pop(connection_id, None)
        ACTIVE_CONNECTIONS.set(len(self._sessions))
        return session

    def get(self, connection_id: str) -> Optional[ConnectionSession]:
        return self._sessions.get(connection_id)

    def sessions(self) -> List[ConnectionSession]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._sessions


class ChatGateway:
    def __init__(
        self,
        verifier: CredentialVerifier,
        store: HistoryStore,
        generator: ResponseGenerator,
        *,
        registry: Optional[ConnectionRegistry] = None,
        goals: Optional[GoalDirectory] = None,
        config: Optional[ChatGatewayConfig] = None,
        typing_hook: Optional[TypingHook] = None,
    ) -> None:
        self.verifier = verifier
        self.store = store
        self.generator = generator
        self.registry = registry if registry is not None else ConnectionRegistry()
        self.goals = goals
        self.config = config or ChatGatewayConfig()
        self.typing_hook = typing_hook
        # Generations orphaned by a disconnect; held so they are not collected mid-flight.
        self._background: Set[asyncio.Task] = set()

    async def connect(self, transport: Transport, token: Optional[str]) -> Optional[ConnectionSession]:
        """Authenticate a new socket and register its session.

        Returns ``None`` after closing the transport when the token is
        rejected; exactly one ``error`` event is sent in that case.
        """
        identity = await self.verifier.verify(token)
        if identity is None:
            AUTH_FAILURES.inc()
            failure = AuthenticationFailure("Unauthorized")
            logger.info("chat_connection_rejected")
            try:
                await transport.send(EVENT_ERROR, error_payload(failure.message, failure.kind))
            finally:
                await transport.close(UNAUTHORIZED_CLOSE_CODE, failure.message)
            return None

        session = ConnectionSession(
            uuid.uuid4().hex,
            identity,
            transport,
            store=self.store,
            generator=self.generator,
            goals=self.goals,
            config=self.config,
            typing_hook=self.typing_hook,
        )
        self.registry.add(session)
        logger.info(
            "chat_connected",
            extra={"connection_id": session.connection_id, "user_id": identity.user_id, "active": len(self.registry)},
        )
        try:
            await session.emit(EVENT_READY, ready_payload(session.connection_id, identity))
        except BaseException:
            # Peer went away during the handshake; the caller never gets a session to disconnect.
            self.disconnect(session.connection_id)
            raise
        publish_event("chat.connected", {"connectionId": session.connection_id, "userId": identity.user_id})
        return session

    def disconnect(self, connection_id: str) -> None:
        session = self.registry.remove(connection_id)
        if session is None:
            return
        pending = session.detach()
        if pending is not None:
            self._background.add(pending)
            pending.add_done_callback(self._background.discard)
        logger.info(
            "chat_disconnected",
            extra={
                "connection_id": connection_id,
                "user_id": session.identity.user_id,
                "generating": pending is not None,
                "active": len(self.registry),
            },
        )
        publish_event("chat.disconnected", {"connectionId": connection_id, "userId": session.identity.user_id})

    async def route(self, connection_id: str, event: str, payload: Any) -> None:
        session = self.registry.get(connection_id)
        if session is None:
            logger.debug("route_for_unknown_connection", extra={"connection_id": connection_id, "event": event})
            return
        if event not in INBOUND_EVENTS:
            logger.debug("ignoring_unknown_event", extra={"connection_id": connection_id, "event": event})
            return
        INBOUND_EVENTS_TOTAL.labels(event=event).inc()
        await session.handle(event, payload)

    async def drain(self) -> None:
        """Wait for every outstanding generation, live or orphaned."""
        tasks = set(self._background)
        for session in self.registry.sessions():
            if session.generation_task is not None:
                tasks.add(session.generation_task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
