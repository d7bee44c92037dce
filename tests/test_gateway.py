import asyncio

from src.tutorchat.infrastructure.chat_store import InMemoryHistoryStore
from src.tutorchat.security.auth import CredentialVerifier, JwtConfig
from src.tutorchat.services.gateway import UNAUTHORIZED_CLOSE_CODE, ChatGateway, ConnectionRegistry
from .utils import (
    FAST,
    LEARNER,
    OTHER_LEARNER,
    TEST_JWT,
    GatedGenerator,
    InMemoryUserDirectory,
    RecordingTransport,
    StaticGenerator,
    token_for,
)


def _gateway(generator=None, store=None, users=None):
    return ChatGateway(
        CredentialVerifier(TEST_JWT, users=users),
        store or InMemoryHistoryStore(),
        generator or StaticGenerator(),
        config=FAST,
    )


def test_connect_with_valid_token_registers_and_announces_ready():
    gateway = _gateway()
    transport = RecordingTransport()

    session = asyncio.run(gateway.connect(transport, token_for(LEARNER)))

    assert session is not None
    assert session.connection_id in gateway.registry
    assert len(gateway.registry) == 1
    assert transport.events == [
        (
            "ready",
            {
                "connectionId": session.connection_id,
                "user": {"id": 1, "email": "learner@example.com", "name": "Ada Learner"},
            },
        )
    ]
    assert transport.closed is None


def test_connect_rejects_bad_tokens_with_one_error_and_close():
    gateway = _gateway()
    wrong_secret = token_for(LEARNER, JwtConfig(secret="not-the-server-secret-0123456789abcdef"))
    for token in (None, "", "garbage", wrong_secret):
        transport = RecordingTransport()
        session = asyncio.run(gateway.connect(transport, token))
        assert session is None
        assert transport.events == [("error", {"message": "Unauthorized", "kind": "Unauthorized"})]
        assert transport.closed == (UNAUTHORIZED_CLOSE_CODE, "Unauthorized")
    assert len(gateway.registry) == 0


def test_connect_rejects_token_for_unknown_user():
    users = InMemoryUserDirectory()
    users.add_user(LEARNER)
    gateway = _gateway(users=users)

    ok = RecordingTransport()
    rejected = RecordingTransport()
    assert asyncio.run(gateway.connect(ok, token_for(LEARNER))) is not None
    assert asyncio.run(gateway.connect(rejected, token_for(OTHER_LEARNER))) is None
    assert rejected.closed[0] == UNAUTHORIZED_CLOSE_CODE


def test_route_dispatches_known_events_and_ignores_unknown():
    gateway = _gateway()
    transport = RecordingTransport()

    async def scenario():
        session = await gateway.connect(transport, token_for())
        await gateway.route(session.connection_id, "dance", {"style": "tango"})
        await gateway.route("no-such-connection", "get_chat_history", {})
        await gateway.route(session.connection_id, "get_chat_history", {})

    asyncio.run(scenario())
    assert transport.names() == ["ready", "chat_history"]


def test_full_chat_round_trip_through_gateway():
    store = InMemoryHistoryStore()
    gateway = _gateway(store=store)
    transport = RecordingTransport()

    async def scenario():
        session = await gateway.connect(transport, token_for())
        await gateway.route(session.connection_id, "chat_message", {"message": "Explain gradient descent", "goalId": 1})
        await gateway.drain()
        return await store.fetch_history(1, 1, 10)

    history = asyncio.run(scenario())
    names = transport.names()
    assert names[:3] == ["ready", "chat_message", "ai_typing"]
    assert names[-2:] == ["ai_message_chunk", "ai_typing"]
    assert transport.events[-2][1]["isComplete"] is True
    assert [m.role for m in history] == ["user", "assistant"]


def test_disconnect_mid_generation_drops_reply_silently():
    store = InMemoryHistoryStore()
    generator = GatedGenerator()
    gateway = _gateway(generator=generator, store=store)
    transport = RecordingTransport()

    async def scenario():
        session = await gateway.connect(transport, token_for())
        cid = session.connection_id
        await gateway.route(cid, "chat_message", {"message": "a slow question"})
        await generator.entered.wait()
        delivered_before = list(transport.events)

        gateway.disconnect(cid)
        assert cid not in gateway.registry

        generator.release.set()
        await gateway.drain()
        return cid, delivered_before, await store.fetch_history(1, None, 10)

    cid, delivered_before, history = asyncio.run(scenario())
    assert transport.events == delivered_before
    assert "ai_message_chunk" not in transport.names()
    assert [m.role for m in history] == ["user"]
    assert cid not in gateway.registry


def test_disconnect_is_idempotent():
    gateway = _gateway()
    session = asyncio.run(gateway.connect(RecordingTransport(), token_for()))
    gateway.disconnect(session.connection_id)
    gateway.disconnect(session.connection_id)
    gateway.disconnect("never-connected")
    assert len(gateway.registry) == 0


def test_connections_generate_independently():
    gateway = _gateway(generator=GatedGenerator())
    first = RecordingTransport()
    second = RecordingTransport()

    async def scenario():
        a = await gateway.connect(first, token_for())
        b = await gateway.connect(second, token_for())
        await gateway.route(a.connection_id, "chat_message", {"message": "from tab one"})
        await gateway.route(b.connection_id, "chat_message", {"message": "from tab two"})
        gateway.generator.release.set()
        await gateway.drain()

    asyncio.run(scenario())
    for transport in (first, second):
        assert transport.of("error") == []
        assert transport.of("ai_message_chunk")[-1]["isComplete"] is True


def test_registry_tracks_sessions_per_user():
    registry = ConnectionRegistry()
    gateway = ChatGateway(CredentialVerifier(TEST_JWT), InMemoryHistoryStore(), StaticGenerator(), registry=registry, config=FAST)

    async def scenario():
        await gateway.connect(RecordingTransport(), token_for(LEARNER))
        await gateway.connect(RecordingTransport(), token_for(LEARNER))
        await gateway.connect(RecordingTransport(), token_for(OTHER_LEARNER))

    asyncio.run(scenario())
    assert gateway.registry is registry
    assert len(registry) == 3
    assert sum(1 for s in registry.sessions() if s.identity.user_id == 1) == 2
    assert len(registry.sessions()) == 3


def test_failed_ready_send_unregisters_the_session():
    class DeadOnArrival(RecordingTransport):
        async def send(self, event, data):
            raise RuntimeError("peer went away")

    gateway = _gateway()

    async def scenario():
        try:
            await gateway.connect(DeadOnArrival(), token_for())
        except RuntimeError:
            return True
        return False

    assert asyncio.run(scenario()) is True
    assert len(gateway.registry) == 0
