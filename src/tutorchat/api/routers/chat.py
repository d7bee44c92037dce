from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from ...core.config import ChatGatewayConfig
from ...domain.chat_models import (
    ChatSession,
    ChatSessionClose,
    ChatSessionCreate,
    ChatSessionWithMessages,
    Identity,
)
from ...domain.errors import PersistenceFailure, SessionClosedError
from ...domain.protocol import history_payload
from ...infrastructure.chat_store import HistoryStore
from ...infrastructure.events import publish_event
from ...security.auth import get_current_identity
from ...services.connection_session import fetch_history_page


router = APIRouter(prefix="/chat", tags=["chat"])


def _store(request: Request) -> HistoryStore:
    return request.app.state.store


def _config(request: Request) -> ChatGatewayConfig:
    return request.app.state.config


async def _owned_session(store: HistoryStore, session_id: str, identity: Identity) -> ChatSession:
    sess = await store.get_session(session_id)
    # Someone else's session is indistinguishable from a missing one.
    if not sess or sess.user_id != identity.user_id:
        raise HTTPException(status_code=404, detail="Session not found")
    return sess


@router.get("/history")
async def get_history(
    request: Request,
    goal_id: Optional[int] = Query(default=None),
    limit: Optional[int] = Query(default=None),
    offset: int = Query(default=0),
    identity: Identity = Depends(get_current_identity),
) -> Dict[str, Any]:
    try:
        messages, has_more = await fetch_history_page(
            _store(request), _config(request), identity.user_id, goal_id, limit, offset
        )
    except PersistenceFailure:
        raise HTTPException(status_code=503, detail="Chat history is temporarily unavailable")
    return history_payload(messages, has_more)


@router.get("/sessions", response_model=List[ChatSession])
async def list_sessions(
    request: Request,
    goal_id: Optional[int] = Query(default=None),
    identity: Identity = Depends(get_current_identity),
) -> List[ChatSession]:
    return await _store(request).list_sessions(identity.user_id, goal_id)


@router.post("/sessions", response_model=ChatSession, status_code=status.HTTP_201_CREATED)
async def create_session(
    req: ChatSessionCreate,
    request: Request,
    identity: Identity = Depends(get_current_identity),
) -> ChatSession:
    sess = await _store(request).create_session(identity.user_id, req.goal_id, req.title)
    publish_event("chat.session_started", {"sessionId": sess.id, "userId": identity.user_id, "goalId": sess.goal_id})
    return sess


@router.get("/sessions/{session_id}", response_model=ChatSessionWithMessages)
async def get_session(
    session_id: str,
    request: Request,
    identity: Identity = Depends(get_current_identity),
) -> ChatSessionWithMessages:
    store = _store(request)
    sess = await _owned_session(store, session_id, identity)
    msgs = await store.list_messages(session_id)
    return ChatSessionWithMessages(session=sess, messages=msgs)


@router.post("/sessions/{session_id}/close", response_model=ChatSession)
async def close_session(
    session_id: str,
    req: ChatSessionClose,
    request: Request,
    identity: Identity = Depends(get_current_identity),
) -> ChatSession:
    store = _store(request)
    await _owned_session(store, session_id, identity)
    try:
        sess = await store.close_session(session_id, req.summary, req.key_learning_points, req.action_items)
    except SessionClosedError:
        raise HTTPException(status_code=409, detail="Session already closed")
    except KeyError:
        raise HTTPException(status_code=404, detail="Session not found")
    publish_event(
        "chat.session_closed",
        {"sessionId": sess.id, "userId": identity.user_id, "messageCount": sess.message_count},
    )
    return sess
