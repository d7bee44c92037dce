from __future__ import annotations

"""Wire protocol for the tutor chat socket.

Every frame is a JSON object ``{"event": <name>, "data": <payload>}`` in both
directions. Inbound payloads are validated with pydantic; outbound payloads
are built by the helpers below so field names stay camelCase on the wire.
"""

import json
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, StrictBool, ValidationError, field_validator

from .chat_models import ChatMessage, Identity
from .errors import ProtocolViolation


# Client -> server
EVENT_CHAT_MESSAGE = "chat_message"
EVENT_GET_CHAT_HISTORY = "get_chat_history"
EVENT_TYPING = "typing"

# Server -> client
EVENT_READY = "ready"
EVENT_CHAT_HISTORY = "chat_history"
EVENT_AI_TYPING = "ai_typing"
EVENT_AI_MESSAGE_CHUNK = "ai_message_chunk"
EVENT_ERROR = "error"

INBOUND_EVENTS = frozenset({EVENT_CHAT_MESSAGE, EVENT_GET_CHAT_HISTORY, EVENT_TYPING})


class _Inbound(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ChatMessageIn(_Inbound):
    message: str
    goal_id: Optional[int] = Field(default=None, alias="goalId")

    @field_validator("message")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("message must not be empty")
        return value


class HistoryRequestIn(_Inbound):
    goal_id: Optional[int] = Field(default=None, alias="goalId")
    limit: Optional[int] = None
    offset: Optional[int] = None


class TypingIn(_Inbound):
    is_typing: StrictBool = Field(alias="isTyping")


def parse_payload(model: type[_Inbound], payload: Any, event: str) -> Any:
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ProtocolViolation(f"Invalid payload for {event}: expected an object")
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or event for err in exc.errors())
        raise ProtocolViolation(f"Invalid payload for {event}: {fields}") from exc


def parse_frame(raw: str) -> Tuple[str, Any]:
    try:
        frame = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ProtocolViolation("Malformed frame: not valid JSON") from exc
    if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
        raise ProtocolViolation("Malformed frame: expected {\"event\": str, \"data\": ...}")
    return frame["event"], frame.get("data")


def encode_frame(event: str, data: Any) -> str:
    return json.dumps({"event": event, "data": data})


# Outbound payload builders


def sender_for(role: str) -> str:
    return "user" if role == "user" else "ai"


def message_payload(message: ChatMessage) -> Dict[str, Any]:
    return {
        "id": message.id,
        "message": message.content,
        "sender": sender_for(message.role),
        "timestamp": message.created_at,
        "goalId": message.goal_id,
    }


def history_payload(messages: List[ChatMessage], has_more: bool) -> Dict[str, Any]:
    return {"messages": [message_payload(m) for m in messages], "hasMore": has_more}


def chunk_payload(content: str, is_complete: bool) -> Dict[str, Any]:
    return {"content": content, "isComplete": is_complete}


def error_payload(message: str, kind: Optional[str] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"message": message}
    if kind:
        payload["kind"] = kind
    return payload


def ready_payload(connection_id: str, identity: Identity) -> Dict[str, Any]:
    return {
        "connectionId": connection_id,
        "user": {"id": identity.user_id, "email": identity.email, "name": identity.name},
    }
