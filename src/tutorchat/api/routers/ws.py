from __future__ import annotations

"""WebSocket endpoint for the tutor chat.

Mounted as ``/ws/chat``. The token comes from the ``token`` query parameter
or, for non-browser clients, an ``Authorization: Bearer`` header. Each text
frame is one ``{"event", "data"}`` object.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from ...domain.errors import ProtocolViolation
from ...domain.protocol import EVENT_ERROR, encode_frame, error_payload, parse_frame
from ...security.auth import bearer_token
from ...services.gateway import ChatGateway


logger = logging.getLogger("tutorchat.ws")

router = APIRouter(tags=["chat"])


class WebSocketTransport:
    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket

    async def send(self, event: str, data: Any) -> None:
        await self._ws.send_text(encode_frame(event, data))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._ws.client_state == WebSocketState.DISCONNECTED:
            return
        await self._ws.close(code=code, reason=reason)


def _handshake_token(websocket: WebSocket) -> Optional[str]:
    token = websocket.query_params.get("token")
    if token:
        return token
    return bearer_token(websocket.headers.get("authorization"))


@router.websocket("/ws/chat")
async def chat_socket(websocket: WebSocket) -> None:
    gateway: ChatGateway = websocket.app.state.gateway
    await websocket.accept()
    transport = WebSocketTransport(websocket)
    session = await gateway.connect(transport, _handshake_token(websocket))
    if session is None:
        return

    connection_id = session.connection_id
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            try:
                raw = message.get("text")
                if raw is None:
                    raise ProtocolViolation("Binary frames are not supported; send JSON text frames")
                event, data = parse_frame(raw)
            except ProtocolViolation as exc:
                logger.info("malformed_frame", extra={"connection_id": connection_id})
                await transport.send(EVENT_ERROR, error_payload(exc.message, exc.kind))
                continue
            await gateway.route(connection_id, event, data)
    except WebSocketDisconnect:
        pass
    except RuntimeError:
        # send/receive on a socket the peer already closed
        logger.debug("socket_closed_midway", extra={"connection_id": connection_id}, exc_info=True)
    finally:
        gateway.disconnect(connection_id)
