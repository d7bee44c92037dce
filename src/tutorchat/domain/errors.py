from __future__ import annotations

"""Error taxonomy for the chat gateway.

``kind`` is the string sent to clients in ``error`` events. Only
authentication failures close the connection; everything else is either
surfaced as a non-fatal ``error`` event or (for persistence) only logged.
"""


class ChatGatewayError(Exception):
    kind = "InternalError"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthenticationFailure(ChatGatewayError):
    kind = "Unauthorized"


class GenerationFailure(ChatGatewayError):
    kind = "GenerationFailure"


class PersistenceFailure(ChatGatewayError):
    kind = "PersistenceFailure"


class SessionClosedError(PersistenceFailure):
    kind = "SessionClosed"


class ProtocolViolation(ChatGatewayError):
    kind = "ProtocolViolation"


class BusyError(ChatGatewayError):
    kind = "Busy"
