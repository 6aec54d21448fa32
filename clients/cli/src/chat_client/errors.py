"""Error taxonomy for the chat client core and its transport."""

from __future__ import annotations


class ChatError(Exception):
    """Base class for every failure the client core represents as state."""


class EnvelopeError(ValueError):
    """Raised when a message cannot be parsed or constructed."""


class GatewayConnectionError(ChatError):
    """The gateway is unreachable or the connection dropped."""


class RequestTimeout(ChatError):
    def __init__(self, request_type: str, timeout_s: float) -> None:
        self.request_type = request_type
        self.timeout_s = timeout_s
        super().__init__(f"{request_type} did not complete within {timeout_s:g}s")


class GatewayError(ChatError):
    """An ``error`` frame answered a request."""

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class RoomError(ChatError):
    """Failure scoped to a single room session."""

    def __init__(self, room_id: str, reason: str) -> None:
        self.room_id = room_id
        self.reason = reason
        super().__init__(f"{room_id}: {reason}")


class JoinTimeout(RoomError):
    """Joining the room did not complete."""


class HistoryLoadFailure(RoomError):
    """The history snapshot for the room could not be loaded."""


class SendFailure(ChatError):
    def __init__(self, message_id: str, reason: str) -> None:
        self.message_id = message_id
        self.reason = reason
        super().__init__(f"send failed for {message_id}: {reason}")
