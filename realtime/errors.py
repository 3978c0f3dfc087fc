"""Errors raised by the realtime chat layer.

Each error carries the ``code`` sent to the client in an ``error`` event.
"""


class ChatError(Exception):
    code = "chat_error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.code

    def to_wire(self) -> dict:
        return {"code": self.code, "message": self.message}


class PersistenceFailure(ChatError):
    """The message/user store is unavailable or rejected a write."""

    code = "persistence_failure"


class InvalidState(ChatError):
    """The session is not in a state that allows the requested operation."""

    code = "invalid_state"


class InvalidPayload(ChatError):
    """A client frame could not be parsed or failed validation."""

    code = "invalid_payload"


class PresenceFailure(ChatError):
    """The presence registry could not record an identify."""

    code = "presence_failure"
