"""Error taxonomy for the messaging core.

Every failure the core reports to a caller is a ``ChatError`` subclass with a
stable machine-readable ``code`` and the HTTP status the REST surface maps it
to. The WebSocket gateway sends the same ``to_payload()`` dict as an
``error`` event instead of closing the connection.
"""
from typing import Optional


class ChatError(Exception):
    """Base class for all errors raised by the messaging core."""

    code: str = "error"
    status_code: int = 400
    retryable: bool = False

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.code)
        self.detail = detail or self.code

    def to_payload(self, retry_after_ms: Optional[int] = None) -> dict:
        payload = {"error": self.code, "detail": self.detail}
        if self.retryable and retry_after_ms is not None:
            payload["retryAfterMs"] = retry_after_ms
        return payload


class Unauthenticated(ChatError):
    """No session, an unknown connection, or a failed login."""
    code = "unauthenticated"
    status_code = 401


class InvalidToken(Unauthenticated):
    """A session token that was never issued, was revoked, or has expired."""


class InvalidInput(ChatError):
    code = "invalid_input"
    status_code = 422


class EmptyBody(InvalidInput):
    """Message body is blank after trimming."""


class InvalidName(InvalidInput):
    """Room name length is outside the allowed range."""


class NotAMember(ChatError):
    code = "not_a_member"
    status_code = 403


class InvalidSender(NotAMember):
    """Sender is not a room member or not one of the direct-message pair."""


class NotFound(ChatError):
    code = "not_found"
    status_code = 404


class Conflict(ChatError):
    code = "conflict"
    status_code = 409


class Transient(ChatError):
    """Storage or network hiccup; the operation is safe to retry."""
    code = "transient"
    status_code = 503
    retryable = True
