"""
Error taxonomy for the real-time chat core.

Every error carries a stable ``code`` that the transport layer forwards to the
originating connection as ``error{message, code}``. Validation, authorization,
capacity and rate-limit errors are terminal and never reach the broadcaster.
"""
from typing import Any, Dict, Optional


class ChatError(Exception):
    """Base class for all chat core errors."""

    code = "CHAT_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for an ``error`` frame."""
        payload = {"message": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(ChatError):
    """Bad input (empty/oversized content, too many mentions, ...)."""
    code = "INVALID_CONTENT"


class EditWindowExpired(ValidationError):
    """The message is older than the edit window."""
    code = "EDIT_WINDOW_EXPIRED"


class AuthorizationError(ChatError):
    """Not a room member, or not the owner of the message."""
    code = "FORBIDDEN"


class NotFoundError(ChatError):
    """Unknown room, message or connection."""
    code = "NOT_FOUND"


class RateLimitExceeded(ChatError):
    """Per-user throttling for an action kind."""
    code = "RATE_LIMITED"

    def __init__(self, user_id: str, action_kind: str, limit: int, window_seconds: float):
        super().__init__(
            f"Rate limit exceeded for {action_kind}",
            details={"limit": limit, "window_seconds": window_seconds}
        )
        self.user_id = user_id
        self.action_kind = action_kind


class CapacityError(ChatError):
    """Room is full, or a user holds too many connections."""
    code = "ROOM_FULL"


class DeliveryFailed(ChatError):
    """Persistence failed after the retry; the failed message travels with it."""
    code = "DELIVERY_FAILED"

    def __init__(self, message: str, failed_message: Any = None):
        super().__init__(message)
        self.failed_message = failed_message
