"""
Audit logging for security events on the real-time channel.

Authentication failures, throttling, authorization denials, capacity
rejections and heartbeat pruning are written to the ``audit`` logger. The
connection, user and room of each event travel as log record context, so the
JSON formatter emits them as top-level fields and entries can be grepped per
connection.
"""
import logging
from enum import Enum
from typing import Any, Dict, Optional

audit_log = logging.getLogger("audit")


class AuditEventType(str, Enum):
    """Types of security audit events."""
    AUTH_SUCCESS = "auth_success"
    AUTH_FAILURE = "auth_failure"
    AUTHZ_DENIED = "authorization_denied"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    CAPACITY_REJECTED = "capacity_rejected"
    CONNECTION_PRUNED = "connection_pruned"


# Events that describe a refused operation are logged at WARNING
_REFUSALS = {
    AuditEventType.AUTH_FAILURE,
    AuditEventType.AUTHZ_DENIED,
    AuditEventType.RATE_LIMIT_EXCEEDED,
    AuditEventType.CAPACITY_REJECTED,
}


class AuditLogger:
    """Thin facade over the ``audit`` logger, one method per event kind."""

    @staticmethod
    def log_event(
        event_type: AuditEventType,
        user_id: Optional[str] = None,
        connection_id: Optional[str] = None,
        room_id: Optional[str] = None,
        reason: Optional[str] = None,
        **details: Any
    ) -> None:
        """
        Write one audit entry.

        Args:
            event_type: Kind of security event
            user_id: User the event concerns, if known
            connection_id: Connection the event came from, if known
            room_id: Room involved, if any
            reason: Why the operation was refused
            details: Extra fields copied onto the record (limits, resource, ...)
        """
        context: Dict[str, Any] = {"audit_event": event_type.value}
        for key, value in (("user_id", user_id), ("connection_id", connection_id), ("room_id", room_id)):
            if value is not None:
                context[key] = value
        context.update(details)

        summary = " ".join(f"{key}={value}" for key, value in sorted(details.items()))
        text = f"AUDIT {event_type.value} user={user_id} connection={connection_id}"
        if summary:
            text = f"{text} {summary}"
        if reason:
            text = f"{text}: {reason}"

        level = logging.WARNING if event_type in _REFUSALS else logging.INFO
        audit_log.log(level, text, extra=context)

    @staticmethod
    def log_auth_success(user_id: str, connection_id: str) -> None:
        AuditLogger.log_event(AuditEventType.AUTH_SUCCESS, user_id=user_id, connection_id=connection_id)

    @staticmethod
    def log_auth_failure(connection_id: Optional[str], reason: str) -> None:
        AuditLogger.log_event(AuditEventType.AUTH_FAILURE, connection_id=connection_id, reason=reason)

    @staticmethod
    def log_rate_limit_exceeded(user_id: str, action_kind: str, limit: int, window_seconds: float) -> None:
        """A user exhausted the budget of an action kind."""
        AuditLogger.log_event(
            AuditEventType.RATE_LIMIT_EXCEEDED,
            user_id=user_id,
            reason=f"{limit} {action_kind} per {window_seconds:g}s",
            action_kind=action_kind,
            limit=limit
        )

    @staticmethod
    def log_authorization_denied(user_id: str, resource: str, action: str, reason: str) -> None:
        """
        A room or message operation was refused.

        ``resource`` is ``room:<id>`` or ``message:<id>``; a room resource is
        also recorded as the entry's ``room_id``.
        """
        room_id = resource.split(":", 1)[1] if resource.startswith("room:") else None
        AuditLogger.log_event(
            AuditEventType.AUTHZ_DENIED,
            user_id=user_id,
            room_id=room_id,
            reason=reason,
            resource=resource,
            action=action
        )

    @staticmethod
    def log_capacity_rejected(user_id: str, resource: str, reason: str) -> None:
        """A join (full room) or a connection (per-user cap) was refused."""
        room_id = resource.split(":", 1)[1] if resource.startswith("room:") else None
        AuditLogger.log_event(
            AuditEventType.CAPACITY_REJECTED,
            user_id=user_id,
            room_id=room_id,
            reason=reason,
            resource=resource
        )

    @staticmethod
    def log_connection_pruned(user_id: Optional[str], connection_id: str, idle_seconds: float) -> None:
        AuditLogger.log_event(
            AuditEventType.CONNECTION_PRUNED,
            user_id=user_id,
            connection_id=connection_id,
            idle_seconds=round(idle_seconds, 1)
        )


audit_logger = AuditLogger()
