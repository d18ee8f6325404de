"""
Outbound event frames pushed to clients.

Every frame is ``{"type": ..., "data": {...}, "timestamp": ...}``.
"""
import enum
from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field
from realtime.entities import Message, PresenceState, ReactionState, utcnow


class EventType(str, enum.Enum):
    CONNECTED = "connected"
    RECEIVE_MESSAGE = "receiveMessage"
    MESSAGE_SENT = "messageSent"
    MESSAGE_UPDATED = "messageUpdated"
    MESSAGE_DELETED = "messageDeleted"
    REACTION_UPDATED = "reactionUpdated"
    MESSAGE_READ = "messageRead"
    USER_TYPING = "userTyping"
    PRESENCE_CHANGED = "presenceChanged"
    JOINED_ROOM = "joinedRoom"
    LEFT_ROOM = "leftRoom"
    USER_JOINED = "userJoined"
    USER_LEFT = "userLeft"
    HISTORY = "history"
    PING = "ping"
    ERROR = "error"


class ServerEvent(BaseModel):
    """One outbound frame."""
    type: EventType
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


def message_payload(message: Message) -> Dict[str, Any]:
    """Client view of a message (camelCase, JSON-safe)."""
    data = message.model_dump(mode="json")
    return {
        "id": data["id"],
        "roomId": data["room_id"],
        "authorId": data["author_id"],
        "content": data["content"],
        "type": data["type"],
        "status": data["status"],
        "priority": data["priority"],
        "state": data["state"],
        "sequence": data["sequence"],
        "isEdited": data["is_edited"],
        "editedAt": data["edited_at"],
        "editHistory": data["edit_history"],
        "threadId": data["thread_id"],
        "replyToId": data["reply_to_id"],
        "mentions": data["mentions"],
        "reactions": data["reactions"],
        "readBy": data["read_by"],
        "deliveredTo": data["delivered_to"],
        "messageFlags": data["message_flags"],
        "createdAt": data["created_at"],
        "updatedAt": data["updated_at"],
        "deletedAt": data["deleted_at"],
    }


def receive_message(message: Message) -> ServerEvent:
    return ServerEvent(type=EventType.RECEIVE_MESSAGE, data=message_payload(message))


def message_sent(message: Message, success: bool = True, error: Optional[Dict[str, Any]] = None) -> ServerEvent:
    data = {"success": success, "message": message_payload(message)}
    if error:
        data["error"] = error
    return ServerEvent(type=EventType.MESSAGE_SENT, data=data)


def message_updated(message: Message) -> ServerEvent:
    return ServerEvent(type=EventType.MESSAGE_UPDATED, data=message_payload(message))


def message_deleted(message: Message) -> ServerEvent:
    return ServerEvent(
        type=EventType.MESSAGE_DELETED,
        data={"messageId": message.id, "roomId": message.room_id, "state": message.state.value}
    )


def reaction_updated(state: ReactionState) -> ServerEvent:
    return ServerEvent(
        type=EventType.REACTION_UPDATED,
        data={"messageId": state.message_id, "roomId": state.room_id, "reactions": state.reactions}
    )


def message_read(message: Message, reader_id: str) -> ServerEvent:
    receipt = next(r for r in message.read_by if r.user_id == reader_id)
    return ServerEvent(
        type=EventType.MESSAGE_READ,
        data={
            "messageId": message.id,
            "roomId": message.room_id,
            "userId": reader_id,
            "readAt": receipt.read_at.isoformat(),
        }
    )


def user_typing(user_id: str, room_id: str, is_typing: bool) -> ServerEvent:
    return ServerEvent(
        type=EventType.USER_TYPING,
        data={"userId": user_id, "roomId": room_id, "isTyping": is_typing}
    )


def presence_changed(state: PresenceState) -> ServerEvent:
    return ServerEvent(type=EventType.PRESENCE_CHANGED, data=state.public_view())


def room_membership(event_type: EventType, user_id: str, room_id: str, **extra: Any) -> ServerEvent:
    data = {"userId": user_id, "roomId": room_id}
    data.update(extra)
    return ServerEvent(type=event_type, data=data)


def error_event(message: str, code: str, action: Optional[str] = None) -> ServerEvent:
    data = {"message": message, "code": code}
    if action:
        data["action"] = action
    return ServerEvent(type=EventType.ERROR, data=data)
