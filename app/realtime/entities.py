"""
Domain entities for the real-time chat core.

Pydantic models shared by the pipeline, the stores and the transport layer.
Persistence rows (db.models) are converted into these with ``from_attributes``.
"""
import enum
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate a new entity identifier."""
    return uuid.uuid4().hex


class MessageType(str, enum.Enum):
    """Kind of message content."""
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    SYSTEM = "system"


class MessagePriority(str, enum.Enum):
    """Priority of a message."""
    NORMAL = "normal"
    URGENT = "urgent"
    SYSTEM = "system"


class MessageStatus(str, enum.Enum):
    """Delivery status of a message."""
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"
    DELETED = "deleted"


class MessageState(str, enum.Enum):
    """Lifecycle tag; deleted messages only come back on explicit request."""
    ACTIVE = "active"
    DELETED = "deleted"


class MessageFlag(str, enum.Enum):
    """Moderation flags carried on a message."""
    FLAGGED = "flagged"
    APPROVED = "approved"
    SPAM = "spam"
    INAPPROPRIATE = "inappropriate"
    UNDER_REVIEW = "under_review"


class PresenceStatus(str, enum.Enum):
    """User presence status."""
    ONLINE = "online"
    AWAY = "away"
    BUSY = "busy"
    OFFLINE = "offline"


_STATUS_RANK = {
    MessageStatus.SENDING: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
}
TERMINAL_STATUSES = {MessageStatus.FAILED, MessageStatus.DELETED}


def advance_status(current: MessageStatus, target: MessageStatus) -> MessageStatus:
    """
    Move a status forward, never backward.

    ``failed`` and ``deleted`` are terminal overrides: once set they stick, and
    asking for them always wins over a progress status.
    """
    if current in TERMINAL_STATUSES:
        return current
    if target in TERMINAL_STATUSES:
        return target
    if _STATUS_RANK[target] > _STATUS_RANK[current]:
        return target
    return current


class Mention(BaseModel):
    """A resolved user mention inside message content."""
    user_id: str
    username: Optional[str] = None
    start_index: Optional[int] = None
    end_index: Optional[int] = None
    notified: bool = False


class Reaction(BaseModel):
    """One (user, emoji) reaction."""
    emoji: str
    user_id: str
    added_at: datetime = Field(default_factory=utcnow)


class ReadReceipt(BaseModel):
    user_id: str
    read_at: datetime = Field(default_factory=utcnow)


class DeliveryReceipt(BaseModel):
    user_id: str
    delivered_at: datetime = Field(default_factory=utcnow)


class EditHistoryEntry(BaseModel):
    edited_at: datetime = Field(default_factory=utcnow)
    edited_by: str
    previous_content: str


class Message(BaseModel):
    """A chat message and its mutable delivery state."""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    room_id: str
    author_id: str
    content: str
    type: MessageType = MessageType.TEXT
    status: MessageStatus = MessageStatus.SENDING
    priority: MessagePriority = MessagePriority.NORMAL
    state: MessageState = MessageState.ACTIVE
    sequence: int = 0
    is_edited: bool = False
    edited_at: Optional[datetime] = None
    edit_history: List[EditHistoryEntry] = Field(default_factory=list)
    thread_id: Optional[str] = None
    reply_to_id: Optional[str] = None
    mentions: List[Mention] = Field(default_factory=list)
    reactions: List[Reaction] = Field(default_factory=list)
    read_by: List[ReadReceipt] = Field(default_factory=list)
    delivered_to: List[DeliveryReceipt] = Field(default_factory=list)
    message_flags: List[MessageFlag] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.state == MessageState.DELETED

    def has_read(self, user_id: str) -> bool:
        return any(r.user_id == user_id for r in self.read_by)

    def has_delivered(self, user_id: str) -> bool:
        return any(d.user_id == user_id for d in self.delivered_to)


class ReactionState(BaseModel):
    """Reactions on a message grouped by emoji."""
    message_id: str
    room_id: str
    reactions: Dict[str, List[str]] = Field(default_factory=dict)
    changed: bool = True

    @classmethod
    def from_message(cls, message: Message, changed: bool = True) -> "ReactionState":
        grouped: Dict[str, List[str]] = {}
        for reaction in message.reactions:
            grouped.setdefault(reaction.emoji, []).append(reaction.user_id)
        return cls(message_id=message.id, room_id=message.room_id, reactions=grouped, changed=changed)


class Room(BaseModel):
    """A room document; ``active_users`` is the persisted membership."""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    name: str
    description: Optional[str] = None
    is_private: bool = False
    max_users: int = 100
    created_by: Optional[str] = None
    active_users: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class User(BaseModel):
    """The slice of a user record the core reads and writes."""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    username: str
    status: PresenceStatus = PresenceStatus.OFFLINE
    custom_message: Optional[str] = None
    last_seen: Optional[datetime] = None


class PresenceState(BaseModel):
    """In-memory presence snapshot for one user."""
    user_id: str
    status: PresenceStatus = PresenceStatus.OFFLINE
    custom_message: Optional[str] = None
    last_seen: datetime = Field(default_factory=utcnow)
    typing: Dict[str, float] = Field(default_factory=dict)  # room_id -> loop-time expiry

    def public_view(self) -> dict:
        """Snapshot safe to push to clients (typing expiries are internal)."""
        return {
            "userId": self.user_id,
            "status": self.status.value,
            "customMessage": self.custom_message,
            "lastSeen": self.last_seen.isoformat(),
        }
