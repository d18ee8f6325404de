"""
SQLAlchemy ORM models for the chat core.
Defines the persisted entities: UserModel, RoomModel, MessageModel.

Nested collections (mentions, reactions, receipts, edit history) are stored as
JSON documents on the message row; the row is always rewritten as a whole.
"""
from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, Integer, DateTime, Text, Boolean, JSON, Index
)
from db.database import Base


def _utcnow():
    return datetime.now(timezone.utc)


class UserModel(Base):
    """User record; the chat core only reads identity and writes presence."""
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    username = Column(String(50), unique=True, nullable=False, index=True)
    status = Column(String(16), default="offline", nullable=False)
    custom_message = Column(String(200), nullable=True)
    last_seen = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class RoomModel(Base):
    """Room record; ``active_users`` is the persisted membership list."""
    __tablename__ = "rooms"

    id = Column(String(64), primary_key=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    is_private = Column(Boolean, default=False, nullable=False)
    max_users = Column(Integer, default=100, nullable=False)
    created_by = Column(String(64), nullable=True)
    active_users = Column(JSON, default=list, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


class MessageModel(Base):
    """Message row; ``sequence`` is unique and strictly increasing per room."""
    __tablename__ = "messages"

    id = Column(String(64), primary_key=True)
    room_id = Column(String(64), nullable=False, index=True)
    author_id = Column(String(64), nullable=False, index=True)
    content = Column(Text, nullable=False)
    type = Column(String(16), default="text", nullable=False)
    status = Column(String(16), default="sent", nullable=False)
    priority = Column(String(16), default="normal", nullable=False)
    state = Column(String(16), default="active", nullable=False)
    sequence = Column(Integer, nullable=False)
    is_edited = Column(Boolean, default=False, nullable=False)
    edited_at = Column(DateTime(timezone=True), nullable=True)
    edit_history = Column(JSON, default=list, nullable=False)
    thread_id = Column(String(64), nullable=True, index=True)
    reply_to_id = Column(String(64), nullable=True)
    mentions = Column(JSON, default=list, nullable=False)
    reactions = Column(JSON, default=list, nullable=False)
    read_by = Column(JSON, default=list, nullable=False)
    delivered_to = Column(JSON, default=list, nullable=False)
    message_flags = Column(JSON, default=list, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_messages_room_sequence", "room_id", "sequence", unique=True),
        Index("ix_messages_room_created", "room_id", "created_at"),
    )
