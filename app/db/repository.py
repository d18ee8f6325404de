"""
Repository layer for database operations.

Each repository implements one of the narrow store protocols the real-time
core consumes. Queries are plain synchronous SQLAlchemy run on a worker thread
(``asyncio.to_thread``) with a short-lived session per call, so a slow write
never blocks the event loop or other rooms.
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker
from db.models import MessageModel, RoomModel, UserModel
from realtime.entities import Message, MessageState, PresenceStatus, Room, User

_MESSAGE_DATETIMES = ("created_at", "updated_at", "edited_at", "deleted_at")


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _message_from_row(row: MessageModel) -> Message:
    message = Message.model_validate(row)
    updates = {name: _aware(getattr(message, name)) for name in _MESSAGE_DATETIMES}
    return message.model_copy(update=updates)


def _message_columns(message: Message) -> Dict[str, Any]:
    """Column values for a message; nested lists are stored as JSON."""
    data = message.model_dump(mode="json")
    for name in _MESSAGE_DATETIMES:
        data[name] = getattr(message, name)
    return data


class _Repository:
    """Base class holding the session factory."""

    def __init__(self, session_factory: sessionmaker):
        """
        Args:
            session_factory: SQLAlchemy sessionmaker bound to the engine
        """
        self.session_factory = session_factory

    async def _run(self, fn, *args):
        return await asyncio.to_thread(self._in_session, fn, *args)

    def _in_session(self, fn, *args):
        db: Session = self.session_factory()
        try:
            return fn(db, *args)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class SqlMessageStore(_Repository):
    """Message persistence."""

    async def create(self, message: Message) -> Message:
        return await self._run(self._create, message)

    async def find_by_id(self, message_id: str) -> Optional[Message]:
        return await self._run(self._find_by_id, message_id)

    async def update(self, message: Message) -> Message:
        return await self._run(self._update, message)

    async def find_recent(self, room_id: str, limit: int, include_deleted: bool = False) -> List[Message]:
        return await self._run(self._find_recent, room_id, limit, include_deleted)

    async def last_position(self, room_id: str) -> Tuple[int, Optional[datetime]]:
        return await self._run(self._last_position, room_id)

    @staticmethod
    def _create(db: Session, message: Message) -> Message:
        row = MessageModel(**_message_columns(message))
        db.add(row)
        db.commit()
        db.refresh(row)
        return _message_from_row(row)

    @staticmethod
    def _find_by_id(db: Session, message_id: str) -> Optional[Message]:
        row = db.query(MessageModel).filter(MessageModel.id == message_id).first()
        return _message_from_row(row) if row else None

    @staticmethod
    def _update(db: Session, message: Message) -> Message:
        row = db.query(MessageModel).filter(MessageModel.id == message.id).first()
        if row is None:
            raise LookupError(f"Message {message.id} not found")
        for name, value in _message_columns(message).items():
            if name in ("id", "room_id", "author_id", "sequence"):
                continue
            setattr(row, name, value)
        db.commit()
        db.refresh(row)
        return _message_from_row(row)

    @staticmethod
    def _find_recent(db: Session, room_id: str, limit: int, include_deleted: bool) -> List[Message]:
        query = db.query(MessageModel).filter(MessageModel.room_id == room_id)
        if not include_deleted:
            query = query.filter(MessageModel.state == MessageState.ACTIVE.value)
        rows = query.order_by(MessageModel.sequence.desc()).limit(limit).all()
        return [_message_from_row(row) for row in reversed(rows)]

    @staticmethod
    def _last_position(db: Session, room_id: str) -> Tuple[int, Optional[datetime]]:
        max_sequence, max_created = db.query(
            func.max(MessageModel.sequence), func.max(MessageModel.created_at)
        ).filter(MessageModel.room_id == room_id).one()
        return (max_sequence or 0), _aware(max_created)


class SqlRoomStore(_Repository):
    """Room lookups and persisted membership."""

    async def find_by_id(self, room_id: str) -> Optional[Room]:
        return await self._run(self._find_by_id, room_id)

    async def save_active_users(self, room_id: str, active_users: List[str]) -> None:
        await self._run(self._save_active_users, room_id, list(active_users))

    async def find_rooms_for_user(self, user_id: str) -> List[str]:
        return await self._run(self._find_rooms_for_user, user_id)

    async def create(self, room: Room) -> Room:
        return await self._run(self._create, room)

    @staticmethod
    def _find_by_id(db: Session, room_id: str) -> Optional[Room]:
        row = db.query(RoomModel).filter(RoomModel.id == room_id).first()
        return Room.model_validate(row) if row else None

    @staticmethod
    def _save_active_users(db: Session, room_id: str, active_users: List[str]) -> None:
        row = db.query(RoomModel).filter(RoomModel.id == room_id).first()
        if row is None:
            raise LookupError(f"Room {room_id} not found")
        row.active_users = active_users
        db.commit()

    @staticmethod
    def _find_rooms_for_user(db: Session, user_id: str) -> List[str]:
        # JSON containment is dialect specific; membership lists are small
        rows = db.query(RoomModel.id, RoomModel.active_users).all()
        return [room_id for room_id, members in rows if user_id in (members or [])]

    @staticmethod
    def _create(db: Session, room: Room) -> Room:
        row = RoomModel(**room.model_dump())
        db.add(row)
        db.commit()
        db.refresh(row)
        return Room.model_validate(row)


class SqlUserDirectory(_Repository):
    """User lookups and presence persistence."""

    async def find_by_id(self, user_id: str) -> Optional[User]:
        return await self._run(self._find_by_id, user_id)

    async def find_by_username(self, username: str) -> Optional[User]:
        return await self._run(self._find_by_username, username)

    async def save_presence(
        self,
        user_id: str,
        status: PresenceStatus,
        custom_message: Optional[str],
        last_seen: datetime
    ) -> None:
        await self._run(self._save_presence, user_id, status, custom_message, last_seen)

    async def create(self, user: User) -> User:
        return await self._run(self._create, user)

    @staticmethod
    def _find_by_id(db: Session, user_id: str) -> Optional[User]:
        row = db.query(UserModel).filter(UserModel.id == user_id).first()
        return User.model_validate(row) if row else None

    @staticmethod
    def _find_by_username(db: Session, username: str) -> Optional[User]:
        row = db.query(UserModel).filter(UserModel.username == username).first()
        return User.model_validate(row) if row else None

    @staticmethod
    def _save_presence(
        db: Session,
        user_id: str,
        status: PresenceStatus,
        custom_message: Optional[str],
        last_seen: datetime
    ) -> None:
        row = db.query(UserModel).filter(UserModel.id == user_id).first()
        if row is None:
            return
        row.status = status.value
        row.custom_message = custom_message
        row.last_seen = last_seen
        db.commit()

    @staticmethod
    def _create(db: Session, user: User) -> User:
        row = UserModel(
            id=user.id,
            username=user.username,
            status=user.status.value,
            custom_message=user.custom_message,
            last_seen=user.last_seen
        )
        db.add(row)
        db.commit()
        db.refresh(row)
        return User.model_validate(row)
