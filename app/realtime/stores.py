"""
Narrow persistence interfaces, one per consumer.

The SQLAlchemy repositories in ``db.repository`` implement these; tests use
in-memory fakes.
"""
from datetime import datetime
from typing import List, Optional, Protocol, Tuple
from realtime.entities import Message, PresenceStatus, Room, User


class MessageStore(Protocol):
    async def create(self, message: Message) -> Message: ...

    async def find_by_id(self, message_id: str) -> Optional[Message]: ...

    async def update(self, message: Message) -> Message: ...

    async def find_recent(self, room_id: str, limit: int, include_deleted: bool = False) -> List[Message]:
        """Newest ``limit`` messages of a room, returned oldest first."""
        ...

    async def last_position(self, room_id: str) -> Tuple[int, Optional[datetime]]:
        """Highest sequence and newest ``created_at`` persisted for a room."""
        ...


class RoomStore(Protocol):
    async def find_by_id(self, room_id: str) -> Optional[Room]: ...

    async def save_active_users(self, room_id: str, active_users: List[str]) -> None: ...

    async def find_rooms_for_user(self, user_id: str) -> List[str]: ...


class UserDirectory(Protocol):
    async def find_by_id(self, user_id: str) -> Optional[User]: ...

    async def find_by_username(self, username: str) -> Optional[User]: ...

    async def save_presence(
        self,
        user_id: str,
        status: PresenceStatus,
        custom_message: Optional[str],
        last_seen: datetime
    ) -> None: ...
