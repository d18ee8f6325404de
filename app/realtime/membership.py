"""
Room Membership Manager.

Owns the persisted "belongs to room" list (``Room.active_users``), which is
distinct from live presence: a user can belong to a room while offline.
Mutations of one room are serialised with a per-room lock because each is a
read-modify-write across an await.
"""
import asyncio
import logging
from collections import defaultdict
from typing import Dict, List
from core.audit_logger import audit_logger
from core.exceptions import CapacityError, NotFoundError
from realtime.entities import Room
from realtime.stores import RoomStore

logger = logging.getLogger(__name__)


class RoomMembershipManager:
    def __init__(self, rooms: RoomStore):
        self.rooms = rooms
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get_room(self, room_id: str) -> Room:
        """
        Raises:
            NotFoundError: unknown room
        """
        room = await self.rooms.find_by_id(room_id)
        if room is None:
            raise NotFoundError("Room not found", details={"room_id": room_id})
        return room

    async def add_user(self, room_id: str, user_id: str) -> bool:
        """
        Add a user to a room's persisted membership.

        Already being a member is success and never duplicates the entry;
        the capacity check only applies to newcomers.

        Raises:
            NotFoundError: unknown room
            CapacityError: the room holds ``max_users`` members
        """
        async with self._locks[room_id]:
            room = await self.get_room(room_id)
            if user_id in room.active_users:
                return True
            if len(room.active_users) >= room.max_users:
                audit_logger.log_capacity_rejected(user_id, f"room:{room_id}", "Room is full")
                raise CapacityError(
                    "Room is full",
                    details={"room_id": room_id, "max_users": room.max_users}
                )
            await self.rooms.save_active_users(room_id, room.active_users + [user_id])
        logger.info(f"User {user_id} added to room {room_id}", extra={"room_id": room_id})
        return True

    async def remove_user(self, room_id: str, user_id: str) -> bool:
        """Remove a user from a room; False when the user was not a member."""
        async with self._locks[room_id]:
            room = await self.get_room(room_id)
            if user_id not in room.active_users:
                return False
            await self.rooms.save_active_users(
                room_id, [member for member in room.active_users if member != user_id]
            )
        logger.info(f"User {user_id} removed from room {room_id}", extra={"room_id": room_id})
        return True

    async def is_member(self, room_id: str, user_id: str) -> bool:
        room = await self.get_room(room_id)
        return user_id in room.active_users

    async def get_user_rooms(self, user_id: str) -> List[str]:
        return await self.rooms.find_rooms_for_user(user_id)
