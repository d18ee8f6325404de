"""
Connection Registry: the single owner of live connection state.

Tracks which connections each user holds and which rooms each connection has
joined. The room -> connections index and the connection -> rooms set are
always updated together, and empty room entries are dropped.

All mutations run on the event loop. ``join_room`` is the only coroutine: it
awaits the admission check (room membership) before touching the indexes and
re-validates the connection afterwards, since it may have closed meanwhile.
"""
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set
from core.exceptions import CapacityError, NotFoundError
from core.metrics import websocket_connections_total, websocket_disconnections_total
from realtime.entities import utcnow

logger = logging.getLogger(__name__)

AdmissionCheck = Callable[[str, str], Awaitable[bool]]
CountListener = Callable[[str, int, Iterable[str]], None]


@dataclass
class Connection:
    """One live client connection."""
    connection_id: str
    user_id: str
    connected_at: datetime = field(default_factory=utcnow)
    last_seen: float = 0.0
    rooms: Set[str] = field(default_factory=set)


class ConnectionRegistry:
    """
    Live connection and room-subscription tracking.

    Features:
    - Multiple connections per user (multi-device), capped per user
    - Room subscriptions per connection with a reverse room index
    - Heartbeat timestamps for stale connection detection
    - Connection count changes reported to a listener (presence)
    """

    def __init__(
        self,
        max_connections_per_user: int = 5,
        admission: Optional[AdmissionCheck] = None,
        on_count_changed: Optional[CountListener] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.max_connections_per_user = max_connections_per_user
        self.admission = admission
        self.on_count_changed = on_count_changed
        self._clock = clock

        # {connection_id: Connection}
        self._connections: Dict[str, Connection] = {}
        # {user_id: Set[connection_id]}
        self._user_connections: Dict[str, Set[str]] = defaultdict(set)
        # {room_id: Set[connection_id]}
        self._room_connections: Dict[str, Set[str]] = defaultdict(set)

    def register_connection(self, user_id: str, connection_id: str) -> Connection:
        """
        Register a new connection for a user.

        Idempotent per ``connection_id``.

        Raises:
            CapacityError: the user already holds the maximum number of connections
        """
        existing = self._connections.get(connection_id)
        if existing is not None:
            if existing.user_id != user_id:
                raise ValueError(f"Connection {connection_id} already belongs to another user")
            return existing

        current = len(self._user_connections.get(user_id, ()))
        if current >= self.max_connections_per_user:
            logger.warning(
                f"Connection limit reached for user {user_id}: "
                f"{current}/{self.max_connections_per_user}"
            )
            raise CapacityError(
                "Too many connections",
                details={"limit": self.max_connections_per_user}
            )

        connection = Connection(connection_id=connection_id, user_id=user_id, last_seen=self._clock())
        self._connections[connection_id] = connection
        self._user_connections[user_id].add(connection_id)
        websocket_connections_total.inc()

        count = len(self._user_connections[user_id])
        logger.info(
            f"User {user_id} connected (total connections: {count})",
            extra={"connection_id": connection_id, "user_id": user_id}
        )
        self._notify(user_id, count, ())
        return connection

    async def join_room(self, connection_id: str, room_id: str) -> bool:
        """
        Subscribe a connection to a room.

        Returns:
            True if the connection joined, False if it was already in the room

        Raises:
            NotFoundError: unknown connection (or unknown room, from admission)
            CapacityError: the room is full (from admission)
        """
        connection = self._require(connection_id)
        if room_id in connection.rooms:
            return False

        if self.admission is not None:
            await self.admission(room_id, connection.user_id)

        # The connection may have gone away while admission was pending
        connection = self._connections.get(connection_id)
        if connection is None:
            raise NotFoundError("Connection closed", details={"connection_id": connection_id})
        if room_id in connection.rooms:
            return False

        connection.rooms.add(room_id)
        self._room_connections[room_id].add(connection_id)
        logger.debug(
            f"User {connection.user_id} joined room {room_id}",
            extra={"connection_id": connection_id, "room_id": room_id}
        )
        return True

    def leave_room(self, connection_id: str, room_id: str) -> bool:
        """Unsubscribe a connection from a room; no-op when not joined."""
        connection = self._connections.get(connection_id)
        if connection is None or room_id not in connection.rooms:
            return False
        connection.rooms.discard(room_id)
        self._discard_room_index(room_id, connection_id)
        logger.debug(
            f"User {connection.user_id} left room {room_id}",
            extra={"connection_id": connection_id, "room_id": room_id}
        )
        return True

    def unregister_connection(self, connection_id: str, reason: str = "normal") -> List[str]:
        """
        Remove a connection and every subscription it holds.

        Returns:
            Room ids the connection was in, for the cleanup cascade
        """
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return []

        rooms = sorted(connection.rooms)
        for room_id in rooms:
            self._discard_room_index(room_id, connection_id)
        connection.rooms.clear()

        user_connections = self._user_connections.get(connection.user_id, set())
        user_connections.discard(connection_id)
        remaining = len(user_connections)
        if not user_connections:
            self._user_connections.pop(connection.user_id, None)

        websocket_disconnections_total.labels(reason=reason).inc()
        logger.info(
            f"User {connection.user_id} disconnected (remaining connections: {remaining})",
            extra={"connection_id": connection_id, "user_id": connection.user_id}
        )
        self._notify(connection.user_id, remaining, rooms)
        return rooms

    def _discard_room_index(self, room_id: str, connection_id: str) -> None:
        members = self._room_connections.get(room_id)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self._room_connections[room_id]

    def _require(self, connection_id: str) -> Connection:
        connection = self._connections.get(connection_id)
        if connection is None:
            raise NotFoundError("Unknown connection", details={"connection_id": connection_id})
        return connection

    def _notify(self, user_id: str, count: int, rooms: Iterable[str]) -> None:
        if self.on_count_changed is not None:
            self.on_count_changed(user_id, count, rooms)

    # Queries

    def get_connections_for_room(self, room_id: str) -> Set[str]:
        return set(self._room_connections.get(room_id, ()))

    def get_rooms_for_connection(self, connection_id: str) -> Set[str]:
        connection = self._connections.get(connection_id)
        return set(connection.rooms) if connection else set()

    def get_connections_for_user(self, user_id: str) -> Set[str]:
        return set(self._user_connections.get(user_id, ()))

    def get_rooms_for_user(self, user_id: str) -> Set[str]:
        """Rooms any of the user's live connections has joined."""
        rooms: Set[str] = set()
        for connection_id in self._user_connections.get(user_id, ()):
            rooms |= self._connections[connection_id].rooms
        return rooms

    def get_user_for_connection(self, connection_id: str) -> Optional[str]:
        connection = self._connections.get(connection_id)
        return connection.user_id if connection else None

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def connection_count(self, user_id: str) -> int:
        return len(self._user_connections.get(user_id, ()))

    def is_user_in_room(self, user_id: str, room_id: str) -> bool:
        return any(
            self._connections[cid].user_id == user_id
            for cid in self._room_connections.get(room_id, ())
        )

    def touch(self, connection_id: str) -> None:
        """Record liveness (pong or any inbound frame)."""
        connection = self._connections.get(connection_id)
        if connection is not None:
            connection.last_seen = self._clock()

    def get_stale_connections(self, timeout_seconds: float) -> List[str]:
        """Connections that have been silent for longer than ``timeout_seconds``."""
        now = self._clock()
        return [
            cid for cid, connection in self._connections.items()
            if now - connection.last_seen > timeout_seconds
        ]

    def all_connections(self) -> List[str]:
        return list(self._connections)

    def stats(self) -> Dict[str, int]:
        return {
            "connections": len(self._connections),
            "users": len(self._user_connections),
            "rooms": len(self._room_connections),
            "subscriptions": sum(len(c) for c in self._room_connections.values()),
        }
