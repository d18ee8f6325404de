"""
Pytest configuration and fixtures for testing.
Provides in-memory stores, a recording transport and a wired chat hub.
"""
import os

# Must be set before core.config is imported anywhere
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_chat_core.db")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("SEED_DEFAULT_ROOM", "true")

from datetime import datetime  # noqa: E402
from typing import Dict, List, Optional, Set, Tuple  # noqa: E402
import pytest  # noqa: E402
from core.config import Settings  # noqa: E402
from realtime.entities import Message, MessageState, PresenceStatus, Room, User  # noqa: E402
from realtime.events import ServerEvent  # noqa: E402
from realtime.hub import ChatHub  # noqa: E402
from realtime.rate_limiter import InMemoryRateLimiter, limits_from_settings  # noqa: E402


class FakeMessageStore:
    """In-memory MessageStore; ``fail_creates`` makes the next N creates raise."""

    def __init__(self):
        self.messages: Dict[str, Message] = {}
        self.fail_creates = 0
        self.create_calls = 0

    async def create(self, message: Message) -> Message:
        self.create_calls += 1
        if self.fail_creates > 0:
            self.fail_creates -= 1
            raise RuntimeError("database unavailable")
        self.messages[message.id] = message.model_copy(deep=True)
        return message.model_copy(deep=True)

    async def find_by_id(self, message_id: str) -> Optional[Message]:
        message = self.messages.get(message_id)
        return message.model_copy(deep=True) if message else None

    async def update(self, message: Message) -> Message:
        if message.id not in self.messages:
            raise LookupError(message.id)
        self.messages[message.id] = message.model_copy(deep=True)
        return message.model_copy(deep=True)

    async def find_recent(self, room_id: str, limit: int, include_deleted: bool = False) -> List[Message]:
        rows = sorted(
            (m for m in self.messages.values() if m.room_id == room_id),
            key=lambda m: m.sequence
        )
        if not include_deleted:
            rows = [m for m in rows if m.state == MessageState.ACTIVE]
        return [m.model_copy(deep=True) for m in rows[-limit:]]

    async def last_position(self, room_id: str) -> Tuple[int, Optional[datetime]]:
        rows = [m for m in self.messages.values() if m.room_id == room_id]
        if not rows:
            return 0, None
        return max(m.sequence for m in rows), max(m.created_at for m in rows)

    def in_room(self, room_id: str) -> List[Message]:
        return sorted((m for m in self.messages.values() if m.room_id == room_id), key=lambda m: m.sequence)


class FakeRoomStore:
    def __init__(self, rooms: List[Room] = ()):
        self.rooms: Dict[str, Room] = {room.id: room for room in rooms}

    async def find_by_id(self, room_id: str) -> Optional[Room]:
        room = self.rooms.get(room_id)
        return room.model_copy(deep=True) if room else None

    async def save_active_users(self, room_id: str, active_users: List[str]) -> None:
        self.rooms[room_id].active_users = list(active_users)

    async def find_rooms_for_user(self, user_id: str) -> List[str]:
        return sorted(room_id for room_id, room in self.rooms.items() if user_id in room.active_users)


class FakeUserDirectory:
    def __init__(self, users: List[User] = ()):
        self.users: Dict[str, User] = {user.id: user for user in users}
        self.saved: List[Tuple[str, PresenceStatus]] = []

    async def find_by_id(self, user_id: str) -> Optional[User]:
        return self.users.get(user_id)

    async def find_by_username(self, username: str) -> Optional[User]:
        return next((u for u in self.users.values() if u.username == username), None)

    async def save_presence(self, user_id, status, custom_message, last_seen) -> None:
        self.saved.append((user_id, status))
        user = self.users.get(user_id)
        if user is not None:
            user.status = status
            user.custom_message = custom_message
            user.last_seen = last_seen


class RecordingTransport:
    """Transport that records every frame per connection; ids in ``failing`` raise."""

    def __init__(self):
        self.frames: Dict[str, List[dict]] = {}
        self.failing: Set[str] = set()

    async def send(self, connection_id: str, event: ServerEvent) -> None:
        if connection_id in self.failing:
            raise ConnectionError("socket closed")
        self.frames.setdefault(connection_id, []).append(event.to_wire())

    def types(self, connection_id: str) -> List[str]:
        return [frame["type"] for frame in self.frames.get(connection_id, [])]

    def of_type(self, connection_id: str, event_type: str) -> List[dict]:
        return [frame["data"] for frame in self.frames.get(connection_id, []) if frame["type"] == event_type]

    def clear(self) -> None:
        self.frames.clear()


@pytest.fixture
def settings() -> Settings:
    """Settings with short timers so grace and typing expiry run fast."""
    return Settings(
        presence_grace_seconds=0.05,
        typing_timeout_seconds=0.05,
        persist_retry_backoff_seconds=0.0,
        send_timeout_seconds=0.5,
        rate_limit_backend="memory"
    )


@pytest.fixture
def users() -> FakeUserDirectory:
    return FakeUserDirectory([
        User(id="alice", username="alice"),
        User(id="bob", username="bob"),
        User(id="carol", username="carol"),
    ])


@pytest.fixture
def rooms() -> FakeRoomStore:
    return FakeRoomStore([
        Room(id="general", name="general"),
        Room(id="random", name="random"),
        Room(id="secret", name="secret", is_private=True, active_users=["alice"]),
        Room(id="tiny", name="tiny", max_users=1),
    ])


@pytest.fixture
def messages() -> FakeMessageStore:
    return FakeMessageStore()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
async def hub(settings, messages, rooms, users, transport):
    """A fully wired hub over the in-memory stores."""
    chat_hub = ChatHub(
        settings,
        messages=messages,
        rooms=rooms,
        users=users,
        transport=transport,
        rate_limiter=InMemoryRateLimiter(limits_from_settings(settings), settings.rate_limit_window_seconds)
    )
    yield chat_hub
    await chat_hub.shutdown()
