"""
Tests for the SQLAlchemy repositories against a throwaway SQLite database.
"""
import pytest
from sqlalchemy.orm import sessionmaker
from db.database import build_engine, init_db, seed_db
from db.repository import SqlMessageStore, SqlRoomStore, SqlUserDirectory
from realtime.entities import (
    Mention, Message, MessageState, MessageStatus, PresenceStatus, Reaction, Room, User, utcnow
)


@pytest.fixture
def session_factory(tmp_path):
    """Fresh database file per test."""
    engine = build_engine(f"sqlite:///{tmp_path / 'repository.db'}")
    init_db(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


def make_message(sequence: int, room_id: str = "general", **fields) -> Message:
    return Message(
        room_id=room_id,
        author_id="alice",
        content=f"message {sequence}",
        status=MessageStatus.SENT,
        sequence=sequence,
        **fields
    )


class TestSqlMessageStore:
    """Tests for message persistence."""

    @pytest.mark.asyncio
    async def test_create_and_find_keeps_nested_fields(self, session_factory):
        """Test mentions and reactions survive the JSON columns."""
        store = SqlMessageStore(session_factory)
        message = make_message(
            1,
            mentions=[Mention(user_id="bob", username="bob", start_index=0, end_index=4)],
            reactions=[Reaction(emoji="👍", user_id="bob")]
        )
        await store.create(message)

        found = await store.find_by_id(message.id)

        assert found.mentions[0].username == "bob"
        assert found.reactions[0].emoji == "👍"
        assert found.status == MessageStatus.SENT
        assert found.created_at.tzinfo is not None
        assert found.created_at == message.created_at

    @pytest.mark.asyncio
    async def test_find_missing(self, session_factory):
        """Test an unknown id returns None."""
        assert await SqlMessageStore(session_factory).find_by_id("missing") is None

    @pytest.mark.asyncio
    async def test_update_rewrites_mutable_fields_only(self, session_factory):
        """Test updates change content but never the sequence or author."""
        store = SqlMessageStore(session_factory)
        message = await store.create(make_message(1))

        changed = message.model_copy(update={"content": "edited", "sequence": 99, "author_id": "mallory"})
        stored = await store.update(changed)

        assert stored.content == "edited"
        assert stored.sequence == 1
        assert stored.author_id == "alice"

    @pytest.mark.asyncio
    async def test_update_missing_message(self, session_factory):
        """Test updating a message that was never created raises LookupError."""
        with pytest.raises(LookupError):
            await SqlMessageStore(session_factory).update(make_message(1))

    @pytest.mark.asyncio
    async def test_find_recent_and_last_position(self, session_factory):
        """Test recent history is oldest first and skips deleted messages by default."""
        store = SqlMessageStore(session_factory)
        for sequence in range(1, 6):
            state = MessageState.DELETED if sequence == 4 else MessageState.ACTIVE
            await store.create(make_message(sequence, state=state))
        await store.create(make_message(1, room_id="random"))

        recent = await store.find_recent("general", 3)
        with_deleted = await store.find_recent("general", 3, include_deleted=True)
        last_sequence, last_created = await store.last_position("general")

        assert [m.sequence for m in recent] == [2, 3, 5]
        assert [m.sequence for m in with_deleted] == [3, 4, 5]
        assert last_sequence == 5
        assert last_created is not None
        assert await store.last_position("empty") == (0, None)


class TestSqlRoomStore:
    """Tests for rooms and membership."""

    @pytest.mark.asyncio
    async def test_membership_round_trip(self, session_factory):
        """Test membership is saved and listed per user."""
        store = SqlRoomStore(session_factory)
        await store.create(Room(id="general", name="general"))
        await store.create(Room(id="random", name="random", active_users=["bob"]))

        await store.save_active_users("general", ["alice", "bob"])

        assert (await store.find_by_id("general")).active_users == ["alice", "bob"]
        assert await store.find_rooms_for_user("bob") == ["general", "random"]
        assert await store.find_rooms_for_user("carol") == []
        assert await store.find_by_id("missing") is None

    def test_seed_is_idempotent(self, session_factory):
        """Test seeding twice creates the default room once."""
        seed_db(session_factory)
        seed_db(session_factory)

        from db.models import RoomModel
        db = session_factory()
        try:
            assert [room.id for room in db.query(RoomModel).all()] == ["general"]
        finally:
            db.close()


class TestSqlUserDirectory:
    """Tests for user lookups and presence persistence."""

    @pytest.mark.asyncio
    async def test_lookup_and_presence(self, session_factory):
        """Test users are found by id or username and presence is written back."""
        directory = SqlUserDirectory(session_factory)
        await directory.create(User(id="u1", username="alice"))

        assert (await directory.find_by_username("alice")).id == "u1"
        assert await directory.find_by_username("nobody") is None

        await directory.save_presence("u1", PresenceStatus.BUSY, "focus", utcnow())
        user = await directory.find_by_id("u1")
        assert user.status == PresenceStatus.BUSY
        assert user.custom_message == "focus"
