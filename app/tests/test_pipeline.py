"""
Unit tests for the message pipeline.
Tests validation, sequencing, persistence retries and message mutations.
"""
import asyncio
from datetime import timedelta
import pytest
from core.exceptions import (
    AuthorizationError, DeliveryFailed, EditWindowExpired, NotFoundError,
    RateLimitExceeded, ValidationError
)
from realtime.entities import MessageState, MessageStatus, utcnow
from realtime.membership import RoomMembershipManager
from realtime.pipeline import MessagePipeline
from realtime.rate_limiter import InMemoryRateLimiter, limits_from_settings


class MutableClock:
    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now


@pytest.fixture
def accepted():
    return []


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def pipeline(settings, messages, rooms, users, accepted, clock):
    rooms.rooms["general"].active_users = ["alice", "bob"]
    return MessagePipeline(
        settings,
        messages,
        RoomMembershipManager(rooms),
        users,
        InMemoryRateLimiter(limits_from_settings(settings), settings.rate_limit_window_seconds),
        on_accepted=lambda message, origin: accepted.append((message.sequence, origin)),
        clock=clock
    )


class TestSubmit:
    """Tests for accepting new messages."""

    @pytest.mark.asyncio
    async def test_submit_persists_with_next_sequence(self, pipeline, messages, accepted):
        """Test accepted messages are persisted as sent with increasing sequence."""
        first = await pipeline.submit("alice", "general", "hello", origin="c1")
        second = await pipeline.submit("bob", "general", "hi", origin="c2")

        assert (first.sequence, second.sequence) == (1, 2)
        assert first.status == MessageStatus.SENT
        assert second.created_at >= first.created_at
        assert accepted == [(1, "c1"), (2, "c2")]
        assert [m.id for m in messages.in_room("general")] == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_concurrent_submits_keep_acceptance_order(self, pipeline, accepted):
        """Test concurrent submissions get gap-free sequences handed off in order."""
        results = await asyncio.gather(*(
            pipeline.submit("alice" if i % 2 else "bob", "general", f"message {i}")
            for i in range(20)
        ))

        assert sorted(m.sequence for m in results) == list(range(1, 21))
        assert [sequence for sequence, _ in accepted] == list(range(1, 21))

    @pytest.mark.asyncio
    async def test_non_member_is_rejected(self, pipeline, messages):
        """Test a user outside the room cannot post."""
        with pytest.raises(AuthorizationError):
            await pipeline.submit("carol", "general", "hello")
        assert messages.create_calls == 0

    @pytest.mark.asyncio
    async def test_unknown_room(self, pipeline):
        """Test posting to a missing room raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await pipeline.submit("alice", "nowhere", "hello")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", ["", "   ", "x" * 4001])
    async def test_invalid_content_is_not_persisted(self, pipeline, messages, accepted, content):
        """Test empty, blank and oversized content never reaches the store."""
        with pytest.raises(ValidationError):
            await pipeline.submit("alice", "general", content)
        assert messages.create_calls == 0
        assert accepted == []

    @pytest.mark.asyncio
    async def test_content_at_limit_is_accepted(self, pipeline):
        """Test content of exactly the maximum length is accepted."""
        message = await pipeline.submit("alice", "general", "x" * 4000)
        assert len(message.content) == 4000

    @pytest.mark.asyncio
    async def test_unknown_type_is_rejected(self, pipeline):
        """Test an unknown message type fails validation."""
        with pytest.raises(ValidationError):
            await pipeline.submit("alice", "general", "hello", type="video")

    @pytest.mark.asyncio
    async def test_rate_limit(self, settings, messages, rooms, users):
        """Test the message budget is enforced per user."""
        rooms.rooms["general"].active_users = ["alice"]
        limits = dict(limits_from_settings(settings), message=2)
        pipeline = MessagePipeline(
            settings, messages, RoomMembershipManager(rooms), users,
            InMemoryRateLimiter(limits, 60)
        )
        await pipeline.submit("alice", "general", "one")
        await pipeline.submit("alice", "general", "two")

        with pytest.raises(RateLimitExceeded):
            await pipeline.submit("alice", "general", "three")
        assert len(messages.messages) == 2


class TestPersistenceFailure:
    """Tests for the single persistence retry."""

    @pytest.mark.asyncio
    async def test_one_failure_is_retried(self, pipeline, messages, accepted):
        """Test a transient store failure is retried once and succeeds."""
        messages.fail_creates = 1
        message = await pipeline.submit("alice", "general", "hello")

        assert messages.create_calls == 2
        assert message.status == MessageStatus.SENT
        assert accepted == [(1, None)]

    @pytest.mark.asyncio
    async def test_two_failures_report_failed_message(self, pipeline, messages, accepted):
        """Test a persistent store failure raises DeliveryFailed with a failed message."""
        messages.fail_creates = 2
        with pytest.raises(DeliveryFailed) as exc_info:
            await pipeline.submit("alice", "general", "hello")

        assert exc_info.value.failed_message.status == MessageStatus.FAILED
        assert exc_info.value.failed_message.content == "hello"
        assert accepted == []

    @pytest.mark.asyncio
    async def test_sequence_continues_after_failure(self, pipeline, messages):
        """Test a failed message does not consume a sequence number."""
        messages.fail_creates = 2
        with pytest.raises(DeliveryFailed):
            await pipeline.submit("alice", "general", "lost")

        message = await pipeline.submit("alice", "general", "kept")
        assert message.sequence == 1


class TestMentionsAndThreads:
    """Tests for mention resolution and reply threading."""

    @pytest.mark.asyncio
    async def test_username_mentions_are_resolved(self, pipeline):
        """Test @username tokens resolve to users with their positions."""
        message = await pipeline.submit("alice", "general", "hey @bob and @nobody")

        assert [m.user_id for m in message.mentions] == ["bob"]
        assert message.mentions[0].start_index == 4
        assert message.mentions[0].end_index == 8

    @pytest.mark.asyncio
    async def test_invalid_explicit_mentions_are_dropped(self, pipeline):
        """Test unknown user ids in mentions are silently dropped."""
        message = await pipeline.submit("alice", "general", "hello", mentions=["bob", "ghost"])
        assert [m.user_id for m in message.mentions] == ["bob"]

    @pytest.mark.asyncio
    async def test_too_many_mentions(self, pipeline):
        """Test more than ten explicit mentions fail validation."""
        with pytest.raises(ValidationError):
            await pipeline.submit("alice", "general", "hello", mentions=[f"user{i}" for i in range(11)])

    @pytest.mark.asyncio
    async def test_private_room_mentions_members_only(self, pipeline, rooms):
        """Test non-members cannot be mentioned in a private room."""
        message = await pipeline.submit("alice", "secret", "@bob @alice")
        assert [m.user_id for m in message.mentions] == ["alice"]

    @pytest.mark.asyncio
    async def test_reply_inherits_thread(self, pipeline):
        """Test a reply without thread id joins the parent's thread."""
        root = await pipeline.submit("alice", "general", "root")
        reply = await pipeline.submit("bob", "general", "reply", reply_to_id=root.id)
        nested = await pipeline.submit("alice", "general", "nested", reply_to_id=reply.id)

        assert reply.thread_id == root.id
        assert nested.thread_id == root.id
        assert nested.reply_to_id == reply.id

    @pytest.mark.asyncio
    async def test_reply_to_deleted_message(self, pipeline):
        """Test replying to a deleted message is rejected."""
        root = await pipeline.submit("alice", "general", "root")
        await pipeline.delete(root.id, "alice")

        with pytest.raises(NotFoundError):
            await pipeline.submit("bob", "general", "reply", reply_to_id=root.id)


class TestEditAndDelete:
    """Tests for edits and the soft-delete lifecycle."""

    @pytest.mark.asyncio
    async def test_edit_keeps_history(self, pipeline):
        """Test an edit replaces content and records the previous version."""
        message = await pipeline.submit("alice", "general", "helo")
        edited = await pipeline.edit(message.id, "alice", "hello")

        assert edited.content == "hello"
        assert edited.is_edited
        assert [entry.previous_content for entry in edited.edit_history] == ["helo"]

    @pytest.mark.asyncio
    async def test_only_author_can_edit(self, pipeline):
        """Test another user cannot edit a message."""
        message = await pipeline.submit("alice", "general", "hello")
        with pytest.raises(AuthorizationError):
            await pipeline.edit(message.id, "bob", "hijacked")

    @pytest.mark.asyncio
    async def test_edit_window(self, pipeline, clock):
        """Test edits are refused once the window has passed."""
        message = await pipeline.submit("alice", "general", "hello")
        clock.now += timedelta(minutes=61)

        with pytest.raises(EditWindowExpired):
            await pipeline.edit(message.id, "alice", "too late")

    @pytest.mark.asyncio
    async def test_delete_and_restore(self, pipeline):
        """Test delete is idempotent and restore brings the message back as sent."""
        message = await pipeline.submit("alice", "general", "hello")

        deleted = await pipeline.delete(message.id, "alice")
        again = await pipeline.delete(message.id, "alice")
        assert deleted.state == MessageState.DELETED
        assert deleted.status == MessageStatus.DELETED
        assert again.deleted_at == deleted.deleted_at
        assert await pipeline.recent("general") == []
        assert len(await pipeline.recent("general", include_deleted=True)) == 1

        restored = await pipeline.restore(message.id, "alice")
        assert restored.state == MessageState.ACTIVE
        assert restored.status == MessageStatus.SENT
        assert restored.deleted_at is None

    @pytest.mark.asyncio
    async def test_only_author_can_delete(self, pipeline):
        """Test another user cannot delete a message."""
        message = await pipeline.submit("alice", "general", "hello")
        with pytest.raises(AuthorizationError):
            await pipeline.delete(message.id, "bob")

    @pytest.mark.asyncio
    async def test_edit_deleted_message(self, pipeline):
        """Test a deleted message cannot be edited."""
        message = await pipeline.submit("alice", "general", "hello")
        await pipeline.delete(message.id, "alice")
        with pytest.raises(NotFoundError):
            await pipeline.edit(message.id, "alice", "again")


class TestReactionsAndReceipts:
    """Tests for reactions, delivery and read receipts."""

    @pytest.mark.asyncio
    async def test_duplicate_reaction_is_noop(self, pipeline):
        """Test the same user and emoji is stored once."""
        message = await pipeline.submit("alice", "general", "hello")

        first = await pipeline.add_reaction(message.id, "bob", "👍")
        second = await pipeline.add_reaction(message.id, "bob", "👍")

        assert first.changed and not second.changed
        assert second.reactions == {"👍": ["bob"]}

    @pytest.mark.asyncio
    async def test_concurrent_reactions_are_not_lost(self, pipeline):
        """Test concurrent reactions from several users all persist."""
        message = await pipeline.submit("alice", "general", "hello")
        emojis = ["👍", "🎉", "❤️", "😂"]
        await asyncio.gather(*(pipeline.add_reaction(message.id, user, emoji)
                               for user in ("alice", "bob") for emoji in emojis))

        stored = await pipeline.get_message(message.id)
        assert len(stored.reactions) == 8

    @pytest.mark.asyncio
    async def test_reaction_limit(self, pipeline, settings):
        """Test a message accepts at most the configured number of reactions."""
        message = await pipeline.submit("alice", "general", "hello")
        for i in range(settings.max_reactions_per_message):
            await pipeline.add_reaction(message.id, "bob", f"e{i}")

        with pytest.raises(ValidationError):
            await pipeline.add_reaction(message.id, "alice", "one-too-many")

    @pytest.mark.asyncio
    async def test_reaction_requires_membership(self, pipeline):
        """Test non-members cannot react."""
        message = await pipeline.submit("alice", "general", "hello")
        with pytest.raises(AuthorizationError):
            await pipeline.add_reaction(message.id, "carol", "👍")

    @pytest.mark.asyncio
    async def test_remove_reaction(self, pipeline):
        """Test removing a reaction, then removing it again."""
        message = await pipeline.submit("alice", "general", "hello")
        await pipeline.add_reaction(message.id, "bob", "👍")

        assert await pipeline.remove_reaction(message.id, "bob", "👍") is True
        assert await pipeline.remove_reaction(message.id, "bob", "👍") is False

    @pytest.mark.asyncio
    async def test_remove_reaction_requires_membership(self, pipeline):
        """Test non-members cannot remove reactions."""
        message = await pipeline.submit("alice", "general", "hello")
        await pipeline.add_reaction(message.id, "bob", "👍")

        with pytest.raises(AuthorizationError):
            await pipeline.remove_reaction(message.id, "carol", "👍")

    @pytest.mark.asyncio
    async def test_remove_reaction_on_deleted_message(self, pipeline):
        """Test reactions on a deleted message are frozen."""
        message = await pipeline.submit("alice", "general", "hello")
        await pipeline.add_reaction(message.id, "bob", "👍")
        await pipeline.delete(message.id, "alice")

        with pytest.raises(NotFoundError):
            await pipeline.remove_reaction(message.id, "bob", "👍")
        stored = await pipeline.get_message(message.id)
        assert [(r.user_id, r.emoji) for r in stored.reactions] == [("bob", "👍")]

    @pytest.mark.asyncio
    async def test_mark_read_backfills_delivery(self, pipeline):
        """Test a read receipt implies delivery and is recorded once."""
        message = await pipeline.submit("alice", "general", "hello")

        assert await pipeline.mark_read(message.id, "bob") is True
        assert await pipeline.mark_read(message.id, "bob") is False

        stored = await pipeline.get_message(message.id)
        assert stored.has_delivered("bob")
        assert [r.user_id for r in stored.read_by] == ["bob"]
        assert stored.status == MessageStatus.READ

    @pytest.mark.asyncio
    async def test_delivery_never_regresses_read_status(self, pipeline):
        """Test a late delivery receipt leaves a read message as read."""
        message = await pipeline.submit("alice", "general", "hello")
        await pipeline.mark_read(message.id, "bob")

        assert await pipeline.mark_delivered_many(message.id, ["bob", "carol"]) == ["carol"]
        stored = await pipeline.get_message(message.id)
        assert stored.status == MessageStatus.READ

    @pytest.mark.asyncio
    async def test_history_limit_is_clamped(self, pipeline, settings):
        """Test history returns the newest messages, oldest first, within the max."""
        for i in range(5):
            await pipeline.submit("alice", "general", f"m{i}")

        recent = await pipeline.recent("general", limit=2)
        assert [m.content for m in recent] == ["m3", "m4"]
        assert len(await pipeline.recent("general", limit=10_000)) == 5

    @pytest.mark.asyncio
    async def test_mark_delivered_once(self, pipeline):
        """Test a delivery receipt is appended once and advances the status."""
        message = await pipeline.submit("alice", "general", "hello")

        assert await pipeline.mark_delivered(message.id, "bob") is True
        assert await pipeline.mark_delivered(message.id, "bob") is False

        stored = await pipeline.get_message(message.id)
        assert [d.user_id for d in stored.delivered_to] == ["bob"]
        assert stored.status == MessageStatus.DELIVERED
