"""
Message Pipeline: validation, persistence and sequencing of chat messages,
plus every later mutation of a message (edits, reactions, receipts and the
soft-delete lifecycle).

Suspension points and the invariants they protect:
- ``submit`` holds the room's sequencing lock across persistence and the
  ``on_accepted`` hook, so sequence numbers, ``created_at`` order and the
  broadcaster hand-off order all equal acceptance order.
- Mutations of existing messages hold the room's mutation lock across the
  read-modify-write, so concurrent reactions or receipts never lose updates.
"""
import asyncio
import logging
import re
import time
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from opentelemetry import trace
from core.audit_logger import audit_logger
from core.config import Settings
from core.exceptions import (
    AuthorizationError, DeliveryFailed, EditWindowExpired, NotFoundError, ValidationError
)
from core.metrics import (
    message_processing_duration_seconds, messages_accepted_total, messages_failed_total
)
from realtime.entities import (
    DeliveryReceipt, EditHistoryEntry, Mention, Message, MessagePriority, MessageState,
    MessageStatus, MessageType, Reaction, ReactionState, ReadReceipt, Room,
    advance_status, utcnow
)
from realtime.membership import RoomMembershipManager
from realtime.rate_limiter import RateLimiter
from realtime.stores import MessageStore, UserDirectory

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

MENTION_PATTERN = re.compile(r"@(\w{1,50})")

AcceptedHook = Callable[[Message, Optional[str]], None]


class MessagePipeline:
    """
    Args:
        settings: limits and retry backoff
        messages: message persistence
        membership: room lookups and membership checks
        users: user lookups for mention resolution
        rate_limiter: per-user throttling
        on_accepted: called as ``hook(message, origin)`` inside the room's
            sequencing section once the message is persisted
        clock: source of ``created_at`` timestamps
    """

    def __init__(
        self,
        settings: Settings,
        messages: MessageStore,
        membership: RoomMembershipManager,
        users: UserDirectory,
        rate_limiter: RateLimiter,
        on_accepted: Optional[AcceptedHook] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.settings = settings
        self.messages = messages
        self.membership = membership
        self.users = users
        self.rate_limiter = rate_limiter
        self.on_accepted = on_accepted
        self._clock = clock

        self._sequence_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._mutation_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        # {room_id: (last sequence, last created_at)}
        self._positions: Dict[str, Tuple[int, Optional[datetime]]] = {}

    # Submission

    async def submit(
        self,
        author_id: str,
        room_id: str,
        content: str,
        type: str = MessageType.TEXT.value,
        thread_id: Optional[str] = None,
        reply_to_id: Optional[str] = None,
        mentions: Optional[Sequence[str]] = None,
        priority: str = MessagePriority.NORMAL.value,
        origin: Optional[str] = None
    ) -> Message:
        """
        Validate, persist and hand off a new message.

        Args:
            origin: opaque tag passed back to ``on_accepted`` (the originating
                connection id)

        Returns:
            The persisted message, status ``sent``

        Raises:
            AuthorizationError: author is not a room member
            RateLimitExceeded: author exceeded the message budget
            ValidationError: bad content, type, priority or too many mentions
            NotFoundError: unknown room, reply target or thread root
            DeliveryFailed: persistence failed after one retry
        """
        started = time.perf_counter()
        with tracer.start_as_current_span("pipeline.submit") as span:
            span.set_attribute("chat.room_id", room_id)
            room = await self.membership.get_room(room_id)
            if author_id not in room.active_users:
                audit_logger.log_authorization_denied(author_id, f"room:{room_id}", "sendMessage", "Not a room member")
                raise AuthorizationError("Not a member of this room", details={"room_id": room_id})

            await self.rate_limiter.acquire(author_id, "message")

            content = self._validate_content(content)
            message_type = self._parse_enum(MessageType, type, "type")
            message_priority = self._parse_enum(MessagePriority, priority, "priority")
            explicit = list(dict.fromkeys(mentions or []))
            if len(explicit) > self.settings.max_mentions_per_message:
                raise ValidationError(
                    "Too many mentions",
                    details={"max_mentions": self.settings.max_mentions_per_message}
                )

            resolved_mentions = await self._resolve_mentions(room, content, explicit)
            thread_id, reply_to_id = await self._resolve_thread(room_id, thread_id, reply_to_id)

            async with self._sequence_locks[room_id]:
                last_sequence, last_created = await self._position(room_id)
                now = self._clock()
                if last_created is not None and now < last_created:
                    now = last_created
                message = Message(
                    room_id=room_id,
                    author_id=author_id,
                    content=content,
                    type=message_type,
                    priority=message_priority,
                    status=MessageStatus.SENT,
                    sequence=last_sequence + 1,
                    thread_id=thread_id,
                    reply_to_id=reply_to_id,
                    mentions=resolved_mentions,
                    created_at=now,
                    updated_at=now
                )
                stored = await self._persist(message)
                self._positions[room_id] = (stored.sequence, stored.created_at)
                if self.on_accepted is not None:
                    self.on_accepted(stored, origin)

            span.set_attribute("chat.sequence", stored.sequence)
        messages_accepted_total.labels(type=stored.type.value).inc()
        message_processing_duration_seconds.labels(status="sent").observe(time.perf_counter() - started)
        logger.info(
            f"Message {stored.id} accepted (sequence {stored.sequence})",
            extra={"room_id": room_id, "user_id": author_id, "message_id": stored.id}
        )
        return stored

    async def _position(self, room_id: str) -> Tuple[int, Optional[datetime]]:
        position = self._positions.get(room_id)
        if position is None:
            position = await self.messages.last_position(room_id)
            self._positions[room_id] = position
        return position

    async def _persist(self, message: Message) -> Message:
        """Create with one retry; afterwards the message is returned as failed."""
        try:
            return await self.messages.create(message)
        except Exception as e:
            logger.warning(
                f"Persisting message {message.id} failed, retrying: {e}",
                extra={"room_id": message.room_id}
            )
        await asyncio.sleep(self.settings.persist_retry_backoff_seconds)
        try:
            return await self.messages.create(message)
        except Exception as e:
            logger.error(
                f"Persisting message {message.id} failed after retry: {e}",
                extra={"room_id": message.room_id}
            )
            messages_failed_total.inc()
            failed = message.model_copy(update={"status": MessageStatus.FAILED})
            raise DeliveryFailed("Message could not be saved", failed_message=failed) from e

    def _validate_content(self, content: Optional[str]) -> str:
        if content is None or not content.strip():
            raise ValidationError("Message content cannot be empty")
        if len(content) > self.settings.max_message_length:
            raise ValidationError(
                "Message content too long",
                details={"max_length": self.settings.max_message_length}
            )
        return content

    @staticmethod
    def _parse_enum(enum_cls, value, field_name: str):
        try:
            return enum_cls(value)
        except ValueError:
            raise ValidationError(f"Invalid message {field_name}: {value}") from None

    async def _resolve_mentions(self, room: Room, content: str, explicit: List[str]) -> List[Mention]:
        """
        Resolve explicit user ids and ``@username`` tokens.

        A mention survives only if the user exists and may be mentioned here:
        any existing user in a public room, members only in a private room.
        Anything else is dropped without error.
        """
        resolved: Dict[str, Mention] = {}

        for user_id in explicit:
            user = await self.users.find_by_id(user_id)
            if user is not None and self._may_mention(room, user.id):
                resolved[user.id] = Mention(user_id=user.id, username=user.username)

        for match in MENTION_PATTERN.finditer(content):
            if len(resolved) >= self.settings.max_mentions_per_message:
                break
            user = await self.users.find_by_username(match.group(1))
            if user is None or not self._may_mention(room, user.id):
                continue
            mention = resolved.get(user.id)
            if mention is None:
                mention = resolved[user.id] = Mention(user_id=user.id, username=user.username)
            if mention.start_index is None:
                mention.start_index = match.start()
                mention.end_index = match.end()

        return list(resolved.values())[:self.settings.max_mentions_per_message]

    @staticmethod
    def _may_mention(room: Room, user_id: str) -> bool:
        return not room.is_private or user_id in room.active_users

    async def _resolve_thread(
        self,
        room_id: str,
        thread_id: Optional[str],
        reply_to_id: Optional[str]
    ) -> Tuple[Optional[str], Optional[str]]:
        if reply_to_id is not None:
            parent = await self._active_in_room(reply_to_id, room_id, "Reply target")
            if thread_id is None:
                thread_id = parent.thread_id or parent.id
        if thread_id is not None:
            await self._active_in_room(thread_id, room_id, "Thread")
        return thread_id, reply_to_id

    async def _active_in_room(self, message_id: str, room_id: str, label: str) -> Message:
        message = await self.messages.find_by_id(message_id)
        if message is None or message.room_id != room_id or message.is_deleted:
            raise NotFoundError(f"{label} not found", details={"message_id": message_id})
        return message

    # Mutations

    async def _load(self, message_id: str) -> Message:
        message = await self.messages.find_by_id(message_id)
        if message is None:
            raise NotFoundError("Message not found", details={"message_id": message_id})
        return message

    async def _room_of(self, message_id: str) -> str:
        return (await self._load(message_id)).room_id

    async def _require_member(self, room_id: str, user_id: str, action: str) -> None:
        if not await self.membership.is_member(room_id, user_id):
            audit_logger.log_authorization_denied(user_id, f"room:{room_id}", action, "Not a room member")
            raise AuthorizationError("Not a member of this room", details={"room_id": room_id})

    async def edit(self, message_id: str, editor_id: str, new_content: str) -> Message:
        """
        Replace a message's content, keeping the previous version in
        ``edit_history``.

        Raises:
            NotFoundError: unknown or deleted message
            AuthorizationError: editor is not the author
            EditWindowExpired: the message is older than the edit window
            ValidationError: bad content
        """
        room_id = await self._room_of(message_id)
        async with self._mutation_locks[room_id]:
            message = await self._load(message_id)
            if message.is_deleted:
                raise NotFoundError("Message not found", details={"message_id": message_id})
            if message.author_id != editor_id:
                audit_logger.log_authorization_denied(editor_id, f"message:{message_id}", "editMessage", "Not the author")
                raise AuthorizationError("Only the author can edit this message")
            now = self._clock()
            if now - message.created_at > timedelta(minutes=self.settings.edit_window_minutes):
                raise EditWindowExpired(
                    "Edit window has expired",
                    details={"edit_window_minutes": self.settings.edit_window_minutes}
                )
            content = self._validate_content(new_content)

            message.edit_history.append(EditHistoryEntry(
                edited_at=now, edited_by=editor_id, previous_content=message.content
            ))
            message.content = content
            message.is_edited = True
            message.edited_at = now
            message.updated_at = now
            return await self.messages.update(message)

    async def delete(self, message_id: str, user_id: str) -> Message:
        """Soft-delete; idempotent for an already deleted message."""
        room_id = await self._room_of(message_id)
        async with self._mutation_locks[room_id]:
            message = await self._load(message_id)
            if message.author_id != user_id:
                audit_logger.log_authorization_denied(user_id, f"message:{message_id}", "deleteMessage", "Not the author")
                raise AuthorizationError("Only the author can delete this message")
            if message.is_deleted:
                return message
            now = self._clock()
            message.state = MessageState.DELETED
            message.status = advance_status(message.status, MessageStatus.DELETED)
            message.deleted_at = now
            message.updated_at = now
            return await self.messages.update(message)

    async def restore(self, message_id: str, user_id: str) -> Message:
        """Re-activate a soft-deleted message as ``sent``."""
        room_id = await self._room_of(message_id)
        async with self._mutation_locks[room_id]:
            message = await self._load(message_id)
            if message.author_id != user_id:
                audit_logger.log_authorization_denied(user_id, f"message:{message_id}", "restoreMessage", "Not the author")
                raise AuthorizationError("Only the author can restore this message")
            if not message.is_deleted:
                return message
            message.state = MessageState.ACTIVE
            message.status = MessageStatus.SENT
            message.deleted_at = None
            message.updated_at = self._clock()
            return await self.messages.update(message)

    async def add_reaction(self, message_id: str, user_id: str, emoji: str) -> ReactionState:
        """
        Add a reaction; adding the same (user, emoji) twice is a no-op.

        Raises:
            ValidationError: empty emoji or the message already has the maximum
                number of reactions
        """
        if not emoji or not emoji.strip() or len(emoji) > 32:
            raise ValidationError("Invalid emoji")
        room_id = await self._room_of(message_id)
        await self._require_member(room_id, user_id, "addReaction")
        async with self._mutation_locks[room_id]:
            message = await self._load(message_id)
            if message.is_deleted:
                raise NotFoundError("Message not found", details={"message_id": message_id})
            if any(r.user_id == user_id and r.emoji == emoji for r in message.reactions):
                return ReactionState.from_message(message, changed=False)
            if len(message.reactions) >= self.settings.max_reactions_per_message:
                raise ValidationError(
                    "Too many reactions on this message",
                    details={"max_reactions": self.settings.max_reactions_per_message}
                )
            message.reactions.append(Reaction(emoji=emoji, user_id=user_id, added_at=self._clock()))
            message.updated_at = self._clock()
            stored = await self.messages.update(message)
        return ReactionState.from_message(stored)

    async def remove_reaction(self, message_id: str, user_id: str, emoji: str) -> bool:
        room_id = await self._room_of(message_id)
        await self._require_member(room_id, user_id, "removeReaction")
        async with self._mutation_locks[room_id]:
            message = await self._load(message_id)
            if message.is_deleted:
                raise NotFoundError("Message not found", details={"message_id": message_id})
            remaining = [r for r in message.reactions if not (r.user_id == user_id and r.emoji == emoji)]
            if len(remaining) == len(message.reactions):
                return False
            message.reactions = remaining
            message.updated_at = self._clock()
            await self.messages.update(message)
        return True

    async def mark_delivered(self, message_id: str, user_id: str) -> bool:
        """Record delivery to a user once; False when already recorded."""
        return user_id in await self.mark_delivered_many(message_id, [user_id])

    async def mark_delivered_many(self, message_id: str, user_ids: Iterable[str]) -> List[str]:
        """
        Record delivery to several users in one write.

        Returns:
            The users newly recorded
        """
        room_id = await self._room_of(message_id)
        async with self._mutation_locks[room_id]:
            message = await self._load(message_id)
            now = self._clock()
            added = []
            for user_id in user_ids:
                if user_id in added or message.has_delivered(user_id):
                    continue
                message.delivered_to.append(DeliveryReceipt(user_id=user_id, delivered_at=now))
                added.append(user_id)
            if not added:
                return []
            message.status = advance_status(message.status, MessageStatus.DELIVERED)
            message.updated_at = now
            await self.messages.update(message)
        return added

    async def mark_read(self, message_id: str, user_id: str) -> bool:
        """Record a read receipt once, back-filling delivery; False when already read."""
        room_id = await self._room_of(message_id)
        await self._require_member(room_id, user_id, "markRead")
        async with self._mutation_locks[room_id]:
            message = await self._load(message_id)
            if message.has_read(user_id):
                return False
            now = self._clock()
            if not message.has_delivered(user_id):
                message.delivered_to.append(DeliveryReceipt(user_id=user_id, delivered_at=now))
            message.read_by.append(ReadReceipt(user_id=user_id, read_at=now))
            message.status = advance_status(message.status, MessageStatus.READ)
            message.updated_at = now
            await self.messages.update(message)
        return True

    # Queries

    async def get_message(self, message_id: str) -> Message:
        return await self._load(message_id)

    async def recent(self, room_id: str, limit: Optional[int] = None, include_deleted: bool = False) -> List[Message]:
        """Newest messages of a room, oldest first; deleted ones only on request."""
        if limit is None:
            limit = self.settings.default_history_limit
        limit = max(1, min(limit, self.settings.max_history_limit))
        return await self.messages.find_recent(room_id, limit, include_deleted)
