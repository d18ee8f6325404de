"""
Chat hub: builds the real-time core once per process and exposes one
coroutine per client action.

Every method takes the originating ``connection_id``; replies meant only for
that connection go straight to it, room events go through the broadcaster.
Domain errors (``ChatError``) propagate to the caller, which reports them to
the originating connection only.

Self-delivery policy for new messages: the originating connection gets the
``messageSent`` acknowledgement with the full message and is excluded from
the ``receiveMessage`` fan-out; the author's other connections receive it.
"""
import asyncio
import logging
from typing import Dict, List, Optional, Sequence, Set
from core.audit_logger import audit_logger
from core.config import Settings
from core.exceptions import AuthorizationError, CapacityError, DeliveryFailed
from realtime.broadcaster import DeliveryReport, EventRelay, FanoutBroadcaster, Transport
from realtime.entities import Message, PresenceState, PresenceStatus, ReactionState
from realtime.events import (
    EventType, ServerEvent, error_event, message_deleted, message_payload, message_read,
    message_sent, message_updated, reaction_updated, receive_message, room_membership
)
from realtime.membership import RoomMembershipManager
from realtime.pipeline import MessagePipeline
from realtime.presence import PresenceTracker
from realtime.rate_limiter import RateLimiter, build_rate_limiter
from realtime.registry import ConnectionRegistry
from realtime.stores import MessageStore, RoomStore, UserDirectory

logger = logging.getLogger(__name__)


class ChatHub:
    """
    Composition root of the real-time core.

    Args:
        settings: application settings
        messages / rooms / users: persistence behind the narrow store protocols
        transport: pushes frames to live connections
        rate_limiter: defaults to the backend selected in settings
        relay: optional outbound relay for room events
    """

    def __init__(
        self,
        settings: Settings,
        messages: MessageStore,
        rooms: RoomStore,
        users: UserDirectory,
        transport: Transport,
        rate_limiter: Optional[RateLimiter] = None,
        relay: Optional[EventRelay] = None
    ):
        self.settings = settings
        self.rate_limiter = rate_limiter or build_rate_limiter(settings)
        self.membership = RoomMembershipManager(rooms)
        self.registry = ConnectionRegistry(
            max_connections_per_user=settings.max_connections_per_user,
            admission=self.membership.add_user
        )
        self.broadcaster = FanoutBroadcaster(
            self.registry, transport, send_timeout=settings.send_timeout_seconds, relay=relay
        )
        self.presence = PresenceTracker(settings, self.registry, self.broadcaster, users)
        self.registry.on_count_changed = self.presence.on_connection_count_changed
        self.pipeline = MessagePipeline(
            settings, messages, self.membership, users, self.rate_limiter,
            on_accepted=self._on_message_accepted
        )
        self._tasks: Set[asyncio.Task] = set()

    # Connection lifecycle

    async def connect(self, user_id: str, connection_id: str) -> None:
        """Register an authenticated connection and greet it."""
        try:
            self.registry.register_connection(user_id, connection_id)
        except CapacityError:
            audit_logger.log_capacity_rejected(user_id, f"user:{user_id}", "Too many connections")
            raise
        audit_logger.log_auth_success(user_id, connection_id)
        rooms = await self.membership.get_user_rooms(user_id)
        await self.broadcaster.send_to_connection(connection_id, ServerEvent(
            type=EventType.CONNECTED,
            data={"connectionId": connection_id, "userId": user_id, "rooms": rooms}
        ))

    async def disconnect(self, connection_id: str, reason: str = "normal") -> List[str]:
        """Drop a connection; presence and typing follow through the registry listener."""
        user_id = self.registry.get_user_for_connection(connection_id)
        rooms = self.registry.unregister_connection(connection_id, reason=reason)
        if user_id is None:
            return rooms
        for room_id in rooms:
            if not self.registry.is_user_in_room(user_id, room_id):
                self.broadcaster.submit_to_room(
                    room_id, room_membership(EventType.USER_LEFT, user_id, room_id)
                )
        return rooms

    def pong(self, connection_id: str) -> None:
        self.registry.touch(connection_id)

    def user_for(self, connection_id: str) -> str:
        user_id = self.registry.get_user_for_connection(connection_id)
        if user_id is None:
            raise AuthorizationError("Connection is not authenticated")
        return user_id

    # Rooms

    async def join_room(self, connection_id: str, room_id: str) -> bool:
        user_id = self.user_for(connection_id)
        await self.rate_limiter.acquire(user_id, "join")
        was_present = self.registry.is_user_in_room(user_id, room_id)
        joined = await self.registry.join_room(connection_id, room_id)
        room = await self.membership.get_room(room_id)

        await self.broadcaster.send_to_connection(connection_id, room_membership(
            EventType.JOINED_ROOM, user_id, room_id,
            roomName=room.name,
            alreadyJoined=not joined,
            members=room.active_users,
            onlineUsers=self._online_members(room_id)
        ))
        if joined and not was_present:
            self.broadcaster.submit_to_room(
                room_id,
                room_membership(EventType.USER_JOINED, user_id, room_id),
                exclude=self.registry.get_connections_for_user(user_id)
            )
        return joined

    async def leave_room(self, connection_id: str, room_id: str) -> bool:
        """
        Leave a room on this connection. Persisted membership is only dropped
        once none of the user's connections remain in the room.
        """
        user_id = self.user_for(connection_id)
        left = self.registry.leave_room(connection_id, room_id)
        still_present = self.registry.is_user_in_room(user_id, room_id)
        if not still_present:
            self.presence.stop_typing(user_id, room_id)
            await self.membership.remove_user(room_id, user_id)

        await self.broadcaster.send_to_connection(
            connection_id, room_membership(EventType.LEFT_ROOM, user_id, room_id)
        )
        if left and not still_present:
            self.broadcaster.submit_to_room(
                room_id, room_membership(EventType.USER_LEFT, user_id, room_id)
            )
        return left

    def _online_members(self, room_id: str) -> List[str]:
        return sorted({
            self.registry.get_user_for_connection(cid)
            for cid in self.registry.get_connections_for_room(room_id)
        })

    # Messages

    async def send_message(
        self,
        connection_id: str,
        room_id: str,
        content: str,
        type: str = "text",
        thread_id: Optional[str] = None,
        reply_to_id: Optional[str] = None,
        mentions: Optional[Sequence[str]] = None,
        priority: str = "normal"
    ) -> Message:
        """
        Submit a message and acknowledge it to the sender.

        A persistence failure is acknowledged with ``success: false`` and the
        failed message instead of raising.
        """
        user_id = self.user_for(connection_id)
        try:
            message = await self.pipeline.submit(
                user_id, room_id, content, type,
                thread_id=thread_id,
                reply_to_id=reply_to_id,
                mentions=mentions,
                priority=priority,
                origin=connection_id
            )
        except DeliveryFailed as e:
            await self.broadcaster.send_to_connection(
                connection_id, message_sent(e.failed_message, success=False, error=e.to_dict())
            )
            return e.failed_message

        self.presence.stop_typing(user_id, room_id)
        await self.broadcaster.send_to_connection(connection_id, message_sent(message))
        return message

    def _on_message_accepted(self, message: Message, origin: Optional[str]) -> None:
        """Hand the message to the room queue; runs inside the sequencing section."""
        exclude = (origin,) if origin else ()
        future = self.broadcaster.submit_to_room(message.room_id, receive_message(message), exclude=exclude)
        future.add_done_callback(lambda f: self._record_delivery(message, f))

    def _record_delivery(self, message: Message, future: "asyncio.Future[DeliveryReport]") -> None:
        if future.cancelled() or future.exception() is not None:
            return
        recipients = future.result().delivered_users() - {message.author_id}
        if recipients:
            self._spawn(self.pipeline.mark_delivered_many(message.id, sorted(recipients)))

    async def edit_message(self, connection_id: str, message_id: str, content: str) -> Message:
        user_id = self.user_for(connection_id)
        message = await self.pipeline.edit(message_id, user_id, content)
        self.broadcaster.submit_to_room(message.room_id, message_updated(message))
        return message

    async def delete_message(self, connection_id: str, message_id: str) -> Message:
        user_id = self.user_for(connection_id)
        message = await self.pipeline.delete(message_id, user_id)
        self.broadcaster.submit_to_room(message.room_id, message_deleted(message))
        return message

    async def restore_message(self, connection_id: str, message_id: str) -> Message:
        user_id = self.user_for(connection_id)
        message = await self.pipeline.restore(message_id, user_id)
        self.broadcaster.submit_to_room(message.room_id, message_updated(message))
        return message

    async def add_reaction(self, connection_id: str, message_id: str, emoji: str) -> bool:
        user_id = self.user_for(connection_id)
        state = await self.pipeline.add_reaction(message_id, user_id, emoji)
        if state.changed:
            self.broadcaster.submit_to_room(state.room_id, reaction_updated(state))
        return state.changed

    async def remove_reaction(self, connection_id: str, message_id: str, emoji: str) -> bool:
        user_id = self.user_for(connection_id)
        removed = await self.pipeline.remove_reaction(message_id, user_id, emoji)
        if removed:
            message = await self.pipeline.get_message(message_id)
            self.broadcaster.submit_to_room(message.room_id, reaction_updated(ReactionState.from_message(message)))
        return removed

    async def mark_read(self, connection_id: str, message_id: str) -> bool:
        """Record a read receipt and tell the author's connections."""
        user_id = self.user_for(connection_id)
        newly_read = await self.pipeline.mark_read(message_id, user_id)
        if newly_read:
            message = await self.pipeline.get_message(message_id)
            await self.broadcaster.broadcast_to_user(message.author_id, message_read(message, user_id))
        return newly_read

    async def fetch_history(
        self,
        connection_id: str,
        room_id: str,
        limit: Optional[int] = None,
        include_deleted: bool = False
    ) -> List[Message]:
        user_id = self.user_for(connection_id)
        if not await self.membership.is_member(room_id, user_id):
            raise AuthorizationError("Not a member of this room", details={"room_id": room_id})
        messages = await self.pipeline.recent(room_id, limit, include_deleted)
        await self.broadcaster.send_to_connection(connection_id, ServerEvent(
            type=EventType.HISTORY,
            data={"roomId": room_id, "messages": [message_payload(m) for m in messages]}
        ))
        return messages

    # Presence

    async def start_typing(self, connection_id: str, room_id: str) -> bool:
        user_id = self._require_in_room(connection_id, room_id)
        await self.rate_limiter.acquire(user_id, "typing")
        return self.presence.start_typing(user_id, room_id)

    def stop_typing(self, connection_id: str, room_id: str) -> bool:
        user_id = self._require_in_room(connection_id, room_id)
        return self.presence.stop_typing(user_id, room_id)

    async def update_presence(
        self,
        connection_id: str,
        status: PresenceStatus,
        custom_message: Optional[str] = None
    ) -> PresenceState:
        user_id = self.user_for(connection_id)
        return await self.presence.update_status(user_id, status, custom_message)

    def _require_in_room(self, connection_id: str, room_id: str) -> str:
        user_id = self.user_for(connection_id)
        if room_id not in self.registry.get_rooms_for_connection(connection_id):
            raise AuthorizationError("Join the room first", details={"room_id": room_id})
        return user_id

    # Errors, liveness, housekeeping

    async def send_error(self, connection_id: str, message: str, code: str, action: Optional[str] = None) -> None:
        await self.broadcaster.send_to_connection(connection_id, error_event(message, code, action))

    def stale_connections(self) -> List[str]:
        return self.registry.get_stale_connections(self.settings.heartbeat_timeout_seconds)

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Delivery accounting failed: {task.exception()}")

    async def flush(self) -> None:
        """Wait until queued fan-outs, delivery accounting and presence writes settle."""
        while True:
            await self.broadcaster.flush()
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
                continue
            await self.presence.flush()
            if not self._tasks and self.broadcaster.idle:
                return

    def stats(self) -> Dict[str, Dict[str, int]]:
        return {"connections": self.registry.stats(), "presence": self.presence.stats()}

    async def shutdown(self) -> None:
        self.presence.shutdown()
        await self.broadcaster.close()
        for task in list(self._tasks):
            task.cancel()
