"""
Presence Tracker: per-user status and per-(user, room) typing state.

Status machine per user:
    offline -> online        first connection registered
    online  -> away | busy   explicit update
    any     -> offline       connection count stayed at 0 for the grace delay

Once offline with no connection the user is forgotten until it reconnects.

A reconnect inside the grace window cancels the pending offline transition,
which therefore happens at most once per disconnect.

Typing per (user, room) ends on stop, on a message sent in the room, on
leaving the room, on disconnect or on expiry, whichever comes first. Expiry
and grace are ``loop.call_later`` timers owned here.
"""
import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Set, Tuple
from core.config import Settings
from core.metrics import presence_transitions_total
from realtime.broadcaster import FanoutBroadcaster
from realtime.entities import PresenceState, PresenceStatus, utcnow
from realtime.events import presence_changed, user_typing
from realtime.registry import ConnectionRegistry
from realtime.stores import UserDirectory

logger = logging.getLogger(__name__)


class PresenceTracker:
    """In-memory presence with persisted status/last_seen."""

    def __init__(
        self,
        settings: Settings,
        registry: ConnectionRegistry,
        broadcaster: FanoutBroadcaster,
        users: UserDirectory
    ):
        self.grace_seconds = settings.presence_grace_seconds
        self.typing_timeout = settings.typing_timeout_seconds
        self.registry = registry
        self.broadcaster = broadcaster
        self.users = users

        self._states: Dict[str, PresenceState] = {}
        self._live_counts: Dict[str, int] = {}
        self._offline_timers: Dict[str, asyncio.TimerHandle] = {}
        self._pending_rooms: Dict[str, Set[str]] = {}
        self._typing_timers: Dict[Tuple[str, str], asyncio.TimerHandle] = {}
        self._tasks: Set[asyncio.Task] = set()

    def get_presence(self, user_id: str) -> PresenceState:
        state = self._states.get(user_id)
        if state is None:
            return PresenceState(user_id=user_id)
        return state.model_copy(deep=True)

    def get_presences(self, user_ids: Iterable[str]) -> Dict[str, PresenceState]:
        return {user_id: self.get_presence(user_id) for user_id in user_ids}

    def get_typing_users(self, room_id: str) -> List[str]:
        return sorted(user_id for (user_id, rid) in self._typing_timers if rid == room_id)

    def is_typing(self, user_id: str, room_id: str) -> bool:
        return (user_id, room_id) in self._typing_timers

    # Connection lifecycle

    def on_connection_count_changed(self, user_id: str, new_count: int, rooms: Iterable[str] = ()) -> None:
        """
        React to a change in a user's live connection count.

        Args:
            rooms: rooms the closed connection was in (empty on connect)
        """
        rooms = set(rooms)
        previous = self._live_counts.pop(user_id, 0)
        if new_count > 0:
            self._live_counts[user_id] = new_count
        for room_id in rooms:
            if not self.registry.is_user_in_room(user_id, room_id):
                self.stop_typing(user_id, room_id)

        if new_count > 0:
            timer = self._offline_timers.pop(user_id, None)
            if timer is not None:
                timer.cancel()
                self._pending_rooms.pop(user_id, None)
                logger.debug(f"Reconnect within grace window for user {user_id}")
            state = self._state(user_id)
            # Only the first connection brings a user online; an explicit
            # offline survives opening further devices
            if previous == 0 and state.status == PresenceStatus.OFFLINE:
                self._transition(state, PresenceStatus.ONLINE, self.registry.get_rooms_for_user(user_id))
            return

        self._pending_rooms.setdefault(user_id, set()).update(rooms)
        if user_id in self._offline_timers:
            return
        loop = asyncio.get_running_loop()
        self._offline_timers[user_id] = loop.call_later(self.grace_seconds, self._go_offline, user_id)

    def _go_offline(self, user_id: str) -> None:
        self._offline_timers.pop(user_id, None)
        rooms = self._pending_rooms.pop(user_id, set())
        if self.registry.connection_count(user_id) > 0:
            return
        state = self._state(user_id)
        self.clear_typing(user_id, list(state.typing))
        if state.status != PresenceStatus.OFFLINE:
            self._transition(state, PresenceStatus.OFFLINE, rooms)
        # Offline users are not tracked; get_presence reports them as offline
        self._states.pop(user_id, None)

    # Status

    async def update_status(
        self,
        user_id: str,
        status: PresenceStatus,
        custom_message: Optional[str] = None
    ) -> PresenceState:
        """Set an explicit status, broadcast it to the user's rooms and persist it."""
        state = self._state(user_id)
        state.custom_message = custom_message
        state.status = status
        state.last_seen = utcnow()
        presence_transitions_total.labels(status=status.value).inc()
        self._announce(state, self.registry.get_rooms_for_user(user_id))
        await self.users.save_presence(user_id, status, custom_message, state.last_seen)
        return state.model_copy(deep=True)

    def _transition(self, state: PresenceState, status: PresenceStatus, rooms: Iterable[str]) -> None:
        state.status = status
        state.last_seen = utcnow()
        presence_transitions_total.labels(status=status.value).inc()
        logger.info(f"User {state.user_id} is now {status.value}", extra={"user_id": state.user_id})
        self._announce(state, rooms)
        self._spawn(self.users.save_presence(state.user_id, status, state.custom_message, state.last_seen))

    def _announce(self, state: PresenceState, rooms: Iterable[str]) -> None:
        event = presence_changed(state)
        for room_id in sorted(rooms):
            self.broadcaster.submit_to_room(room_id, event)

    # Typing

    def start_typing(self, user_id: str, room_id: str) -> bool:
        """
        Mark a user as typing in a room.

        Returns:
            True if this started typing (and was broadcast), False if it only
            refreshed the expiry
        """
        loop = asyncio.get_running_loop()
        key = (user_id, room_id)
        state = self._state(user_id)
        state.typing[room_id] = loop.time() + self.typing_timeout

        existing = self._typing_timers.pop(key, None)
        self._typing_timers[key] = loop.call_later(self.typing_timeout, self._expire_typing, user_id, room_id)
        if existing is not None:
            existing.cancel()
            return False

        self._broadcast_typing(user_id, room_id, True)
        return True

    def stop_typing(self, user_id: str, room_id: str) -> bool:
        """Clear a typing indicator; no-op (False) when the user was not typing."""
        timer = self._typing_timers.pop((user_id, room_id), None)
        if timer is None:
            return False
        timer.cancel()
        state = self._states.get(user_id)
        if state is not None:
            state.typing.pop(room_id, None)
        self._broadcast_typing(user_id, room_id, False)
        return True

    def clear_typing(self, user_id: str, rooms: Iterable[str]) -> List[str]:
        """Stop typing in each of ``rooms``; returns the rooms that were cleared."""
        return [room_id for room_id in list(rooms) if self.stop_typing(user_id, room_id)]

    def _expire_typing(self, user_id: str, room_id: str) -> None:
        logger.debug(f"Typing expired for user {user_id}", extra={"room_id": room_id})
        self.stop_typing(user_id, room_id)

    def _broadcast_typing(self, user_id: str, room_id: str, is_typing: bool) -> None:
        self.broadcaster.submit_to_room(
            room_id,
            user_typing(user_id, room_id, is_typing),
            exclude=self.registry.get_connections_for_user(user_id)
        )

    # Housekeeping

    def _state(self, user_id: str) -> PresenceState:
        state = self._states.get(user_id)
        if state is None:
            state = self._states[user_id] = PresenceState(user_id=user_id)
        return state

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Presence persistence failed: {task.exception()}")

    async def flush(self) -> None:
        """Wait for pending presence writes."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def stats(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in PresenceStatus}
        for state in self._states.values():
            counts[state.status.value] += 1
        counts["typing"] = len(self._typing_timers)
        counts["pending_offline"] = len(self._offline_timers)
        return counts

    def shutdown(self) -> None:
        """Cancel every timer."""
        for timer in self._offline_timers.values():
            timer.cancel()
        for timer in self._typing_timers.values():
            timer.cancel()
        self._offline_timers.clear()
        self._live_counts.clear()
        self._pending_rooms.clear()
        self._typing_timers.clear()
