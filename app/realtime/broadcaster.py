"""
Fan-out Broadcaster.

Pushes events to every live connection of a room, resolved through the
Connection Registry at delivery time. Each room has one sequential delivery
queue drained by a single task, so events of a room reach every connection in
the order they were submitted; rooms never wait on each other.

Delivery is best-effort: a failed or timed-out push is recorded in the
``DeliveryReport`` and skipped, never retried. Clients re-fetch history on
reconnect.
"""
import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, List, Optional, Protocol, Set, Tuple
from core.metrics import broadcast_latency_seconds, fanout_deliveries_total
from realtime.events import ServerEvent
from realtime.registry import ConnectionRegistry

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Sends one frame to one connection; raises when the push fails."""

    async def send(self, connection_id: str, event: ServerEvent) -> None: ...


class EventRelay(Protocol):
    async def publish(self, room_id: str, event: ServerEvent) -> None: ...


@dataclass
class ConnectionResult:
    connection_id: str
    user_id: Optional[str]
    delivered: bool
    error: Optional[str] = None


@dataclass
class DeliveryReport:
    """Outcome of one fan-out."""
    room_id: Optional[str]
    event_type: str
    results: List[ConnectionResult] = field(default_factory=list)

    def delivered_users(self) -> Set[str]:
        """Users with at least one successful push."""
        return {r.user_id for r in self.results if r.delivered and r.user_id is not None}

    def failed_connections(self) -> List[str]:
        return [r.connection_id for r in self.results if not r.delivered]

    @property
    def delivered_count(self) -> int:
        return sum(1 for r in self.results if r.delivered)


_QueueItem = Tuple[ServerEvent, Set[str], "asyncio.Future[DeliveryReport]"]


class FanoutBroadcaster:
    """
    Room and user fan-out over a ``Transport``.

    Args:
        registry: live connection state
        transport: pushes frames to connections
        send_timeout: seconds allowed for a single push
        relay: optional outbound relay, called after local fan-out
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        transport: Transport,
        send_timeout: float = 5.0,
        relay: Optional[EventRelay] = None
    ):
        self.registry = registry
        self.transport = transport
        self.send_timeout = send_timeout
        self.relay = relay
        self._queues: Dict[str, Deque[_QueueItem]] = {}
        self._drains: Dict[str, asyncio.Task] = {}

    def submit_to_room(
        self,
        room_id: str,
        event: ServerEvent,
        exclude: Iterable[str] = ()
    ) -> "asyncio.Future[DeliveryReport]":
        """
        Enqueue an event for a room without waiting for delivery.

        The enqueue is synchronous, so the order of calls is the delivery
        order for the room.

        Args:
            exclude: connection ids that must not receive the event
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        queue = self._queues.setdefault(room_id, deque())
        queue.append((event, set(exclude), future))
        if room_id not in self._drains:
            self._drains[room_id] = loop.create_task(self._drain(room_id))
        return future

    async def broadcast_to_room(
        self,
        room_id: str,
        event: ServerEvent,
        exclude: Iterable[str] = ()
    ) -> DeliveryReport:
        """Enqueue an event for a room and wait for its delivery report."""
        return await self.submit_to_room(room_id, event, exclude)

    async def broadcast_to_user(self, user_id: str, event: ServerEvent) -> DeliveryReport:
        """Push to every live connection of a user (multi-device)."""
        targets = self.registry.get_connections_for_user(user_id)
        return await self._deliver(None, event, targets)

    async def send_to_connection(self, connection_id: str, event: ServerEvent) -> bool:
        """Push directly to one connection, outside any room queue."""
        report = await self._deliver(None, event, {connection_id})
        return report.delivered_count == 1

    async def _drain(self, room_id: str) -> None:
        queue = self._queues[room_id]
        try:
            while queue:
                event, exclude, future = queue.popleft()
                targets = self.registry.get_connections_for_room(room_id) - exclude
                try:
                    report = await self._deliver(room_id, event, targets)
                except Exception as e:
                    logger.exception(f"Fan-out to room {room_id} failed", extra={"room_id": room_id})
                    if not future.done():
                        future.set_exception(e)
                    continue
                if not future.done():
                    future.set_result(report)
                if self.relay is not None:
                    await self.relay.publish(room_id, event)
        finally:
            # The loop only exits with an empty queue; no await sits between
            # that check and removal, so a concurrent submit starts a new drain
            self._drains.pop(room_id, None)
            if not queue:
                self._queues.pop(room_id, None)

    async def _deliver(
        self,
        room_id: Optional[str],
        event: ServerEvent,
        targets: Set[str]
    ) -> DeliveryReport:
        event_type = event.type.value
        report = DeliveryReport(room_id=room_id, event_type=event_type)
        if not targets:
            return report

        started = time.perf_counter()
        ordered = sorted(targets)
        owners = {cid: self.registry.get_user_for_connection(cid) for cid in ordered}
        outcomes = await asyncio.gather(
            *(self._push(connection_id, event) for connection_id in ordered)
        )
        for connection_id, error in zip(ordered, outcomes):
            delivered = error is None
            report.results.append(ConnectionResult(
                connection_id=connection_id,
                user_id=owners[connection_id],
                delivered=delivered,
                error=error
            ))
            fanout_deliveries_total.labels(
                event_type=event_type,
                outcome="delivered" if delivered else "failed"
            ).inc()
        broadcast_latency_seconds.labels(event_type=event_type).observe(time.perf_counter() - started)

        failed = report.failed_connections()
        if failed:
            logger.warning(
                f"Broadcast {event_type}: {len(failed)}/{len(ordered)} pushes failed",
                extra={"room_id": room_id}
            )
        return report

    async def _push(self, connection_id: str, event: ServerEvent) -> Optional[str]:
        """Returns None on success, otherwise the failure reason."""
        try:
            await asyncio.wait_for(self.transport.send(connection_id, event), self.send_timeout)
            return None
        except asyncio.TimeoutError:
            return "timeout"
        except Exception as e:
            logger.debug(f"Push to {connection_id} failed: {e}", extra={"connection_id": connection_id})
            return str(e) or type(e).__name__

    @property
    def idle(self) -> bool:
        """True when no room queue is pending."""
        return not self._drains

    async def flush(self) -> None:
        """Wait until every room queue is drained."""
        while self._drains:
            await asyncio.gather(*list(self._drains.values()), return_exceptions=True)

    async def close(self) -> None:
        """Cancel pending drains; undelivered events are dropped."""
        for task in list(self._drains.values()):
            task.cancel()
        for task in list(self._drains.values()):
            try:
                await task
            except asyncio.CancelledError:
                pass
        for queue in self._queues.values():
            for _, _, future in queue:
                if not future.done():
                    future.cancel()
        self._queues.clear()
        self._drains.clear()
