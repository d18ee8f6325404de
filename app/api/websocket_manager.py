"""
WebSocket transport for the chat hub.

Maps connection ids to live Starlette WebSockets and pushes outbound frames.
Connection state (users, rooms, heartbeats) is owned by the hub's
ConnectionRegistry; this module only knows sockets. The heartbeat monitor
pings every connection and prunes the silent ones through the hub.
"""
import asyncio
import logging
from typing import Dict
from fastapi import WebSocket
from core.audit_logger import audit_logger
from core.metrics import update_websocket_metrics
from realtime.events import EventType, ServerEvent
from realtime.hub import ChatHub

logger = logging.getLogger(__name__)


class WebSocketTransport:
    """
    Sends frames to live WebSockets.

    Sends to one socket are serialised with a per-connection lock because
    several room queues may push to the same connection concurrently.
    """

    def __init__(self):
        # {connection_id: WebSocket}
        self._sockets: Dict[str, WebSocket] = {}
        self._send_locks: Dict[str, asyncio.Lock] = {}

    def attach(self, connection_id: str, websocket: WebSocket) -> None:
        self._sockets[connection_id] = websocket
        self._send_locks[connection_id] = asyncio.Lock()

    def detach(self, connection_id: str) -> None:
        self._sockets.pop(connection_id, None)
        self._send_locks.pop(connection_id, None)

    async def send(self, connection_id: str, event: ServerEvent) -> None:
        """
        Raises:
            ConnectionError: the connection is not attached
        """
        websocket = self._sockets.get(connection_id)
        lock = self._send_locks.get(connection_id)
        if websocket is None or lock is None:
            raise ConnectionError(f"Connection {connection_id} is closed")
        async with lock:
            await websocket.send_json(event.to_wire())

    async def close(self, connection_id: str, code: int = 1000, reason: str = "") -> None:
        websocket = self._sockets.get(connection_id)
        self.detach(connection_id)
        if websocket is None:
            return
        try:
            await websocket.close(code=code, reason=reason)
        except RuntimeError as e:
            # Already closed by the peer
            logger.debug(f"Close of {connection_id} skipped: {e}")

    def __len__(self) -> int:
        return len(self._sockets)


async def heartbeat_monitor(hub: ChatHub, transport: WebSocketTransport):
    """
    Background task to send heartbeat pings and prune stale connections.

    Pings every ``heartbeat_interval_seconds``; connections silent for longer
    than ``heartbeat_timeout_seconds`` are closed and unregistered, which
    starts their presence grace period. Also refreshes connection metrics.
    """
    interval = hub.settings.heartbeat_interval_seconds
    timeout = hub.settings.heartbeat_timeout_seconds
    logger.info(f"Heartbeat monitor started (interval={interval}s, timeout={timeout}s)")

    while True:
        await asyncio.sleep(interval)
        try:
            await run_heartbeat(hub, transport)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in heartbeat monitor: {e}")


async def run_heartbeat(hub: ChatHub, transport: WebSocketTransport) -> None:
    """One heartbeat round: ping all, prune the stale, update gauges."""
    ping = ServerEvent(type=EventType.PING)
    await asyncio.gather(*(
        hub.broadcaster.send_to_connection(connection_id, ping)
        for connection_id in hub.registry.all_connections()
    ))

    for connection_id in hub.stale_connections():
        user_id = hub.registry.get_user_for_connection(connection_id)
        logger.warning(f"Closing stale connection for user {user_id}", extra={"connection_id": connection_id})
        audit_logger.log_connection_pruned(user_id, connection_id, hub.settings.heartbeat_timeout_seconds)
        await transport.close(connection_id, code=1001, reason="Connection timeout")
        await hub.disconnect(connection_id, reason="timeout")

    update_websocket_metrics(hub.registry)
    stats = hub.registry.stats()
    logger.info(f"Heartbeat complete: {stats['connections']} connections, {stats['users']} users")
