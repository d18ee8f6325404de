"""
Outbound event relay.

After local fan-out, room events can be handed to a relay for other nodes.
Only the publishing side lives here; cross-node coordination is not part of
this service. The Redis relay publishes each event as JSON on
``{prefix}:{room_id}`` and never raises into the delivery path.
"""
import asyncio
import json
import logging
import pybreaker
from redis import Redis
from redis.exceptions import RedisError
from realtime.events import ServerEvent
from services.redis_client import redis_circuit_breaker

logger = logging.getLogger(__name__)


class RedisEventRelay:
    """Publish room events to Redis Pub/Sub."""

    def __init__(self, client: Redis, channel_prefix: str = "room"):
        self.client = client
        self.channel_prefix = channel_prefix

    def channel_for(self, room_id: str) -> str:
        return f"{self.channel_prefix}:{room_id}"

    @redis_circuit_breaker
    def _publish(self, channel: str, payload: str) -> int:
        return self.client.publish(channel, payload)

    async def publish(self, room_id: str, event: ServerEvent) -> None:
        payload = json.dumps({"roomId": room_id, "event": event.to_wire()})
        channel = self.channel_for(room_id)
        try:
            receivers = await asyncio.to_thread(self._publish, channel, payload)
            logger.debug(f"Relayed {event.type.value} to {channel} ({receivers} subscribers)")
        except (RedisError, pybreaker.CircuitBreakerError) as e:
            logger.warning(f"Relay publish to {channel} failed: {e}")
