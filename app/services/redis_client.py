"""
Redis client for shared rate limiting and the outbound event relay.
Provides connection pooling and a circuit breaker for graceful degradation:
when Redis is unavailable the rate limiter fails open and the relay skips.
"""
import asyncio
import logging
import time
import uuid
from typing import Dict, Optional
from redis import Redis, ConnectionPool
from redis.exceptions import RedisError
import pybreaker
from core.config import Settings, settings as default_settings
from realtime.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


class _BreakerLogListener(pybreaker.CircuitBreakerListener):
    def state_change(self, cb, old_state, new_state):
        if new_state.name == pybreaker.STATE_OPEN:
            logger.warning(f"Circuit breaker {cb.name} opened - Redis unavailable")
        elif new_state.name == pybreaker.STATE_HALF_OPEN:
            logger.info(f"Circuit breaker {cb.name} half-open - Testing Redis connection")
        else:
            logger.info(f"Circuit breaker {cb.name} closed - Redis restored")


redis_circuit_breaker = pybreaker.CircuitBreaker(
    fail_max=3,  # Open circuit after 3 failures
    reset_timeout=15,  # Try half-open after 15 seconds
    name="redis_client",
    listeners=[_BreakerLogListener()]
)

_redis_pool: Optional[ConnectionPool] = None


def get_redis_pool(settings: Settings = default_settings) -> ConnectionPool:
    """
    Get or create the Redis connection pool.

    Returns:
        Redis connection pool
    """
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = ConnectionPool.from_url(
            settings.redis_url,
            max_connections=settings.redis_max_connections,
            decode_responses=True
        )
        logger.info(f"Created Redis connection pool: {settings.redis_url}")
    return _redis_pool


def get_redis_client(settings: Settings = default_settings) -> Redis:
    """
    Get a Redis client from the connection pool.

    Returns:
        Redis client instance
    """
    return Redis(connection_pool=get_redis_pool(settings))


class RedisRateLimiter(RateLimiter):
    """
    Sliding window rate limiter using Redis sorted sets.

    Each hit is a member scored by its timestamp under
    ``rate_limit:{action_kind}:{user_id}``; members older than the window are
    trimmed before counting.
    """

    def __init__(self, client: Redis, limits: Dict[str, int], window_seconds: float):
        super().__init__(limits, window_seconds)
        self.client = client

    @staticmethod
    def _key(user_id: str, action_kind: str) -> str:
        return f"rate_limit:{action_kind}:{user_id}"

    @redis_circuit_breaker
    def _hit(self, user_id: str, action_kind: str, limit: int) -> bool:
        key = self._key(user_id, action_kind)
        now = time.time()
        window_start = now - self.window_seconds

        # Remove old entries outside window
        self.client.zremrangebyscore(key, 0, window_start)

        request_count = self.client.zcard(key)
        if request_count >= limit:
            return False

        # Unique member so two hits in the same instant both count
        self.client.zadd(key, {f"{now}:{uuid.uuid4().hex[:8]}": now})
        self.client.expire(key, int(self.window_seconds) + 1)
        return True

    @redis_circuit_breaker
    def _count(self, user_id: str, action_kind: str) -> int:
        key = self._key(user_id, action_kind)
        self.client.zremrangebyscore(key, 0, time.time() - self.window_seconds)
        return self.client.zcard(key)

    def allow(self, user_id: str, action_kind: str) -> bool:
        """
        Check and record one action.

        Fails open (allows the action) when Redis errors or the circuit is open.
        """
        limit = self.limit_for(action_kind)
        try:
            return self._hit(user_id, action_kind, limit)
        except (RedisError, pybreaker.CircuitBreakerError) as e:
            logger.error(f"Rate limiter check failed for user {user_id}: {e}")
            return True

    async def acquire(self, user_id: str, action_kind: str) -> None:
        """Run the Redis round-trips on a worker thread, off the event loop."""
        await asyncio.to_thread(self.check, user_id, action_kind)

    def remaining(self, user_id: str, action_kind: str) -> int:
        limit = self.limit_for(action_kind)
        try:
            return max(0, limit - self._count(user_id, action_kind))
        except (RedisError, pybreaker.CircuitBreakerError) as e:
            logger.error(f"Rate limiter get_remaining failed for user {user_id}: {e}")
            return limit
