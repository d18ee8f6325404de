"""Services package initialization."""
from services.event_relay import RedisEventRelay
from services.redis_client import RedisRateLimiter, get_redis_client

__all__ = ["RedisEventRelay", "RedisRateLimiter", "get_redis_client"]
