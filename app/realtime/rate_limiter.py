"""
Per-user, per-action-kind sliding window rate limiting.

Two backends share one interface: ``InMemoryRateLimiter`` (single process,
the default) and ``services.redis_client.RedisRateLimiter`` (sorted-set window
shared across processes). ``check`` turns a refusal into ``RateLimitExceeded``
so callers always get a distinguishable outcome; ``acquire`` is the awaitable
form the hub and the pipeline use, so a network backend can leave the loop.
"""
import logging
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Tuple
from core.audit_logger import audit_logger
from core.config import Settings
from core.exceptions import RateLimitExceeded
from core.metrics import rate_limit_rejections_total

logger = logging.getLogger(__name__)

ACTION_KINDS = ("message", "typing", "join")


class RateLimiter:
    """Base class; subclasses implement ``allow`` and ``remaining``."""

    def __init__(self, limits: Dict[str, int], window_seconds: float):
        self.limits = dict(limits)
        self.window_seconds = window_seconds

    def limit_for(self, action_kind: str) -> int:
        try:
            return self.limits[action_kind]
        except KeyError:
            raise ValueError(f"Unknown action kind: {action_kind}") from None

    def allow(self, user_id: str, action_kind: str) -> bool:
        raise NotImplementedError

    def remaining(self, user_id: str, action_kind: str) -> int:
        raise NotImplementedError

    def check(self, user_id: str, action_kind: str) -> None:
        """
        Consume one unit of the user's budget for ``action_kind``.

        Raises:
            RateLimitExceeded: the window is full
        """
        if self.allow(user_id, action_kind):
            return
        limit = self.limit_for(action_kind)
        rate_limit_rejections_total.labels(action_kind=action_kind).inc()
        audit_logger.log_rate_limit_exceeded(user_id, action_kind, limit, self.window_seconds)
        raise RateLimitExceeded(user_id, action_kind, limit, self.window_seconds)

    async def acquire(self, user_id: str, action_kind: str) -> None:
        """Awaitable form of ``check`` used on the event loop."""
        self.check(user_id, action_kind)


class InMemoryRateLimiter(RateLimiter):
    """
    Sliding window over a deque of hit timestamps per (user, action kind).

    Only valid for a single process; every call happens on the event loop.
    """

    def __init__(
        self,
        limits: Dict[str, int],
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic
    ):
        super().__init__(limits, window_seconds)
        self._clock = clock
        self._hits: Dict[Tuple[str, str], Deque[float]] = defaultdict(deque)
        self._last_sweep = clock()

    def _sweep(self, now: float) -> None:
        # Windows with no hit left inside the window are forgotten
        window_start = now - self.window_seconds
        for key in [k for k, hits in self._hits.items() if not hits or hits[-1] <= window_start]:
            del self._hits[key]
        self._last_sweep = now

    def _prune(self, key: Tuple[str, str], now: float) -> Deque[float]:
        hits = self._hits[key]
        window_start = now - self.window_seconds
        while hits and hits[0] <= window_start:
            hits.popleft()
        return hits

    def allow(self, user_id: str, action_kind: str) -> bool:
        limit = self.limit_for(action_kind)
        now = self._clock()
        if now - self._last_sweep >= self.window_seconds:
            self._sweep(now)
        key = (user_id, action_kind)
        hits = self._prune(key, now)
        if len(hits) >= limit:
            if not hits:
                del self._hits[key]
            return False
        hits.append(now)
        return True

    def remaining(self, user_id: str, action_kind: str) -> int:
        limit = self.limit_for(action_kind)
        key = (user_id, action_kind)
        hits = self._prune(key, self._clock())
        if not hits:
            del self._hits[key]
        return max(0, limit - len(hits))

    def reset(self, user_id: str) -> None:
        """Forget every window held for a user."""
        for key in [k for k in self._hits if k[0] == user_id]:
            del self._hits[key]


def limits_from_settings(settings: Settings) -> Dict[str, int]:
    return {kind: settings.rate_limit_for(kind) for kind in ACTION_KINDS}


def build_rate_limiter(settings: Settings) -> RateLimiter:
    """Create the backend selected by ``rate_limit_backend``."""
    limits = limits_from_settings(settings)
    if settings.rate_limit_backend == "redis":
        from services.redis_client import RedisRateLimiter, get_redis_client
        logger.info("Using Redis rate limiter")
        return RedisRateLimiter(get_redis_client(settings), limits, settings.rate_limit_window_seconds)
    logger.info("Using in-process rate limiter")
    return InMemoryRateLimiter(limits, settings.rate_limit_window_seconds)
