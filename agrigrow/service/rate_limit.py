from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple

from agrigrow.logging import get_logger
from agrigrow.service.errors import RateLimitedError
from agrigrow.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class RateLimiter:
    """Token-bucket limiter backed by Redis, or by process memory when Redis is absent."""

    def __init__(
        self,
        cache: Optional[RedisCache] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cache = cache
        self._clock = clock
        self._buckets: Dict[str, Tuple[float, float]] = {}
        # Plain lock: the critical section never awaits and may be hit from several loops
        self._lock = threading.Lock()

    async def check(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        """Consume ``cost`` tokens from ``key``'s bucket.

        Returns ``(allowed, remaining, reset_after_seconds)``. A non-positive
        limit disables the check.
        """
        if limit <= 0:
            return True, limit, 0
        if window_seconds <= 0:
            logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
            window_seconds = 60
        if self.cache is not None:
            return await self.cache.check_rate_limit(key, limit, window_seconds, cost=cost)

        refill_rate = float(limit) / float(window_seconds)
        now = self._clock()
        with self._lock:
            tokens, last_ts = self._buckets.get(key, (float(limit), now))
            elapsed = max(0.0, now - last_ts)
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._buckets[key] = (tokens, now)
        reset_after = 0 if allowed else int((cost - tokens) / refill_rate) + 1
        return allowed, int(tokens), reset_after

    async def enforce(self, key: str, limit: int, window_seconds: int = 60) -> None:
        allowed, _, reset_after = await self.check(key, limit, window_seconds)
        if not allowed:
            logger.warning("rate_limited", key=key, reset_after=reset_after)
            raise RateLimitedError(detail={"retry_after": reset_after})

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()
