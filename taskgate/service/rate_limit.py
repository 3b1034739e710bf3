from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple, Union

from taskgate.logging import get_logger
from taskgate.storage.models import utcnow
from taskgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

_DEFAULT_WINDOW_SECONDS = 60


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_after: int
    retry_after: int = 0


class RateLimiter:
    """Fixed-window request counter keyed by client.

    Without Redis the limiter owns an in-process map of
    ``key -> (count, reset_at)``; expired windows are swept whenever
    ``sweep_interval_seconds`` has elapsed, and the app lifespan also calls
    :meth:`sweep` on a timer.
    """

    def __init__(
        self,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        sweep_interval_seconds: int = 60,
    ) -> None:
        self.cache = cache
        self._clock = clock or utcnow
        self.sweep_interval_seconds = sweep_interval_seconds
        self._windows: Dict[str, Tuple[int, float]] = {}
        self._lock = asyncio.Lock()
        self._last_sweep = self._clock().timestamp()

    def _now(self) -> float:
        return self._clock().timestamp()

    async def hit(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        if limit <= 0:
            return RateLimitResult(True, limit, 0, 0)
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=key,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            window_seconds = _DEFAULT_WINDOW_SECONDS

        if self.cache:
            count, ttl_ms = await self.cache.hit_fixed_window(key, window_seconds)
            reset_after = max(1, math.ceil(ttl_ms / 1000))
            allowed = count <= limit
            result = RateLimitResult(
                allowed=allowed,
                limit=limit,
                remaining=max(0, limit - count),
                reset_after=reset_after,
                retry_after=0 if allowed else reset_after,
            )
        else:
            result = await self._hit_local(key, limit, window_seconds)

        if not result.allowed:
            logger.info("rate_limit_exceeded", key=key, limit=limit, retry_after=result.retry_after)
        return result

    async def _hit_local(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        now = self._now()
        async with self._lock:
            if now - self._last_sweep >= self.sweep_interval_seconds:
                self._sweep_locked(now)
            entry = self._windows.get(key)
            if entry is None or now > entry[1]:
                count, reset_at = 1, now + window_seconds
                self._windows[key] = (count, reset_at)
            elif entry[0] >= limit:
                retry_after = max(1, math.ceil(entry[1] - now))
                return RateLimitResult(False, limit, 0, retry_after, retry_after)
            else:
                count, reset_at = entry[0] + 1, entry[1]
                self._windows[key] = (count, reset_at)
        return RateLimitResult(
            allowed=True,
            limit=limit,
            remaining=max(0, limit - count),
            reset_after=max(0, math.ceil(reset_at - now)),
        )

    def _sweep_locked(self, now: float) -> int:
        expired = [key for key, (_, reset_at) in self._windows.items() if now > reset_at]
        for key in expired:
            self._windows.pop(key, None)
        self._last_sweep = now
        return len(expired)

    async def sweep(self) -> int:
        """Drop expired windows; returns how many were removed."""
        async with self._lock:
            removed = self._sweep_locked(self._now())
        if removed:
            logger.debug("rate_limit_sweep", removed=removed, remaining=len(self._windows))
        return removed
