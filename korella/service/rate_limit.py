from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from korella.logging import get_logger
from korella.service.errors import RateLimitedError
from korella.storage.models import utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
        }
        if not self.allowed:
            headers["Retry-After"] = str(max(1, self.retry_after))
        return headers


class RateLimiter:
    """Request limits backed by Redis, with an in-process fallback.

    Two shapes are offered. The token bucket smooths bursts on the hot
    routes. The fixed window counts requests from the first hit until the
    window closes, which is what an "N per hour" promise needs: a bucket
    refills part of its capacity well before the hour is up.
    The fallback mirrors the Redis scripts, so tests and single-process dev
    runs see identical limits.
    """

    def __init__(self, cache=None, *, clock: Optional[Callable[[], datetime]] = None):
        self.cache = cache
        self._clock = clock or utcnow
        self._buckets: Dict[str, Tuple[float, datetime]] = {}
        self._windows: Dict[str, Tuple[int, datetime]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _window(key: str, window_seconds: int) -> int:
        if window_seconds <= 0:
            logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
            return 60
        return window_seconds

    async def check(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> RateLimitResult:
        if limit <= 0:
            return RateLimitResult(True, limit, limit, 0)
        window_seconds = self._window(key, window_seconds)
        if self.cache is not None:
            allowed, remaining, retry_after = await self.cache.check_rate_limit(
                key, limit, window_seconds, cost=cost
            )
            return RateLimitResult(allowed, limit, remaining, retry_after)

        now = self._clock()
        refill_rate = float(limit) / float(window_seconds)
        async with self._lock:
            tokens, last_ts = self._buckets.get(key, (float(limit), now))
            elapsed = max(0.0, (now - last_ts).total_seconds())
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._buckets[key] = (tokens, now)
        retry_after = 0 if allowed else int((cost - tokens) / refill_rate) + 1
        return RateLimitResult(allowed, limit, int(tokens), retry_after)

    async def check_window(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        """Count one request against a fixed window opened by the first hit."""

        if limit <= 0:
            return RateLimitResult(True, limit, limit, 0)
        window_seconds = self._window(key, window_seconds)
        if self.cache is not None:
            allowed, remaining, retry_after = await self.cache.check_fixed_window(
                key, limit, window_seconds
            )
            return RateLimitResult(allowed, limit, remaining, retry_after)

        now = self._clock()
        async with self._lock:
            count, started = self._windows.get(key, (0, now))
            resets_at = started + timedelta(seconds=window_seconds)
            if resets_at <= now:
                count, started = 0, now
                resets_at = now + timedelta(seconds=window_seconds)
            count += 1
            self._windows[key] = (count, started)
        allowed = count <= limit
        retry_after = 0 if allowed else math.ceil((resets_at - now).total_seconds())
        return RateLimitResult(allowed, limit, max(0, limit - count), retry_after)

    async def enforce(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        message: str = "Too many requests",
        fixed_window: bool = False,
    ) -> RateLimitResult:
        if fixed_window:
            result = await self.check_window(key, limit, window_seconds)
        else:
            result = await self.check(key, limit, window_seconds)
        if not result.allowed:
            logger.warning("rate_limited", key=key, retry_after=result.retry_after)
            raise RateLimitedError(message, detail={"retry_after": result.retry_after})
        return result
