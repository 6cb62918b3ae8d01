"""
Per-user fixed-window rate limiting.

``InMemoryRateLimiter`` serves a single process. ``RedisRateLimiter`` shares
counters across workers through Redis. ``build_rate_limiter`` picks one from
settings (``REDIS_URL`` set selects Redis).
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from chatrelay.config import Settings
from chatrelay.core import RateLimitedError, get_logger
from chatrelay.core.metrics import metrics
from chatrelay.core.time import epoch_ms

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: int  # epoch milliseconds


@dataclass
class RateLimitRecord:
    count: int
    reset_time: int


class RateLimiter(ABC):
    """Rate limiter contract. ``check`` counts one request and never raises."""

    @abstractmethod
    async def check(self, key: str, limit: int, window_ms: int = 60000) -> RateLimitResult:
        ...

    async def aclose(self) -> None:
        return None

    async def enforce(self, key: str, limit: int, window_ms: int = 60000) -> RateLimitResult:
        """
        Count one request for ``key``.

        Raises:
            RateLimitedError: If the key is over its limit for the current window
        """
        result = await self.check(key, limit, window_ms)
        if not result.allowed:
            metrics.increment("rate_limit_blocks_total")
            logger.warning(
                "Rate limit exceeded",
                data={"key": key, "limit": limit, "reset_time": result.reset_time},
            )
            raise RateLimitedError(result.reset_time)
        return result


class InMemoryRateLimiter(RateLimiter):
    """Single-process fixed window keyed by user id."""

    def __init__(
        self,
        clock: Callable[[], int] = epoch_ms,
        sweep_interval_ms: int = 60000,
    ):
        self._clock = clock
        self._records: dict[str, RateLimitRecord] = {}
        self._lock = asyncio.Lock()
        self._sweep_interval_ms = sweep_interval_ms
        self._next_sweep = clock() + sweep_interval_ms

    def __len__(self) -> int:
        return len(self._records)

    def _sweep(self, now: int) -> None:
        expired = [key for key, record in self._records.items() if now > record.reset_time]
        for key in expired:
            del self._records[key]
        if expired:
            logger.debug("Swept expired rate limit records", data={"count": len(expired)})
        self._next_sweep = now + self._sweep_interval_ms

    async def check(self, key: str, limit: int, window_ms: int = 60000) -> RateLimitResult:
        async with self._lock:
            now = self._clock()
            if now >= self._next_sweep:
                self._sweep(now)

            record = self._records.get(key)
            if record is None or now > record.reset_time:
                record = RateLimitRecord(count=0, reset_time=now + window_ms)
                self._records[key] = record

            if record.count >= limit:
                return RateLimitResult(allowed=False, remaining=0, reset_time=record.reset_time)

            record.count += 1
            return RateLimitResult(
                allowed=True,
                remaining=limit - record.count,
                reset_time=record.reset_time,
            )


class RedisRateLimiter(RateLimiter):
    """
    Fixed window shared through Redis.

    Each key is an integer counter that expires with its window: ``INCR``
    counts the request and the first increment sets ``PEXPIRE``. Requests
    past the limit still increment, which only affects a key already denied.
    """

    def __init__(self, client: Any, prefix: str = "ratelimit:", clock: Callable[[], int] = epoch_ms):
        self._client = client
        self._prefix = prefix
        self._clock = clock

    @classmethod
    def from_url(cls, url: str) -> "RedisRateLimiter":
        import redis.asyncio as aioredis

        return cls(aioredis.from_url(url))

    async def check(self, key: str, limit: int, window_ms: int = 60000) -> RateLimitResult:
        redis_key = f"{self._prefix}{key}"
        count = int(await self._client.incr(redis_key))
        if count == 1:
            await self._client.pexpire(redis_key, window_ms)
        ttl = int(await self._client.pttl(redis_key))
        if ttl < 0:
            # Counter lost its expiry (e.g. crash between INCR and PEXPIRE).
            await self._client.pexpire(redis_key, window_ms)
            ttl = window_ms

        reset_time = self._clock() + ttl
        if count > limit:
            return RateLimitResult(allowed=False, remaining=0, reset_time=reset_time)
        return RateLimitResult(allowed=True, remaining=limit - count, reset_time=reset_time)

    async def aclose(self) -> None:
        await self._client.aclose()


def build_rate_limiter(settings: Settings) -> RateLimiter:
    """Select the limiter implementation from configuration."""
    if settings.redis_url:
        logger.info("Using Redis rate limiter")
        return RedisRateLimiter.from_url(settings.redis_url)
    logger.info("Using in-memory rate limiter")
    return InMemoryRateLimiter()
