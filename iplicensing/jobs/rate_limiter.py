"""
Rate limiting for background jobs

A Redis sorted-set sliding window shared by every worker, plus an
in-process token bucket for bursty calls. Redis problems fail open.
"""
import math
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from iplicensing.utils.time import utc_now

logger = structlog.get_logger()


@dataclass(frozen=True)
class RateLimitConfig:
    name: str
    max_requests: int
    window_ms: int
    block_duration_ms: int | None = None


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: datetime
    retry_after_ms: int | None = None


# Per-queue limits applied by the worker before a job runs
QUEUE_RATE_LIMITS: dict[str, RateLimitConfig] = {
    "payout-processing": RateLimitConfig(
        name="stripe-transfers-per-minute",
        max_requests=60,
        window_ms=60_000,
        block_duration_ms=10_000,
    ),
    "asset-processing": RateLimitConfig(
        name="asset-processing-per-minute",
        max_requests=20,
        window_ms=60_000,
        block_duration_ms=10_000,
    ),
}


class JobRateLimiter:
    def __init__(self, redis: aioredis.Redis | None):
        self.redis = redis

    async def check_limit(self, config: RateLimitConfig) -> RateLimitResult:
        """Count this request against the window and report whether it may run."""
        now_ms = int(time.time() * 1000)
        reset_at = utc_now() + timedelta(milliseconds=config.window_ms)
        if self.redis is None:
            return RateLimitResult(allowed=True, remaining=config.max_requests, reset_at=reset_at)

        key = f"rate_limit:{config.name}"
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(key, "-inf", now_ms - config.window_ms)
                pipe.zcard(key)
                pipe.zadd(key, {f"{now_ms}-{random.random()}": now_ms})
                pipe.expire(key, math.ceil(config.window_ms / 1000) + 60)
                results = await pipe.execute()
            current = int(results[1])
            allowed = current < config.max_requests
            if not allowed:
                await self.redis.zpopmax(key)
        except RedisError as e:
            logger.warning("Rate limiter unavailable, allowing request", limit=config.name, error=str(e))
            return RateLimitResult(allowed=True, remaining=config.max_requests, reset_at=reset_at)

        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, config.max_requests - current),
            reset_at=reset_at,
            retry_after_ms=None if allowed else (config.block_duration_ms or config.window_ms),
        )

    async def get_status(self, name: str) -> dict[str, int | str]:
        if self.redis is None:
            return {"count": 0, "window": "unavailable"}
        key = f"rate_limit:{name}"
        try:
            count = await self.redis.zcard(key)
            ttl = await self.redis.ttl(key)
        except RedisError as e:
            logger.warning("Rate limiter status unavailable", limit=name, error=str(e))
            return {"count": 0, "window": "unavailable"}
        return {"count": int(count), "window": f"{ttl}s" if ttl and ttl > 0 else "expired"}

    async def reset(self, name: str) -> None:
        if self.redis is not None:
            await self.redis.delete(f"rate_limit:{name}")


class TokenBucket:
    """In-process token bucket; `refill_rate` is tokens per second."""

    def __init__(
        self,
        max_tokens: int,
        refill_rate: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_tokens = max_tokens
        self.refill_rate = refill_rate
        self._clock = clock
        self._tokens = max_tokens
        self._last_refill = clock()

    def _refill(self) -> None:
        now = self._clock()
        added = math.floor((now - self._last_refill) * self.refill_rate)
        if added > 0:
            self._tokens = min(self._tokens + added, self.max_tokens)
            self._last_refill = now

    def try_acquire(self) -> RateLimitResult:
        self._refill()
        reset_at = utc_now() + timedelta(seconds=1)
        if self._tokens >= 1:
            self._tokens -= 1
            return RateLimitResult(allowed=True, remaining=self._tokens, reset_at=reset_at)
        return RateLimitResult(
            allowed=False,
            remaining=0,
            reset_at=reset_at,
            retry_after_ms=math.ceil(1 / self.refill_rate * 1000) if self.refill_rate > 0 else None,
        )

    @property
    def tokens(self) -> int:
        self._refill()
        return self._tokens
