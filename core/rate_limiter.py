"""
Per-user token bucket rate limiter for job-board submissions.

The board allows roughly 200 applications a day. Defaults:
  - capacity: 20 tokens (burst)
  - refill: 8 tokens per hour (192/day, leaving a buffer)

Buckets are keyed by (user_id, action_type); every caller in this package
uses the default "application" action.

Refill is lazy: every call first adds elapsed * refill_rate tokens, capped at
capacity, then evaluates. All calls serialize on one lock so two concurrent
submissions for the same user cannot spend the same token.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from models.schemas import RateLimitDecision, RateLimitStatus, utcnow

logger = structlog.get_logger()


@dataclass
class _Bucket:
    tokens: float
    last_refill: datetime


DEFAULT_ACTION = "application"


class RateLimiter:
    """
    Async token bucket keyed by (user_id, action_type).
    Tokens refill at `refill_rate` per second up to `capacity`.
    """

    def __init__(
        self,
        capacity: int = 20,
        refill_rate: float = 8 / 3600,
        clock: Callable[[], datetime] = utcnow,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if refill_rate <= 0:
            raise ValueError("refill_rate must be positive")
        self.capacity = capacity
        self.refill_rate = refill_rate
        self._clock = clock
        self._buckets: dict[tuple[str, str], _Bucket] = {}
        self._lock = asyncio.Lock()

    async def acquire(
        self, user_id: str, cost: float = 1, action_type: str = DEFAULT_ACTION,
    ) -> RateLimitDecision:
        """
        Take `cost` tokens if available; otherwise deny without consuming.
        Raises ValueError when cost is not positive or exceeds capacity,
        since such a request could never be paid for.
        """
        if cost <= 0:
            raise ValueError("cost must be positive")
        if cost > self.capacity:
            raise ValueError(f"cost {cost} exceeds bucket capacity {self.capacity}")

        async with self._lock:
            now = self._clock()
            bucket = self._refill((user_id, action_type), now)

            if bucket.tokens >= cost:
                bucket.tokens -= cost
                return RateLimitDecision(allowed=True, remaining=bucket.tokens)

            retry_at = self._available_at(bucket, cost, now)

        logger.warning("rate_limit_exceeded",
                       user_id=user_id, action_type=action_type,
                       tokens=round(bucket.tokens, 3),
                       cost=cost, retry_at=retry_at.isoformat())
        return RateLimitDecision(allowed=False, remaining=bucket.tokens, retry_at=retry_at)

    async def get_status(self, user_id: str, action_type: str = DEFAULT_ACTION) -> RateLimitStatus:
        async with self._lock:
            bucket = self._refill((user_id, action_type), self._clock())
            return RateLimitStatus(
                tokens=bucket.tokens,
                capacity=self.capacity,
                refill_rate=self.refill_rate,
                last_refill=bucket.last_refill,
            )

    async def reset(self, user_id: str, action_type: str = DEFAULT_ACTION) -> None:
        """Forget the bucket; the next call starts with a full one."""
        async with self._lock:
            self._buckets.pop((user_id, action_type), None)
        logger.info("rate_limit_reset", user_id=user_id, action_type=action_type)

    async def prune_idle(self, max_idle: timedelta = timedelta(hours=24)) -> int:
        """Drop buckets with no activity for longer than `max_idle`."""
        async with self._lock:
            cutoff = self._clock() - max_idle
            stale = [key for key, b in self._buckets.items() if b.last_refill < cutoff]
            for key in stale:
                del self._buckets[key]
        if stale:
            logger.info("rate_limit_buckets_pruned", count=len(stale))
        return len(stale)

    # ── Internals (caller holds the lock) ─────────────────────

    def _refill(self, key: tuple[str, str], now: datetime) -> _Bucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = _Bucket(tokens=float(self.capacity), last_refill=now)
            self._buckets[key] = bucket
            return bucket

        elapsed = max((now - bucket.last_refill).total_seconds(), 0.0)
        bucket.tokens = min(float(self.capacity), bucket.tokens + elapsed * self.refill_rate)
        bucket.last_refill = max(now, bucket.last_refill)
        return bucket

    def _available_at(self, bucket: _Bucket, cost: float, now: datetime) -> datetime:
        missing = max(cost - bucket.tokens, 0.0)
        return now + timedelta(seconds=missing / self.refill_rate)


def create_rate_limiter(config=None, clock: Optional[Callable[[], datetime]] = None) -> RateLimiter:
    """Build a limiter from a RateLimitConfig (or defaults)."""
    if config is None:
        return RateLimiter(clock=clock or utcnow)
    return RateLimiter(
        capacity=config.capacity,
        refill_rate=config.refill_rate,
        clock=clock or utcnow,
    )
