"""In-memory token bucket rate limiter.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
  Use the Redis backend when several processes must share a budget.
- Thread-safe: the key table has its own lock for insertion, and every
  bucket has a private lock for refill/consume, so unrelated keys never
  contend with each other.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from ratekeeper.adapters.rate_limit.base import AbstractRateLimiter, Key

logger = logging.getLogger(__name__)


class _TokenBucket:
    """Single key's bucket state guarded by its own lock."""

    __slots__ = ("tokens", "last", "retired", "_lock")

    def __init__(self, tokens: float, last: float) -> None:
        self.tokens = tokens
        self.last = last
        self.retired = False
        self._lock = threading.Lock()

    def take(self, *, rate: float, burst: int, clock: Callable[[], float]) -> bool | None:
        """Refill and try to consume one token.

        Returns:
            True/False for the admission decision, or None when the bucket
            was evicted from the table and the caller must look it up again.
        """
        with self._lock:
            if self.retired:
                return None

            now = clock()
            elapsed = max(0.0, now - self.last)
            self.tokens = min(float(burst), self.tokens + elapsed * rate)
            self.last = now

            if self.tokens >= 1.0:
                self.tokens -= 1.0
                return True
            return False

    def retire_if_idle(self, now: float, idle_after: float) -> bool:
        with self._lock:
            if now - self.last < idle_after:
                return False
            self.retired = True
            return True


class InMemoryTokenBucketRateLimiter(AbstractRateLimiter):
    """Token bucket limiter keeping one bucket per key in process memory.

    Every key gets an independent bucket holding up to ``burst`` tokens,
    refilled continuously at ``rate`` tokens per second. Buckets are created
    lazily, full, on the first call for a key.

    A limiter with ``rate <= 0`` or ``burst <= 0`` denies every call without
    creating any state.
    """

    def __init__(
        self,
        rate: float,
        burst: int,
        *,
        clock: Callable[[], float] = time.monotonic,
        idle_ttl_seconds: float | None = None,
    ) -> None:
        """Initialize the in-memory rate limiter.

        Args:
            rate: Tokens refilled per second.
            burst: Maximum tokens a bucket can hold.
            clock: Time source returning seconds as a float.
            idle_ttl_seconds: When set, buckets idle for this long (and at
                least long enough to be full again) are dropped. The table
                is swept when a new key is inserted, at most once per half
                of that idle period. None keeps every bucket for the
                lifetime of the limiter.

        Raises:
            ValueError: If idle_ttl_seconds is not positive.
        """
        if idle_ttl_seconds is not None and idle_ttl_seconds <= 0:
            raise ValueError("idle_ttl_seconds must be > 0")

        self._rate = float(rate)
        self._burst = int(burst)
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: dict[Key, _TokenBucket] = {}
        self._idle_after: float | None = None
        self._last_sweep = float("-inf")

        if idle_ttl_seconds is not None and self._rate > 0:
            # Only buckets that have fully refilled may be dropped.
            self._idle_after = max(float(idle_ttl_seconds), self._burst / self._rate)

    @property
    def rate(self) -> float:
        return self._rate

    @property
    def burst(self) -> int:
        return self._burst

    def __len__(self) -> int:
        return len(self._buckets)

    def _get_or_create_bucket(self, key: Key) -> _TokenBucket:
        bucket = self._buckets.get(key)
        if bucket is not None:
            return bucket

        with self._lock:
            # Another thread may have inserted the bucket while we waited.
            bucket = self._buckets.get(key)
            if bucket is not None:
                return bucket

            now = self._clock()
            if self._idle_after is not None and now - self._last_sweep >= self._idle_after / 2:
                # At most one full scan per half idle period
                self._last_sweep = now
                self._evict_idle_locked(now)

            bucket = _TokenBucket(tokens=float(self._burst), last=now)
            self._buckets[key] = bucket
            return bucket

    def _evict_idle_locked(self, now: float) -> None:
        assert self._idle_after is not None
        idle_keys = [
            key
            for key, bucket in self._buckets.items()
            if bucket.retire_if_idle(now, self._idle_after)
        ]
        for key in idle_keys:
            del self._buckets[key]

        if idle_keys:
            logger.debug(
                "rate_limit.buckets_evicted",
                extra={"evicted": len(idle_keys), "remaining_buckets": len(self._buckets)},
            )

    def allow(self, key: Key) -> bool:
        """Consume one token for ``key`` if available.

        Args:
            key: Rate limit key, used verbatim.

        Returns:
            True if a token was consumed, False otherwise.
        """
        if self._rate <= 0 or self._burst <= 0:
            return False

        while True:
            bucket = self._get_or_create_bucket(key)
            allowed = bucket.take(rate=self._rate, burst=self._burst, clock=self._clock)
            if allowed is not None:
                return allowed
