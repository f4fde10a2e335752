"""Redis-backed token bucket rate limiter.

Bucket state for each key lives in a Redis hash so every process talking to
the same Redis enforces one shared budget.

Storage layout per key (``rate:limiter:<key>``):
- ``tokens``: decimal string with 9 fractional digits.
- ``last``: integer nanoseconds since the epoch of the last refill.

Updates use optimistic concurrency: ``WATCH`` the hash, read it, compute the
refill, then ``MULTI``/``EXEC`` the write. A concurrent writer makes ``EXEC``
raise ``WatchError`` and the attempt is retried a bounded number of times.

Failure policy is fail-closed: any error other than a write conflict (Redis
unreachable, timeout, auth, OOM, read-only replica, ...) denies the request
immediately. redis-py reports a connection lost while keys are WATCHed as a
``WatchError`` too, raised while handling the underlying ``ConnectionError``
or ``TimeoutError``; that context marks it as a backend error, not a conflict.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

import redis
from redis.exceptions import WatchError

from ratekeeper.adapters.rate_limit.base import AbstractRateLimiter, Key
from ratekeeper.core.logging import hash_for_log

logger = logging.getLogger(__name__)

KEY_PREFIX = "rate:limiter:"
DEFAULT_MAX_ATTEMPTS = 3
MIN_TTL_SECONDS = 60
TTL_BUFFER_SECONDS = 10
NANOS_PER_SECOND = 1_000_000_000


def _decode(raw: Any) -> str | None:
    if raw is None:
        return None
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return str(raw)


def _is_connection_failure(exc: WatchError) -> bool:
    # EXEC returning nil raises a bare WatchError; a dropped connection
    # raises one while handling the transport error.
    return isinstance(exc.__context__, (redis.ConnectionError, redis.TimeoutError))


class RedisTokenBucketRateLimiter(AbstractRateLimiter):
    """Token bucket limiter whose state is shared through Redis.

    Admission semantics match :class:`InMemoryTokenBucketRateLimiter`; only
    the place where bucket state lives differs. Idle keys are reclaimed by
    Redis itself through the TTL refreshed on every write.
    """

    def __init__(
        self,
        client: redis.Redis,
        rate: float,
        burst: int,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        timeout_seconds: float | None = None,
        clock_ns: Callable[[], int] = time.time_ns,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the Redis rate limiter.

        Args:
            client: Redis client (``redis.Redis`` or compatible).
            rate: Tokens refilled per second.
            burst: Maximum tokens a bucket can hold.
            max_attempts: Transaction attempts before giving up on conflicts.
            timeout_seconds: Optional budget for one ``allow`` call. Once
                spent, no further attempt is started and the call denies.
            clock_ns: Wall clock in nanoseconds, shared by all processes.
            monotonic: Clock used to enforce ``timeout_seconds``.

        Raises:
            ValueError: If max_attempts or timeout_seconds are invalid.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")

        self._client = client
        self._rate = float(rate)
        self._burst = int(burst)
        self._max_attempts = max_attempts
        self._timeout_seconds = timeout_seconds
        self._clock_ns = clock_ns
        self._monotonic = monotonic

    @property
    def rate(self) -> float:
        return self._rate

    @property
    def burst(self) -> int:
        return self._burst

    @property
    def ttl_seconds(self) -> int:
        """Expiry applied to a bucket on every write.

        Long enough for an empty bucket to refill completely, plus a buffer,
        and never shorter than ``MIN_TTL_SECONDS``.
        """
        if self._rate <= 0:
            return MIN_TTL_SECONDS
        fill_seconds = int(self._burst / self._rate)
        return max(MIN_TTL_SECONDS, fill_seconds + TTL_BUFFER_SECONDS)

    @staticmethod
    def storage_key(key: Key) -> str | bytes:
        """Return the Redis key holding the bucket for ``key``.

        Keys that cannot be encoded as strict UTF-8 are returned as bytes.
        Raw bytes smuggled through ``surrogateescape`` (e.g. ``os.fsdecode``)
        are restored, so ``"\\udcff"`` maps to ``b"rate:limiter:\\xff"``.
        Any other lone surrogate is kept as ``surrogatepass`` bytes.
        """
        storage_key = f"{KEY_PREFIX}{key}"
        try:
            storage_key.encode("utf-8")
        except UnicodeEncodeError:
            try:
                return storage_key.encode("utf-8", errors="surrogateescape")
            except UnicodeEncodeError:
                return storage_key.encode("utf-8", errors="surrogatepass")
        return storage_key

    def allow(self, key: Key) -> bool:
        """Consume one token for ``key`` from the shared bucket.

        Args:
            key: Rate limit key, embedded verbatim in the storage key.

        Returns:
            True if the token was committed to Redis. False when the bucket
            is empty, the limiter is disabled, writers kept conflicting, or
            Redis failed.
        """
        if self._rate <= 0 or self._burst <= 0:
            return False

        storage_key = self.storage_key(key)
        now = self._clock_ns()
        ttl = self.ttl_seconds
        started = self._monotonic()

        for attempt in range(1, self._max_attempts + 1):
            if attempt > 1 and self._deadline_exceeded(started):
                logger.warning(
                    "rate_limit.deadline_exceeded",
                    extra={
                        "key_hash": hash_for_log(key),
                        "attempt": attempt,
                        "timeout_s": self._timeout_seconds,
                    },
                )
                return False

            try:
                return self._try_allow(storage_key, now, ttl)
            except WatchError as exc:
                if _is_connection_failure(exc):
                    logger.warning(
                        "rate_limit.backend_error",
                        extra={
                            "key_hash": hash_for_log(key),
                            "attempt": attempt,
                            "error_type": type(exc.__context__).__name__,
                            "error_msg": str(exc),
                        },
                    )
                    return False
                logger.debug(
                    "rate_limit.conflict",
                    extra={"key_hash": hash_for_log(key), "attempt": attempt},
                )
                continue
            except Exception as exc:
                # Anything but a write conflict denies without retrying.
                logger.warning(
                    "rate_limit.backend_error",
                    extra={
                        "key_hash": hash_for_log(key),
                        "attempt": attempt,
                        "error_type": type(exc).__name__,
                        "error_msg": str(exc),
                    },
                )
                return False

        logger.warning(
            "rate_limit.conflicts_exhausted",
            extra={"key_hash": hash_for_log(key), "attempts": self._max_attempts},
        )
        return False

    def _deadline_exceeded(self, started: float) -> bool:
        if self._timeout_seconds is None:
            return False
        return self._monotonic() - started >= self._timeout_seconds

    def _try_allow(self, storage_key: str | bytes, now: int, ttl: int) -> bool:
        """Run one optimistic transaction.

        Raises:
            WatchError: Another client modified the key after WATCH, or the
                connection dropped while the key was WATCHed.
            redis.RedisError: Any other Redis failure.
        """
        with self._client.pipeline() as pipe:
            pipe.watch(storage_key)
            tokens, last = self._read_state(pipe, storage_key, now)

            refilled = self._refill(tokens, last, now)
            allowed = refilled >= 1.0
            new_tokens = refilled - 1.0 if allowed else refilled

            pipe.multi()
            pipe.hset(
                storage_key,
                mapping={
                    "tokens": f"{new_tokens:.9f}",
                    "last": str(now),
                },
            )
            pipe.expire(storage_key, ttl)
            pipe.execute()

        return allowed

    def _read_state(self, pipe: Any, storage_key: str | bytes, now: int) -> tuple[float, int]:
        """Read the persisted bucket, defaulting to a full bucket as of ``now``."""
        raw_tokens, raw_last = pipe.hmget(storage_key, ["tokens", "last"])

        tokens = float(self._burst)
        last = now

        tokens_str = _decode(raw_tokens)
        if tokens_str is not None:
            try:
                tokens = float(tokens_str)
            except ValueError:
                logger.warning("rate_limit.corrupt_field", extra={"field": "tokens"})

        last_str = _decode(raw_last)
        if last_str is not None:
            try:
                last = int(last_str)
            except ValueError:
                logger.warning("rate_limit.corrupt_field", extra={"field": "last"})

        return tokens, last

    def _refill(self, tokens: float, last: int, now: int) -> float:
        elapsed_seconds = max(0, now - last) / NANOS_PER_SECOND
        return min(float(self._burst), tokens + elapsed_seconds * self._rate)
