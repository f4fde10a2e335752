"""Rate limiting adapters.

Two token-bucket backends share one interface: an in-memory limiter for a
single process and a Redis limiter for state shared across processes.
"""

from ratekeeper.adapters.rate_limit.base import AbstractRateLimiter, Key, KeyFunc, LimiterFunc
from ratekeeper.adapters.rate_limit.in_memory import InMemoryTokenBucketRateLimiter
from ratekeeper.adapters.rate_limit.redis_store import RedisTokenBucketRateLimiter

__all__ = [
    "AbstractRateLimiter",
    "InMemoryTokenBucketRateLimiter",
    "Key",
    "KeyFunc",
    "LimiterFunc",
    "RedisTokenBucketRateLimiter",
]
