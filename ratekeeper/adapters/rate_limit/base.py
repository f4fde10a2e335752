"""Rate limiter interfaces.

The HTTP layer depends on this abstraction (not a concrete backend) so the
same admission logic runs against an in-process table or a shared Redis
store.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable

Key = str
"""Opaque rate limit key (e.g. ``"user:123"``), used verbatim."""

KeyFunc = Callable[[Any], Key]
"""Extracts a rate limit key from an inbound request."""


class AbstractRateLimiter(ABC):
    """Interface for token-bucket rate limiters."""

    @abstractmethod
    def allow(self, key: Key) -> bool:
        """Decide whether one operation for ``key`` may proceed now.

        Args:
            key: Rate limit key. Any string is valid, including the empty
                string.

        Returns:
            True when a token was consumed and the caller may proceed.
            False when the caller must not proceed; no token was consumed.
            Backends never raise for storage failures, they return False.
        """
        raise NotImplementedError


class LimiterFunc(AbstractRateLimiter):
    """Adapt a plain ``key -> bool`` callable to the limiter interface."""

    def __init__(self, fn: Callable[[Key], bool]) -> None:
        self._fn = fn

    def allow(self, key: Key) -> bool:
        return bool(self._fn(key))
