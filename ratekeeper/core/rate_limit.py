"""Rate limiting glue between limiter backends and callers.

This module wires the rate limiting adapters into the HTTP layer and into
plain callables.

Design goals:
- Minimal coupling: routes depend on a dependency function only.
- Swap-friendly: the backend (memory or Redis) is chosen by settings behind
  the AbstractRateLimiter interface.
- Uniform denials: a denied request always surfaces as RateLimitAppError,
  whether the bucket is empty or the backend is down.

Keying strategy:
- Per API key when the X-API-Key header is present.
- Otherwise per client IP.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
from typing import Any, Callable, TypeVar

import redis
from fastapi import Request

from ratekeeper.adapters.rate_limit.base import AbstractRateLimiter, Key, KeyFunc
from ratekeeper.adapters.rate_limit.in_memory import InMemoryTokenBucketRateLimiter
from ratekeeper.adapters.rate_limit.redis_store import RedisTokenBucketRateLimiter
from ratekeeper.core.config import AppSettings, RedisSettings, settings
from ratekeeper.core.errors import RateLimitAppError
from ratekeeper.core.logging import hash_for_log

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def limit_calls(limiter: AbstractRateLimiter | None, key_func: KeyFunc) -> Callable[[F], F]:
    """Wrap a downstream operation with an admission check.

    The wrapped callable receives the request as its first positional
    argument. ``key_func(request)`` selects the bucket; a denied request
    raises RateLimitAppError and the downstream operation is not called.
    With ``limiter=None`` the wrapper forwards every call untouched.

    Works for both sync and async callables.

    Example:
        >>> @limit_calls(InMemoryTokenBucketRateLimiter(1.0, 5), lambda req: req["user"])
        ... def handle(req):
        ...     return "ok"
    """

    def _check(request: Any) -> None:
        if limiter is not None and not limiter.allow(key_func(request)):
            raise RateLimitAppError()

    def decorator(fn: F) -> F:
        if inspect.iscoroutinefunction(fn):

            @functools.wraps(fn)
            async def async_wrapper(request: Any, *args: Any, **kwargs: Any) -> Any:
                _check(request)
                return await fn(request, *args, **kwargs)

            return async_wrapper  # type: ignore[return-value]

        @functools.wraps(fn)
        def wrapper(request: Any, *args: Any, **kwargs: Any) -> Any:
            _check(request)
            return fn(request, *args, **kwargs)

        return wrapper  # type: ignore[return-value]

    return decorator


def build_rate_limiter(
    app_settings: AppSettings,
    redis_settings: RedisSettings,
) -> AbstractRateLimiter:
    """Build the limiter backend selected by configuration.

    Args:
        app_settings: Rate limit parameters and backend choice.
        redis_settings: Connection settings used by the redis backend.

    Returns:
        AbstractRateLimiter: Configured limiter instance.
    """

    if app_settings.rate_limit_backend == "redis":
        client = redis.Redis.from_url(
            redis_settings.url,
            socket_timeout=redis_settings.socket_timeout_seconds,
            socket_connect_timeout=redis_settings.socket_connect_timeout_seconds,
        )
        return RedisTokenBucketRateLimiter(
            client,
            app_settings.rate_limit_rate,
            app_settings.rate_limit_burst,
            max_attempts=app_settings.rate_limit_max_attempts,
            timeout_seconds=app_settings.rate_limit_timeout_seconds,
        )

    return InMemoryTokenBucketRateLimiter(
        app_settings.rate_limit_rate,
        app_settings.rate_limit_burst,
        idle_ttl_seconds=app_settings.rate_limit_idle_ttl_seconds,
    )


_limiter: AbstractRateLimiter | None = None
_limiter_config: tuple[Any, ...] | None = None


def get_rate_limiter() -> AbstractRateLimiter:
    """Return a process-wide rate limiter instance.

    The instance is cached in-module to preserve bucket state across
    requests. If configuration changes (primarily in tests), the limiter is
    rebuilt.

    Returns:
        AbstractRateLimiter: Configured limiter instance.
    """

    global _limiter, _limiter_config

    config = (
        settings.app.rate_limit_backend,
        settings.app.rate_limit_rate,
        settings.app.rate_limit_burst,
        settings.app.rate_limit_max_attempts,
        settings.app.rate_limit_timeout_seconds,
        settings.app.rate_limit_idle_ttl_seconds,
        settings.redis.url,
    )

    if _limiter is None or _limiter_config != config:
        _limiter = build_rate_limiter(settings.app, settings.redis)
        _limiter_config = config
        logger.info(
            "rate_limit.configured",
            extra={
                "backend": settings.app.rate_limit_backend,
                "rate": settings.app.rate_limit_rate,
                "burst": settings.app.rate_limit_burst,
            },
        )

    return _limiter


def build_rate_limit_key(request: Request) -> Key:
    """Build the limiter key for the current request.

    Args:
        request: FastAPI request.

    Returns:
        str: Namespaced limiter key.
    """

    api_key = request.headers.get("X-API-Key")
    if api_key:
        return f"api_key:{api_key}"

    client_host = request.client.host if request.client else "unknown"
    return f"ip:{client_host}"


async def allow_async(limiter: AbstractRateLimiter, key: Key) -> bool:
    """Run ``limiter.allow`` off the event loop.

    The redis backend blocks on network I/O, so the decision runs in the
    default executor.
    """

    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, limiter.allow, key)


async def enforce_rate_limit(request: Request) -> None:
    """FastAPI dependency enforcing rate limits.

    When enabled, consumes one token from the requester's bucket. Denied
    requests raise RateLimitAppError, rendered as HTTP 429.

    Args:
        request: FastAPI request.

    Raises:
        RateLimitAppError: When the limiter denies the request.
    """

    if not settings.app.rate_limit_enabled:
        return

    limiter = get_rate_limiter()
    key = build_rate_limit_key(request)
    key_type = key.split(":", 1)[0]

    if await allow_async(limiter, key):
        logger.debug(
            "rate_limit.allowed",
            extra={"key_type": key_type, "key_hash": hash_for_log(key)},
        )
        return

    logger.warning(
        "rate_limit.denied",
        extra={
            "key_type": key_type,
            "key_hash": hash_for_log(key),
            "backend": settings.app.rate_limit_backend,
            "burst": settings.app.rate_limit_burst,
        },
    )
    raise RateLimitAppError(details={"key_type": key_type})
