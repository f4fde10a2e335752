"""Application-level exception types.

Domain errors shared by the HTTP layer and the rate limiting glue, so that
handlers can map them to consistent responses.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients."""

    key_type: str


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class RateLimitAppError(AppError):
    """Raised when a limiter denies a request.

    Raised the same way whether the bucket is empty or the backend is
    unavailable.
    """

    def __init__(
        self,
        code: str = "rate_limit_exceeded",
        message: str = "Rate limit exceeded. Try again later.",
        details: ErrorDetails | None = None,
    ) -> None:
        super().__init__(code=code, message=message, details=details)
