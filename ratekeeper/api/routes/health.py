from __future__ import annotations

from fastapi import APIRouter

from ratekeeper.core.config import settings

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check() -> dict:
    """Health check endpoint, never rate limited.

    Does not touch the limiter backend, so a Redis outage (which makes every
    admission fail closed) does not take the process out of rotation.

    Returns:
        dict: ``status`` plus the configured limiter backend.
    """

    return {"status": "ok", "rate_limit_backend": settings.app.rate_limit_backend}
