from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from ratekeeper.core.rate_limit import allow_async, enforce_rate_limit, get_rate_limiter
from ratekeeper.core.logging import hash_for_log
from ratekeeper.schemas.admission import AdmissionRequest, AdmissionResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Admissions"])


@router.post("/admissions", response_model=AdmissionResponse)
async def decide_admission(body: AdmissionRequest) -> AdmissionResponse:
    """Consume one token for ``body.key`` on behalf of a calling service.

    This endpoint *is* the admission decision, so a denial is reported as
    ``allowed: false`` with HTTP 200 rather than as a 429.

    Args:
        body: Key to rate limit.

    Returns:
        AdmissionResponse: The decision for this key.
    """

    allowed = await allow_async(get_rate_limiter(), body.key)
    logger.info(
        "admission.decided",
        extra={"key_hash": hash_for_log(body.key), "allowed": allowed},
    )
    return AdmissionResponse(key=body.key, allowed=allowed)


@router.get("/ping", dependencies=[Depends(enforce_rate_limit)])
async def ping() -> dict:
    """Rate-limited liveness check for API clients.

    Returns:
        dict: ``{"status": "pong"}`` while the caller has budget left.
    """

    return {"status": "pong"}
