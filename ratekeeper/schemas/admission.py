"""Pydantic schemas for admission decisions."""

from __future__ import annotations

from pydantic import BaseModel, Field


class AdmissionRequest(BaseModel):
    """Ask whether one operation for ``key`` may proceed."""

    key: str = Field(
        ...,
        description="Rate limit key, used verbatim (e.g. 'user:123', 'route:/v1/search').",
    )


class AdmissionResponse(BaseModel):
    """Admission decision for a single operation."""

    key: str = Field(..., description="Key the decision applies to.")
    allowed: bool = Field(
        ...,
        description="True when a token was consumed and the operation may proceed.",
    )
