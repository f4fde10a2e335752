from __future__ import annotations

from ratekeeper.api.routes.admissions import router as admissions_router
from ratekeeper.api.routes.health import router as health_router

__all__ = ["admissions_router", "health_router"]
