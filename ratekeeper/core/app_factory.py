"""Application factory for the FastAPI app.

Centralizes app construction (metadata, middleware, handlers, routers) so
tests can build isolated instances.
"""

from __future__ import annotations

from fastapi import FastAPI

from ratekeeper import __version__
from ratekeeper.api.routes import admissions_router, health_router
from ratekeeper.core.config import settings
from ratekeeper.core.exception_handlers import setup_exception_handlers
from ratekeeper.core.logging import configure_logging
from ratekeeper.core.middleware import request_id_middleware


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance.

    Returns:
        Configured FastAPI app with middleware, handlers and routers.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    app = FastAPI(
        title="Ratekeeper",
        description=(
            "Token-bucket admission service. Decides per key (user, route, IP) "
            "whether an operation may proceed, with state kept in process "
            "memory or shared through Redis."
        ),
        version=__version__,
        debug=settings.app.debug,
    )

    app.middleware("http")(request_id_middleware)

    setup_exception_handlers(app)

    app.include_router(admissions_router, prefix="/v1")
    app.include_router(health_router)

    return app
