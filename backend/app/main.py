"""FastAPI application entrypoint and configuration.

This module provides the main FastAPI application factory that configures
logging, sets up CORS middleware, maps geometry errors to HTTP 400
responses, includes the parcel and view routers, and exposes a health
check endpoint for monitoring. The lifespan starts the ingestion pipeline
(view creation and the refresh timer) and drains it on shutdown.

Example:
    The application can be run with uvicorn:
        $ uvicorn app.main:app --reload

    Or imported and used programmatically:
        >>> from app.main import app
        >>> # Use app in ASGI server
"""

import contextlib
import logging
from collections.abc import AsyncIterator

import fastapi
from fastapi import responses
from fastapi.middleware import cors

from app.api import parcels, views
from app.core import config, errors, log
from app.services import pipeline

logger = logging.getLogger(__name__)


@contextlib.asynccontextmanager
async def lifespan(app: fastapi.FastAPI) -> AsyncIterator[None]:
    """Start the pipeline on startup and stop it on shutdown.

    Honours ``app.dependency_overrides`` for ``pipeline.get_pipeline`` so
    tests can run the lifespan against in-memory backends.
    """
    factory = app.dependency_overrides.get(
        pipeline.get_pipeline, pipeline.get_pipeline
    )
    pipe = factory()
    pipe.start()
    logger.info("Parcel pipeline started")
    try:
        yield
    finally:
        pipe.stop()


async def geometry_error_handler(
    _request: fastapi.Request, exc: errors.GeometryError
) -> responses.JSONResponse:
    """Render a geometry failure as HTTP 400 with its code and message."""
    logger.info("Rejected geometry: %s", exc)
    return responses.JSONResponse(
        status_code=400,
        content={"detail": exc.to_dict()},
    )


def create_app() -> fastapi.FastAPI:
    """Create and configure the FastAPI application.

    Configures logging, sets up CORS middleware, registers the geometry
    error handler, includes the parcel and view routers and adds a health
    check endpoint. CORS origins are configured from settings.

    Returns:
        Configured FastAPI application instance ready for ASGI server.

    Example:
        The app can be used with uvicorn or other ASGI servers:
            >>> app = create_app()
            >>> # Or use the module-level app instance:
            >>> from app.main import app
    """
    settings = config.get_settings()
    log.configure_logging(settings.log_level)
    app = fastapi.FastAPI(
        title="Parcel Risk API",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(parcels.router)
    app.include_router(views.router)
    app.add_exception_handler(
        errors.GeometryError,
        geometry_error_handler,  # type: ignore[arg-type]
    )

    app.add_middleware(
        cors.CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict[str, str]:  # type: ignore[misc]
        """Health check endpoint for monitoring and load balancers.

        Returns:
            Dictionary with status "ok" if the service is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
