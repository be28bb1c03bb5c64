"""
FastAPI application for the event ingestion pipeline.

This module creates and configures the FastAPI application,
including middleware, error handlers, and route registration.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.api.routes import events, health, jobs, metrics
from src.core.config import settings
from src.core.errors import (
    IngestionError,
    PersistenceUnavailableError,
    SourceRegistrationError,
)
from src.core.logging_setup import configure_logging
from src.workers.runtime import build_runtime

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = structlog.get_logger(__name__)

OPENAPI_TAGS = [
    {
        "name": "Health",
        "description": "Liveness/readiness and dependency health checks.",
    },
    {
        "name": "Jobs",
        "description": "Trigger discovery, inspect job status and pipeline health.",
    },
    {
        "name": "Events",
        "description": "Query canonical events with provenance and quality detail.",
    },
]


# =============================================================================
# Lifespan Management
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Build the runtime on startup and release it on shutdown.

    The event store is pinged once so a misconfigured deployment fails fast.
    """
    logger.info(
        "Starting event ingestion API",
        environment=settings.ENVIRONMENT,
        store_backend=settings.EVENT_STORE_BACKEND,
    )
    async with build_runtime() as runtime:
        try:
            await runtime.store.ping()
        except PersistenceUnavailableError as exc:
            logger.error("Event store connection failed", reason=exc.reason.value)
            raise
        logger.info("Event store connection verified", sources=runtime.registry.names)
        app.state.runtime = runtime
        yield
    logger.info("Shutting down application")


# =============================================================================
# Application Factory
# =============================================================================


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance.
    """
    configure_logging(service="api")

    app = FastAPI(
        title="Event Ingestion Pipeline",
        description=(
            "Discovers events from external providers, normalizes, geocodes, "
            "classifies, deduplicates and scores them."
        ),
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        openapi_tags=OPENAPI_TAGS,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)
    register_routes(app)

    return app


def _status_for(exc: IngestionError) -> int:
    if isinstance(exc, SourceRegistrationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, PersistenceUnavailableError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def register_exception_handlers(app: FastAPI) -> None:
    """Register custom exception handlers."""

    @app.exception_handler(IngestionError)
    async def ingestion_exception_handler(
        request: Request,
        exc: IngestionError,
    ) -> JSONResponse:
        """Typed failures expose only their reason code and message."""
        logger.warning(
            "Request failed",
            path=request.url.path,
            method=request.method,
            reason=exc.reason.value,
        )
        return JSONResponse(
            status_code=_status_for(exc),
            content={"error": exc.reason.value, "message": exc.message},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("Rejected request", path=request.url.path, method=request.method)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "bad_request", "message": "Request contained an invalid value"},
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(
        request: Request,
        exc: Exception,
    ) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "Unhandled exception",
            path=request.url.path,
            method=request.method,
            error=type(exc).__name__,
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
            },
        )


def register_routes(app: FastAPI) -> None:
    """Register API route handlers."""

    # Health check (no prefix)
    app.include_router(health.router, tags=["Health"])
    app.include_router(metrics.router, tags=["Health"])

    api_v1_prefix = "/api/v1"

    app.include_router(jobs.router, prefix=api_v1_prefix, tags=["Jobs"])
    app.include_router(events.router, prefix=f"{api_v1_prefix}/events", tags=["Events"])


# =============================================================================
# Application Instance
# =============================================================================

app = create_app()


# =============================================================================
# Development Server
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.api.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=settings.API_RELOAD,
    )
