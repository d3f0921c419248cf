"""
DriveTrack - FastAPI Application

Exposes one tracking session (start/stop, live status, history, map
layers and notifications) plus account routes to the web UI.
"""
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from drivetrack.config import Settings, get_settings
from drivetrack.exceptions import (
    AlreadyActive,
    AuthError,
    FetchFailed,
    ProviderUnavailable,
    TrackingError,
    Unauthenticated,
)
from drivetrack.logging_config import configure_logging
from drivetrack.routes import auth, tracking
from drivetrack.services.runtime import TrackerRuntime

logger = structlog.get_logger()

ERROR_STATUS = (
    (Unauthenticated, 401),
    (AlreadyActive, 409),
    (ProviderUnavailable, 503),
    (FetchFailed, 502),
)


def _status_for(exc: TrackingError) -> int:
    if isinstance(exc, AuthError):
        return exc.status_code if exc.status_code and 400 <= exc.status_code < 500 else 502
    for error_type, status in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 400


def create_app(settings: Optional[Settings] = None, runtime: Optional[TrackerRuntime] = None) -> FastAPI:
    """Build the API. Pass a runtime to inject providers/sinks (tests)."""
    settings = settings or get_settings()
    configure_logging(settings.log_level, debug=settings.debug)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifecycle: startup and shutdown."""
        logger.info("Starting DriveTrack", version=settings.app_version)
        if app.state.runtime is None:
            app.state.runtime = TrackerRuntime(settings)

        yield

        # Teardown ends any live session exactly once
        logger.info("Shutting down DriveTrack")
        await app.state.runtime.close()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Live driver location tracking",
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )

    app.include_router(auth.router)
    app.include_router(tracking.router)

    @app.exception_handler(TrackingError)
    async def tracking_error_handler(request: Request, exc: TrackingError):
        status = _status_for(exc)
        logger.info("Request failed", path=request.url.path, error=type(exc).__name__, status=status)
        return JSONResponse(
            status_code=status,
            content={"error": type(exc).__name__, "title": exc.title, "detail": str(exc)},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler to prevent secret leakage."""
        logger.exception("Unhandled exception", path=request.url.path)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    @app.get("/health")
    async def health_check():
        """Health check endpoint for load balancers."""
        return {
            "status": "healthy",
            "version": settings.app_version,
        }

    @app.get("/")
    async def root():
        """Root endpoint with API info."""
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "docs": "/docs",
            "health": "/health",
        }

    return app


def run() -> None:
    import uvicorn
    settings = get_settings()
    uvicorn.run(
        "drivetrack.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
