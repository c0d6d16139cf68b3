"""
Postgres Service - Main Application
===================================

HTTP service skeleton: environment configuration, a bounded PostgreSQL
connection pool, versioned schema migrations and a health endpoint.

STARTUP:
1. Load settings from the environment
2. Setup structured logging
3. Build the pool under a connect deadline and apply migrations
4. Probe the database
5. Build the FastAPI app around the pool
6. Bind the socket and serve

Any failure in steps 1-4 is fatal: a single diagnostic naming the phase is
logged and the process exits non-zero without binding a socket.
"""

import asyncio
import signal
import sys
import threading
from contextlib import asynccontextmanager, contextmanager
from typing import AsyncGenerator, Generator

import uvicorn
from uvicorn.server import HANDLED_SIGNALS
from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine

from src.config import HealthStatus, Settings, load_settings
from src.core import (
    ApplicationException,
    ConfigurationException,
    DatabaseException,
    ProbeException,
)
from src.infrastructure.database import close_pool, init_pool_and_migrate, ping, pool_status
from src.routes import api_router
from src.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    global_exception_handler,
)
from src.shared.infrastructure.logging import get_logger, setup_logging

logger = get_logger(__name__)


class GracefulServer(uvicorn.Server):
    """
    uvicorn server that treats SIGINT and SIGTERM as a clean shutdown.

    uvicorn re-raises a captured signal once ``serve()`` returns, which
    kills the process before the pool is disposed. Here the previous
    handlers are restored and the signal is not re-raised.
    """

    @contextmanager
    def capture_signals(self) -> Generator[None, None, None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_handlers = {sig: signal.signal(sig, self.handle_exit) for sig in HANDLED_SIGNALS}
        try:
            yield
        finally:
            for sig, handler in original_handlers.items():
                signal.signal(sig, handler)


health_router = APIRouter(tags=["Health"])


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Log service start and stop. The pool is owned by ``serve()``."""
    settings: Settings = app.state.settings
    logger.info("Service started", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    yield  # Application runs here

    logger.info("Service stopping")


@health_router.get("/health", responses={
    200: {
        "description": "Service and database are healthy",
        "content": {
            "application/json": {
                "example": {
                    "status": "healthy",
                    "version": "0.1.0",
                    "environment": "development",
                    "checks": {"database": "connected"},
                    "pool": {"size": 1, "checked_in": 1, "checked_out": 0}
                }
            }
        }
    },
    503: {"description": "Database unreachable"}
})
async def health_check(request: Request) -> JSONResponse:
    """
    Health check endpoint for load balancers and orchestrators.

    Runs the database liveness probe on every call. A failed probe is
    reported as 503; it never takes the process down.
    """
    settings: Settings = request.app.state.settings
    engine: AsyncEngine = request.app.state.db
    body = {
        "version": settings.app_version,
        "environment": settings.environment,
    }

    try:
        await ping(engine)
    except ProbeException as e:
        logger.warning("Health check failed", extra={
            "correlation_id": getattr(request.state, "correlation_id", "unknown"),
            "error_type": e.details.get("error_type"),
        })
        return JSONResponse(status_code=503, content={
            "status": HealthStatus.UNHEALTHY,
            **body,
            "checks": {"database": "unreachable"},
        })

    return JSONResponse(status_code=200, content={
        "status": HealthStatus.HEALTHY,
        **body,
        "checks": {"database": "connected"},
        "pool": pool_status(engine),
    })


@health_router.get("/", tags=["Root"])
async def root(request: Request):
    """Root endpoint with API information."""
    settings: Settings = request.app.state.settings
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
        "health": "/health",
    }


def create_app(settings: Settings, engine: AsyncEngine) -> FastAPI:
    """
    Build the FastAPI application around an already migrated pool.

    Args:
        settings: Loaded service settings
        engine: Connected engine returned by ``init_pool_and_migrate``
    """
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.db = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # Added last so it runs first and the logger sees the correlation ID
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(CorrelationIDMiddleware)
    app.add_exception_handler(ApplicationException, application_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.include_router(health_router)
    app.include_router(api_router)
    return app


def build_server_config(app: FastAPI, settings: Settings) -> uvicorn.Config:
    """uvicorn configuration; logging stays with ``setup_logging``."""
    return uvicorn.Config(
        app,
        host=settings.host,
        port=settings.server_port,
        log_config=None,
        lifespan="on",
    )


async def serve(settings: Settings) -> None:
    """
    Run the startup sequence and serve until shutdown.

    The socket is only bound after migrations and the startup probe succeed.
    """
    engine = await init_pool_and_migrate(settings)
    try:
        await ping(engine)

        app = create_app(settings, engine)
        server = GracefulServer(build_server_config(app, settings))
        logger.info("Listening", extra={"host": settings.host, "port": settings.server_port})
        await server.serve()
    finally:
        await close_pool(engine)


def _log_startup_failure(exc: ApplicationException) -> None:
    logger.critical("Startup failed", extra={
        "phase": exc.phase,
        "error_type": type(exc).__name__,
        "reason": exc.message,
    })


def main() -> int:
    """Process entry point. Returns the exit status."""
    try:
        settings = load_settings()
    except ConfigurationException as e:
        setup_logging()
        _log_startup_failure(e)
        return 1

    setup_logging(level=settings.log_level, environment=settings.environment)
    logger.info("Configuration loaded", extra={
        "database_url_configured": bool(settings.database_url),
        "port": settings.server_port,
    })

    try:
        asyncio.run(serve(settings))
    except DatabaseException as e:
        _log_startup_failure(e)
        return 1

    logger.info("Shutdown complete")
    return 0


# === Entry Point ===

if __name__ == "__main__":
    sys.exit(main())
