"""
FastAPI application entry point.

Configures the application with:
- Lifespan handlers for database setup and the auto-checkout engine
- CORS middleware
- Correlation ID middleware
- Health and readiness probes
- API routes
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import text

from autocheckout.api import api_router
from autocheckout.application.engine import AutoCheckoutEngine
from autocheckout.core.config import Settings, get_settings
from autocheckout.core.logging import (
    get_correlation_id,
    get_logger,
    set_correlation_id,
    setup_logging,
)
from autocheckout.infrastructure.db.repository import (
    SqlCheckoutStore,
    SqlNotificationSink,
    SqlParkingInventory,
    SqlSensorEventLog,
    SqlTicketStore,
    SqlZoneConfigStore,
)
from autocheckout.infrastructure.db.session import close_db, get_session_factory, init_db

# Initialize logging
setup_logging()
logger = get_logger(__name__)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str = "1.0.0"


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    status: str
    engine_running: bool
    database_connected: bool


def build_engine(settings: Settings) -> AutoCheckoutEngine:
    """
    Wire the engine to the SQL repositories.

    Args:
        settings: Application settings.

    Returns:
        AutoCheckoutEngine: Engine ready to be started.
    """
    session_factory = get_session_factory()
    return AutoCheckoutEngine(
        ticket_store=SqlTicketStore(session_factory),
        inventory=SqlParkingInventory(session_factory),
        zone_store=SqlZoneConfigStore(session_factory),
        checkout_store=SqlCheckoutStore(session_factory),
        notifications=SqlNotificationSink(session_factory),
        sensor_log=SqlSensorEventLog(session_factory),
        hourly_rate=settings.hourly_rate,
        history_max_samples=settings.history_max_samples,
        history_retention_seconds=settings.history_retention_seconds,
        cleanup_interval_seconds=settings.cleanup_interval_seconds,
        min_exit_samples=settings.min_exit_samples,
        default_exit_radius_meters=settings.default_exit_radius_meters,
        default_confirmation_delay_seconds=settings.default_confirmation_delay_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Handles startup and shutdown tasks:
    - Startup: Initialize DB, load zones, start the cleanup timer
    - Shutdown: Stop timers, clean up connections
    """
    logger.info("application_starting")

    try:
        await init_db()
        logger.info("database_initialized")

        engine = build_engine(get_settings())
        await engine.start()
        app.state.engine = engine

    except Exception as e:
        logger.error("startup_failed", error=str(e))
        raise

    logger.info("application_started")

    yield

    logger.info("application_shutting_down")
    await app.state.engine.stop()
    await close_db()
    logger.info("application_shutdown_complete")


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured application instance.
    """
    settings = get_settings()

    app = FastAPI(
        title="Auto-Checkout Engine",
        description="Automatic parking checkout from geolocation, sensor and manual signals",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else ["http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):
        """Add correlation ID to each request."""
        correlation_id = request.headers.get("X-Correlation-ID")
        set_correlation_id(correlation_id)

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = get_correlation_id()

        return response

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["health"],
    )
    async def health_check() -> HealthResponse:
        """
        Basic liveness probe.

        Returns 200 if the application is running.
        """
        return HealthResponse(status="healthy")

    @app.get(
        "/ready",
        response_model=ReadinessResponse,
        tags=["health"],
    )
    async def readiness_check(request: Request) -> ReadinessResponse:
        """
        Readiness probe for load balancers.

        Returns 200 only if the engine is running and the database answers.
        """
        engine = getattr(request.app.state, "engine", None)
        engine_running = engine is not None and engine.is_running

        database_connected = True
        try:
            async with get_session_factory()() as session:
                await session.execute(text("SELECT 1"))
        except Exception as e:
            logger.warning("database_ping_failed", error=str(e))
            database_connected = False

        all_ready = engine_running and database_connected

        response = ReadinessResponse(
            status="ready" if all_ready else "not_ready",
            engine_running=engine_running,
            database_connected=database_connected,
        )

        if not all_ready:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content=response.model_dump(),
            )

        return response

    app.include_router(api_router)

    return app


# Create app instance
app = create_app()
