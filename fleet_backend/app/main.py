"""
FastAPI Application Entry Point.

This is the main application file for the Fleet Dispatch Backend.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fleet_backend.app.core.config import settings
from fleet_backend.app.api.v1.router import router as api_v1_router
from fleet_backend.app.core.locks import KeyedLock
from fleet_backend.app.core.observability import ObservabilityMiddleware, configure_logging
from fleet_backend.app.db.session import engine, Base
from fleet_backend.app.services.event_bus import EventBus
from fleet_backend.app.services.event_relay import RedisEventRelay
import fleet_backend.app.core.redis_client as redis_client_module
from fleet_backend.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)

# Import models to ensure they are registered with Base
from fleet_backend.app.models.truck import Truck
from fleet_backend.app.models.truck_location import TruckLocation
from fleet_backend.app.models.service_request import ServiceRequest
from fleet_backend.app.models.request_history import RequestHistoryEntry
from fleet_backend.app.models.sequence_counter import SequenceCounter
from fleet_backend.app.models.audit_log import AuditLog

configure_logging(settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Creates database tables on startup.
    2. Starts the Redis event relay when enabled, and stops it on shutdown.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    relay = None
    if settings.event_relay_enabled:
        relay = RedisEventRelay(
            app.state.event_bus,
            redis_client_module.redis_client,
            channel_prefix=settings.event_relay_channel_prefix,
        )
        await relay.start()
    app.state.event_relay = relay
    logger.info("%s started (event relay %s)", settings.app_name, "on" if relay else "off")

    yield

    if relay is not None:
        await relay.stop()


# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Truck dispatch and real-time tracking for a service fleet",
    lifespan=lifespan,
)

# Shared per-process state: event fan-out and record locks
app.state.event_bus = EventBus(queue_size=settings.event_queue_size)
app.state.record_locks = KeyedLock()
app.state.event_relay = None

# Middleware
app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Status and application information
    """
    health = {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.api_version,
        "event_relay": "disabled",
    }
    if settings.event_relay_enabled:
        redis_ok = await redis_client_module.ping_redis()
        health["event_relay"] = "connected" if redis_ok else "unavailable"
        if not redis_ok:
            health["status"] = "degraded"
    return health


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")


@app.get("/", tags=["Root"])
async def root():
    """
    Root endpoint.

    Returns:
        dict: Welcome message and API documentation links
    """
    return {
        "message": "Welcome to Fleet Dispatch Backend API",
        "docs": "/docs",
        "health": "/health",
    }
