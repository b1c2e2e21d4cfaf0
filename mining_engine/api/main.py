"""
Main FastAPI application for the mining engine.
Configures the API server with routes, middleware, error mapping and the
background scheduler.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

import structlog

from mining_engine.api.middleware import add_middleware
from mining_engine.api.routes import admin, earnings, slots, websocket
from mining_engine.api.schemas.common import APIResponse, HealthCheckResponse, create_error_response
from mining_engine.cache.cache_service import get_cache_service, reset_cache_service
from mining_engine.cache.redis_client import close_redis_client
from mining_engine.core.config import settings
from mining_engine.core.database import close_database, get_async_session, init_database
from mining_engine.core.exceptions import (
    ConcurrencyConflictError,
    InsufficientBalanceError,
    MiningEngineException,
    NotFoundError,
    PersistenceError,
    SchedulerError,
    ValidationError,
)
from mining_engine.core.logging import setup_logging
from mining_engine.scheduler.task_scheduler import build_engine_scheduler
from mining_engine.services.engine import MiningEngine, set_engine
from mining_engine.websocket.notification_service import NotificationService


logger = structlog.get_logger(__name__)


# Most specific first; the first matching class wins
ERROR_STATUS = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (InsufficientBalanceError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConcurrencyConflictError, status.HTTP_409_CONFLICT),
    (SchedulerError, status.HTTP_409_CONFLICT),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def status_for(exc: MiningEngineException) -> int:
    for exc_type, status_code in ERROR_STATUS:
        if isinstance(exc, exc_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def engine_exception_handler(request: Request, exc: MiningEngineException) -> JSONResponse:
    status_code = status_for(exc)
    log = logger.error if status_code >= 500 else logger.warning
    log(
        "Request rejected",
        path=request.url.path,
        error_code=exc.code,
        error=exc.message,
        status_code=status_code
    )
    body = create_error_response(exc.message, error_code=exc.code, details=exc.details)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting mining engine API server")

    await init_database()
    try:
        cache = await get_cache_service()
    except Exception as e:
        # cache is optional; projections are recomputed on every read
        logger.error("Redis unavailable, running without cache", error=str(e))
        cache = None
    engine = MiningEngine(cache=cache, notifier=NotificationService())
    set_engine(engine)

    scheduler = build_engine_scheduler(engine)
    scheduler_task: Optional[asyncio.Task] = None
    if settings.scheduler_enabled:
        scheduler_task = asyncio.create_task(scheduler.start(), name="engine-scheduler")
        logger.info("Background scheduler started")
    app.state.scheduler = scheduler

    yield

    logger.info("Shutting down mining engine API server")
    try:
        if scheduler_task:
            await scheduler.stop()
            scheduler_task.cancel()
            await asyncio.gather(scheduler_task, return_exceptions=True)
            logger.info("Background scheduler stopped")
    finally:
        set_engine(None)
        reset_cache_service()
        await close_redis_client()
        await close_database()


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""

    setup_logging()

    app = FastAPI(
        title="Mining Engine API",
        description="""
        Continuous-yield accrual engine for time-boxed mining slots.

        * **Earnings** - live projected earnings and claiming
        * **Slots** - purchase, extend and upgrade
        * **Admin** - expiry and persistence runs, status, wallet reconciliation
        * **Real-time Updates** - `/ws/{owner_id}`
        """,
        version=settings.app_version,
        lifespan=lifespan,
    )

    add_middleware(app)
    app.add_exception_handler(MiningEngineException, engine_exception_handler)

    @app.get(
        "/health",
        response_model=HealthCheckResponse,
        tags=["System"],
        summary="Health Check",
        description="Check API server health and service status"
    )
    async def health_check():
        """Health check endpoint."""
        services = {"api": "healthy"}
        try:
            async with get_async_session() as session:
                await session.execute(text("SELECT 1"))
            services["database"] = "healthy"
        except Exception as e:
            logger.error("Health check failed", error=str(e))
            services["database"] = "unhealthy"
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "unhealthy", "services": services, "error": str(e)}
            )

        try:
            cache = await get_cache_service()
            redis_health = await cache.redis.health_check()
            services["cache"] = redis_health.get("status", "unhealthy")
        except Exception as e:
            logger.warning("Cache health check failed", error=str(e))
            services["cache"] = "unavailable"
        return HealthCheckResponse(version=settings.app_version, services=services)

    @app.get(
        "/",
        response_model=APIResponse,
        tags=["System"],
        summary="API Information"
    )
    async def root():
        return APIResponse(message=f"Mining Engine API v{settings.app_version}")

    app.include_router(
        earnings.router,
        prefix=f"{settings.api_v1_prefix}/earnings",
        tags=["Earnings"]
    )
    app.include_router(
        slots.router,
        prefix=f"{settings.api_v1_prefix}/slots",
        tags=["Slots"]
    )
    app.include_router(
        admin.router,
        prefix=f"{settings.api_v1_prefix}/admin",
        tags=["Admin"]
    )
    app.include_router(websocket.router, tags=["WebSocket"])

    logger.info("FastAPI application created successfully")
    return app


app = create_app()
