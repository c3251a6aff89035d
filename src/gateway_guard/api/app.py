"""FastAPI application for the gateway guard."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from gateway_guard.config import Settings, get_settings
from gateway_guard.ratelimit import (
    RateLimitMiddleware,
    RateLimitService,
    get_rate_limit_service,
    quota_router,
    rate_limit_router,
)

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    service: RateLimitService | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Application settings (cached settings if not provided).
        service: Rate limit service (global instance if not provided).

    Returns:
        Configured FastAPI application instance.
    """
    settings = settings or get_settings()
    rate_limit_service = service if service is not None else get_rate_limit_service()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup/shutdown events."""
        # Startup: start the fallback sweeper
        await rate_limit_service.start()

        yield

        # Shutdown: stop the sweeper and close Redis
        try:
            await rate_limit_service.close()
        except Exception as e:
            logger.error("Failed to stop rate limit service: %s", e)

    app = FastAPI(
        title=settings.app_name,
        description=settings.app_description,
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    # Admin routes resolve the same service and settings the middleware uses
    app.dependency_overrides[get_rate_limit_service] = lambda: rate_limit_service
    app.dependency_overrides[get_settings] = lambda: settings

    # Health check endpoint
    @app.get("/health")
    async def health_check() -> dict:
        """Health check endpoint."""
        return {"status": "healthy", "service": settings.app_name}

    # Ready check endpoint
    @app.get("/ready")
    async def ready_check() -> JSONResponse:
        """Readiness check endpoint.

        Reports the shared store state. The service keeps enforcing limits
        locally while Redis is down, so it stays ready either way.
        """
        store_available = await rate_limit_service.is_store_available()
        return JSONResponse(
            {
                "status": "ready",
                "service": settings.app_name,
                "shared_store": "available" if store_available else "unavailable",
            }
        )

    # Include rate limit admin router
    # Provides:
    # - GET /admin/rate-limits/stats - Enforcement counters
    # - GET /admin/rate-limits/alerts - Recent usage alerts
    # - GET /admin/rate-limits/{subject_id}/{operation} - Current window counts
    # - DELETE /admin/rate-limits/{subject_id}/{operation} - Reset limits
    # - GET/DELETE /admin/quotas/{subject_id} - Quota usage and reset
    if settings.admin_api_key:
        app.include_router(rate_limit_router)
        app.include_router(quota_router)
    else:
        logger.info("ADMIN_API_KEY not set, rate limit admin endpoints disabled")

    # Add rate limiting middleware
    app.add_middleware(
        RateLimitMiddleware, service=rate_limit_service, settings=settings
    )

    return app
