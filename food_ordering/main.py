"""
FastAPI Application Entry Point

Food Ordering Engine - order, coupon and payment consistency service.
Supports both Mock services (development) and Real APIs (production).

Endpoints:
    - /api/orders: Customer orders and coupon application
    - /api/payments: Paystack checkout, verification, saved cards, webhook
    - /api/admin: Order status changes and coupon management
    - GET /health: System health check

Version: 1.0.0
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

# Windows-specific event loop policy
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Internal imports
from food_ordering.api import admin_router, orders_router, payments_router
from food_ordering.api.deps import get_gateway
from food_ordering.core.config import get_settings, setup_logging
from food_ordering.core.exceptions import OrderingError, RateLimitedError
from food_ordering.database import engine, get_db, init_db
from food_ordering.schemas import ErrorResponse, HealthResponse
from food_ordering.services.notifications import get_notification_service
from food_ordering.services.payment import BasePaymentGateway, get_payment_gateway
from food_ordering.services.receipts import get_receipt_dispatcher
from food_ordering.services.throttle import get_counter_store

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    # Startup
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Receipts: {settings.receipt_delivery.value}")
    logger.info("=" * 60)

    await init_db()
    logger.info("✅ Database initialized")

    gateway = get_payment_gateway()
    notifier = get_notification_service()
    logger.info(f"✅ Payment Gateway: {gateway.provider_name}")
    logger.info(f"✅ Notification Service: {notifier.provider_name}")

    if settings.use_real_services:
        missing = settings.validate_production_config()
        if missing:
            logger.warning(f"⚠️ Missing production config: {missing}")

    logger.info("✅ Application ready!")

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    await get_receipt_dispatcher().drain()
    await gateway.close()
    await get_counter_store().close()
    await engine.dispose()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Order, coupon and payment consistency engine. Coupon limits hold under "
        "concurrency, webhooks are idempotent and every order is paid at most once."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(orders_router)
app.include_router(payments_router)
app.include_router(admin_router)


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "health": "/health",
    }


async def _redis_status() -> str:
    if not settings.use_real_services:
        return "skipped"
    client = aioredis.from_url(settings.redis_url, socket_timeout=2)
    try:
        await client.ping()
        return "healthy"
    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        return "unhealthy"
    finally:
        await client.aclose()


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(
    db: AsyncSession = Depends(get_db),
    gateway: BasePaymentGateway = Depends(get_gateway),
) -> HealthResponse:
    """Verify all system components are operational."""

    db_status = "healthy"
    try:
        await db.execute(select(func.now()))
    except Exception as e:
        db_status = "unhealthy"
        logger.error(f"Database health check failed: {e}")

    redis_status = await _redis_status()
    payment_status = "healthy" if await gateway.health_check() else "unhealthy"
    notification_status = "healthy" if await get_notification_service().health_check() else "unhealthy"

    overall = "operational" if all(
        s in ("healthy", "skipped") for s in [db_status, redis_status, payment_status, notification_status]
    ) else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        redis=redis_status,
        payment_gateway=payment_status,
        notification_service=notification_status,
        timestamp=datetime.now(timezone.utc),
    )


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(OrderingError)
async def ordering_error_handler(request: Request, exc: OrderingError) -> JSONResponse:
    """Map engine errors onto their HTTP status and JSON body."""
    if exc.status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} -> {exc.status_code} {exc.reason}: {exc.message}")

    headers = None
    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    body: dict[str, Any] = ErrorResponse(
        error=f"{field}: {message}" if field else message,
        reason="validation_error",
    ).model_dump()
    return JSONResponse(status_code=400, content=body)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": str(exc) if settings.debug else "An unexpected error occurred",
            "reason": "internal_error",
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "food_ordering.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
