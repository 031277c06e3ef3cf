"""
Main FastAPI application.

Ride payment and payout API with:
- Gateway clients and services built once at startup
- CORS configuration
- Structured error envelopes
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import redis.asyncio as aioredis
import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ridepay.config import get_settings
from ridepay.core.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PaymentError,
)
from ridepay.core.order_orchestrator import OrderOrchestrator
from ridepay.core.payment_verifier import PaymentVerifier
from ridepay.core.payout_dispatcher import PayoutDispatcher
from ridepay.core.reconciliation import PayoutReconciler
from ridepay.database.connection import close_db, init_db
from ridepay.integrations.gateway import GatewayError
from ridepay.integrations.razorpay_client import RazorpayClient
from ridepay.integrations.razorpayx_client import RazorpayXClient
from ridepay.integrations.webhook_handler import WebhookHandler
from ridepay.monitoring.health import HealthCheck
from ridepay.monitoring.logging import setup_logging

from .routes import monitoring_router, payment_router, payout_router, webhook_router

# Setup logging first
setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()

ERROR_STATUS_CODES = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    AuthorizationError: status.HTTP_403_FORBIDDEN,
    ConflictError: status.HTTP_409_CONFLICT,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Builds the gateway clients and services once and shares them through
    ``app.state``.
    """
    # Startup
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        test_mode=settings.is_test_mode,
    )

    try:
        await init_db()
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    redis_client = aioredis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
    razorpay_client = RazorpayClient(settings)
    razorpayx_client = RazorpayXClient(settings)

    app.state.webhook_handler = WebhookHandler(redis_client=redis_client, settings=settings)
    app.state.order_orchestrator = OrderOrchestrator(razorpay_client, settings)
    app.state.payment_verifier = PaymentVerifier(razorpay_client)
    app.state.payout_dispatcher = PayoutDispatcher(razorpayx_client, settings)
    app.state.payout_reconciler = PayoutReconciler(razorpayx_client, settings)
    app.state.health_check = HealthCheck(razorpay_client=razorpay_client, redis_client=redis_client)

    yield

    # Shutdown
    logger.info("application_shutdown")
    try:
        await razorpayx_client.close()
        await redis_client.aclose()
        await close_db()
        logger.info("connections_closed")
    except Exception as e:
        logger.error("shutdown_error", error=str(e))


# Create FastAPI application
app = FastAPI(
    title="RidePay",
    description=(
        "Payment and payout orchestration for a ride-sharing marketplace. "
        "Features: gateway orders, checkout verification, commission and GST split, "
        "driver payouts with retry and reconciliation, and webhook handling."
    ),
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
    """
    Add request ID to all requests for tracing.

    Also adds timing information and structured logging context.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    start_time = time.time()

    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    logger.info(
        "request_started",
        client_host=request.client.host if request.client else None,
    )

    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=time.time() - start_time,
        )
        return response

    except Exception as e:
        logger.error(
            "request_failed",
            error=str(e),
            duration_seconds=time.time() - start_time,
        )
        raise

    finally:
        structlog.contextvars.clear_contextvars()


def _error_response(status_code: int, message: str, error_code: str | None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message, "errorCode": error_code},
    )


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
    """Domain errors: 404/403/409 by type, 400 for everything else."""
    status_code = status.HTTP_400_BAD_REQUEST
    for error_type, code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            status_code = code
            break

    logger.warning(
        "payment_error",
        error=exc.message,
        error_code=exc.error_code,
        status_code=status_code,
    )
    return _error_response(status_code, exc.message, exc.error_code)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    logger.error(
        "gateway_error",
        gateway=exc.gateway,
        error=exc.message,
        error_type=exc.error_type.value,
        gateway_code=exc.gateway_code,
    )
    return _error_response(status.HTTP_502_BAD_GATEWAY, exc.message, GatewayError.error_code)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _error_response(exc.status_code, str(exc.detail), None)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    message = errors[0]["msg"] if errors else "Invalid request"
    return _error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY, message, "VALIDATION_ERROR"
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.
    """
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )
    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "An unexpected error occurred. Please try again later.",
        "INTERNAL_ERROR",
    )


# Include routers
app.include_router(payment_router)
app.include_router(webhook_router)
app.include_router(payout_router)
app.include_router(monitoring_router)


@app.get("/", tags=["root"])
async def root() -> dict[str, Any]:
    """Root endpoint with API information."""
    return {
        "service": "ridepay",
        "version": "1.0.0",
        "status": "operational",
        "environment": settings.app_env,
        "test_mode": settings.is_test_mode,
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
    }


def run() -> None:
    """Run the API with uvicorn."""
    import uvicorn

    uvicorn.run(
        "ridepay.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
