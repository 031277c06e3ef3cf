"""
API routes for payments, payouts and gateway webhooks.

Domain errors raised by the services propagate to the exception handlers in
``ridepay.api.main``, which render the ``{success, message, errorCode}``
envelope. Webhook routes are the exception: they always answer 200.
"""
import uuid
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from ridepay.core import queries
from ridepay.core.order_orchestrator import OrderOrchestrator
from ridepay.core.payment_verifier import PaymentVerifier
from ridepay.core.payout_dispatcher import PayoutDispatcher
from ridepay.core.reconciliation import PayoutReconciler
from ridepay.database.connection import get_db
from ridepay.integrations.webhook_handler import WebhookError, WebhookHandler
from ridepay.monitoring.health import HealthCheck

from .dependencies import (
    get_caller_id,
    get_health_check,
    get_optional_caller_id,
    get_order_orchestrator,
    get_payment_verifier,
    get_payout_dispatcher,
    get_payout_reconciler,
    get_webhook_handler,
    is_admin,
    require_admin,
)
from .schemas import (
    ApiResponse,
    BatchPayoutData,
    BatchPayoutItem,
    BatchPayoutRequest,
    BookingPaymentData,
    CreateOrderRequest,
    EarningsData,
    HealthCheckResponse,
    OrderData,
    Pagination,
    PayoutData,
    PayoutListData,
    ReconcilePayoutData,
    SetupDriverData,
    SetupDriverRequest,
    TransactionData,
    TransactionListData,
    TriggerPayoutRequest,
    VerifyPaymentData,
    VerifyPaymentRequest,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
payout_router = APIRouter(prefix="/payouts", tags=["payouts"])
monitoring_router = APIRouter(tags=["monitoring"])


def _viewer(caller_id: Optional[uuid.UUID], admin: bool) -> None:
    if caller_id is None and not admin:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing user id")


# Payments


@payment_router.post(
    "/orders",
    response_model=ApiResponse[OrderData],
    status_code=status.HTTP_201_CREATED,
    summary="Create a payment order",
    description="Open (or re-issue) the gateway order for a booking",
)
async def create_order(
    request: CreateOrderRequest,
    caller_id: uuid.UUID = Depends(get_caller_id),
    orchestrator: OrderOrchestrator = Depends(get_order_orchestrator),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[OrderData]:
    """
    Create a payment order.

    Idempotent per booking: while a transaction is active, repeated calls
    return the same order.
    """
    logger.info("api_create_order_request", booking_id=str(request.booking_id))
    order = await orchestrator.create_order(request.booking_id, caller_id, db)
    return ApiResponse(message="Order created", data=OrderData(**order))


@payment_router.post(
    "/verify",
    response_model=ApiResponse[VerifyPaymentData],
    summary="Verify a payment",
    description="Verify the checkout callback and capture the transaction",
)
async def verify_payment(
    request: VerifyPaymentRequest,
    caller_id: uuid.UUID = Depends(get_caller_id),
    verifier: PaymentVerifier = Depends(get_payment_verifier),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[VerifyPaymentData]:
    """Verify a completed checkout."""
    logger.info(
        "api_verify_payment_request",
        transaction_id=str(request.transaction_id),
        order_id=request.order_id,
    )
    result = await verifier.verify(
        order_id=request.order_id,
        payment_id=request.payment_id,
        signature=request.signature,
        transaction_id=request.transaction_id,
        caller_id=caller_id,
        db=db,
    )
    return ApiResponse(message="Payment verified", data=VerifyPaymentData(**result))


@payment_router.get(
    "/transactions/{transaction_id}",
    response_model=ApiResponse[TransactionData],
    summary="Get transaction details",
)
async def get_transaction(
    transaction_id: uuid.UUID,
    request: Request,
    caller_id: Optional[uuid.UUID] = Depends(get_optional_caller_id),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[TransactionData]:
    """Transaction details for its passenger, its driver or an admin."""
    admin = is_admin(request)
    _viewer(caller_id, admin)
    transaction = await queries.get_transaction_for_caller(db, transaction_id, caller_id, admin)
    return ApiResponse(data=TransactionData.from_model(transaction))


@payment_router.get(
    "/bookings/{booking_id}",
    response_model=ApiResponse[BookingPaymentData],
    summary="Get booking payment status",
)
async def get_booking_payment(
    booking_id: uuid.UUID,
    request: Request,
    caller_id: Optional[uuid.UUID] = Depends(get_optional_caller_id),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[BookingPaymentData]:
    """Payment status and latest transaction of a booking."""
    admin = is_admin(request)
    _viewer(caller_id, admin)
    booking, transaction = await queries.booking_payment_status(db, booking_id, caller_id, admin)
    return ApiResponse(data=BookingPaymentData.from_model(booking, transaction))


@payment_router.get(
    "/passengers/me/transactions",
    response_model=ApiResponse[TransactionListData],
    summary="Passenger transaction history",
)
async def passenger_transactions(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    caller_id: uuid.UUID = Depends(get_caller_id),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[TransactionListData]:
    transactions, total = await queries.passenger_transactions(db, caller_id, limit, offset)
    return ApiResponse(
        data=TransactionListData(
            transactions=[TransactionData.from_model(t) for t in transactions],
            pagination=Pagination(total=total, limit=limit, offset=offset),
        )
    )


@payment_router.get(
    "/drivers/me/earnings",
    response_model=ApiResponse[EarningsData],
    summary="Driver earnings summary",
)
async def driver_earnings(
    caller_id: uuid.UUID = Depends(get_caller_id),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[EarningsData]:
    summary = await queries.driver_earnings(db, caller_id)
    return ApiResponse(data=EarningsData.from_paise(summary))


# Webhooks


async def _handle_webhook(
    source: str,
    request: Request,
    handler: WebhookHandler,
    db: AsyncSession,
) -> Dict[str, Any]:
    body = await request.body()
    signature = request.headers.get("X-Razorpay-Signature")
    event_id = request.headers.get("X-Razorpay-Event-Id")

    try:
        result = await handler.handle(body, signature, source, db, event_id=event_id)
    except WebhookError as e:
        logger.error("api_webhook_error", source=source, event_id=event_id, error=str(e))
        return {"success": False}
    except Exception as e:
        logger.error(
            "api_webhook_unexpected_error",
            source=source,
            event_id=event_id,
            error=str(e),
            exc_info=True,
        )
        return {"success": False}

    logger.info(
        "api_webhook_processed",
        source=source,
        event_id=event_id,
        event_type=result.get("event_type"),
        status=result["status"],
    )
    return {"success": True}


@webhook_router.post(
    "/payments",
    response_model=WebhookResponse,
    summary="Payment gateway webhook endpoint",
)
async def payment_webhook(
    request: Request,
    handler: WebhookHandler = Depends(get_webhook_handler),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Handle Razorpay payment events. Always answers 200."""
    return await _handle_webhook("payments", request, handler, db)


@webhook_router.post(
    "/payouts",
    response_model=WebhookResponse,
    summary="Payout gateway webhook endpoint",
)
async def payout_webhook(
    request: Request,
    handler: WebhookHandler = Depends(get_webhook_handler),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Handle RazorpayX payout events. Always answers 200."""
    return await _handle_webhook("payouts", request, handler, db)


# Payouts


@payout_router.post(
    "/setup-driver",
    response_model=ApiResponse[SetupDriverData],
    summary="Set up driver payouts",
    description="Register bank details and provision the payout gateway contact and fund account",
)
async def setup_driver(
    request: SetupDriverRequest,
    caller_id: uuid.UUID = Depends(get_caller_id),
    dispatcher: PayoutDispatcher = Depends(get_payout_dispatcher),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[SetupDriverData]:
    result = await dispatcher.setup_driver(caller_id, db, bank_details=request.bank_details())
    return ApiResponse(message="Driver payout account ready", data=SetupDriverData(**result))


@payout_router.post(
    "/trigger/{transaction_id}",
    response_model=ApiResponse[PayoutData],
    dependencies=[Depends(require_admin)],
    summary="Trigger a payout",
)
async def trigger_payout(
    transaction_id: uuid.UUID,
    request: Optional[TriggerPayoutRequest] = None,
    dispatcher: PayoutDispatcher = Depends(get_payout_dispatcher),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[PayoutData]:
    mode = request.mode if request is not None else None
    logger.info("api_trigger_payout_request", transaction_id=str(transaction_id), mode=mode)
    payout = await dispatcher.create_payout(transaction_id, db, mode=mode)
    return ApiResponse(message="Payout created", data=PayoutData.from_model(payout))


@payout_router.post(
    "/retry/{payout_id}",
    response_model=ApiResponse[PayoutData],
    dependencies=[Depends(require_admin)],
    summary="Retry a failed payout",
)
async def retry_payout(
    payout_id: uuid.UUID,
    dispatcher: PayoutDispatcher = Depends(get_payout_dispatcher),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[PayoutData]:
    logger.info("api_retry_payout_request", payout_id=str(payout_id))
    payout = await dispatcher.retry_payout(payout_id, db)
    return ApiResponse(message="Payout retried", data=PayoutData.from_model(payout))


@payout_router.post(
    "/batch",
    response_model=ApiResponse[BatchPayoutData],
    dependencies=[Depends(require_admin)],
    summary="Trigger payouts in bulk",
)
async def batch_payouts(
    request: BatchPayoutRequest,
    dispatcher: PayoutDispatcher = Depends(get_payout_dispatcher),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[BatchPayoutData]:
    """Best effort: one result per transaction id, in request order."""
    results = await dispatcher.batch_trigger(request.transaction_ids, db, mode=request.mode)
    items = [BatchPayoutItem(**r) for r in results]
    succeeded = sum(1 for item in items if item.success)
    return ApiResponse(
        message=f"{succeeded} of {len(items)} payouts created",
        data=BatchPayoutData(results=items, succeeded=succeeded, failed=len(items) - succeeded),
    )


@payout_router.post(
    "/reconcile/{payout_id}",
    response_model=ApiResponse[ReconcilePayoutData],
    dependencies=[Depends(require_admin)],
    summary="Reconcile a payout with the gateway",
)
async def reconcile_payout(
    payout_id: uuid.UUID,
    reconciler: PayoutReconciler = Depends(get_payout_reconciler),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[ReconcilePayoutData]:
    result = await reconciler.reconcile_payout(payout_id, db)
    return ApiResponse(data=ReconcilePayoutData(**result))


@payout_router.get(
    "/drivers/me/history",
    response_model=ApiResponse[PayoutListData],
    summary="Driver payout history",
)
async def driver_payout_history(
    payout_status: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    caller_id: uuid.UUID = Depends(get_caller_id),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[PayoutListData]:
    payouts, total = await queries.driver_payouts(db, caller_id, payout_status, limit, offset)
    return ApiResponse(
        data=PayoutListData(
            payouts=[PayoutData.from_model(p) for p in payouts],
            pagination=Pagination(total=total, limit=limit, offset=offset),
        )
    )


@payout_router.get(
    "/{payout_id}",
    response_model=ApiResponse[PayoutData],
    summary="Get payout details",
)
async def get_payout(
    payout_id: uuid.UUID,
    request: Request,
    caller_id: Optional[uuid.UUID] = Depends(get_optional_caller_id),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[PayoutData]:
    """Payout details, with the masked payout account, for its driver or an admin."""
    admin = is_admin(request)
    _viewer(caller_id, admin)
    payout = await queries.get_payout_for_caller(db, payout_id, caller_id, admin)
    account = await queries.driver_payout_account(db, payout.driver_id)
    return ApiResponse(data=PayoutData.from_model(payout, account))


# Monitoring


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {"status": "unhealthy", "checks": {"error": str(e)}}


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Any:
    """Readiness probe endpoint; 503 while any dependency is unhealthy."""
    try:
        result = await health_check.readiness()
    except Exception as e:
        logger.error("readiness_check_error", error=str(e))
        result = {"status": "unhealthy", "checks": {"error": str(e)}}

    if result["status"] != "healthy":
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
