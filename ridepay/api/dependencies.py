"""
FastAPI dependencies: caller identity, admin authentication and the
services built at startup.
"""
import hmac
import uuid
from typing import Optional

from fastapi import HTTPException, Request, status

from ridepay.config import get_settings
from ridepay.core.order_orchestrator import OrderOrchestrator
from ridepay.core.payment_verifier import PaymentVerifier
from ridepay.core.payout_dispatcher import PayoutDispatcher
from ridepay.core.reconciliation import PayoutReconciler
from ridepay.integrations.webhook_handler import WebhookHandler
from ridepay.monitoring.health import HealthCheck


def get_caller_id(request: Request) -> uuid.UUID:
    """
    Authenticated user id, set by the upstream auth gateway.

    Raises:
        HTTPException: 401 if the header is missing or not a UUID
    """
    raw = request.headers.get(get_settings().user_id_header)
    if not raw:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing user id")
    try:
        return uuid.UUID(raw)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user id")


def _has_admin_key(request: Request) -> bool:
    settings = get_settings()
    provided = request.headers.get(settings.api_key_header)
    if not provided:
        return False
    return hmac.compare_digest(provided.encode(), settings.admin_api_key.encode())


def is_admin(request: Request) -> bool:
    """True if the request carries a valid admin API key."""
    return _has_admin_key(request)


def require_admin(request: Request) -> None:
    """
    Guard for operator routes.

    Raises:
        HTTPException: 401 if the API key is missing or wrong
    """
    if not _has_admin_key(request):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")


def get_optional_caller_id(request: Request) -> Optional[uuid.UUID]:
    """User id if one was sent, for routes that admins may also call."""
    raw = request.headers.get(get_settings().user_id_header)
    if not raw:
        return None
    try:
        return uuid.UUID(raw)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user id")


def get_order_orchestrator(request: Request) -> OrderOrchestrator:
    return request.app.state.order_orchestrator


def get_payment_verifier(request: Request) -> PaymentVerifier:
    return request.app.state.payment_verifier


def get_webhook_handler(request: Request) -> WebhookHandler:
    return request.app.state.webhook_handler


def get_payout_dispatcher(request: Request) -> PayoutDispatcher:
    return request.app.state.payout_dispatcher


def get_payout_reconciler(request: Request) -> PayoutReconciler:
    return request.app.state.payout_reconciler


def get_health_check(request: Request) -> HealthCheck:
    return request.app.state.health_check
