"""Core payment and payout orchestration logic."""
from .commission import CommissionBreakdown, calculate_commission_breakdown, calculate_gateway_fees
from .errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PaymentError,
    PaymentNotSuccessfulError,
    PaymentValidationError,
    PayoutError,
    SignatureMismatchError,
)
from .order_orchestrator import OrderOrchestrator
from .payment_verifier import PaymentVerifier
from .payout_dispatcher import PayoutDispatcher
from .reconciliation import PayoutReconciler

__all__ = [
    "AuthorizationError",
    "CommissionBreakdown",
    "ConflictError",
    "NotFoundError",
    "OrderOrchestrator",
    "PaymentError",
    "PaymentNotSuccessfulError",
    "PaymentValidationError",
    "PaymentVerifier",
    "PayoutDispatcher",
    "PayoutError",
    "PayoutReconciler",
    "SignatureMismatchError",
    "calculate_commission_breakdown",
    "calculate_gateway_fees",
]
