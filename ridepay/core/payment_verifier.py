"""Checkout callback verification."""
import uuid
from typing import Any, Dict

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from ridepay.core import ledger
from ridepay.core.commission import from_paise
from ridepay.core.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PaymentNotSuccessfulError,
    PaymentValidationError,
    SignatureMismatchError,
)
from ridepay.database.models import Transaction
from ridepay.integrations.gateway import GatewayError
from ridepay.integrations.razorpay_client import RazorpayClient
from ridepay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SUCCESSFUL_PAYMENT_STATUSES = ("captured", "authorized")


class PaymentVerifier:
    """
    Verifies the checkout callback and captures the transaction.

    The checkout signature proves the callback came from the gateway widget;
    the payment record fetched from the gateway is the authority on whether
    the money moved.
    """

    def __init__(self, razorpay_client: RazorpayClient):
        self.razorpay_client = razorpay_client

    async def verify(
        self,
        order_id: str,
        payment_id: str,
        signature: str,
        transaction_id: uuid.UUID,
        caller_id: uuid.UUID,
        db: AsyncSession,
    ) -> Dict[str, Any]:
        """
        Verify a completed checkout and capture its transaction.

        Failure outcomes (signature mismatch, unsuccessful payment) are
        committed before the error is raised so the request rollback does not
        undo them.

        Args:
            order_id: Gateway order id from the checkout callback
            payment_id: Gateway payment id from the checkout callback
            signature: Checkout signature over ``order_id|payment_id``
            transaction_id: Transaction being paid
            caller_id: Authenticated caller
            db: Database session

        Returns:
            Dict[str, Any]: ``verified``, ``status``, ``amount``,
            ``transaction_id`` and ``payment_id``

        Raises:
            NotFoundError: If the transaction does not exist
            AuthorizationError: If the caller is not the passenger
            PaymentValidationError: If the order id does not belong to the transaction
            SignatureMismatchError: If the checkout signature is forged or corrupted
            GatewayError: If the gateway cannot be reached (transaction untouched)
            PaymentNotSuccessfulError: If the gateway reports a non-successful payment
            ConflictError: If the transaction already failed
        """
        log = logger.bind(
            transaction_id=str(transaction_id), order_id=order_id, payment_id=payment_id
        )
        log.info("payment_verification_started")

        transaction = await db.get(Transaction, transaction_id)
        if transaction is None:
            raise NotFoundError("Transaction not found")
        if transaction.passenger_id != caller_id:
            raise AuthorizationError("Not authorized to verify this payment")
        if transaction.gateway_order_id != order_id:
            raise PaymentValidationError("Order id does not match this transaction")

        if not self.razorpay_client.verify_payment_signature(order_id, payment_id, signature):
            log.warning("payment_signature_mismatch")
            await ledger.fail_transaction(
                db,
                transaction,
                error_code=SignatureMismatchError.error_code,
                error_description="Invalid payment signature",
                source="checkout",
            )
            await db.commit()
            metrics.record_verification("signature_mismatch")
            raise SignatureMismatchError("Invalid payment signature")

        try:
            payment = await self.razorpay_client.fetch_payment(payment_id)
        except GatewayError:
            log.error("payment_fetch_failed")
            metrics.record_verification("gateway_error")
            raise

        remote_status = payment.get("status")
        if remote_status not in SUCCESSFUL_PAYMENT_STATUSES:
            log.warning("payment_not_successful", remote_status=remote_status)
            await ledger.fail_transaction(
                db,
                transaction,
                error_code=payment.get("error_code"),
                error_description=str(remote_status),
                payment_id=payment_id,
                source="checkout",
            )
            await db.commit()
            metrics.record_verification("not_successful")
            raise PaymentNotSuccessfulError(f"Payment status is {remote_status}")

        applied = await ledger.capture_transaction(
            db,
            transaction,
            payment_id=payment_id,
            signature=signature,
            payment_method=payment.get("method"),
            source="checkout",
        )
        if transaction.payment_status != "captured":
            metrics.record_verification("conflict")
            raise ConflictError(f"Transaction is {transaction.payment_status}")

        metrics.record_verification("captured" if applied else "already_captured")
        log.info("payment_verified", captured_now=applied)
        return self._result(transaction)

    @staticmethod
    def _result(transaction: Transaction) -> Dict[str, Any]:
        return {
            "verified": True,
            "status": transaction.payment_status,
            "amount": from_paise(transaction.total_amount),
            "transaction_id": transaction.id,
            "payment_id": transaction.gateway_payment_id,
        }

