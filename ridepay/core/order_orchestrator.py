"""
Order orchestrator: opens the gateway charge intent for a booking.

Flow:
1. Load and authorize the booking
2. Return the active transaction if one exists
3. Resolve the driver and split the fare
4. Create the gateway order
5. Persist the transaction and mark the booking payment pending
"""
import uuid
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ridepay.config import Settings, get_settings
from ridepay.core import ledger
from ridepay.core.commission import (
    CommissionBreakdown,
    calculate_commission_breakdown,
    from_paise,
)
from ridepay.core.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PaymentValidationError,
)
from ridepay.database.models import (
    ACTIVE_PAYMENT_STATUSES,
    Booking,
    Ride,
    Transaction,
)
from ridepay.integrations.razorpay_client import RazorpayClient
from ridepay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def receipt_for_booking(booking_id: uuid.UUID) -> str:
    """Deterministic gateway receipt for a booking (at most 40 characters)."""
    return f"bk_{booking_id}"


def breakdown_from_transaction(transaction: Transaction) -> CommissionBreakdown:
    """Rebuild the fare split stored on a transaction."""
    return CommissionBreakdown(
        total_fare=from_paise(transaction.total_amount),
        commission_percent=transaction.commission_percent,
        base_commission=from_paise(transaction.base_commission_amount),
        gst_percent=transaction.gst_percent,
        gst_on_commission=from_paise(transaction.gst_amount),
        platform_total=from_paise(transaction.platform_total),
        driver_net=from_paise(transaction.driver_net_amount),
    )


class OrderOrchestrator:
    """
    Creates payment orders for bookings.

    Re-issuing an order for a booking that already has an active transaction
    returns that transaction without calling the gateway, so client
    double-submits never open a second charge intent.
    """

    def __init__(
        self,
        razorpay_client: RazorpayClient,
        settings: Optional[Settings] = None,
    ):
        self.razorpay_client = razorpay_client
        self.settings = settings or get_settings()

    @staticmethod
    async def _active_transaction(db: AsyncSession, booking_id: uuid.UUID) -> Optional[Transaction]:
        result = await db.execute(
            select(Transaction).where(
                Transaction.booking_id == booking_id,
                Transaction.payment_status.in_(ACTIVE_PAYMENT_STATUSES),
            )
        )
        return result.scalar_one_or_none()

    def _order_response(self, transaction: Transaction) -> Dict[str, Any]:
        return {
            "order_id": transaction.gateway_order_id,
            "amount": transaction.total_amount,
            "currency": transaction.currency,
            "transaction_id": transaction.id,
            "key_id": self.razorpay_client.key_id,
            "commission_breakdown": breakdown_from_transaction(transaction).to_wire(),
        }

    async def create_order(
        self,
        booking_id: uuid.UUID,
        passenger_id: uuid.UUID,
        db: AsyncSession,
    ) -> Dict[str, Any]:
        """
        Open (or re-issue) the gateway order for a booking.

        Args:
            booking_id: Booking to pay for
            passenger_id: Authenticated caller
            db: Database session

        Returns:
            Dict[str, Any]: ``order_id``, ``amount`` (paise), ``currency``,
            ``transaction_id``, ``key_id`` and ``commission_breakdown``

        Raises:
            NotFoundError: If the booking does not exist
            AuthorizationError: If the caller is not the booking's passenger
            ConflictError: If the booking is already paid
            PaymentValidationError: If the ride has no driver or the fare is invalid
            GatewayError: If the gateway order cannot be created
        """
        log = logger.bind(booking_id=str(booking_id), passenger_id=str(passenger_id))
        log.info("order_creation_started")

        booking = await db.get(Booking, booking_id)
        if booking is None:
            raise NotFoundError("Booking not found")
        if booking.passenger_id != passenger_id:
            raise AuthorizationError("Not authorized to pay for this booking")
        if booking.is_paid:
            raise ConflictError("Booking is already paid")

        existing = await self._active_transaction(db, booking_id)
        if existing is not None:
            log.info("order_reused", transaction_id=str(existing.id))
            metrics.record_order("reused")
            return self._order_response(existing)

        ride = await db.get(Ride, booking.ride_id)
        driver_id = ride.driver_id if ride is not None else None
        if driver_id is None:
            raise PaymentValidationError("Ride has no assigned driver")

        breakdown = calculate_commission_breakdown(
            booking.total_fare,
            self.settings.platform_commission_percent,
            self.settings.gst_percent,
        )

        try:
            order = await self.razorpay_client.create_order(
                amount_paise=breakdown.total_paise,
                currency=self.settings.currency,
                receipt=receipt_for_booking(booking_id),
                notes={
                    "booking_id": str(booking_id),
                    "passenger_id": str(passenger_id),
                    "driver_id": str(driver_id),
                },
            )
        except Exception:
            metrics.record_order("failed")
            raise

        transaction = Transaction(
            id=uuid.uuid4(),
            booking_id=booking_id,
            ride_id=booking.ride_id,
            passenger_id=passenger_id,
            driver_id=driver_id,
            gateway_order_id=order["id"],
            currency=self.settings.currency,
            total_amount=breakdown.total_paise,
            base_commission_amount=breakdown.base_commission_paise,
            commission_percent=breakdown.commission_percent,
            gst_amount=breakdown.gst_paise,
            gst_percent=breakdown.gst_percent,
            platform_total=breakdown.platform_total_paise,
            driver_net_amount=breakdown.driver_net_paise,
            payment_status="created",
            payout_status="pending",
        )
        db.add(transaction)
        try:
            await db.flush()
        except IntegrityError:
            # A concurrent request won the active-transaction index
            await db.rollback()
            winner = await self._active_transaction(db, booking_id)
            if winner is None:
                raise
            log.warning(
                "order_creation_lost_race",
                transaction_id=str(winner.id),
                orphan_order_id=order["id"],
            )
            metrics.record_order("reused")
            return self._order_response(winner)

        booking.payment_status = "pending"
        await ledger.record_event(
            db,
            aggregate_type="transaction",
            aggregate_id=transaction.id,
            event_type="payment.order_created",
            event_data={
                "gateway_order_id": order["id"],
                "amount": transaction.total_amount,
                "driver_net_amount": transaction.driver_net_amount,
                "platform_total": transaction.platform_total,
            },
        )
        await db.flush()

        log.info(
            "order_created",
            transaction_id=str(transaction.id),
            order_id=order["id"],
            amount_paise=transaction.total_amount,
        )
        metrics.record_order("created", transaction.total_amount)
        return self._order_response(transaction)
