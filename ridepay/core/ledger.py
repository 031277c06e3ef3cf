"""
Ledger state machines and conditional writes.

Every status change of a Transaction or Payout goes through the helpers in
this module. Each write is a compare-and-swap: an ``UPDATE ... WHERE status IN
(allowed sources)`` whose rowcount tells the caller whether it won. Racing
writers (checkout callback, payment webhook, payout webhook, reconciler) can
therefore apply the same transition concurrently and exactly one of them
takes effect.
"""
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, FrozenSet, Mapping, Optional

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from ridepay.core.commission import calculate_gateway_fees, from_paise, to_paise
from ridepay.database.models import (
    Booking,
    DriverPayoutAccount,
    LedgerEvent,
    Payout,
    Transaction,
)

logger = structlog.get_logger(__name__)

# current status -> statuses it may move to
PAYMENT_TRANSITIONS: Mapping[str, FrozenSet[str]] = {
    "created": frozenset({"pending", "captured", "failed"}),
    "pending": frozenset({"captured", "failed"}),
    "captured": frozenset(),
    "failed": frozenset(),
    "refunded": frozenset(),
}

PAYOUT_TRANSITIONS: Mapping[str, FrozenSet[str]] = {
    "queued": frozenset({"pending", "processing", "processed", "failed", "cancelled"}),
    "pending": frozenset({"processing", "processed", "failed", "cancelled"}),
    "processing": frozenset({"processed", "failed", "reversed"}),
    "processed": frozenset({"reversed"}),
    "cancelled": frozenset(),
    "reversed": frozenset(),
    "failed": frozenset(),
}

# Transaction.payout_status; "completed -> failed" is a reversal
TRANSACTION_PAYOUT_TRANSITIONS: Mapping[str, FrozenSet[str]] = {
    "pending": frozenset({"processing", "failed"}),
    "processing": frozenset({"completed", "failed"}),
    "failed": frozenset({"processing"}),
    "completed": frozenset({"failed"}),
}

PAYOUT_TERMINAL_STATUSES = frozenset(
    status for status, targets in PAYOUT_TRANSITIONS.items() if not targets
)


class InvalidTransitionError(ValueError):
    """Raised when a status is not a known state of the machine."""

    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def sources_for(transitions: Mapping[str, FrozenSet[str]], target: str) -> FrozenSet[str]:
    """
    Statuses from which ``target`` is reachable in one step.

    Raises:
        InvalidTransitionError: If ``target`` is not a state of the machine
    """
    if target not in transitions:
        raise InvalidTransitionError(f"Unknown status: {target}")
    return frozenset(source for source, targets in transitions.items() if target in targets)


def can_transition(transitions: Mapping[str, FrozenSet[str]], current: str, target: str) -> bool:
    return target in transitions.get(current, frozenset())


async def record_event(
    db: AsyncSession,
    aggregate_type: str,
    aggregate_id: uuid.UUID,
    event_type: str,
    event_data: Dict[str, Any],
    correlation_id: Optional[uuid.UUID] = None,
) -> None:
    """
    Record a ledger event for the audit trail.

    Args:
        db: Database session
        aggregate_type: ``transaction``, ``payout`` or ``driver_account``
        aggregate_id: Id of the changed row
        event_type: Event type (e.g. ``payment.captured``)
        event_data: JSON-serialisable event details
        correlation_id: Optional id tying related events together
    """
    db.add(
        LedgerEvent(
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            event_type=event_type,
            event_data=event_data,
            correlation_id=correlation_id,
            created_at=utcnow(),
        )
    )


async def transition_payment(
    db: AsyncSession,
    transaction: Transaction,
    target: str,
    **values: Any,
) -> bool:
    """
    Conditionally move a Transaction's payment status to ``target``.

    Args:
        db: Database session
        transaction: Transaction to update (refreshed afterwards)
        target: Target payment status
        **values: Extra columns written together with the status

    Returns:
        bool: True if this call applied the transition
    """
    stmt = (
        update(Transaction)
        .where(
            Transaction.id == transaction.id,
            Transaction.payment_status.in_(sources_for(PAYMENT_TRANSITIONS, target)),
        )
        .values(payment_status=target, **values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    await db.refresh(transaction)
    return result.rowcount == 1


async def transition_transaction_payout(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    target: str,
    **values: Any,
) -> bool:
    """Conditionally move a Transaction's payout status to ``target``."""
    stmt = (
        update(Transaction)
        .where(
            Transaction.id == transaction_id,
            Transaction.payout_status.in_(
                sources_for(TRANSACTION_PAYOUT_TRANSITIONS, target)
            ),
        )
        .values(payout_status=target, **values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


async def transition_payout(
    db: AsyncSession,
    payout: Payout,
    target: str,
    sources: Optional[FrozenSet[str]] = None,
    **values: Any,
) -> bool:
    """
    Conditionally move a Payout's status to ``target``.

    ``sources`` narrows the statuses the move is taken from; it defaults to
    every status the payout machine allows to reach ``target``.

    Returns:
        bool: True if this call applied the transition
    """
    allowed = sources_for(PAYOUT_TRANSITIONS, target)
    if sources is not None:
        allowed = allowed & sources
    stmt = (
        update(Payout)
        .where(
            Payout.id == payout.id,
            Payout.status.in_(allowed),
        )
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    await db.refresh(payout)
    return result.rowcount == 1


async def capture_transaction(
    db: AsyncSession,
    transaction: Transaction,
    payment_id: str,
    signature: Optional[str] = None,
    payment_method: Optional[str] = None,
    source: str = "verifier",
) -> bool:
    """
    Capture a Transaction and complete its Booking.

    This is the single capture path shared by the checkout verifier and the
    ``payment.captured`` webhook. Whichever caller arrives first applies the
    transition; later callers are no-ops.

    Args:
        db: Database session
        transaction: Transaction to capture
        payment_id: Gateway payment id
        signature: Checkout signature, when known
        payment_method: Payment method reported by the gateway
        source: Which actor triggered the capture, for the audit trail

    Returns:
        bool: True if this call captured the transaction
    """
    now = utcnow()
    values: Dict[str, Any] = {"gateway_payment_id": payment_id, "captured_at": now}
    if signature is not None:
        values["gateway_signature"] = signature
    if payment_method is not None:
        values["payment_method"] = payment_method

    applied = await transition_payment(db, transaction, "captured", **values)
    if not applied:
        logger.info(
            "transaction_capture_skipped",
            transaction_id=str(transaction.id),
            payment_status=transaction.payment_status,
            source=source,
        )
        return False

    await db.execute(
        update(Booking)
        .where(Booking.id == transaction.booking_id)
        .values(payment_status="completed", status="completed", payment_completed_at=now)
        .execution_options(synchronize_session=False)
    )
    fees = calculate_gateway_fees(from_paise(transaction.total_amount))
    await record_event(
        db,
        aggregate_type="transaction",
        aggregate_id=transaction.id,
        event_type="payment.captured",
        event_data={
            "gateway_payment_id": payment_id,
            "payment_method": payment_method,
            "amount": transaction.total_amount,
            "gateway_fee": to_paise(fees["total_fee"]),
            "source": source,
        },
    )
    logger.info(
        "transaction_captured",
        transaction_id=str(transaction.id),
        booking_id=str(transaction.booking_id),
        gateway_payment_id=payment_id,
        source=source,
    )
    return True


async def fail_transaction(
    db: AsyncSession,
    transaction: Transaction,
    error_code: Optional[str],
    error_description: Optional[str],
    payment_id: Optional[str] = None,
    source: str = "verifier",
) -> bool:
    """
    Mark an uncaptured Transaction as failed and its Booking payment as failed.

    A captured Transaction is never downgraded; the call is then a no-op.

    Returns:
        bool: True if this call failed the transaction
    """
    values: Dict[str, Any] = {"error_code": error_code, "error_description": error_description}
    if payment_id is not None:
        values["gateway_payment_id"] = payment_id

    applied = await transition_payment(db, transaction, "failed", **values)
    if not applied:
        logger.info(
            "transaction_failure_skipped",
            transaction_id=str(transaction.id),
            payment_status=transaction.payment_status,
            source=source,
        )
        return False

    await db.execute(
        update(Booking)
        .where(Booking.id == transaction.booking_id)
        .values(payment_status="failed")
        .execution_options(synchronize_session=False)
    )
    await record_event(
        db,
        aggregate_type="transaction",
        aggregate_id=transaction.id,
        event_type="payment.failed",
        event_data={
            "error_code": error_code,
            "error_description": error_description,
            "source": source,
        },
    )
    logger.warning(
        "transaction_failed",
        transaction_id=str(transaction.id),
        error_code=error_code,
        error_description=error_description,
        source=source,
    )
    return True


async def settle_payout(db: AsyncSession, payout: Payout, utr: Optional[str] = None) -> bool:
    """
    Mark a Payout processed, complete its Transaction payout and credit the driver.

    Driver totals are incremented only by the call that applies the
    transition, so each gateway payout is counted once.

    Returns:
        bool: True if this call settled the payout
    """
    now = utcnow()
    values: Dict[str, Any] = {"processed_at": now, "next_retry_at": None}
    if utr:
        values["utr"] = utr

    if not await transition_payout(db, payout, "processed", **values):
        logger.info(
            "payout_settle_skipped",
            payout_id=str(payout.id),
            status=payout.status,
        )
        return False

    await transition_transaction_payout(
        db, payout.transaction_id, "completed", payout_completed_at=now
    )
    await db.execute(
        update(DriverPayoutAccount)
        .where(DriverPayoutAccount.driver_id == payout.driver_id)
        .values(
            total_payouts_received=DriverPayoutAccount.total_payouts_received + 1,
            total_amount_received=DriverPayoutAccount.total_amount_received + payout.amount,
            last_used_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await record_event(
        db,
        aggregate_type="payout",
        aggregate_id=payout.id,
        event_type="payout.processed",
        event_data={
            "gateway_payout_id": payout.gateway_payout_id,
            "utr": utr,
            "amount": payout.amount,
        },
        correlation_id=payout.transaction_id,
    )
    logger.info(
        "payout_processed",
        payout_id=str(payout.id),
        transaction_id=str(payout.transaction_id),
        amount=payout.amount,
        utr=utr,
    )
    return True


async def fail_payout(
    db: AsyncSession,
    payout: Payout,
    failure_reason: Optional[str],
    error_code: Optional[str],
    retry_delay_seconds: int,
) -> bool:
    """
    Mark a non-terminal Payout failed and schedule its automatic retry.

    ``next_retry_at`` is set only while ``retry_count < max_retries``;
    beyond that only an operator can retry.

    Returns:
        bool: True if this call failed the payout
    """
    now = utcnow()
    next_retry_at = None
    if payout.retry_count < payout.max_retries:
        next_retry_at = now + timedelta(seconds=retry_delay_seconds)

    applied = await transition_payout(
        db,
        payout,
        "failed",
        failure_reason=failure_reason,
        error_code=error_code,
        failed_at=now,
        next_retry_at=next_retry_at,
    )
    if not applied:
        logger.info("payout_failure_skipped", payout_id=str(payout.id), status=payout.status)
        return False

    await transition_transaction_payout(db, payout.transaction_id, "failed")
    await record_event(
        db,
        aggregate_type="payout",
        aggregate_id=payout.id,
        event_type="payout.failed",
        event_data={
            "failure_reason": failure_reason,
            "error_code": error_code,
            "retry_count": payout.retry_count,
            "next_retry_at": next_retry_at.isoformat() if next_retry_at else None,
        },
        correlation_id=payout.transaction_id,
    )
    logger.warning(
        "payout_failed",
        payout_id=str(payout.id),
        transaction_id=str(payout.transaction_id),
        failure_reason=failure_reason,
        retry_scheduled=next_retry_at is not None,
    )
    return True


async def reverse_payout(db: AsyncSession, payout: Payout, failure_reason: Optional[str]) -> bool:
    """
    Mark a processing or processed Payout reversed.

    Reversing a processed payout also takes its amount back out of the
    driver's received totals credited by ``settle_payout``. Reversals are
    never retried automatically.

    Returns:
        bool: True if this call reversed the payout
    """
    values: Dict[str, Any] = {
        "failure_reason": failure_reason,
        "failed_at": utcnow(),
        "next_retry_at": None,
    }
    was_settled = await transition_payout(
        db, payout, "reversed", sources=frozenset({"processed"}), **values
    )
    applied = was_settled or await transition_payout(db, payout, "reversed", **values)
    if not applied:
        logger.info("payout_reversal_skipped", payout_id=str(payout.id), status=payout.status)
        return False

    await transition_transaction_payout(db, payout.transaction_id, "failed")
    if was_settled:
        await db.execute(
            update(DriverPayoutAccount)
            .where(DriverPayoutAccount.driver_id == payout.driver_id)
            .values(
                total_payouts_received=DriverPayoutAccount.total_payouts_received - 1,
                total_amount_received=DriverPayoutAccount.total_amount_received - payout.amount,
            )
            .execution_options(synchronize_session=False)
        )
    await record_event(
        db,
        aggregate_type="payout",
        aggregate_id=payout.id,
        event_type="payout.reversed",
        event_data={
            "failure_reason": failure_reason,
            "amount": payout.amount,
            "was_settled": was_settled,
        },
        correlation_id=payout.transaction_id,
    )
    logger.error(
        "payout_reversed",
        payout_id=str(payout.id),
        transaction_id=str(payout.transaction_id),
        failure_reason=failure_reason,
    )
    return True


async def mark_payout_processing(db: AsyncSession, payout: Payout) -> bool:
    """Move a queued or pending Payout to processing."""
    applied = await transition_payout(db, payout, "processing")
    if applied:
        await record_event(
            db,
            aggregate_type="payout",
            aggregate_id=payout.id,
            event_type="payout.processing",
            event_data={"gateway_payout_id": payout.gateway_payout_id},
            correlation_id=payout.transaction_id,
        )
    return applied
