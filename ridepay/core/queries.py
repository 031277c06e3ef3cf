"""Read-side queries over the ledger for passengers, drivers and operators."""
import uuid
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ridepay.core.errors import AuthorizationError, NotFoundError
from ridepay.database.models import Booking, DriverPayoutAccount, Payout, Ride, Transaction


async def get_transaction_for_caller(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    caller_id: Optional[uuid.UUID],
    is_admin: bool = False,
) -> Transaction:
    """
    Load a transaction visible to the caller.

    Passengers and drivers see their own transactions; admins see all.

    Raises:
        NotFoundError: If the transaction does not exist
        AuthorizationError: If the caller is neither party nor an admin
    """
    transaction = await db.get(Transaction, transaction_id)
    if transaction is None:
        raise NotFoundError("Transaction not found")
    if not is_admin and caller_id not in (transaction.passenger_id, transaction.driver_id):
        raise AuthorizationError("Not authorized to view this transaction")
    return transaction


async def booking_payment_status(
    db: AsyncSession,
    booking_id: uuid.UUID,
    caller_id: Optional[uuid.UUID],
    is_admin: bool = False,
) -> Tuple[Booking, Optional[Transaction]]:
    """
    Load a booking and its most recent payment transaction.

    Visible to the booking's passenger, the ride's driver and admins.

    Raises:
        NotFoundError: If the booking does not exist
        AuthorizationError: If the caller is neither party nor an admin
    """
    booking = await db.get(Booking, booking_id)
    if booking is None:
        raise NotFoundError("Booking not found")
    driver_id = await db.scalar(select(Ride.driver_id).where(Ride.id == booking.ride_id))
    if not is_admin and (caller_id is None or caller_id not in (booking.passenger_id, driver_id)):
        raise AuthorizationError("Not authorized to view this booking")

    latest = await db.scalar(
        select(Transaction)
        .where(Transaction.booking_id == booking_id)
        .order_by(Transaction.created_at.desc())
        .limit(1)
    )
    return booking, latest


async def passenger_transactions(
    db: AsyncSession,
    passenger_id: uuid.UUID,
    limit: int = 20,
    offset: int = 0,
) -> Tuple[List[Transaction], int]:
    """Newest-first transactions of a passenger, with the total count."""
    result = await db.execute(
        select(Transaction)
        .where(Transaction.passenger_id == passenger_id)
        .order_by(Transaction.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    total = await db.scalar(
        select(func.count()).select_from(Transaction).where(Transaction.passenger_id == passenger_id)
    )
    return list(result.scalars().all()), int(total or 0)


async def driver_earnings(db: AsyncSession, driver_id: uuid.UUID) -> Dict[str, int]:
    """
    Earnings summary for a driver, in paise.

    ``total_earnings`` covers every captured transaction; ``pending_payouts``
    is the part not yet paid out (pending, processing or failed payouts) and
    ``completed_payouts`` the part already settled.
    """
    captured = (Transaction.driver_id == driver_id) & (Transaction.payment_status == "captured")
    amount = func.coalesce(func.sum(Transaction.driver_net_amount), 0)

    total = await db.scalar(select(amount).where(captured))
    pending = await db.scalar(
        select(amount).where(
            captured, Transaction.payout_status.in_(("pending", "processing", "failed"))
        )
    )
    completed = await db.scalar(select(amount).where(captured, Transaction.payout_status == "completed"))
    count = await db.scalar(select(func.count()).select_from(Transaction).where(captured))

    return {
        "total_earnings": int(total or 0),
        "pending_payouts": int(pending or 0),
        "completed_payouts": int(completed or 0),
        "transaction_count": int(count or 0),
    }


async def get_payout_for_caller(
    db: AsyncSession,
    payout_id: uuid.UUID,
    caller_id: Optional[uuid.UUID],
    is_admin: bool = False,
) -> Payout:
    """
    Load a payout visible to the caller (its driver or an admin).

    Raises:
        NotFoundError: If the payout does not exist
        AuthorizationError: If the caller is not the driver or an admin
    """
    payout = await db.get(Payout, payout_id)
    if payout is None:
        raise NotFoundError("Payout not found")
    if not is_admin and payout.driver_id != caller_id:
        raise AuthorizationError("Not authorized to view this payout")
    return payout


async def driver_payouts(
    db: AsyncSession,
    driver_id: uuid.UUID,
    status: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
) -> Tuple[List[Payout], int]:
    """Newest-first payouts of a driver, optionally filtered by status, with the total count."""
    conditions: List[Any] = [Payout.driver_id == driver_id]
    if status:
        conditions.append(Payout.status == status)

    result = await db.execute(
        select(Payout)
        .where(*conditions)
        .order_by(Payout.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    total = await db.scalar(select(func.count()).select_from(Payout).where(*conditions))
    return list(result.scalars().all()), int(total or 0)


async def driver_payout_account(
    db: AsyncSession, driver_id: uuid.UUID
) -> Optional[DriverPayoutAccount]:
    result = await db.execute(
        select(DriverPayoutAccount).where(DriverPayoutAccount.driver_id == driver_id)
    )
    return result.scalar_one_or_none()
