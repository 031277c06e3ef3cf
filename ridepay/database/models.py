"""SQLAlchemy database models for the payment and payout ledger."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

ACTIVE_PAYMENT_STATUSES = ("created", "pending", "captured")
OPEN_PAYOUT_STATUSES = ("queued", "pending", "processing")

_ACTIVE_TRANSACTION_WHERE = text("payment_status IN ('created', 'pending', 'captured')")
_OPEN_PAYOUT_WHERE = text("status IN ('queued', 'pending', 'processing')")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


# ---------------------------------------------------------------------------
# Marketplace collaborator tables. The payment engine only reads these, apart
# from the booking payment fields it updates.
# ---------------------------------------------------------------------------


class User(Base):
    """Marketplace user (passenger or driver) directory entry."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, name={self.name})>"


class Ride(Base):
    """Published ride; only the owning driver matters here."""

    __tablename__ = "rides"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    driver_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    def __repr__(self) -> str:
        return f"<Ride(id={self.id}, driver_id={self.driver_id})>"


class Booking(Base):
    """Seat booking on a ride."""

    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    ride_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("rides.id"), nullable=False, index=True
    )
    passenger_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    total_fare: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    seats_booked: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    payment_status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="pending", index=True
    )
    payment_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        CheckConstraint("total_fare >= 0", name="non_negative_fare"),
        CheckConstraint(
            "payment_status IN ('pending', 'processing', 'completed', 'failed', 'refunded')",
            name="valid_booking_payment_status",
        ),
    )

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "completed"

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, status={self.status}, "
            f"payment_status={self.payment_status})>"
        )


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class Transaction(Base):
    """
    One attempted passenger charge for a booking.

    All amounts are integer paise. Rows are never deleted; a failed attempt
    stays as audit trail and a new attempt gets a new row.
    """

    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False, index=True
    )
    ride_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    passenger_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    driver_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    gateway_order_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    gateway_payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    gateway_signature: Mapped[str | None] = mapped_column(String(128), nullable=True)

    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    base_commission_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    commission_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    gst_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    gst_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    platform_total: Mapped[int] = mapped_column(BigInteger, nullable=False)
    driver_net_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="created", index=True
    )
    payout_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending", index=True
    )
    payment_method: Mapped[str | None] = mapped_column(String(32), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_description: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )
    captured_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payout_initiated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    payout_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint("total_amount > 0", name="positive_total_amount"),
        CheckConstraint("driver_net_amount >= 0", name="non_negative_driver_net"),
        CheckConstraint(
            "total_amount = driver_net_amount + platform_total", name="balanced_split"
        ),
        CheckConstraint(
            "platform_total = base_commission_amount + gst_amount", name="balanced_platform_total"
        ),
        CheckConstraint(
            "payment_status IN ('created', 'pending', 'captured', 'failed', 'refunded')",
            name="valid_payment_status",
        ),
        CheckConstraint(
            "payout_status IN ('pending', 'processing', 'completed', 'failed')",
            name="valid_payout_status",
        ),
        Index(
            "uq_transactions_active_booking",
            "booking_id",
            unique=True,
            postgresql_where=_ACTIVE_TRANSACTION_WHERE,
            sqlite_where=_ACTIVE_TRANSACTION_WHERE,
        ),
        Index("idx_transactions_driver_payout", "driver_id", "payout_status"),
        Index("idx_transactions_passenger_status", "passenger_id", "payment_status"),
    )

    @property
    def is_captured(self) -> bool:
        return self.payment_status == "captured"

    def __repr__(self) -> str:
        return (
            f"<Transaction(id={self.id}, booking_id={self.booking_id}, "
            f"payment_status={self.payment_status}, payout_status={self.payout_status})>"
        )


class Payout(Base):
    """One attempted transfer of a driver's net share through RazorpayX."""

    __tablename__ = "payouts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("transactions.id"), nullable=False, index=True
    )
    driver_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    booking_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")

    gateway_payout_id: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    gateway_fund_account_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    gateway_contact_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="queued", index=True)
    mode: Mapped[str] = mapped_column(String(8), nullable=False, default="IMPS")

    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    utr: Mapped[str | None] = mapped_column(String(64), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)

    queued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    initiated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_payout_amount"),
        CheckConstraint("retry_count >= 0", name="non_negative_retry_count"),
        CheckConstraint(
            "status IN ('queued', 'pending', 'processing', 'processed', "
            "'cancelled', 'reversed', 'failed')",
            name="valid_payout_status",
        ),
        CheckConstraint("mode IN ('NEFT', 'RTGS', 'IMPS', 'UPI')", name="valid_payout_mode"),
        Index(
            "uq_payouts_open_transaction",
            "transaction_id",
            unique=True,
            postgresql_where=_OPEN_PAYOUT_WHERE,
            sqlite_where=_OPEN_PAYOUT_WHERE,
        ),
        Index("idx_payouts_driver_status", "driver_id", "status"),
        Index("idx_payouts_status_retry", "status", "next_retry_at"),
    )

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_PAYOUT_STATUSES

    def __repr__(self) -> str:
        return (
            f"<Payout(id={self.id}, transaction_id={self.transaction_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class DriverPayoutAccount(Base):
    """A driver's payout destination and running payout totals."""

    __tablename__ = "driver_payout_accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    driver_id: Mapped[uuid.UUID] = mapped_column(Uuid, unique=True, nullable=False)

    account_holder_name: Mapped[str] = mapped_column(String(255), nullable=False)
    account_number: Mapped[str] = mapped_column(String(34), nullable=False)
    ifsc_code: Mapped[str] = mapped_column(String(11), nullable=False)

    gateway_contact_id: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    gateway_fund_account_id: Mapped[str | None] = mapped_column(
        String(64), unique=True, nullable=True
    )

    is_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    verification_method: Mapped[str | None] = mapped_column(String(32), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    total_payouts_received: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount_received: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    @property
    def masked_account_number(self) -> str:
        """Account number with all but the last four digits masked."""
        visible = self.account_number[-4:]
        return "*" * max(len(self.account_number) - 4, 0) + visible

    def __repr__(self) -> str:
        return (
            f"<DriverPayoutAccount(driver_id={self.driver_id}, "
            f"verified={self.is_verified}, active={self.is_active})>"
        )


class LedgerEvent(Base):
    """
    Ledger audit trail table.

    Stores every state change of a transaction, payout or payout account.
    Immutable once written.
    """

    __tablename__ = "ledger_events"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    aggregate_type: Mapped[str] = mapped_column(String(32), nullable=False)
    aggregate_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    correlation_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_ledger_events_aggregate", "aggregate_type", "aggregate_id"),
        Index("idx_ledger_events_type", "event_type"),
        Index("idx_ledger_events_correlation_id", "correlation_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<LedgerEvent(id={self.id}, aggregate={self.aggregate_type}:{self.aggregate_id}, "
            f"type={self.event_type})>"
        )
