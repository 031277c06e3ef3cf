"""
Pydantic schemas for API request/response models.

Field names are snake_case in Python and camelCase on the wire. Money is
presented as 2-decimal rupees, except the order amount, which is the paise
value handed to the checkout widget.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Generic, List, Optional, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ridepay.core.commission import from_paise
from ridepay.database.models import Booking, DriverPayoutAccount, Payout, Transaction

DataT = TypeVar("DataT")


class CamelModel(BaseModel):
    """Base model serialised with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ApiResponse(CamelModel, Generic[DataT]):
    """Envelope for every synchronous endpoint."""

    success: bool = Field(default=True, description="Whether the request succeeded")
    message: Optional[str] = Field(default=None, description="Human-readable outcome")
    data: Optional[DataT] = Field(default=None, description="Response payload")


class ErrorResponse(CamelModel):
    """Error envelope returned by the exception handlers."""

    success: bool = False
    message: str = Field(..., description="Error message")
    error_code: Optional[str] = Field(default=None, description="Machine-readable error code")


# Payments


class CreateOrderRequest(CamelModel):
    """Request schema for opening a payment order."""

    booking_id: UUID = Field(..., description="Booking to pay for")

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [{"bookingId": "123e4567-e89b-12d3-a456-426614174000"}]
        },
    )


class OrderData(CamelModel):
    """Checkout parameters for a payment order."""

    order_id: str = Field(..., description="Gateway order id")
    amount: int = Field(..., description="Order amount in paise")
    currency: str = Field(..., description="Currency code")
    transaction_id: UUID = Field(..., description="Local transaction id")
    key_id: str = Field(..., description="Public gateway key for the checkout widget")
    commission_breakdown: Dict[str, str] = Field(..., description="Fare split shown at checkout")


class VerifyPaymentRequest(CamelModel):
    """Checkout callback forwarded by the client."""

    order_id: str = Field(..., min_length=1, description="Gateway order id")
    payment_id: str = Field(..., min_length=1, description="Gateway payment id")
    signature: str = Field(..., min_length=1, description="Checkout signature")
    transaction_id: UUID = Field(..., description="Local transaction id")


class VerifyPaymentData(CamelModel):
    verified: bool
    status: str
    amount: Decimal = Field(..., description="Captured amount in rupees")
    transaction_id: UUID
    payment_id: Optional[str] = None


class TransactionData(CamelModel):
    """Transaction as shown to its passenger, driver or an operator."""

    id: UUID
    booking_id: UUID
    ride_id: UUID
    passenger_id: UUID
    driver_id: UUID
    gateway_order_id: str
    gateway_payment_id: Optional[str] = None
    currency: str
    total_amount: Decimal
    base_commission_amount: Decimal
    commission_percent: Decimal
    gst_amount: Decimal
    gst_percent: Decimal
    platform_total: Decimal
    driver_net_amount: Decimal
    payment_status: str
    payout_status: str
    payment_method: Optional[str] = None
    error_code: Optional[str] = None
    error_description: Optional[str] = None
    created_at: datetime
    captured_at: Optional[datetime] = None
    payout_completed_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, transaction: Transaction) -> "TransactionData":
        return cls(
            id=transaction.id,
            booking_id=transaction.booking_id,
            ride_id=transaction.ride_id,
            passenger_id=transaction.passenger_id,
            driver_id=transaction.driver_id,
            gateway_order_id=transaction.gateway_order_id,
            gateway_payment_id=transaction.gateway_payment_id,
            currency=transaction.currency,
            total_amount=from_paise(transaction.total_amount),
            base_commission_amount=from_paise(transaction.base_commission_amount),
            commission_percent=transaction.commission_percent,
            gst_amount=from_paise(transaction.gst_amount),
            gst_percent=transaction.gst_percent,
            platform_total=from_paise(transaction.platform_total),
            driver_net_amount=from_paise(transaction.driver_net_amount),
            payment_status=transaction.payment_status,
            payout_status=transaction.payout_status,
            payment_method=transaction.payment_method,
            error_code=transaction.error_code,
            error_description=transaction.error_description,
            created_at=transaction.created_at,
            captured_at=transaction.captured_at,
            payout_completed_at=transaction.payout_completed_at,
        )


class BookingPaymentData(CamelModel):
    """Payment state of a booking with its latest transaction, if any."""

    booking_id: UUID
    ride_id: UUID
    total_fare: Decimal
    payment_status: str
    payment_completed_at: Optional[datetime] = None
    transaction: Optional[TransactionData] = None

    @classmethod
    def from_model(
        cls, booking: Booking, transaction: Optional[Transaction]
    ) -> "BookingPaymentData":
        return cls(
            booking_id=booking.id,
            ride_id=booking.ride_id,
            total_fare=booking.total_fare,
            payment_status=booking.payment_status,
            payment_completed_at=booking.payment_completed_at,
            transaction=TransactionData.from_model(transaction) if transaction else None,
        )


class Pagination(CamelModel):
    total: int
    limit: int
    offset: int


class TransactionListData(CamelModel):
    transactions: List[TransactionData]
    pagination: Pagination


class EarningsData(CamelModel):
    """Driver earnings summary in rupees."""

    total_earnings: Decimal
    pending_payouts: Decimal
    completed_payouts: Decimal
    transaction_count: int

    @classmethod
    def from_paise(cls, summary: Dict[str, int]) -> "EarningsData":
        return cls(
            total_earnings=from_paise(summary["total_earnings"]),
            pending_payouts=from_paise(summary["pending_payouts"]),
            completed_payouts=from_paise(summary["completed_payouts"]),
            transaction_count=summary["transaction_count"],
        )


# Payouts


class SetupDriverRequest(CamelModel):
    """Bank details for a driver's first payout setup."""

    account_holder_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    account_number: Optional[str] = Field(default=None, min_length=6, max_length=34)
    ifsc_code: Optional[str] = Field(default=None, description="11-character IFSC code")

    @field_validator("account_number")
    @classmethod
    def validate_account_number(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.isdigit():
            raise ValueError("Account number must contain digits only")
        return v

    @field_validator("ifsc_code")
    @classmethod
    def validate_ifsc(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.upper()
        if len(v) != 11 or not v[:4].isalpha() or v[4] != "0":
            raise ValueError("Invalid IFSC code")
        return v

    def bank_details(self) -> Optional[Dict[str, str]]:
        """Bank details if all three fields were given, else None."""
        if self.account_holder_name and self.account_number and self.ifsc_code:
            return {
                "account_holder_name": self.account_holder_name,
                "account_number": self.account_number,
                "ifsc_code": self.ifsc_code,
            }
        return None


class SetupDriverData(CamelModel):
    verified: bool
    contact_id: Optional[str] = None
    fund_destination_id: Optional[str] = None


class PayoutAccountData(CamelModel):
    """Payout destination with the account number masked."""

    account_holder_name: str
    account_number: str
    ifsc_code: str
    is_verified: bool

    @classmethod
    def from_model(cls, account: DriverPayoutAccount) -> "PayoutAccountData":
        return cls(
            account_holder_name=account.account_holder_name,
            account_number=account.masked_account_number,
            ifsc_code=account.ifsc_code,
            is_verified=account.is_verified,
        )


class PayoutData(CamelModel):
    id: UUID
    transaction_id: UUID
    driver_id: UUID
    booking_id: UUID
    amount: Decimal = Field(..., description="Payout amount in rupees")
    currency: str
    status: str
    mode: str
    gateway_payout_id: Optional[str] = None
    utr: Optional[str] = None
    retry_count: int
    max_retries: int
    next_retry_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    error_code: Optional[str] = None
    queued_at: datetime
    processed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    created_at: datetime
    account: Optional[PayoutAccountData] = None

    @classmethod
    def from_model(
        cls, payout: Payout, account: Optional[DriverPayoutAccount] = None
    ) -> "PayoutData":
        return cls(
            id=payout.id,
            transaction_id=payout.transaction_id,
            driver_id=payout.driver_id,
            booking_id=payout.booking_id,
            amount=from_paise(payout.amount),
            currency=payout.currency,
            status=payout.status,
            mode=payout.mode,
            gateway_payout_id=payout.gateway_payout_id,
            utr=payout.utr,
            retry_count=payout.retry_count,
            max_retries=payout.max_retries,
            next_retry_at=payout.next_retry_at,
            failure_reason=payout.failure_reason,
            error_code=payout.error_code,
            queued_at=payout.queued_at,
            processed_at=payout.processed_at,
            failed_at=payout.failed_at,
            created_at=payout.created_at,
            account=PayoutAccountData.from_model(account) if account is not None else None,
        )


class PayoutListData(CamelModel):
    payouts: List[PayoutData]
    pagination: Pagination


class TriggerPayoutRequest(CamelModel):
    mode: Optional[str] = Field(default=None, description="NEFT, RTGS, IMPS or UPI")


class BatchPayoutRequest(CamelModel):
    transaction_ids: List[UUID] = Field(..., min_length=1, max_length=100)
    mode: Optional[str] = Field(default=None, description="NEFT, RTGS, IMPS or UPI")


class BatchPayoutItem(CamelModel):
    transaction_id: UUID
    success: bool
    payout_id: Optional[UUID] = None
    error: Optional[str] = None


class BatchPayoutData(CamelModel):
    results: List[BatchPayoutItem]
    succeeded: int
    failed: int


class ReconcilePayoutData(CamelModel):
    payout_id: UUID
    previous_status: str
    status: str
    changed: bool


# Webhooks and monitoring


class WebhookResponse(CamelModel):
    """Webhook acknowledgement; always returned with HTTP 200."""

    success: bool = Field(..., description="Whether the event was applied")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
