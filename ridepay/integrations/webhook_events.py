"""
Typed Razorpay and RazorpayX webhook payloads.

Each supported event type is its own model, and ``WebhookEvent`` is a
discriminated union on the ``event`` field, so a handler receives a fully
parsed variant instead of an untyped dictionary.
"""
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _GatewayModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class PaymentEntity(_GatewayModel):
    id: str
    order_id: Optional[str] = None
    status: str
    amount: int
    currency: str = "INR"
    method: Optional[str] = None
    error_code: Optional[str] = None
    error_description: Optional[str] = None


class PaymentWrapper(_GatewayModel):
    entity: PaymentEntity


class PaymentPayload(_GatewayModel):
    payment: PaymentWrapper


class PayoutStatusDetails(_GatewayModel):
    reason: Optional[str] = None
    description: Optional[str] = None
    source: Optional[str] = None


class PayoutErrorDetails(_GatewayModel):
    code: Optional[str] = None
    description: Optional[str] = None
    reason: Optional[str] = None


class PayoutEntity(_GatewayModel):
    id: str
    status: str
    amount: int
    currency: str = "INR"
    mode: Optional[str] = None
    utr: Optional[str] = None
    reference_id: Optional[str] = None
    failure_reason: Optional[str] = None
    status_details: Optional[PayoutStatusDetails] = None
    error: Optional[PayoutErrorDetails] = None

    @property
    def reason(self) -> Optional[str]:
        """Best human-readable failure reason the gateway gave."""
        if self.failure_reason:
            return self.failure_reason
        if self.status_details and self.status_details.description:
            return self.status_details.description
        if self.error and self.error.description:
            return self.error.description
        return None

    @property
    def error_code(self) -> Optional[str]:
        if self.error and self.error.code:
            return self.error.code
        if self.status_details and self.status_details.reason:
            return self.status_details.reason
        return None


class PayoutWrapper(_GatewayModel):
    entity: PayoutEntity


class PayoutPayload(_GatewayModel):
    payout: PayoutWrapper


class _PaymentEvent(_GatewayModel):
    account_id: Optional[str] = None
    created_at: Optional[int] = None
    payload: PaymentPayload

    @property
    def payment(self) -> PaymentEntity:
        return self.payload.payment.entity


class _PayoutEvent(_GatewayModel):
    account_id: Optional[str] = None
    created_at: Optional[int] = None
    payload: PayoutPayload

    @property
    def payout(self) -> PayoutEntity:
        return self.payload.payout.entity


class PaymentCapturedEvent(_PaymentEvent):
    event: Literal["payment.captured"]


class PaymentAuthorizedEvent(_PaymentEvent):
    event: Literal["payment.authorized"]


class PaymentFailedEvent(_PaymentEvent):
    event: Literal["payment.failed"]


class PayoutProcessedEvent(_PayoutEvent):
    event: Literal["payout.processed"]


class PayoutFailedEvent(_PayoutEvent):
    event: Literal["payout.failed"]


class PayoutReversedEvent(_PayoutEvent):
    event: Literal["payout.reversed"]


WebhookEvent = Annotated[
    Union[
        PaymentCapturedEvent,
        PaymentAuthorizedEvent,
        PaymentFailedEvent,
        PayoutProcessedEvent,
        PayoutFailedEvent,
        PayoutReversedEvent,
    ],
    Field(discriminator="event"),
]

PAYMENT_EVENT_TYPES = frozenset({"payment.captured", "payment.authorized", "payment.failed"})
PAYOUT_EVENT_TYPES = frozenset({"payout.processed", "payout.failed", "payout.reversed"})
SUPPORTED_EVENT_TYPES = PAYMENT_EVENT_TYPES | PAYOUT_EVENT_TYPES

_webhook_event_adapter: TypeAdapter[Any] = TypeAdapter(WebhookEvent)


def parse_webhook_event(data: Dict[str, Any]) -> Any:
    """
    Parse a decoded webhook body into its typed variant.

    Returns None for event types the engine does not handle.

    Raises:
        pydantic.ValidationError: If a supported event has a malformed payload
    """
    if data.get("event") not in SUPPORTED_EVENT_TYPES:
        return None
    return _webhook_event_adapter.validate_python(data)
