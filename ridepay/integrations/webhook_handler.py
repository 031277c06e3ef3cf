"""
Razorpay / RazorpayX webhook handler with signature verification and event deduplication.

Implements:
- HMAC-SHA256 signature verification over the raw body, one secret per source
- Typed event parsing (see webhook_events)
- Event deduplication using Redis as a fast path
- Idempotent handlers built on the ledger's conditional writes
"""
import json
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ridepay.config import Settings, get_settings
from ridepay.core import ledger
from ridepay.database.models import Payout, Transaction
from ridepay.integrations.razorpay_client import compute_signature, signatures_match
from ridepay.integrations.webhook_events import (
    PaymentAuthorizedEvent,
    PaymentCapturedEvent,
    PaymentFailedEvent,
    PayoutFailedEvent,
    PayoutProcessedEvent,
    PayoutReversedEvent,
    SUPPORTED_EVENT_TYPES,
    parse_webhook_event,
)
from ridepay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

EventHandler = Callable[[Any, AsyncSession], Awaitable[Dict[str, Any]]]


class WebhookError(Exception):
    """Raised when a webhook is rejected or its processing fails."""

    pass


class WebhookHandler:
    """
    Handles gateway webhook events with deduplication and processing.

    Features:
    - Signature verification with the payment or payout webhook secret
    - Event deduplication (processed event ids kept in Redis for 7 days)
    - Event type routing to one handler per supported event
    - Handlers safe under replay: every write is a conditional transition
    """

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize webhook handler.

        Args:
            redis_client: Optional Redis client for event deduplication
            settings: Optional settings (defaults to the cached settings)
        """
        self.settings = settings or get_settings()
        self.redis_client = redis_client
        self._owns_redis = False
        self.event_handlers: Dict[str, EventHandler] = {}

        self.register_handler("payment.captured", self.handle_payment_captured)
        self.register_handler("payment.authorized", self.handle_payment_authorized)
        self.register_handler("payment.failed", self.handle_payment_failed)
        self.register_handler("payout.processed", self.handle_payout_processed)
        self.register_handler("payout.failed", self.handle_payout_failed)
        self.register_handler("payout.reversed", self.handle_payout_reversed)

        missing = SUPPORTED_EVENT_TYPES - set(self.event_handlers)
        if missing:
            raise RuntimeError(f"No webhook handler registered for: {sorted(missing)}")

        logger.info("webhook_handler_initialized")

    async def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            self._owns_redis = True
        return self.redis_client

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event_type: Gateway event type (e.g. 'payment.captured')
            handler: Async callable taking the parsed event and a session
        """
        self.event_handlers[event_type] = handler
        logger.debug("webhook_handler_registered", event_type=event_type)

    def secret_for(self, source: str) -> str:
        if source == "payments":
            return self.settings.razorpay_webhook_secret
        if source == "payouts":
            return self.settings.razorpayx_webhook_secret
        raise WebhookError(f"Unknown webhook source: {source}")

    def verify_signature(self, payload: bytes, signature: Optional[str], source: str) -> None:
        """
        Verify the ``X-Razorpay-Signature`` header against the raw body.

        Args:
            payload: Raw request body as bytes
            signature: Signature header value
            source: ``payments`` or ``payouts``

        Raises:
            WebhookError: If signature verification fails
        """
        expected = compute_signature(self.secret_for(source), payload)
        if not signatures_match(expected, signature):
            logger.error("webhook_signature_verification_failed", source=source)
            raise WebhookError("Invalid webhook signature")

    async def is_event_processed(self, event_id: str) -> bool:
        """
        Check if webhook event has already been processed.

        Returns:
            bool: True if event already processed, False otherwise
        """
        try:
            redis = await self._ensure_redis()
            exists = await redis.exists(f"webhook:processed:{event_id}")
            return bool(exists)
        except Exception as e:
            logger.warning("webhook_dedup_check_error", error=str(e), event_id=event_id)
            # Redis down: process anyway, the ledger writes are idempotent
            return False

    async def mark_event_processed(self, event_id: str, ttl_seconds: int = 86400 * 7) -> None:
        """Mark webhook event as processed (kept for 7 days by default)."""
        try:
            redis = await self._ensure_redis()
            await redis.setex(f"webhook:processed:{event_id}", ttl_seconds, "1")
        except Exception as e:
            logger.warning("webhook_mark_processed_error", error=str(e), event_id=event_id)

    async def handle(
        self,
        raw_payload: bytes,
        signature: Optional[str],
        source: str,
        db: AsyncSession,
        event_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Verify, parse and apply one webhook delivery.

        Args:
            raw_payload: Raw request body as bytes
            signature: ``X-Razorpay-Signature`` header value
            source: ``payments`` or ``payouts``
            db: Database session
            event_id: ``X-Razorpay-Event-Id`` header value, if sent

        Returns:
            Dict[str, Any]: Processing result with a ``status`` of
            ``success``, ``duplicate`` or ``unhandled``

        Raises:
            WebhookError: If the delivery is rejected or its handler fails
        """
        start = time.monotonic()
        event_type = "unknown"

        try:
            self.verify_signature(raw_payload, signature, source)
        except WebhookError:
            metrics.record_webhook_event(source, event_type, "rejected", time.monotonic() - start)
            raise

        try:
            data = json.loads(raw_payload)
        except ValueError as e:
            metrics.record_webhook_event(source, event_type, "rejected", time.monotonic() - start)
            raise WebhookError(f"Malformed webhook body: {e}") from e
        if not isinstance(data, dict):
            metrics.record_webhook_event(source, event_type, "rejected", time.monotonic() - start)
            raise WebhookError("Malformed webhook body: expected a JSON object")

        event_type = str(data.get("event", "unknown"))
        log = logger.bind(source=source, event_type=event_type, event_id=event_id)
        log.info("processing_webhook_event")

        if event_id and await self.is_event_processed(event_id):
            log.info("webhook_event_already_processed")
            metrics.record_webhook_event(source, event_type, "duplicate", time.monotonic() - start)
            return {"status": "duplicate", "event_id": event_id, "event_type": event_type}

        try:
            event = parse_webhook_event(data)
        except ValidationError as e:
            log.error("webhook_payload_invalid", error=str(e))
            metrics.record_webhook_event(source, event_type, "rejected", time.monotonic() - start)
            raise WebhookError(f"Invalid {event_type} payload") from e

        if event is None:
            log.warning("webhook_event_unhandled")
            metrics.record_webhook_event(source, event_type, "unhandled", time.monotonic() - start)
            return {"status": "unhandled", "event_id": event_id, "event_type": event_type}

        handler = self.event_handlers[event.event]
        try:
            result = await handler(event, db)
            await db.commit()
        except Exception as e:
            await db.rollback()
            log.error("webhook_event_processing_failed", error=str(e), exc_info=True)
            metrics.record_webhook_event(source, event_type, "failed", time.monotonic() - start)
            raise WebhookError(f"Failed to process {event_type}: {e}") from e

        if event_id:
            await self.mark_event_processed(event_id)

        log.info("webhook_event_processed_successfully", result=result)
        metrics.record_webhook_event(source, event_type, "success", time.monotonic() - start)
        return {
            "status": "success",
            "event_id": event_id,
            "event_type": event_type,
            "result": result,
        }

    @staticmethod
    async def _transaction_for_order(db: AsyncSession, order_id: Optional[str]) -> Optional[Transaction]:
        if not order_id:
            return None
        result = await db.execute(
            select(Transaction).where(Transaction.gateway_order_id == order_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _payout_for_gateway_id(db: AsyncSession, gateway_payout_id: str) -> Optional[Payout]:
        result = await db.execute(
            select(Payout).where(Payout.gateway_payout_id == gateway_payout_id)
        )
        return result.scalar_one_or_none()

    async def handle_payment_captured(
        self, event: PaymentCapturedEvent, db: AsyncSession
    ) -> Dict[str, Any]:
        """
        Handle payment.captured.

        Runs the same capture transition as checkout verification. A capture
        reported for a transaction that already failed is recorded as a
        conflict for manual follow-up instead of being applied.
        """
        payment = event.payment
        transaction = await self._transaction_for_order(db, payment.order_id)
        if transaction is None:
            logger.warning(
                "webhook_transaction_not_found",
                order_id=payment.order_id,
                payment_id=payment.id,
            )
            return {"applied": False, "reason": "transaction_not_found"}

        if transaction.payment_status == "failed":
            logger.error(
                "payment_capture_conflict",
                transaction_id=str(transaction.id),
                payment_id=payment.id,
                error_code=transaction.error_code,
            )
            await ledger.record_event(
                db,
                aggregate_type="transaction",
                aggregate_id=transaction.id,
                event_type="payment.capture_conflict",
                event_data={
                    "gateway_payment_id": payment.id,
                    "amount": payment.amount,
                    "local_status": transaction.payment_status,
                },
            )
            return {"applied": False, "reason": "transaction_failed"}

        applied = await ledger.capture_transaction(
            db,
            transaction,
            payment_id=payment.id,
            payment_method=payment.method,
            source="webhook",
        )
        return {"applied": applied, "transaction_id": str(transaction.id)}

    async def handle_payment_authorized(
        self, event: PaymentAuthorizedEvent, db: AsyncSession
    ) -> Dict[str, Any]:
        """Handle payment.authorized: ``created -> pending``."""
        payment = event.payment
        transaction = await self._transaction_for_order(db, payment.order_id)
        if transaction is None:
            logger.warning("webhook_transaction_not_found", order_id=payment.order_id)
            return {"applied": False, "reason": "transaction_not_found"}

        values: Dict[str, Any] = {"gateway_payment_id": payment.id}
        if payment.method:
            values["payment_method"] = payment.method
        applied = await ledger.transition_payment(db, transaction, "pending", **values)
        if applied:
            await ledger.record_event(
                db,
                aggregate_type="transaction",
                aggregate_id=transaction.id,
                event_type="payment.authorized",
                event_data={"gateway_payment_id": payment.id, "method": payment.method},
            )
        return {"applied": applied, "transaction_id": str(transaction.id)}

    async def handle_payment_failed(
        self, event: PaymentFailedEvent, db: AsyncSession
    ) -> Dict[str, Any]:
        """Handle payment.failed: ``created/pending -> failed``."""
        payment = event.payment
        transaction = await self._transaction_for_order(db, payment.order_id)
        if transaction is None:
            logger.warning("webhook_transaction_not_found", order_id=payment.order_id)
            return {"applied": False, "reason": "transaction_not_found"}

        applied = await ledger.fail_transaction(
            db,
            transaction,
            error_code=payment.error_code,
            error_description=payment.error_description,
            payment_id=payment.id,
            source="webhook",
        )
        return {"applied": applied, "transaction_id": str(transaction.id)}

    async def handle_payout_processed(
        self, event: PayoutProcessedEvent, db: AsyncSession
    ) -> Dict[str, Any]:
        """Handle payout.processed; credits the driver only once per payout."""
        gateway_payout = event.payout
        payout = await self._payout_for_gateway_id(db, gateway_payout.id)
        if payout is None:
            logger.warning("webhook_payout_not_found", gateway_payout_id=gateway_payout.id)
            return {"applied": False, "reason": "payout_not_found"}

        applied = await ledger.settle_payout(db, payout, utr=gateway_payout.utr)
        return {"applied": applied, "payout_id": str(payout.id)}

    async def handle_payout_failed(
        self, event: PayoutFailedEvent, db: AsyncSession
    ) -> Dict[str, Any]:
        """Handle payout.failed; schedules an automatic retry while retries remain."""
        gateway_payout = event.payout
        payout = await self._payout_for_gateway_id(db, gateway_payout.id)
        if payout is None:
            logger.warning("webhook_payout_not_found", gateway_payout_id=gateway_payout.id)
            return {"applied": False, "reason": "payout_not_found"}

        applied = await ledger.fail_payout(
            db,
            payout,
            failure_reason=gateway_payout.reason,
            error_code=gateway_payout.error_code,
            retry_delay_seconds=self.settings.payout_retry_delay_seconds,
        )
        return {"applied": applied, "payout_id": str(payout.id)}

    async def handle_payout_reversed(
        self, event: PayoutReversedEvent, db: AsyncSession
    ) -> Dict[str, Any]:
        gateway_payout = event.payout
        payout = await self._payout_for_gateway_id(db, gateway_payout.id)
        if payout is None:
            logger.warning("webhook_payout_not_found", gateway_payout_id=gateway_payout.id)
            return {"applied": False, "reason": "payout_not_found"}

        applied = await ledger.reverse_payout(db, payout, failure_reason=gateway_payout.reason)
        return {"applied": applied, "payout_id": str(payout.id)}

    async def close(self) -> None:
        """Close the Redis connection if this handler opened it."""
        if self.redis_client is not None and self._owns_redis:
            await self.redis_client.aclose()
