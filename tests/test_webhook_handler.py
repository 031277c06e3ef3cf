"""
Tests for webhook signature verification, deduplication and event handling.
"""
import json
from datetime import timedelta
from typing import Any
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from ridepay.core.ledger import utcnow
from ridepay.database.models import DriverPayoutAccount, LedgerEvent, Payout, Transaction
from ridepay.integrations.razorpay_client import compute_signature
from ridepay.integrations.webhook_handler import WebhookError, WebhookHandler
from tests.helpers import as_utc, payment_event, payout_event, signed_body

ORDER_ID = "order_webhook_1"


@pytest.fixture
def handler(fake_redis: Any, test_settings: Any) -> WebhookHandler:
    return WebhookHandler(redis_client=fake_redis, settings=test_settings)


def payment_body(settings: Any, payload: dict) -> tuple:
    return signed_body(settings.razorpay_webhook_secret, payload)


def payout_body(settings: Any, payload: dict) -> tuple:
    return signed_body(settings.razorpayx_webhook_secret, payload)


class TestSignatureVerification:
    """Deliveries must be signed with the secret of their source."""

    @pytest.mark.unit
    def test_valid_signature(self, handler: WebhookHandler, test_settings: Any) -> None:
        body = b'{"event": "payment.captured"}'
        signature = compute_signature(test_settings.razorpay_webhook_secret, body)

        handler.verify_signature(body, signature, "payments")

    @pytest.mark.unit
    def test_secrets_are_per_source(self, handler: WebhookHandler, test_settings: Any) -> None:
        body = b'{"event": "payout.processed"}'
        signature = compute_signature(test_settings.razorpay_webhook_secret, body)

        with pytest.raises(WebhookError, match="Invalid webhook signature"):
            handler.verify_signature(body, signature, "payouts")

    @pytest.mark.unit
    @pytest.mark.parametrize("signature", [None, "", "deadbeef"])
    def test_missing_or_wrong_signature(
        self, handler: WebhookHandler, signature: Any
    ) -> None:
        with pytest.raises(WebhookError):
            handler.verify_signature(b"{}", signature, "payments")

    @pytest.mark.unit
    def test_unknown_source(self, handler: WebhookHandler) -> None:
        with pytest.raises(WebhookError, match="Unknown webhook source"):
            handler.secret_for("refunds")

    @pytest.mark.asyncio
    async def test_bad_signature_applies_nothing(
        self,
        handler: WebhookHandler,
        test_db: Any,
        make_transaction: Any,
    ) -> None:
        transaction = await make_transaction(payment_status="created", order_id=ORDER_ID)
        body = json.dumps(payment_event("payment.captured", ORDER_ID)).encode()

        with pytest.raises(WebhookError):
            await handler.handle(body, "forged", "payments", test_db, event_id="evt_1")

        await test_db.refresh(transaction)
        assert transaction.payment_status == "created"
        assert not await handler.is_event_processed("evt_1")


class TestPaymentEvents:
    """payment.* events drive the transaction state machine."""

    @pytest.mark.asyncio
    async def test_captured_event_captures_transaction(
        self,
        handler: WebhookHandler,
        test_db: Any,
        test_settings: Any,
        make_transaction: Any,
        booking: Any,
    ) -> None:
        transaction = await make_transaction(payment_status="created", order_id=ORDER_ID)
        body, signature = payment_body(test_settings, payment_event("payment.captured", ORDER_ID))

        result = await handler.handle(body, signature, "payments", test_db, event_id="evt_1")

        await test_db.refresh(transaction)
        await test_db.refresh(booking)
        assert result["status"] == "success"
        assert result["result"]["applied"] is True
        assert transaction.payment_status == "captured"
        assert transaction.gateway_payment_id == "pay_test_123"
        assert booking.payment_status == "completed"
        assert await handler.is_event_processed("evt_1")

    @pytest.mark.asyncio
    async def test_replayed_event_is_a_duplicate(
        self,
        handler: WebhookHandler,
        test_db: Any,
        test_settings: Any,
        make_transaction: Any,
    ) -> None:
        await make_transaction(payment_status="created", order_id=ORDER_ID)
        body, signature = payment_body(test_settings, payment_event("payment.captured", ORDER_ID))

        await handler.handle(body, signature, "payments", test_db, event_id="evt_1")
        replay = await handler.handle(body, signature, "payments", test_db, event_id="evt_1")

        assert replay["status"] == "duplicate"

    @pytest.mark.asyncio
    async def test_replay_without_event_id_converges(
        self,
        handler: WebhookHandler,
        test_db: Any,
        test_settings: Any,
        make_transaction: Any,
    ) -> None:
        transaction = await make_transaction(payment_status="created", order_id=ORDER_ID)
        body, signature = payment_body(test_settings, payment_event("payment.captured", ORDER_ID))

        first = await handler.handle(body, signature, "payments", test_db)
        second = await handler.handle(body, signature, "payments", test_db)

        assert first["result"]["applied"] is True
        assert second["status"] == "success"
        assert second["result"]["applied"] is False
        captured_events = await test_db.scalar(
            select(func.count())
            .select_from(LedgerEvent)
            .where(
                LedgerEvent.aggregate_id == transaction.id,
                LedgerEvent.event_type == "payment.captured",
            )
        )
        assert captured_events == 1

    @pytest.mark.asyncio
    async def test_authorized_moves_to_pending(
        self,
        handler: WebhookHandler,
        test_db: Any,
        test_settings: Any,
        make_transaction: Any,
    ) -> None:
        transaction = await make_transaction(payment_status="created", order_id=ORDER_ID)
        body, signature = payment_body(
            test_settings, payment_event("payment.authorized", ORDER_ID, method="card")
        )

        await handler.handle(body, signature, "payments", test_db)

        await test_db.refresh(transaction)
        assert transaction.payment_status == "pending"
        assert transaction.payment_method == "card"

    @pytest.mark.asyncio
    async def test_failed_event_fails_transaction(
        self,
        handler: WebhookHandler,
        test_db: Any,
        test_settings: Any,
        make_transaction: Any,
    ) -> None:
        transaction = await make_transaction(payment_status="pending", order_id=ORDER_ID)
        payload = payment_event(
            "payment.failed",
            ORDER_ID,
            error_code="BAD_REQUEST_ERROR",
            error_description="Payment was declined by the bank",
        )
        body, signature = payment_body(test_settings, payload)

        await handler.handle(body, signature, "payments", test_db)

        await test_db.refresh(transaction)
        assert transaction.payment_status == "failed"
        assert transaction.error_description == "Payment was declined by the bank"

    @pytest.mark.asyncio
    async def test_late_failure_never_downgrades_capture(
        self,
        handler: WebhookHandler,
        test_db: Any,
        test_settings: Any,
        make_transaction: Any,
    ) -> None:
        transaction = await make_transaction(payment_status="captured", order_id=ORDER_ID)
        body, signature = payment_body(test_settings, payment_event("payment.failed", ORDER_ID))

        result = await handler.handle(body, signature, "payments", test_db)

        await test_db.refresh(transaction)
        assert result["result"]["applied"] is False
        assert transaction.payment_status == "captured"

    @pytest.mark.asyncio
    async def test_capture_after_failure_is_recorded_as_conflict(
        self,
        handler: WebhookHandler,
        test_db: Any,
        test_settings: Any,
        make_transaction: Any,
    ) -> None:
        transaction = await make_transaction(payment_status="failed", order_id=ORDER_ID)
        body, signature = payment_body(test_settings, payment_event("payment.captured", ORDER_ID))

        result = await handler.handle(body, signature, "payments", test_db)

        await test_db.refresh(transaction)
        assert result["result"] == {"applied": False, "reason": "transaction_failed"}
        assert transaction.payment_status == "failed"
        conflicts = await test_db.scalar(
            select(func.count())
            .select_from(LedgerEvent)
            .where(LedgerEvent.event_type == "payment.capture_conflict")
        )
        assert conflicts == 1

    @pytest.mark.asyncio
    async def test_unknown_order(
        self, handler: WebhookHandler, test_db: Any, test_settings: Any
    ) -> None:
        body, signature = payment_body(
            test_settings, payment_event("payment.captured", "order_unknown")
        )

        result = await handler.handle(body, signature, "payments", test_db)

        assert result["status"] == "success"
        assert result["result"]["reason"] == "transaction_not_found"


class TestPayoutEvents:
    """payout.* events drive the payout state machine."""

    @pytest.mark.asyncio
    async def test_processed_credits_driver_once(
        self,
        handler: WebhookHandler,
        test_db: Any,
        test_settings: Any,
        make_transaction: Any,
        make_payout: Any,
        driver_account: DriverPayoutAccount,
    ) -> None:
        transaction = await make_transaction(payout_status="processing")
        payout = await make_payout(transaction, gateway_payout_id="pout_wh_1")
        body, signature = payout_body(
            test_settings, payout_event("payout.processed", "pout_wh_1", utr="UTR123")
        )

        await handler.handle(body, signature, "payouts", test_db)
        await handler.handle(body, signature, "payouts", test_db)

        await test_db.refresh(payout)
        await test_db.refresh(transaction)
        await test_db.refresh(driver_account)
        assert payout.status == "processed"
        assert payout.utr == "UTR123"
        assert transaction.payout_status == "completed"
        assert driver_account.total_payouts_received == 1
        assert driver_account.total_amount_received == transaction.driver_net_amount

    @pytest.mark.asyncio
    @pytest.mark.parametrize("retry_count,expect_retry", [(0, True), (3, False)])
    async def test_failed_schedules_retry(
        self,
        handler: WebhookHandler,
        test_db: Any,
        test_settings: Any,
        make_transaction: Any,
        make_payout: Any,
        retry_count: int,
        expect_retry: bool,
    ) -> None:
        transaction = await make_transaction(payout_status="processing")
        payout = await make_payout(
            transaction, gateway_payout_id="pout_wh_2", retry_count=retry_count
        )
        payload = payout_event(
            "payout.failed",
            "pout_wh_2",
            reason="Beneficiary bank is offline",
            error_code="beneficiary_bank_offline",
        )
        body, signature = payout_body(test_settings, payload)
        before = utcnow()

        await handler.handle(body, signature, "payouts", test_db)

        await test_db.refresh(payout)
        await test_db.refresh(transaction)
        assert payout.status == "failed"
        assert payout.failure_reason == "Beneficiary bank is offline"
        assert payout.error_code == "beneficiary_bank_offline"
        assert transaction.payout_status == "failed"
        if expect_retry:
            delay = timedelta(seconds=test_settings.payout_retry_delay_seconds)
            assert abs(as_utc(payout.next_retry_at) - (before + delay)) < timedelta(seconds=5)
        else:
            assert payout.next_retry_at is None

    @pytest.mark.asyncio
    async def test_reversed_after_processed(
        self,
        handler: WebhookHandler,
        test_db: Any,
        test_settings: Any,
        make_transaction: Any,
        make_payout: Any,
    ) -> None:
        transaction = await make_transaction(payout_status="completed")
        payout = await make_payout(transaction, status="processed", gateway_payout_id="pout_wh_3")
        body, signature = payout_body(
            test_settings,
            payout_event("payout.reversed", "pout_wh_3", reason="Beneficiary account closed"),
        )

        await handler.handle(body, signature, "payouts", test_db)

        await test_db.refresh(payout)
        await test_db.refresh(transaction)
        assert payout.status == "reversed"
        assert payout.next_retry_at is None
        assert transaction.payout_status == "failed"

    @pytest.mark.asyncio
    async def test_failed_after_processed_is_ignored(
        self,
        handler: WebhookHandler,
        test_db: Any,
        test_settings: Any,
        make_transaction: Any,
        make_payout: Any,
    ) -> None:
        transaction = await make_transaction(payout_status="completed")
        payout = await make_payout(transaction, status="processed", gateway_payout_id="pout_wh_4")
        body, signature = payout_body(test_settings, payout_event("payout.failed", "pout_wh_4"))

        result = await handler.handle(body, signature, "payouts", test_db)

        await test_db.refresh(payout)
        assert result["result"]["applied"] is False
        assert payout.status == "processed"

    @pytest.mark.asyncio
    async def test_unknown_payout(
        self, handler: WebhookHandler, test_db: Any, test_settings: Any
    ) -> None:
        body, signature = payout_body(test_settings, payout_event("payout.processed", "pout_nope"))

        result = await handler.handle(body, signature, "payouts", test_db)

        assert result["result"]["reason"] == "payout_not_found"


class TestDelivery:
    """Malformed, unknown and failing deliveries."""

    @pytest.mark.asyncio
    async def test_unknown_event_type_is_unhandled(
        self, handler: WebhookHandler, test_db: Any, test_settings: Any
    ) -> None:
        body, signature = payment_body(test_settings, {"event": "refund.processed", "payload": {}})

        result = await handler.handle(body, signature, "payments", test_db)

        assert result["status"] == "unhandled"
        assert result["event_type"] == "refund.processed"

    @pytest.mark.asyncio
    async def test_malformed_json(self, handler: WebhookHandler, test_db: Any, test_settings: Any) -> None:
        body = b"not json"
        signature = compute_signature(test_settings.razorpay_webhook_secret, body)

        with pytest.raises(WebhookError, match="Malformed"):
            await handler.handle(body, signature, "payments", test_db)

    @pytest.mark.asyncio
    async def test_supported_event_with_invalid_payload(
        self, handler: WebhookHandler, test_db: Any, test_settings: Any
    ) -> None:
        body, signature = payment_body(
            test_settings, {"event": "payment.captured", "payload": {"payment": {}}}
        )

        with pytest.raises(WebhookError, match="Invalid payment.captured payload"):
            await handler.handle(body, signature, "payments", test_db)

    @pytest.mark.asyncio
    async def test_handler_failure_is_not_marked_processed(
        self,
        handler: WebhookHandler,
        test_db: Any,
        test_settings: Any,
    ) -> None:
        handler.register_handler("payment.captured", AsyncMock(side_effect=RuntimeError("boom")))
        body, signature = payment_body(test_settings, payment_event("payment.captured", ORDER_ID))

        with pytest.raises(WebhookError, match="boom"):
            await handler.handle(body, signature, "payments", test_db, event_id="evt_fail")

        assert not await handler.is_event_processed("evt_fail")

    @pytest.mark.asyncio
    async def test_redis_outage_still_processes(
        self,
        test_db: Any,
        test_settings: Any,
        make_transaction: Any,
    ) -> None:
        redis = AsyncMock()
        redis.exists.side_effect = ConnectionError("redis down")
        redis.setex.side_effect = ConnectionError("redis down")
        handler = WebhookHandler(redis_client=redis, settings=test_settings)
        transaction = await make_transaction(payment_status="created", order_id=ORDER_ID)
        transaction_id = transaction.id
        body, signature = payment_body(test_settings, payment_event("payment.captured", ORDER_ID))

        result = await handler.handle(body, signature, "payments", test_db, event_id="evt_r")

        assert result["status"] == "success"
        stored = await test_db.get(Transaction, transaction_id)
        assert stored.payment_status == "captured"


@pytest.mark.asyncio
async def test_close_leaves_injected_redis_open(handler: WebhookHandler, fake_redis: Any) -> None:
    fake_redis.aclose = AsyncMock()

    await handler.close()

    fake_redis.aclose.assert_not_called()


@pytest.mark.unit
def test_every_supported_event_has_a_handler(handler: WebhookHandler) -> None:
    assert set(handler.event_handlers) == {
        "payment.captured",
        "payment.authorized",
        "payment.failed",
        "payout.processed",
        "payout.failed",
        "payout.reversed",
    }


@pytest.mark.asyncio
async def test_payout_lookup_uses_gateway_id(
    handler: WebhookHandler, test_db: Any, make_transaction: Any, make_payout: Any
) -> None:
    transaction = await make_transaction(payout_status="processing")
    payout = await make_payout(transaction, gateway_payout_id="pout_lookup")

    found = await handler._payout_for_gateway_id(test_db, "pout_lookup")

    assert isinstance(found, Payout)
    assert found.id == payout.id
