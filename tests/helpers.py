"""Builders for gateway payloads and small assertion helpers used across tests."""
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from ridepay.integrations.razorpay_client import compute_signature


def as_utc(value: datetime) -> datetime:
    """Normalise a datetime read back from SQLite (naive) or Postgres (aware)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def signed_body(secret: str, payload: Dict[str, Any]) -> Tuple[bytes, str]:
    """Serialise a webhook payload and sign it the way the gateway does."""
    body = json.dumps(payload).encode("utf-8")
    return body, compute_signature(secret, body)


def payment_event(
    event: str,
    order_id: str,
    payment_id: str = "pay_test_123",
    amount: int = 50000,
    status: Optional[str] = None,
    method: str = "upi",
    error_code: Optional[str] = None,
    error_description: Optional[str] = None,
) -> Dict[str, Any]:
    entity: Dict[str, Any] = {
        "id": payment_id,
        "entity": "payment",
        "order_id": order_id,
        "status": status or event.split(".", 1)[1],
        "amount": amount,
        "currency": "INR",
        "method": method,
    }
    if error_code:
        entity["error_code"] = error_code
        entity["error_description"] = error_description
    return {
        "entity": "event",
        "account_id": "acc_test",
        "event": event,
        "created_at": 1700000000,
        "payload": {"payment": {"entity": entity}},
    }


def payout_event(
    event: str,
    gateway_payout_id: str,
    amount: int = 41150,
    utr: Optional[str] = None,
    reason: Optional[str] = None,
    error_code: Optional[str] = None,
) -> Dict[str, Any]:
    entity: Dict[str, Any] = {
        "id": gateway_payout_id,
        "entity": "payout",
        "status": event.split(".", 1)[1],
        "amount": amount,
        "currency": "INR",
        "mode": "IMPS",
        "utr": utr,
    }
    if reason or error_code:
        entity["status_details"] = {"reason": error_code, "description": reason}
    return {
        "entity": "event",
        "account_id": "acc_test",
        "event": event,
        "created_at": 1700000000,
        "payload": {"payout": {"entity": entity}},
    }
