"""
RazorpayX payout gateway client.

The Razorpay Python SDK has no payouts surface, so contacts, fund accounts
and payouts are called over HTTPS with httpx. Errors are classified into
the same GatewayError taxonomy as the payment gateway client.
"""
import time
from typing import Any, Dict, Optional

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ridepay.config import Settings, get_settings
from ridepay.integrations.gateway import (
    CircuitBreaker,
    GatewayError,
    GatewayErrorType,
    is_retryable,
)
from ridepay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

GATEWAY = "razorpayx"


class RazorpayXClient:
    """
    Async client for RazorpayX contacts, fund accounts and payouts.

    Payout creation carries an ``X-Payout-Idempotency`` key, which makes it
    safe to retry; contact and fund account creation are deduplicated by
    RazorpayX on their payloads.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize RazorpayX client.

        Args:
            settings: Optional settings (defaults to the cached settings)
            http_client: Optional pre-built httpx client
        """
        self.settings = settings or get_settings()
        self.http_client = http_client or httpx.AsyncClient(
            base_url=self.settings.razorpayx_base_url,
            auth=(self.settings.razorpayx_key_id, self.settings.razorpayx_key_secret),
            timeout=self.settings.gateway_timeout_seconds,
            headers={"Content-Type": "application/json"},
        )
        self.circuit_breaker = CircuitBreaker(GATEWAY)

        logger.info("razorpayx_client_initialized")

    async def close(self) -> None:
        await self.http_client.aclose()

    @staticmethod
    def _classify_status(status_code: int) -> GatewayErrorType:
        if status_code == 429:
            return GatewayErrorType.RATE_LIMIT
        if status_code >= 500:
            return GatewayErrorType.TRANSIENT
        return GatewayErrorType.PERMANENT

    def _error_from_response(self, operation: str, response: httpx.Response) -> GatewayError:
        error_type = self._classify_status(response.status_code)
        gateway_code: Optional[str] = None
        description = response.text
        try:
            error_body = response.json().get("error", {})
            gateway_code = error_body.get("code")
            description = error_body.get("description") or description
        except ValueError:
            pass

        logger.error(
            "razorpayx_api_error",
            operation=operation,
            status_code=response.status_code,
            error_type=error_type.value,
            error_code=gateway_code,
            error_message=description,
        )
        metrics.record_gateway_error(GATEWAY, error_type.value)

        return GatewayError(
            message=description or f"RazorpayX {operation} failed",
            error_type=error_type,
            gateway=GATEWAY,
            gateway_code=gateway_code,
        )

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Send one request with error classification and metrics.

        Raises:
            GatewayError: On HTTP errors, timeouts, transport failures or an open circuit
        """
        start = time.monotonic()

        async def _attempt() -> Dict[str, Any]:
            try:
                response = await self.http_client.request(method, path, json=json, headers=headers)
            except httpx.TimeoutException as e:
                logger.error("razorpayx_timeout", operation=operation)
                metrics.record_gateway_error(GATEWAY, GatewayErrorType.TRANSIENT.value)
                raise GatewayError(
                    f"RazorpayX {operation} timed out",
                    GatewayErrorType.TRANSIENT,
                    gateway=GATEWAY,
                    original_error=e,
                ) from e
            except httpx.HTTPError as e:
                logger.error("razorpayx_transport_error", operation=operation, error=str(e))
                metrics.record_gateway_error(GATEWAY, GatewayErrorType.TRANSIENT.value)
                raise GatewayError(
                    f"RazorpayX {operation} failed: {e}",
                    GatewayErrorType.TRANSIENT,
                    gateway=GATEWAY,
                    original_error=e,
                ) from e

            if response.is_error:
                raise self._error_from_response(operation, response)
            return response.json()

        try:
            result = await self.circuit_breaker.call(_attempt)
        except GatewayError:
            metrics.record_gateway_call(GATEWAY, operation, "error", time.monotonic() - start)
            raise

        metrics.record_gateway_call(GATEWAY, operation, "success", time.monotonic() - start)
        return result

    async def create_contact(
        self,
        name: str,
        reference_id: str,
        email: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a payout contact for a driver.

        Args:
            name: Driver name
            reference_id: Driver id, stored as the contact reference
            email: Optional driver email
            phone: Optional driver phone number

        Returns:
            Dict[str, Any]: Created contact (``id`` is the contact id)
        """
        payload: Dict[str, Any] = {
            "name": name,
            "type": "vendor",
            "reference_id": reference_id,
            "notes": {"driver_id": reference_id, "role": "driver"},
        }
        if email:
            payload["email"] = email
        if phone:
            payload["contact"] = phone

        contact = await self._request("create_contact", "POST", "/contacts", json=payload)
        logger.info("razorpayx_contact_created", contact_id=contact["id"], driver_id=reference_id)
        return contact

    async def create_fund_account(
        self,
        contact_id: str,
        account_holder_name: str,
        account_number: str,
        ifsc_code: str,
    ) -> Dict[str, Any]:
        """Create a bank-account fund destination under a contact."""
        fund_account = await self._request(
            "create_fund_account",
            "POST",
            "/fund_accounts",
            json={
                "contact_id": contact_id,
                "account_type": "bank_account",
                "bank_account": {
                    "name": account_holder_name,
                    "ifsc": ifsc_code,
                    "account_number": account_number,
                },
            },
        )
        logger.info(
            "razorpayx_fund_account_created",
            fund_account_id=fund_account["id"],
            contact_id=contact_id,
        )
        return fund_account

    @retry(
        retry=retry_if_exception(is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def create_payout(
        self,
        fund_account_id: str,
        amount_paise: int,
        currency: str,
        mode: str,
        idempotency_key: str,
        reference_id: str,
        narration: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Create a payout from the business account to a fund account.

        Retried on transient errors; the idempotency key guarantees RazorpayX
        creates at most one payout per key.

        Args:
            fund_account_id: Destination fund account
            amount_paise: Amount in paise
            currency: Currency code
            mode: NEFT, RTGS, IMPS or UPI
            idempotency_key: Key deduplicating this payout on the gateway
            reference_id: Our reference (the transaction id)
            narration: Bank statement narration
            notes: Optional notes

        Returns:
            Dict[str, Any]: Created payout (``id``, ``status``, ...)

        Raises:
            GatewayError: If payout creation fails
        """
        logger.info(
            "creating_razorpayx_payout",
            fund_account_id=fund_account_id,
            amount_paise=amount_paise,
            mode=mode,
            idempotency_key=idempotency_key,
        )
        payout = await self._request(
            "create_payout",
            "POST",
            "/payouts",
            json={
                "account_number": self.settings.razorpayx_account_number,
                "fund_account_id": fund_account_id,
                "amount": amount_paise,
                "currency": currency,
                "mode": mode,
                "purpose": "payout",
                "queue_if_low_balance": True,
                "reference_id": reference_id,
                # RazorpayX caps narration at 30 characters
                "narration": narration[:30],
                "notes": notes or {},
            },
            headers={"X-Payout-Idempotency": idempotency_key},
        )
        logger.info(
            "razorpayx_payout_created",
            gateway_payout_id=payout["id"],
            status=payout.get("status"),
        )
        return payout

    @retry(
        retry=retry_if_exception(is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def fetch_payout(self, gateway_payout_id: str) -> Dict[str, Any]:
        """Fetch a payout by its gateway id."""
        return await self._request("fetch_payout", "GET", f"/payouts/{gateway_payout_id}")
