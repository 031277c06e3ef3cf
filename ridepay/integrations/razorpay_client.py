"""
Razorpay payment gateway client with retry logic and error classification.

Implements:
- Bounded timeouts around the synchronous Razorpay SDK
- Exponential backoff for idempotent reads on transient errors
- Circuit breaker pattern
- Checkout signature verification
"""
import asyncio
import functools
import hashlib
import hmac
import time
from typing import Any, Callable, Dict, Optional

import razorpay
import requests
import structlog
from razorpay.errors import (
    BadRequestError,
    ServerError,
    SignatureVerificationError,
)
from razorpay.errors import GatewayError as RazorpaySDKGatewayError
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

GATEWAY = "razorpay"


def compute_signature(secret: str, message: bytes | str) -> str:
    """Hex HMAC-SHA256 of ``message`` under ``secret``."""
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def signatures_match(expected: str, received: Optional[str]) -> bool:
    """Constant-time comparison that treats a missing signature as a mismatch."""
    if not received:
        return False
    return hmac.compare_digest(expected, received)


class RazorpayClient:
    """
    Wrapper for the Razorpay orders and payments API.

    The SDK is synchronous, so every call runs in the default executor under
    ``gateway_timeout_seconds``. A timeout is a transient error: it does not
    prove the remote operation failed.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[razorpay.Client] = None,
    ) -> None:
        """
        Initialize Razorpay client.

        Args:
            settings: Optional settings (defaults to the cached settings)
            client: Optional pre-built SDK client
        """
        self.settings = settings or get_settings()
        self.client = client or razorpay.Client(
            auth=(self.settings.razorpay_key_id, self.settings.razorpay_key_secret)
        )
        self.circuit_breaker = CircuitBreaker(GATEWAY)

        logger.info("razorpay_client_initialized", test_mode=self.settings.is_test_mode)

    @property
    def key_id(self) -> str:
        """Public key id handed to the checkout widget."""
        return self.settings.razorpay_key_id

    @staticmethod
    def _classify_error(error: Exception) -> GatewayErrorType:
        """
        Classify an SDK or transport error for retry logic.

        Args:
            error: Exception raised by the SDK call

        Returns:
            GatewayErrorType: Error classification
        """
        if isinstance(error, BadRequestError):
            message = str(error).lower()
            if "too many requests" in message or "rate limit" in message:
                return GatewayErrorType.RATE_LIMIT
            return GatewayErrorType.PERMANENT
        if isinstance(error, SignatureVerificationError):
            return GatewayErrorType.PERMANENT
        # ServerError, GatewayError, timeouts and connection failures
        return GatewayErrorType.TRANSIENT

    def _to_gateway_error(self, operation: str, error: Exception) -> GatewayError:
        error_type = self._classify_error(error)
        gateway_code = getattr(error, "error_code", None)

        logger.error(
            "razorpay_api_error",
            operation=operation,
            error_type=error_type.value,
            error_code=gateway_code,
            error_message=str(error) or type(error).__name__,
        )
        metrics.record_gateway_error(GATEWAY, error_type.value)

        return GatewayError(
            message=str(error) or f"Razorpay {operation} failed",
            error_type=error_type,
            gateway=GATEWAY,
            gateway_code=gateway_code,
            original_error=error,
        )

    async def _run(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(
            loop.run_in_executor(None, functools.partial(func, *args, **kwargs)),
            timeout=self.settings.gateway_timeout_seconds,
        )

    async def _execute(
        self, operation: str, func: Callable[..., Any], *args: Any, **kwargs: Any
    ) -> Dict[str, Any]:
        """
        Execute one SDK call with timeout, error classification and metrics.

        Raises:
            GatewayError: If the call fails, times out or the circuit is open
        """
        start = time.monotonic()

        async def _attempt() -> Dict[str, Any]:
            try:
                return await self._run(func, *args, **kwargs)
            except (
                BadRequestError,
                ServerError,
                RazorpaySDKGatewayError,
                SignatureVerificationError,
                requests.RequestException,
                asyncio.TimeoutError,
            ) as e:
                raise self._to_gateway_error(operation, e) from e

        try:
            result = await self.circuit_breaker.call(_attempt)
        except GatewayError:
            metrics.record_gateway_call(GATEWAY, operation, "error", time.monotonic() - start)
            raise

        metrics.record_gateway_call(GATEWAY, operation, "success", time.monotonic() - start)
        return result

    async def create_order(
        self,
        amount_paise: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Create a Razorpay order (the charge intent for a booking).

        Order creation is not idempotent on the gateway side, so it is never
        retried automatically.

        Args:
            amount_paise: Amount in paise
            currency: Currency code (e.g. 'INR')
            receipt: Deterministic receipt derived from the booking id
            notes: Optional notes attached to the order

        Returns:
            Dict[str, Any]: Created order (``id``, ``amount``, ``currency``, ``status``)

        Raises:
            GatewayError: If order creation fails
        """
        logger.info(
            "creating_razorpay_order",
            amount_paise=amount_paise,
            currency=currency,
            receipt=receipt,
        )

        order = await self._execute(
            "create_order",
            self.client.order.create,
            data={
                "amount": amount_paise,
                "currency": currency,
                "receipt": receipt,
                "notes": notes or {},
            },
        )

        logger.info("razorpay_order_created", order_id=order["id"], receipt=receipt)
        return order

    @retry(
        retry=retry_if_exception(is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def fetch_payment(self, payment_id: str) -> Dict[str, Any]:
        """
        Fetch the authoritative payment record.

        Args:
            payment_id: Razorpay payment id

        Returns:
            Dict[str, Any]: Payment (``id``, ``order_id``, ``status``, ``method``, ...)

        Raises:
            GatewayError: If retrieval fails
        """
        logger.info("fetching_razorpay_payment", payment_id=payment_id)
        return await self._execute("fetch_payment", self.client.payment.fetch, payment_id)

    async def ping(self) -> None:
        """Cheapest authenticated call, used by the readiness probe."""
        await self._execute("ping", self.client.order.all, {"count": 1})

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        """
        Verify a checkout callback signature.

        The checkout widget signs ``order_id|payment_id`` with the key secret.

        Returns:
            bool: True if the signature matches
        """
        expected = compute_signature(
            self.settings.razorpay_key_secret, f"{order_id}|{payment_id}"
        )
        return signatures_match(expected, signature)
