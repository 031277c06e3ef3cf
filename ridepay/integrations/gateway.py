"""
Shared error classification and circuit breaker for gateway clients.

Both the payment gateway (Razorpay) and the payout gateway (RazorpayX)
clients raise GatewayError, so callers handle failures the same way
regardless of which gateway they talked to.
"""
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog

from ridepay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class GatewayErrorType(Enum):
    """Classification of gateway errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class GatewayError(Exception):
    """Raised when a gateway call fails or cannot be attempted."""

    error_code = "GATEWAY_ERROR"

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType,
        gateway: str = "razorpay",
        gateway_code: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize gateway error.

        Args:
            message: Error message
            error_type: Classification of error
            gateway: Which gateway failed (``razorpay`` or ``razorpayx``)
            gateway_code: Error code reported by the gateway, if any
            original_error: Original SDK or transport exception
        """
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.gateway = gateway
        self.gateway_code = gateway_code
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        return self.error_type != GatewayErrorType.PERMANENT


def is_retryable(error: BaseException) -> bool:
    """tenacity predicate: retry only transient and rate-limit gateway errors."""
    return isinstance(error, GatewayError) and error.retryable


class CircuitBreaker:
    """
    Circuit breaker for gateway API calls.

    Prevents cascading failures by temporarily stopping requests
    when consecutive failures exceed a threshold. Permanent errors (bad
    requests) do not count as failures since they say nothing about the
    gateway's health.
    """

    def __init__(
        self,
        gateway: str,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            gateway: Gateway name used in logs and metrics
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.gateway = gateway
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(self.gateway, state)

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Await ``func`` with circuit breaker protection.

        Raises:
            GatewayError: If the circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open", gateway=self.gateway)
            else:
                raise GatewayError(
                    "Circuit breaker is open",
                    GatewayErrorType.TRANSIENT,
                    gateway=self.gateway,
                )

        try:
            result = await func(*args, **kwargs)
        except GatewayError as e:
            if e.retryable:
                self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed", gateway=self.gateway)

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold or self.state == "half_open":
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                gateway=self.gateway,
                failure_count=self.failure_count,
            )
