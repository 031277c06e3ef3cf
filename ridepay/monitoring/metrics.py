"""
Prometheus metrics for the payment and payout engine.

Tracks:
- Orders created and checkout verifications by outcome
- Gateway calls, errors and circuit breaker state
- Webhook events, including unhandled event types
- Payout creation, retries and reconciliation
- Distributed lock acquisitions
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Order metrics
orders_created_total = Counter(
    "ridepay_orders_created_total",
    "Total gateway orders opened for bookings",
    ["status"],  # created, reused, failed
)

order_amount_paise = Histogram(
    "ridepay_order_amount_paise",
    "Order amounts in paise",
    buckets=(5000, 10000, 25000, 50000, 100000, 250000, 500000, 1000000),
)

# Checkout verification metrics
payment_verifications_total = Counter(
    "ridepay_payment_verifications_total",
    "Total checkout verifications",
    ["status"],  # captured, already_captured, signature_mismatch, not_successful, gateway_error
)

# Gateway metrics
gateway_requests_total = Counter(
    "ridepay_gateway_requests_total",
    "Total gateway API requests",
    ["gateway", "operation", "status"],
)

gateway_errors_total = Counter(
    "ridepay_gateway_errors_total",
    "Total gateway API errors",
    ["gateway", "error_type"],  # transient, permanent, rate_limit
)

gateway_duration_seconds = Histogram(
    "ridepay_gateway_duration_seconds",
    "Gateway API call duration in seconds",
    ["gateway", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 15.0),
)

gateway_circuit_breaker_state = Gauge(
    "ridepay_gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["gateway"],
)

# Webhook metrics
webhook_events_received_total = Counter(
    "ridepay_webhook_events_received_total",
    "Total webhook events received",
    ["source", "event_type"],
)

webhook_events_processed_total = Counter(
    "ridepay_webhook_events_processed_total",
    "Total webhook events processed",
    ["source", "event_type", "status"],  # success, failed, duplicate, unhandled, rejected
)

webhook_processing_duration_seconds = Histogram(
    "ridepay_webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["source"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Payout metrics
payouts_created_total = Counter(
    "ridepay_payouts_created_total",
    "Total payout attempts",
    ["mode", "status"],  # created, existing, failed
)

payout_amount_paise = Histogram(
    "ridepay_payout_amount_paise",
    "Payout amounts in paise",
    buckets=(5000, 10000, 25000, 50000, 100000, 250000, 500000, 1000000),
)

payout_retries_total = Counter(
    "ridepay_payout_retries_total",
    "Total payout retries",
    ["trigger"],  # operator, sweep
)

payout_reconciliations_total = Counter(
    "ridepay_payout_reconciliations_total",
    "Total payout reconciliations against the gateway",
    ["outcome"],  # updated, unchanged, failed
)

payout_sweep_duration_seconds = Histogram(
    "ridepay_payout_sweep_duration_seconds",
    "Payout sweep duration in seconds",
    buckets=(1, 5, 10, 30, 60, 120, 300),
)

payout_sweep_last_run_timestamp = Gauge(
    "ridepay_payout_sweep_last_run_timestamp",
    "Timestamp of the last payout sweep",
)

# Lock metrics
distributed_lock_acquisitions_total = Counter(
    "ridepay_distributed_lock_acquisitions_total",
    "Total distributed lock acquisitions",
    ["status"],  # acquired, failed
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_order(status: str, amount_paise: int = 0) -> None:
        """Record an order creation outcome."""
        orders_created_total.labels(status=status).inc()
        if amount_paise > 0:
            order_amount_paise.observe(amount_paise)

    @staticmethod
    def record_verification(status: str) -> None:
        payment_verifications_total.labels(status=status).inc()

    @staticmethod
    def record_gateway_call(
        gateway: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record a gateway API call."""
        gateway_requests_total.labels(gateway=gateway, operation=operation, status=status).inc()
        gateway_duration_seconds.labels(gateway=gateway, operation=operation).observe(
            duration_seconds
        )

    @staticmethod
    def record_gateway_error(gateway: str, error_type: str) -> None:
        gateway_errors_total.labels(gateway=gateway, error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(gateway: str, state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.labels(gateway=gateway).set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(
        source: str, event_type: str, status: str, duration_seconds: float
    ) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(source=source, event_type=event_type).inc()
        webhook_events_processed_total.labels(
            source=source, event_type=event_type, status=status
        ).inc()
        webhook_processing_duration_seconds.labels(source=source).observe(duration_seconds)

    @staticmethod
    def record_payout(mode: str, status: str, amount_paise: int = 0) -> None:
        """Record a payout creation outcome."""
        payouts_created_total.labels(mode=mode, status=status).inc()
        if amount_paise > 0:
            payout_amount_paise.observe(amount_paise)

    @staticmethod
    def record_payout_retry(trigger: str) -> None:
        payout_retries_total.labels(trigger=trigger).inc()

    @staticmethod
    def record_payout_reconciliation(outcome: str) -> None:
        payout_reconciliations_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_payout_sweep(duration_seconds: float) -> None:
        """Record a completed payout sweep."""
        payout_sweep_duration_seconds.observe(duration_seconds)
        payout_sweep_last_run_timestamp.set(time.time())

    @staticmethod
    def record_distributed_lock(status: str) -> None:
        distributed_lock_acquisitions_total.labels(status=status).inc()


# Export singleton instance
metrics = MetricsCollector()
