"""
Prometheus metrics for payment reconciliation.

Tracks:
- Webhook events by type and outcome
- Payment transactions by terminal status
- Tokens credited to wallets
- Ledger idempotent replays
- Stripe API calls and errors
- Stuck transactions found by the reconciliation scan
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],  # success, failed, ignored
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Total webhook deliveries rejected on signature verification",
)

# Transaction metrics
payment_transactions_total = Counter(
    "payment_transactions_total",
    "Payment transactions by status reached",
    ["flow", "status"],  # flow: checkout, renewal
)

tokens_awarded_total = Counter(
    "tokens_awarded_total",
    "Total tokens credited to wallets",
    ["flow"],
)

ledger_idempotent_replays_total = Counter(
    "ledger_idempotent_replays_total",
    "Ledger credits skipped because the idempotency key was already recorded",
)

# Stripe API metrics
stripe_api_requests_total = Counter(
    "stripe_api_requests_total",
    "Total Stripe API requests",
    ["operation", "status"],  # operation: retrieve_subscription, etc.
)

stripe_api_errors_total = Counter(
    "stripe_api_errors_total",
    "Total Stripe API errors",
    ["error_type"],  # transient, permanent, rate_limit
)

stripe_api_duration_seconds = Histogram(
    "stripe_api_duration_seconds",
    "Stripe API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

# Circuit breaker metrics
stripe_circuit_breaker_state = Gauge(
    "stripe_circuit_breaker_state",
    "Stripe circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Reconciliation metrics
reconciliation_stuck_transactions = Gauge(
    "reconciliation_stuck_transactions",
    "Transactions stuck in a non-terminal or token-award-failed status",
    ["status"],
)

reconciliation_duration_seconds = Histogram(
    "reconciliation_duration_seconds",
    "Reconciliation scan duration in seconds",
    buckets=(0.1, 0.5, 1, 5, 10, 30, 60),
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation run",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(event_type=event_type).inc()
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_signature_failure() -> None:
        webhook_signature_failures_total.inc()

    @staticmethod
    def record_transaction_status(flow: str, status: str) -> None:
        """Record a transaction reaching a status."""
        payment_transactions_total.labels(flow=flow, status=status).inc()

    @staticmethod
    def record_tokens_awarded(flow: str, tokens: int) -> None:
        """Record tokens credited."""
        if tokens > 0:
            tokens_awarded_total.labels(flow=flow).inc(tokens)

    @staticmethod
    def record_ledger_replay() -> None:
        ledger_idempotent_replays_total.inc()

    @staticmethod
    def record_stripe_api_call(
        operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record Stripe API call."""
        stripe_api_requests_total.labels(operation=operation, status=status).inc()
        stripe_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_stripe_api_error(error_type: str) -> None:
        """Record Stripe API error."""
        stripe_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        stripe_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def set_reconciliation_metrics(
        stuck_by_status: dict, duration_seconds: float
    ) -> None:
        """Set reconciliation metrics."""
        for status, count in stuck_by_status.items():
            reconciliation_stuck_transactions.labels(status=status).set(count)
        reconciliation_duration_seconds.observe(duration_seconds)
        reconciliation_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
