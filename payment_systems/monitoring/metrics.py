"""
Prometheus metrics for the ledger and the billing engine.

Tracks:
- Ledger operations by type and outcome
- Idempotent replays and in-flight conflicts
- Gateway calls, errors and circuit breaker state
- Billing sweep outcomes and duration
- Subscription state transitions
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Ledger metrics
ledger_operations_total = Counter(
    "ledger_operations_total",
    "Total ledger operations",
    ["operation", "status"],
)

ledger_operation_duration_seconds = Histogram(
    "ledger_operation_duration_seconds",
    "Ledger operation duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

ledger_amount = Histogram(
    "ledger_amount",
    "Amounts of completed ledger operations in major currency units",
    ["operation"],
    buckets=(1, 5, 10, 50, 100, 500, 1000, 5000, 10000),
)

# Idempotency metrics
idempotency_outcomes_total = Counter(
    "idempotency_outcomes_total",
    "Idempotency guard outcomes",
    ["outcome"],  # new, duplicate, conflict
)

# Gateway metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total gateway requests",
    ["operation", "status"],  # status: success, declined, error
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total gateway infrastructure errors",
    ["error_type"],  # transient, permanent, rate_limit
)

gateway_duration_seconds = Histogram(
    "gateway_duration_seconds",
    "Gateway call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Billing metrics
billing_items_total = Counter(
    "billing_items_total",
    "Billing sweep items by outcome",
    ["sweep", "outcome"],  # outcome: succeeded, failed, skipped, error
)

billing_sweep_duration_seconds = Histogram(
    "billing_sweep_duration_seconds",
    "Billing sweep duration in seconds",
    ["sweep"],
    buckets=(0.5, 1, 5, 10, 30, 60, 120, 300, 600),
)

billing_last_sweep_timestamp = Gauge(
    "billing_last_sweep_timestamp",
    "Timestamp of the last completed billing sweep",
    ["sweep"],
)

subscription_transitions_total = Counter(
    "subscription_transitions_total",
    "Subscription status transitions",
    ["from_status", "to_status"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_ledger_operation(
        operation: str, status: str, duration_seconds: float, amount: float | None = None
    ) -> None:
        """Record a ledger operation."""
        ledger_operations_total.labels(operation=operation, status=status).inc()
        ledger_operation_duration_seconds.labels(operation=operation).observe(duration_seconds)
        if amount is not None:
            ledger_amount.labels(operation=operation).observe(amount)

    @staticmethod
    def record_idempotency_outcome(outcome: str) -> None:
        """Record idempotency guard outcome."""
        idempotency_outcomes_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record gateway call."""
        gateway_requests_total.labels(operation=operation, status=status).inc()
        gateway_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(error_type: str) -> None:
        """Record gateway error."""
        gateway_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_billing_item(sweep: str, outcome: str) -> None:
        """Record one billing sweep item."""
        billing_items_total.labels(sweep=sweep, outcome=outcome).inc()

    @staticmethod
    def record_billing_sweep(sweep: str, duration_seconds: float) -> None:
        """Record a completed billing sweep."""
        billing_sweep_duration_seconds.labels(sweep=sweep).observe(duration_seconds)
        billing_last_sweep_timestamp.labels(sweep=sweep).set(time.time())

    @staticmethod
    def record_subscription_transition(from_status: str, to_status: str) -> None:
        """Record subscription status change."""
        subscription_transitions_total.labels(
            from_status=from_status, to_status=to_status
        ).inc()


# Export singleton instance
metrics = MetricsCollector()
