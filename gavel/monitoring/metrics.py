"""
Prometheus metrics for bidding and checkout monitoring.

Tracks:
- Bids placed and rejected by kind
- Checkout session transitions and amounts
- Payment gateway calls, errors and latency
- Circuit breaker state
- Reconciliation cases and sweep results
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Bid metrics
bids_placed_total = Counter(
    "bids_placed_total",
    "Total number of bids recorded",
    ["kind"],
)

bids_rejected_total = Counter(
    "bids_rejected_total",
    "Total number of bids rejected",
    ["kind", "reason"],  # bidding_closed, bid_too_low, buy_now_unavailable
)

bids_withdrawn_total = Counter(
    "bids_withdrawn_total",
    "Total number of bids withdrawn",
)

# Checkout metrics
checkout_transitions_total = Counter(
    "checkout_transitions_total",
    "Checkout session state transitions",
    ["payment_method", "status"],
)

checkout_total_amount = Histogram(
    "checkout_total_amount_dollars",
    "Checkout totals in dollars",
    buckets=(10, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 50000),
)

checkout_duration_seconds = Histogram(
    "checkout_duration_seconds",
    "Time to settle a checkout session in seconds",
    ["payment_method"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 30.0),
)

# Gateway metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total payment gateway requests",
    ["operation", "status"],  # operation: charge, refund, lookup
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total payment gateway errors",
    ["error_type"],  # transient, permanent, rate_limit
)

gateway_duration_seconds = Histogram(
    "gateway_duration_seconds",
    "Payment gateway call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 30.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Reconciliation metrics
reconciliation_required_total = Counter(
    "reconciliation_required_total",
    "Sessions left in an externally-charged, locally-unconfirmed state",
    ["operation"],
)

reconciliation_discrepancies = Gauge(
    "reconciliation_discrepancies",
    "Discrepancies found by the last reconciliation sweep",
    ["tenant_id"],
)

reconciliation_duration_seconds = Histogram(
    "reconciliation_duration_seconds",
    "Reconciliation sweep duration in seconds",
    buckets=(1, 5, 10, 30, 60, 120, 300),
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation run",
)

# Charge replay metrics
charge_replay_hits_total = Counter(
    "charge_replay_hits_total",
    "Charge requests answered from a stored receipt",
    ["source"],  # redis, database
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_bid_placed(kind: str) -> None:
        bids_placed_total.labels(kind=kind).inc()

    @staticmethod
    def record_bid_rejected(kind: str, reason: str) -> None:
        bids_rejected_total.labels(kind=kind, reason=reason).inc()

    @staticmethod
    def record_bid_withdrawn() -> None:
        bids_withdrawn_total.inc()

    @staticmethod
    def record_checkout_transition(payment_method: str, status: str) -> None:
        """Record a checkout session entering a status."""
        checkout_transitions_total.labels(payment_method=payment_method, status=status).inc()

    @staticmethod
    def record_checkout_completed(
        payment_method: str, total_amount: float, duration_seconds: float
    ) -> None:
        checkout_total_amount.observe(total_amount)
        checkout_duration_seconds.labels(payment_method=payment_method).observe(
            duration_seconds
        )

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record payment gateway call."""
        gateway_requests_total.labels(operation=operation, status=status).inc()
        gateway_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(error_type: str) -> None:
        gateway_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_reconciliation_required(operation: str) -> None:
        reconciliation_required_total.labels(operation=operation).inc()

    @staticmethod
    def set_reconciliation_metrics(
        tenant_id: str, discrepancy_count: int, duration_seconds: float
    ) -> None:
        """Set reconciliation metrics."""
        reconciliation_discrepancies.labels(tenant_id=tenant_id).set(discrepancy_count)
        reconciliation_duration_seconds.observe(duration_seconds)
        reconciliation_last_run_timestamp.set(time.time())

    @staticmethod
    def record_charge_replay(source: str) -> None:
        charge_replay_hits_total.labels(source=source).inc()


# Export singleton instance
metrics = MetricsCollector()
