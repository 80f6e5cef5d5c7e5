"""
Prometheus metrics for checkout and webhook reconciliation.

Tracks:
- Checkout requests by flow and outcome
- Webhook events by kind and outcome
- Order status transitions and subscription changes
- Gateway API calls and errors
"""
from prometheus_client import Counter, Gauge, Histogram

# Checkout metrics
checkout_requests_total = Counter(
    "checkout_requests_total",
    "Total checkout requests",
    ["flow", "outcome"],  # flow: order, subscription
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["kind"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["kind", "outcome"],  # applied, unchanged, unmatched, ignored, failed, rejected (kind unknown)
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["kind"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Webhook deliveries with a missing or invalid signature",
    ["action"],  # rejected, accepted
)

# Ledger metrics
order_status_transitions_total = Counter(
    "order_status_transitions_total",
    "Order status transitions applied by the ledger",
    ["from_status", "to_status"],
)

ledger_concurrent_modifications_total = Counter(
    "ledger_concurrent_modifications_total",
    "Optimistic update conflicts detected by the ledgers",
    ["entity", "result"],  # result: retried, failed
)

subscription_changes_total = Counter(
    "subscription_changes_total",
    "Subscription activations and cancellations",
    ["change"],
)

# Gateway API metrics
gateway_api_requests_total = Counter(
    "gateway_api_requests_total",
    "Total payment gateway API requests",
    ["operation", "status"],
)

gateway_api_duration_seconds = Histogram(
    "gateway_api_duration_seconds",
    "Payment gateway API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_checkout(flow: str, outcome: str) -> None:
        """Record a checkout request."""
        checkout_requests_total.labels(flow=flow, outcome=outcome).inc()

    @staticmethod
    def record_webhook_event(kind: str, outcome: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(kind=kind).inc()
        webhook_events_processed_total.labels(kind=kind, outcome=outcome).inc()
        webhook_processing_duration_seconds.labels(kind=kind).observe(duration_seconds)

    @staticmethod
    def record_signature_failure(action: str) -> None:
        webhook_signature_failures_total.labels(action=action).inc()

    @staticmethod
    def record_order_transition(from_status: str, to_status: str) -> None:
        order_status_transitions_total.labels(
            from_status=from_status, to_status=to_status
        ).inc()

    @staticmethod
    def record_concurrent_modification(entity: str, result: str) -> None:
        ledger_concurrent_modifications_total.labels(entity=entity, result=result).inc()

    @staticmethod
    def record_subscription_change(change: str) -> None:
        subscription_changes_total.labels(change=change).inc()

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record a gateway API call."""
        gateway_api_requests_total.labels(operation=operation, status=status).inc()
        gateway_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))


# Export singleton instance
metrics = MetricsCollector()
