"""
Prometheus metrics for gift card ledger monitoring.

Tracks:
- Ledger operations by type and outcome
- Gateway requests by route and status
- Rate limit denials by window
- Webhook delivery and email send outcomes
- Background sweep results
"""
from prometheus_client import Counter, Gauge, Histogram

# Ledger metrics
ledger_operations_total = Counter(
    "ledger_operations_total",
    "Total ledger operations",
    ["operation", "outcome"],  # outcome: success or an error code
)

ledger_operation_duration_seconds = Histogram(
    "ledger_operation_duration_seconds",
    "Ledger operation duration in seconds",
    ["operation"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

ledger_amount_cents = Histogram(
    "ledger_amount_cents",
    "Ledger operation amounts in cents",
    ["operation"],
    buckets=(100, 500, 1000, 2500, 5000, 10000, 25000, 50000, 100000),
)

# Gateway metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total API gateway requests",
    ["route", "status"],
)

gateway_request_duration_seconds = Histogram(
    "gateway_request_duration_seconds",
    "API gateway request duration in seconds",
    ["route"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

rate_limit_denials_total = Counter(
    "rate_limit_denials_total",
    "Requests denied by the rate limiter",
    ["window"],  # minute, day
)

# Webhook metrics
webhook_deliveries_total = Counter(
    "webhook_deliveries_total",
    "Webhook delivery attempts",
    ["outcome"],  # delivered, retrying, failed
)

webhook_deliveries_dispatched_total = Counter(
    "webhook_deliveries_dispatched_total",
    "Webhook deliveries queued",
    ["event"],
)

webhook_endpoints_disabled_total = Counter(
    "webhook_endpoints_disabled_total",
    "Webhook endpoints disabled after repeated failures",
)

# Email metrics
emails_total = Counter(
    "emails_total",
    "Transactional email attempts",
    ["outcome"],  # sent, retrying, failed
)

# Scheduler metrics
sweep_items_total = Counter(
    "sweep_items_total",
    "Items handled by periodic jobs",
    ["job"],
)

sweep_last_run_timestamp = Gauge(
    "sweep_last_run_timestamp",
    "Timestamp of the last periodic job run",
    ["job"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_ledger_operation(
        operation: str, outcome: str, duration_seconds: float, amount: int | None = None
    ) -> None:
        """Record a ledger operation."""
        ledger_operations_total.labels(operation=operation, outcome=outcome).inc()
        ledger_operation_duration_seconds.labels(operation=operation).observe(duration_seconds)
        if amount is not None and outcome == "success":
            ledger_amount_cents.labels(operation=operation).observe(abs(amount))

    @staticmethod
    def record_gateway_request(route: str, status: int, duration_seconds: float) -> None:
        """Record an API gateway request."""
        gateway_requests_total.labels(route=route, status=str(status)).inc()
        gateway_request_duration_seconds.labels(route=route).observe(duration_seconds)

    @staticmethod
    def record_rate_limit_denial(window: str) -> None:
        rate_limit_denials_total.labels(window=window).inc()

    @staticmethod
    def record_webhook_dispatched(event: str, count: int) -> None:
        if count:
            webhook_deliveries_dispatched_total.labels(event=event).inc(count)

    @staticmethod
    def record_webhook_delivery(outcome: str) -> None:
        webhook_deliveries_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_endpoint_disabled() -> None:
        webhook_endpoints_disabled_total.inc()

    @staticmethod
    def record_email(outcome: str) -> None:
        emails_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_sweep(job: str, count: int, timestamp: float) -> None:
        """Record the result of a periodic job tick."""
        sweep_items_total.labels(job=job).inc(count)
        sweep_last_run_timestamp.labels(job=job).set(timestamp)


metrics = MetricsCollector()
