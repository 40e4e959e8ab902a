"""Prometheus metric definitions shared across services."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
webhook_events_total = Counter(
    "webhook_events_total",
    "Inbound webhook deliveries by provider and handling outcome",
    ["service", "provider", "outcome"],
)
signature_failures_total = Counter(
    "signature_failures_total",
    "Webhook deliveries rejected by signature verification",
    ["service", "provider"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Duplicate inbound events skipped",
    ["service", "provider"],
)
ledger_operations_total = Counter(
    "ledger_operations_total",
    "Credit ledger operations by kind and outcome",
    ["service", "operation", "outcome"],
)
ledger_credits_moved_total = Counter(
    "ledger_credits_moved_total",
    "Absolute credits moved by the ledger per transaction kind",
    ["service", "kind"],
)
generation_e2e_seconds = Histogram(
    "generation_e2e_seconds",
    "Generation duration seconds from processing start to terminal state",
    ["service", "terminal_state"],
)
reconciliation_discrepancies_total = Counter(
    "reconciliation_discrepancies_total",
    "Ownership discrepancies found by reconciliation, by resolution",
    ["service", "resolution"],
)
reconciliation_runs_total = Counter(
    "reconciliation_runs_total",
    "Completed reconciliation runs",
    ["service"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
