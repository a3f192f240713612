"""Prometheus metrics for admission throughput, invoicing and notification delivery"""

from prometheus_client import Counter, Histogram

# Workflow metrics
transition_counter = Counter(
    "admission_transition_total",
    "State machine transitions attempted",
    ["event", "outcome"],  # outcome: applied | rejected
)

invoice_counter = Counter(
    "admission_invoice_issued_total",
    "Invoices issued",
    ["tenant"],
)

duplicate_invoice_counter = Counter(
    "admission_invoice_duplicate_total",
    "Invoice issuance attempts refused because one already exists or the row moved",
    ["reason"],  # already_invoiced | concurrent_modification
)

rejected_code_counter = Counter(
    "admission_discount_code_rejected_total",
    "Referral or promo codes ignored during fee calculation",
    ["source"],
)

fee_total_histogram = Histogram(
    "admission_fee_total",
    "Grand total of calculated fee breakdowns",
    buckets=[0, 100, 500, 1_000, 5_000, 10_000, 50_000, 100_000],
)

# Notification metrics
notification_latency_histogram = Histogram(
    "admission_notification_latency_seconds",
    "Notification webhook response time",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

notification_failure_counter = Counter(
    "admission_notification_failures_total",
    "Failed notification deliveries",
)

# Dispatcher
dispatch_duration_histogram = Histogram(
    "admission_dispatch_duration_seconds",
    "Command/query handling latency",
    ["message_type", "outcome"],
)


def record_transition(event: str, applied: bool) -> None:
    transition_counter.labels(event=event, outcome="applied" if applied else "rejected").inc()


def record_duplicate_invoice(reason: str) -> None:
    """Track refused duplicate issuance, the expected outcome of double submits"""
    duplicate_invoice_counter.labels(reason=reason).inc()
