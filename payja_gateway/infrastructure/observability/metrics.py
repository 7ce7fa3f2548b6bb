"""Prometheus metrics for USSD traffic, decisions and partner API health"""

from prometheus_client import Counter, Histogram

# USSD traffic
ussd_request_counter = Counter(
    "payja_ussd_requests_total",
    "USSD requests handled",
    ["flow", "outcome"],  # continue | end | replay | error | expired
)

# Decision metrics
decision_counter = Counter(
    "payja_decision_total",
    "Credit decisions made",
    ["decision"],  # APPROVED | REJECTED | MANUAL_REVIEW
)

approved_amount_bucket_counter = Counter(
    "payja_approved_amount_bucket",
    "Approved loan amounts by bucket",
    ["bucket"],  # <=5k, 5k-10k, 10k-30k, 30k+
)

# Partner API metrics
partner_request_counter = Counter(
    "payja_partner_requests_total",
    "Calls to partner banks and operators",
    ["partner", "outcome"],  # eligible | not_eligible | error | timeout
)

partner_latency_histogram = Histogram(
    "payja_partner_latency_seconds",
    "Partner API response time",
    ["partner"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

disbursement_failure_counter = Counter(
    "payja_disbursement_failures_total",
    "Failed disbursement attempts",
)

notification_failure_counter = Counter(
    "payja_notification_failures_total",
    "Failed SMS deliveries",
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_ussd_request(flow: str, outcome: str) -> None:
    ussd_request_counter.labels(flow=flow, outcome=outcome).inc()


def record_decision(decision: str, amount: float) -> None:
    """Record decision metrics for monitoring approval rates and amount distribution"""
    decision_counter.labels(decision=decision).inc()
    if decision != "APPROVED":
        return

    if amount <= 5_000:
        bucket = "<=5k"
    elif amount <= 10_000:
        bucket = "5k-10k"
    elif amount <= 30_000:
        bucket = "10k-30k"
    else:
        bucket = "30k+"
    approved_amount_bucket_counter.labels(bucket=bucket).inc()


def record_partner_call(partner: str, outcome: str, duration_seconds: float) -> None:
    partner_request_counter.labels(partner=partner, outcome=outcome).inc()
    partner_latency_histogram.labels(partner=partner).observe(duration_seconds)
