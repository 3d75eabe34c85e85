from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "Total HTTP 5xx responses",
    ["method", "path", "status"],
)

JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Background job duration",
    ["task", "status"],
)

WEBHOOK_EVENTS = Counter(
    "billing_webhook_events_total",
    "Paystack webhook deliveries by event and outcome",
    ["event", "outcome"],
)
ACTIVATIONS = Counter(
    "billing_activations_total",
    "Activation attempts by source and result reason",
    ["source", "reason"],
)
LOCK_CONTENTION = Counter(
    "billing_lock_contention_total",
    "Lock acquisitions that gave up after all attempts",
)
IDEMPOTENCY_LOOKUPS = Counter(
    "billing_idempotency_total",
    "Idempotency store lookups by outcome",
    ["outcome"],
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)
