"""
Prometheus-based metrics for production monitoring.
Provides /metrics endpoint for scraping.
"""
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response


# Counters
tasks_created_total = Counter(
    "generation_tasks_created_total",
    "Total number of generation tasks created",
    ["mode"],  # sync, async
)

tasks_completed_total = Counter(
    "generation_tasks_completed_total",
    "Total number of completed generation tasks",
)

tasks_failed_total = Counter(
    "generation_tasks_failed_total",
    "Total number of failed generation tasks",
    ["failure_type"],
)

tasks_cancelled_total = Counter(
    "generation_tasks_cancelled_total",
    "Total number of cancelled generation tasks",
    ["source"],  # user, notify, processor
)

credit_operations_total = Counter(
    "credit_operations_total",
    "Total credit ledger operations",
    ["operation"],  # GRANT, DEBIT, REFUND
)

credits_rejected_total = Counter(
    "credits_rejected_total",
    "Total submissions rejected for insufficient credits",
)

upstream_requests_total = Counter(
    "upstream_generation_requests_total",
    "Total upstream chat-completion requests",
    ["status"],  # ok, error
)

extraction_matches_total = Counter(
    "image_url_extraction_total",
    "Image URL extraction outcomes by matching pattern",
    ["pattern"],
)

watchdog_expired_total = Counter(
    "watchdog_expired_tasks_total",
    "Tasks force-failed by the watchdog",
)

inflight_rejected_total = Counter(
    "inflight_rejected_total",
    "Requests rejected because another generation was in flight",
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open)",
    ["name"],
)

# Histograms
task_duration_seconds = Histogram(
    "generation_task_duration_seconds",
    "Whole task processing duration",
    ["status"],
    buckets=[5, 10, 30, 60, 120, 300, 600],
)

upstream_request_duration_seconds = Histogram(
    "upstream_generation_request_duration_seconds",
    "Upstream chat-completion request duration",
    ["model"],
    buckets=[1, 5, 10, 30, 60, 120, 270],
)

# Gauges
active_tasks = Gauge(
    "generation_active_tasks",
    "Tasks currently being processed by this process",
)


# Metrics endpoint router
router = APIRouter()


@router.get("/metrics")
def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint for scraping."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
