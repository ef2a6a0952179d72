"""
Prometheus Metrics for Observability

Tracks per-request verdicts, per-model latency, failover, queue wait and
scheduler health. Exposes /api/v1/metrics for Prometheus scraping.

Labels never carry image content or client identifiers.
"""

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Verdicts
analyses_total = Counter(
    "analyses_total",
    "Total number of completed analyses by final classification",
    labelnames=["classification"]
)

analysis_confidence_histogram = Histogram(
    "analysis_confidence_score",
    "Distribution of final ensemble confidence scores (0-100)",
    buckets=[10, 20, 30, 40, 50, 60, 70, 80, 90, 100]
)

analysis_total_duration = Histogram(
    "analysis_total_duration_seconds",
    "End-to-end analysis time including queue wait",
    labelnames=["status"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0]
)

analysis_queue_wait_seconds = Histogram(
    "analysis_queue_wait_seconds",
    "Time a request spent queued before a worker claimed it",
    buckets=[0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

# Per-model
model_latency_seconds = Histogram(
    "model_latency_seconds",
    "Time spent in each model adapter invocation",
    labelnames=["model", "status"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 8.0, 15.0]
)

model_invocations_total = Counter(
    "model_invocations_total",
    "Adapter invocations by outcome",
    labelnames=["model", "status"]
)

ensemble_fallback_total = Counter(
    "ensemble_fallback_total",
    "Analyses that required the backup adapter"
)

# Errors & scheduler
engine_errors_total = Counter(
    "engine_errors_total",
    "Requests that ended in an error, by stable error code",
    labelnames=["error_code"]
)

engine_dead_letter_total = Counter(
    "engine_dead_letter_total",
    "Requests moved to the dead-letter channel",
    labelnames=["error_code"]
)

engine_retries_total = Counter(
    "engine_retries_total",
    "Transient failures re-queued with backoff"
)

engine_queue_depth = Gauge(
    "engine_queue_depth",
    "Queued requests per priority tier",
    labelnames=["tier"]
)

engine_active_workers = Gauge(
    "engine_active_workers",
    "Workers currently running a request"
)

engine_fatal_alerts_total = Counter(
    "engine_fatal_alerts_total",
    "Operator alerts raised because fatal errors crossed the rate threshold"
)

# API Request Metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration",
    labelnames=["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

# Application Info
app_info = Info(
    "imagery_engine",
    "Application information"
)


# =============================================================================
# Helper Functions
# =============================================================================

def set_app_info(version: str, environment: str):
    """Set application info metric."""
    app_info.info({
        "version": version,
        "environment": environment
    })


def record_model_outcome(model: str, status: str, elapsed_ms: float):
    """Record one adapter invocation.

    Args:
        model: Adapter name (primary, food, backup, ...)
        status: success, error, timeout or circuit_open
        elapsed_ms: Wall time of the invocation in milliseconds
    """
    model_invocations_total.labels(model=model, status=status).inc()
    model_latency_seconds.labels(model=model, status=status).observe(elapsed_ms / 1000.0)


def record_analysis(
    classification: str,
    confidence: float,
    total_ms: float,
    queue_ms: float,
    fallback: bool
):
    """Record a completed analysis."""
    analyses_total.labels(classification=classification).inc()
    analysis_confidence_histogram.observe(confidence)
    analysis_total_duration.labels(status="completed").observe(total_ms / 1000.0)
    analysis_queue_wait_seconds.observe(queue_ms / 1000.0)
    if fallback:
        ensemble_fallback_total.inc()


def record_analysis_error(error_code: str, total_ms: float):
    """Record a request that surfaced an error to its caller."""
    engine_errors_total.labels(error_code=error_code).inc()
    analysis_total_duration.labels(status="error").observe(total_ms / 1000.0)


def record_dead_letter(error_code: str):
    """Record a dead-lettered request."""
    engine_dead_letter_total.labels(error_code=error_code).inc()


def record_retry():
    """Record a transient failure that was re-queued."""
    engine_retries_total.inc()


def set_queue_depth(tier: str, depth: int):
    """Publish the queue depth for one priority tier."""
    engine_queue_depth.labels(tier=tier).set(depth)


def record_fatal_alert():
    """Record an operator-facing fatal-rate alert."""
    engine_fatal_alerts_total.inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
