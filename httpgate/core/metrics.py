"""Prometheus metrics for outgoing requests."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest

from httpgate.core.config import settings

# --- Metrics ---

REQUEST_COUNT = Counter(
    "httpgate_requests_total",
    "Total logical requests completed by the client",
    ["method", "status"],
)

REQUEST_DURATION = Histogram(
    "httpgate_request_duration_seconds",
    "Logical request duration in seconds, retries included",
    ["method"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)

RETRY_COUNT = Counter(
    "httpgate_retries_total",
    "Retried transport attempts",
    ["reason"],
)

CACHE_LOOKUPS = Counter(
    "httpgate_cache_lookups_total",
    "Response cache lookups",
    ["result"],
)

INFLIGHT = Gauge(
    "httpgate_inflight_requests",
    "Requests currently holding a concurrency slot",
)

GATE_WAITING = Gauge(
    "httpgate_gate_waiting",
    "Requests queued for a concurrency slot",
)


# --- Helpers ---


def observe_request(method: str, status: int | str, duration: float) -> None:
    if not settings.metrics_enabled:
        return
    REQUEST_COUNT.labels(method=method, status=str(status)).inc()
    REQUEST_DURATION.labels(method=method).observe(duration)


def observe_retry(reason: str) -> None:
    if settings.metrics_enabled:
        RETRY_COUNT.labels(reason=reason).inc()


def observe_cache(hit: bool) -> None:
    if settings.metrics_enabled:
        CACHE_LOOKUPS.labels(result="hit" if hit else "miss").inc()


def track_inflight(delta: int) -> None:
    if settings.metrics_enabled:
        INFLIGHT.inc(delta)


def track_waiting(delta: int) -> None:
    if settings.metrics_enabled:
        GATE_WAITING.inc(delta)


def metrics_text() -> bytes:
    """Render the default registry in Prometheus exposition format."""
    return generate_latest()
