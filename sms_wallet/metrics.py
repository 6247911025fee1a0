"""
Prometheus metrics for the SMS wallet service.

This module provides:
- HTTP request counter and latency histogram (method, path)
- Outbound state transition counter (state)
- Transport callback counter (kind, result)
- Inbound decode counter (result)
- Recovery re-drive counter

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# state: every RequestState value a request moved into
outbound_transitions_total = Counter(
    "outbound_transitions_total",
    "Outbound request state transitions",
    labelnames=["state"]
)

# kind: sent, delivered
# result: recorded, duplicate, conflict, stale, unknown, malformed
transport_callbacks_total = Counter(
    "transport_callbacks_total",
    "Transport callbacks by outcome",
    labelnames=["kind", "result"]
)

# result: matched, ignored
inbound_messages_total = Counter(
    "inbound_messages_total",
    "Inbound messages seen by the decoder",
    labelnames=["result"]
)

recovery_redriven_total = Counter(
    "recovery_redriven_total",
    "Requests re-driven by recovery passes"
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    normalized_path = path.split("?")[0]

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_transition(state: str) -> None:
    outbound_transitions_total.labels(state=state).inc()


def record_callback(kind: str, result: str) -> None:
    transport_callbacks_total.labels(kind=kind, result=result).inc()


def record_inbound(result: str) -> None:
    inbound_messages_total.labels(result=result).inc()


def record_redriven(count: int) -> None:
    if count:
        recovery_redriven_total.inc(count)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
