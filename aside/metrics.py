"""
Prometheus metrics for the ingestion service.

This module provides:
- HTTP request counter (method, path, status) and latency histogram
- Webhook outcome counter (result)
- Live WebSocket connection gauge and fan-out event counter
- Onboarding transition, outbound SMS and post-processing counters

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# result: created, merged, duplicate, skipped, untrusted, malformed, error
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook processing outcomes",
    labelnames=["result"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

ws_connections = Gauge(
    "ws_connections",
    "Currently registered WebSocket connections"
)

# result: delivered, failed, expired
ws_events_total = Counter(
    "ws_events_total",
    "WebSocket fan-out writes by result",
    labelnames=["result"]
)

onboarding_transitions_total = Counter(
    "onboarding_transitions_total",
    "Onboarding step transitions",
    labelnames=["to_step"]
)

# result: sent, failed, skipped_unreachable, dev_mode
sms_send_total = Counter(
    "sms_send_total",
    "Outbound SMS attempts by result",
    labelnames=["result"]
)

# result: corrected, unchanged, failed
post_process_total = Counter(
    "post_process_total",
    "Untagged-link post-processing runs by result",
    labelnames=["result"]
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
    # Normalize path to avoid high-cardinality labels
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


def record_webhook_outcome(result: str) -> None:
    """
    Record a webhook processing outcome.

    Args:
        result: Processing result - one of:
            - "created": New message stored
            - "merged": Content appended to a very recent message
            - "duplicate": Provider delivery id already stored
            - "skipped": Confirmation echo or empty payload
            - "untrusted": Provider identity check failed
            - "malformed": Body matched no known provider shape
            - "error": Store failure
    """
    webhook_requests_total.labels(result=result).inc()


def record_ws_event(result: str) -> None:
    ws_events_total.labels(result=result).inc()


def record_onboarding_transition(to_step: str) -> None:
    onboarding_transitions_total.labels(to_step=to_step).inc()


def record_sms_send(result: str) -> None:
    sms_send_total.labels(result=result).inc()


def record_post_process(result: str) -> None:
    post_process_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """
    Get the content type for Prometheus metrics.

    Returns:
        Content type string for Prometheus exposition format
    """
    return CONTENT_TYPE_LATEST
