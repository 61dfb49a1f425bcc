"""
Prometheus metrics for the relay.

This module provides:
- HTTP request counter (method, path, status) and latency histogram
- Webhook acknowledgment counter (result)
- Pipeline outcome counter, one per processed message (outcome)
- LLM call counter (result) and escalation event counter (event)

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

# result: accepted, invalid_signature, bad_request
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total inbound webhook acknowledgments",
    labelnames=["result"]
)

# outcome: replied, duplicate, paused, unsupported_type, error
pipeline_messages_total = Counter(
    "pipeline_messages_total",
    "Inbound messages by pipeline outcome",
    labelnames=["outcome"]
)

# result: ok, fallback
llm_requests_total = Counter(
    "llm_requests_total",
    "Model backend calls by result",
    labelnames=["result"]
)

# event: notified, notify_failed, paused, already_paused, not_found, ignored
escalation_events_total = Counter(
    "escalation_events_total",
    "Escalation notifications and take-over callbacks",
    labelnames=["event"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
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


def record_webhook_outcome(result: str) -> None:
    webhook_requests_total.labels(result=result).inc()


def record_pipeline_outcome(outcome: str) -> None:
    pipeline_messages_total.labels(outcome=outcome).inc()


def record_llm_request(result: str) -> None:
    llm_requests_total.labels(result=result).inc()


def record_escalation_event(event: str) -> None:
    escalation_events_total.labels(event=event).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
