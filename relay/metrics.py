"""
Prometheus metrics for the relay.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Webhook item outcome counter (kind, result)
- Published real-time event counter (event)
- Media download outcome counter (result)

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

# kind: message, status, batch
# result: created, updated, unchanged, dropped, invalid, error, ...
webhook_items_total = Counter(
    "webhook_items_total",
    "Webhook items processed by outcome",
    labelnames=["kind", "result"]
)

notifications_published_total = Counter(
    "notifications_published_total",
    "Real-time events published to conversation channels",
    labelnames=["event"]
)

media_downloads_total = Counter(
    "media_downloads_total",
    "Inbound media download outcomes",
    labelnames=["result"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, route: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, PATCH)
        route: Route template, e.g. /messages/{contact_id}, never the raw path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    http_requests_total.labels(method=method, path=route, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=route).observe(latency_seconds)


def record_webhook_item(kind: str, result: str) -> None:
    webhook_items_total.labels(kind=kind, result=result).inc()


def record_notification(event: str) -> None:
    notifications_published_total.labels(event=event).inc()


def record_media_download(result: str) -> None:
    media_downloads_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
