"""
Prometheus metrics for the bot.

This module provides:
- HTTP request counter and latency histogram (method, path)
- Webhook outcome counter (topic, result)
- Conversation counters: actions taken, codes delivered, escalations
- Question answering counter (method)

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

# topic: orders_v2, messages, questions, ...
# result: ok, skipped, ignored, error (validation_error for unparseable bodies)
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook processing outcomes",
    labelnames=["topic", "result"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

conversation_actions_total = Counter(
    "conversation_actions_total",
    "Actions taken by the message flow engine",
    labelnames=["action"]
)

codes_delivered_total = Counter(
    "codes_delivered_total",
    "Redemption codes handed to buyers",
    labelnames=["product"]
)

escalations_total = Counter(
    "escalations_total",
    "Conversations handed to a human operator",
    labelnames=["reason"]
)

questions_total = Counter(
    "questions_total",
    "Pre-sale questions processed",
    labelnames=["method"]
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
    if normalized_path.startswith("/chats/"):
        normalized_path = "/chats/{sale_id}"
    elif normalized_path.startswith("/inventory/"):
        normalized_path = "/inventory/{product_key}"

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_webhook_outcome(topic: str, result: str) -> None:
    """Record a webhook processing outcome."""
    webhook_requests_total.labels(topic=topic or "unknown", result=result).inc()


def record_conversation_action(action: str) -> None:
    conversation_actions_total.labels(action=action).inc()


def record_code_delivered(product_key: str) -> None:
    codes_delivered_total.labels(product=product_key).inc()


def record_escalation(reason: str) -> None:
    escalations_total.labels(reason=reason).inc()


def record_question(method: str) -> None:
    """
    Record how a question was handled.

    Args:
        method: faq, llm or escalated
    """
    questions_total.labels(method=method).inc()


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
