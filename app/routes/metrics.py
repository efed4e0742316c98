"""
Prometheus metrics endpoint.

Exposes pipeline metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter()

# ============================================
# HTTP Request Metrics
# ============================================

http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# ============================================
# Webhook Ingestion Metrics
# ============================================

webhooks_received = Counter(
    'webhooks_received_total',
    'Inbound webhooks by topic and outcome',
    ['topic', 'outcome']
)

duplicate_webhooks = Counter(
    'webhooks_duplicate_total',
    'Webhooks for conversations that already have an attempt'
)

# ============================================
# Invitation Metrics
# ============================================

invitations_finished = Counter(
    'invitations_finished_total',
    'Invitation attempts reaching a terminal status',
    ['status']
)

invitation_retries = Counter(
    'invitation_retries_total',
    'Retryable dispatch failures that scheduled another attempt'
)

contact_resolution_failures = Counter(
    'contact_resolution_failures_total',
    'Attempts failed because the contact could not be resolved'
)

fallback_emails = Counter(
    'fallback_emails_total',
    'Fallback email invitations by result',
    ['result']
)


# ============================================
# Metrics Helper Functions
# ============================================

def track_request(method: str, endpoint: str, status: int, duration_seconds: float):
    """
    Record HTTP request metrics.

    Call this after each request.
    """
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=status
    ).inc()

    http_request_duration.labels(
        method=method,
        endpoint=endpoint
    ).observe(duration_seconds)


def track_webhook(topic: str, outcome: str):
    """Record an inbound webhook (accepted, duplicate, ignored, invalid)."""
    webhooks_received.labels(topic=topic, outcome=outcome).inc()


def track_duplicate_webhook():
    duplicate_webhooks.inc()


def track_invitation_outcome(status: str):
    """Record an attempt reaching success or failed."""
    invitations_finished.labels(status=status).inc()


def track_retry():
    invitation_retries.inc()


def track_resolution_failure():
    contact_resolution_failures.inc()


def track_fallback_email(success: bool):
    fallback_emails.labels(result="sent" if success else "failed").inc()


# ============================================
# Prometheus Endpoint
# ============================================

@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns all registered metrics in Prometheus format.
    """
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
