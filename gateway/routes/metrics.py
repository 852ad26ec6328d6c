"""
Prometheus metrics endpoint.

Exposes system metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

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
# Instance Lifecycle Metrics
# ============================================

instance_transitions = Counter(
    'instance_transitions_total',
    'Total instance lifecycle transitions',
    ['action', 'status']
)

instance_transitions_rejected = Counter(
    'instance_transitions_rejected_total',
    'Lifecycle requests rejected by the state machine',
    ['action', 'reason']
)

# ============================================
# Webhook Metrics
# ============================================

webhook_deliveries_created = Counter(
    'webhook_deliveries_created_total',
    'Total webhook deliveries created',
    ['event_type']
)

webhook_attempts = Counter(
    'webhook_attempts_total',
    'Total webhook delivery attempts',
    ['outcome']
)

webhooks_permanently_failed = Counter(
    'webhooks_permanently_failed_total',
    'Webhook deliveries that exhausted their retries',
    ['event_type']
)

webhook_attempt_duration = Histogram(
    'webhook_attempt_duration_seconds',
    'Webhook attempt duration in seconds',
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

webhook_queue_depth = Gauge(
    'webhook_queue_depth',
    'Deliveries waiting for their next attempt'
)

webhook_in_flight = Gauge(
    'webhook_in_flight',
    'Delivery attempts currently running'
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


def track_transition(action: str, status: str):
    """Record a committed lifecycle transition."""
    instance_transitions.labels(action=action, status=status).inc()


def track_transition_rejected(action: str, reason: str):
    """Record a lifecycle request refused as illegal."""
    instance_transitions_rejected.labels(action=action, reason=reason).inc()


def track_delivery_created(event_type: str):
    """Record a new webhook delivery."""
    webhook_deliveries_created.labels(event_type=event_type).inc()


def track_webhook_attempt(outcome: str, duration_seconds: float):
    """Record a webhook attempt: delivered, retrying, failed or not_recorded."""
    webhook_attempts.labels(outcome=outcome).inc()
    webhook_attempt_duration.observe(duration_seconds)


def track_webhook_permanently_failed(event_type: str):
    """Record a delivery that will not be retried again."""
    webhooks_permanently_failed.labels(event_type=event_type).inc()


def update_queue_depth(queued: int, in_flight: int):
    """Update queued and in-flight delivery gauges."""
    webhook_queue_depth.set(queued)
    webhook_in_flight.set(in_flight)


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
