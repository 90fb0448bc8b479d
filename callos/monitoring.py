"""
Monitoring and metrics collection using Prometheus.
"""
from prometheus_client import Counter, Histogram, generate_latest, REGISTRY


webhook_relays_total = Counter(
    'callos_webhook_relays_total',
    'Total number of inbound webhook relay attempts',
    ['source_type', 'status']
)

forward_duration = Histogram(
    'callos_forward_duration_seconds',
    'Duration of forwards to the downstream automation endpoint',
    ['source_type']
)

callbacks_total = Counter(
    'callos_callbacks_total',
    'Total number of automation callbacks by outcome',
    ['outcome']
)

crm_requests_total = Counter(
    'callos_crm_requests_total',
    'Total number of CRM API requests made',
    ['platform', 'status']
)

google_token_refreshes_total = Counter(
    'callos_google_token_refreshes_total',
    'Google access token refresh attempts',
    ['status']
)

errors_total = Counter(
    'callos_errors_total',
    'Total number of errors by type',
    ['error_type', 'component']
)


def get_metrics() -> bytes:
    """
    Get current metrics in Prometheus format.

    Returns:
        Metrics in Prometheus text format
    """
    return generate_latest(REGISTRY)


def record_error(error_type: str, component: str):
    """
    Record an error occurrence.

    Args:
        error_type: Type of error (e.g., 'LivespaceAPIError')
        component: Component where error occurred (e.g., 'payload_builder')
    """
    errors_total.labels(error_type=error_type, component=component).inc()
