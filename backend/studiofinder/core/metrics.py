"""Prometheus metrics for the payment engine"""
from prometheus_client import Counter, REGISTRY


def _counter(name: str, documentation: str, labelnames=()):
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:
        # Already registered (module re-imported under a test runner)
        return REGISTRY._names_to_collectors.get(name)


webhook_events_counter = _counter(
    'studiofinder_webhook_events_total',
    'Provider webhook deliveries by event type and outcome',
    ['event_type', 'outcome']
)

payments_recorded_counter = _counter(
    'studiofinder_payments_recorded_total',
    'Payment rows created by purpose and status',
    ['purpose', 'status']
)

refunds_processed_counter = _counter(
    'studiofinder_refunds_processed_total',
    'Refunds applied to payments',
    ['kind']
)

membership_transitions_counter = _counter(
    'studiofinder_membership_transitions_total',
    'Membership lifecycle transitions',
    ['transition']
)

notifications_counter = _counter(
    'studiofinder_notifications_total',
    'Best-effort notification attempts by template and outcome',
    ['template', 'outcome']
)
