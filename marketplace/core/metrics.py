"""
Prometheus metrics for the payment reconciliation engine
"""

import logging
from prometheus_client import Counter, Histogram, REGISTRY

logger = logging.getLogger(__name__)


def _counter(name: str, documentation: str, labels):
    # Module may be imported twice under test runners; reuse registered collectors
    try:
        return Counter(name, documentation, labels)
    except ValueError:
        return REGISTRY._names_to_collectors[name]


def _histogram(name: str, documentation: str, labels):
    try:
        return Histogram(name, documentation, labels)
    except ValueError:
        return REGISTRY._names_to_collectors[name]


REQUEST_COUNT = _counter(
    "app_requests_total",
    "Total requests",
    ["method", "endpoint", "status"]
)

REQUEST_DURATION = _histogram(
    "app_request_duration_seconds",
    "Request duration",
    ["method", "endpoint"]
)

WEBHOOK_EVENTS = _counter(
    "payment_webhook_events_total",
    "Webhook deliveries by provider and processing outcome",
    ["provider", "outcome"]
)

TRANSACTION_TRANSITIONS = _counter(
    "payment_transaction_transitions_total",
    "Transaction lifecycle transitions",
    ["from_status", "to_status"]
)

CHECKOUT_SESSIONS = _counter(
    "payment_checkout_sessions_total",
    "Checkout session requests by provider and result",
    ["provider", "result"]
)


def record_webhook(provider: str, outcome: str):
    WEBHOOK_EVENTS.labels(provider=provider, outcome=outcome).inc()


def record_transition(from_status: str, to_status: str):
    TRANSACTION_TRANSITIONS.labels(from_status=from_status, to_status=to_status).inc()


def record_checkout(provider: str, result: str):
    CHECKOUT_SESSIONS.labels(provider=provider, result=result).inc()
