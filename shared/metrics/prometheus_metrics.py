"""Prometheus metrics definitions and helpers.

Provides metric definitions for subscription billing: webhook ingestion,
role reconciliation, user resolution and transactional email.
"""

from typing import Callable, Optional

from prometheus_client import (
    Counter,
    Histogram,
    generate_latest,
    REGISTRY,
    CollectorRegistry,
)


class BillingMetrics:
    """Subscription billing metrics."""

    def __init__(self, registry: CollectorRegistry = REGISTRY) -> None:
        """Initialize billing metrics.

        Args:
            registry: Prometheus registry to use
        """
        # Webhook events received
        self.webhook_events = Counter(
            "stripe_webhook_events_total",
            "Total number of Stripe webhook events received",
            ["event_type"],
            registry=registry,
        )

        # Webhook events failed
        self.webhook_failures = Counter(
            "stripe_webhook_failures_total",
            "Total number of Stripe webhook events that failed processing",
            ["event_type", "reason"],
            registry=registry,
        )

        # Processing duration
        self.webhook_duration = Histogram(
            "stripe_webhook_duration_seconds",
            "Time spent processing Stripe webhook events",
            ["event_type"],
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
            registry=registry,
        )

        # Role writes
        self.role_updates = Counter(
            "user_role_updates_total",
            "Total number of user role writes",
            ["role", "outcome"],
            registry=registry,
        )

        # Which lookup strategy found the user for a subscription
        self.user_resolutions = Counter(
            "subscription_user_resolutions_total",
            "Outcome of locating the user behind a subscription",
            ["strategy"],
            registry=registry,
        )

        # Transactional email
        self.emails = Counter(
            "subscription_emails_total",
            "Subscription emails by template and outcome",
            ["template", "outcome"],
            registry=registry,
        )


_metrics: Optional[BillingMetrics] = None


def get_billing_metrics() -> BillingMetrics:
    """Return the process-wide metrics instance, creating it on first use.

    Returns:
        BillingMetrics registered in the default registry
    """
    global _metrics
    if _metrics is None:
        _metrics = BillingMetrics()
    return _metrics


def get_metrics_handler() -> Callable[[], bytes]:
    """Get metrics handler for HTTP endpoint.

    Returns:
        Function that generates Prometheus metrics output
    """

    def metrics_handler() -> bytes:
        return generate_latest(REGISTRY)

    return metrics_handler
