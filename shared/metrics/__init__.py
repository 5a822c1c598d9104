"""Metrics module using Prometheus."""

from .prometheus_metrics import (
    BillingMetrics,
    get_billing_metrics,
    get_metrics_handler,
)

__all__ = [
    "BillingMetrics",
    "get_billing_metrics",
    "get_metrics_handler",
]
