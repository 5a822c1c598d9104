"""Shared helpers."""

from .retry import (
    RetryConfig,
    ErrorCategory,
    classify_error,
    is_retryable,
    calculate_delay,
    call_with_retry,
)

__all__ = [
    "RetryConfig",
    "ErrorCategory",
    "classify_error",
    "is_retryable",
    "calculate_delay",
    "call_with_retry",
]
