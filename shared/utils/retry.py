"""
Retry utilities with exponential backoff.

Classifies outbound HTTP failures as transient or permanent and retries the
transient ones. Used for calls to third-party HTTP APIs (the email provider)
where a 429 or a brief 5xx should not drop a customer notification.
"""

import asyncio
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx

from shared.logging import get_logger

logger = get_logger(__name__)


class ErrorCategory(Enum):
    """Error category classification"""
    RETRYABLE = "retryable"
    NON_RETRYABLE = "non_retryable"


@dataclass
class RetryConfig:
    """Configuration for retry behavior"""
    max_attempts: int = 3
    initial_delay: float = 0.25  # seconds
    max_delay: float = 8.0  # seconds
    exponential_base: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.2  # +/- 20%


RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})

RETRYABLE_EXCEPTIONS = (
    httpx.TransportError,
    ConnectionError,
    TimeoutError,
)


def classify_error(exception: BaseException) -> ErrorCategory:
    """
    Classify an exception as retryable or non-retryable.

    Args:
        exception: The exception to classify

    Returns:
        ErrorCategory indicating retry behavior
    """
    if isinstance(exception, httpx.HTTPStatusError):
        if exception.response.status_code in RETRYABLE_STATUS_CODES:
            return ErrorCategory.RETRYABLE
        return ErrorCategory.NON_RETRYABLE

    if isinstance(exception, RETRYABLE_EXCEPTIONS):
        return ErrorCategory.RETRYABLE

    return ErrorCategory.NON_RETRYABLE


def is_retryable(exception: BaseException) -> bool:
    return classify_error(exception) == ErrorCategory.RETRYABLE


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """
    Calculate delay for retry attempt with exponential backoff and jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        config: Retry configuration

    Returns:
        Delay in seconds
    """
    delay = config.initial_delay * (config.exponential_base ** attempt)
    delay = min(delay, config.max_delay)

    if config.jitter:
        jitter = random.uniform(-config.jitter_range, config.jitter_range)
        delay = delay * (1 + jitter)

    return max(0.0, delay)


async def call_with_retry(
    func: Callable[..., Awaitable[Any]],
    *args: Any,
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    **kwargs: Any,
) -> Any:
    """
    Await ``func(*args, **kwargs)``, retrying transient failures.

    Args:
        func: Coroutine function to call
        config: Retry configuration (uses defaults if None)
        on_retry: Optional callback called with (attempt, error, delay)

    Returns:
        Result of the first successful call

    Raises:
        The last exception once attempts are exhausted, or immediately for
        non-retryable errors.
    """
    config = config or RetryConfig()
    name = getattr(func, "__name__", repr(func))

    for attempt in range(config.max_attempts):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            category = classify_error(e)

            if category == ErrorCategory.NON_RETRYABLE:
                logger.error(
                    "retry_non_retryable_error",
                    function=name,
                    attempt=attempt + 1,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise

            if attempt == config.max_attempts - 1:
                logger.error(
                    "retry_attempts_exhausted",
                    function=name,
                    max_attempts=config.max_attempts,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise

            delay = calculate_delay(attempt, config)
            logger.warning(
                "retry_scheduled",
                function=name,
                attempt=attempt + 1,
                max_attempts=config.max_attempts,
                delay_seconds=round(delay, 3),
                error_type=type(e).__name__,
            )

            if on_retry:
                on_retry(attempt, e, delay)

            await asyncio.sleep(delay)
