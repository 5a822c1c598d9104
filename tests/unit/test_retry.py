"""
Unit tests for exponential backoff retry logic.

Tests the retry helpers used for transient failures of third-party HTTP
calls (the email provider):
- Error classification (status codes and transport errors)
- Delay calculation with and without jitter
- call_with_retry attempts, give-up and callbacks
"""

import pytest
from unittest.mock import AsyncMock, Mock, patch

import httpx

from shared.utils import (
    ErrorCategory,
    RetryConfig,
    calculate_delay,
    call_with_retry,
    classify_error,
    is_retryable,
)


def http_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://api.resend.com/emails")
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError(f"HTTP {status_code}", request=request, response=response)


@pytest.fixture
def retry_config():
    """Retry configuration for tests"""
    return RetryConfig(
        max_attempts=3,
        initial_delay=0.1,
        max_delay=1.0,
        exponential_base=2,
        jitter=False  # Disable jitter for deterministic tests
    )


@pytest.fixture
def no_sleep():
    with patch("shared.utils.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
        yield sleep


# ============================================================================
# ERROR CLASSIFICATION
# ============================================================================


class TestErrorClassification:
    """Test classification of transient vs permanent failures"""

    @pytest.mark.parametrize("status_code", [408, 425, 429, 500, 502, 503, 504])
    def test_transient_status_codes_are_retryable(self, status_code):
        assert classify_error(http_error(status_code)) == ErrorCategory.RETRYABLE

    @pytest.mark.parametrize("status_code", [400, 401, 403, 404, 422])
    def test_client_errors_are_not_retryable(self, status_code):
        assert classify_error(http_error(status_code)) == ErrorCategory.NON_RETRYABLE

    def test_transport_errors_are_retryable(self):
        assert is_retryable(httpx.ConnectError("connection refused"))
        assert is_retryable(httpx.ReadTimeout("timed out"))
        assert is_retryable(ConnectionError("reset"))
        assert is_retryable(TimeoutError())

    def test_other_errors_are_not_retryable(self):
        assert not is_retryable(ValueError("bad payload"))
        assert not is_retryable(KeyError("id"))


# ============================================================================
# DELAY CALCULATION
# ============================================================================


class TestCalculateDelay:
    """Test exponential backoff delay calculation"""

    def test_delay_doubles_per_attempt(self, retry_config):
        delays = [calculate_delay(attempt, retry_config) for attempt in range(3)]
        assert delays == pytest.approx([0.1, 0.2, 0.4])

    def test_delay_is_capped(self, retry_config):
        assert calculate_delay(10, retry_config) == pytest.approx(1.0)

    def test_jitter_stays_within_range(self):
        config = RetryConfig(initial_delay=1.0, max_delay=10.0, jitter=True, jitter_range=0.2)
        for _ in range(50):
            delay = calculate_delay(0, config)
            assert 0.8 <= delay <= 1.2


# ============================================================================
# CALL WITH RETRY
# ============================================================================


class TestCallWithRetry:
    """Test retry loop behavior"""

    @pytest.mark.asyncio
    async def test_successful_operation_no_retry(self, retry_config, no_sleep):
        func = AsyncMock(return_value="success")

        result = await call_with_retry(func, "payload", config=retry_config)

        assert result == "success"
        func.assert_awaited_once_with("payload")
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retry_on_transient_failure(self, retry_config, no_sleep):
        func = AsyncMock(side_effect=[http_error(503), httpx.ConnectError("refused"), {"id": "msg_1"}])

        result = await call_with_retry(func, config=retry_config)

        assert result == {"id": "msg_1"}
        assert func.await_count == 3
        assert [c.args[0] for c in no_sleep.await_args_list] == pytest.approx([0.1, 0.2])

    @pytest.mark.asyncio
    async def test_non_retryable_error_raises_immediately(self, retry_config, no_sleep):
        func = AsyncMock(side_effect=http_error(422))

        with pytest.raises(httpx.HTTPStatusError):
            await call_with_retry(func, config=retry_config)

        assert func.await_count == 1
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, retry_config, no_sleep):
        func = AsyncMock(side_effect=http_error(429))

        with pytest.raises(httpx.HTTPStatusError) as exc_info:
            await call_with_retry(func, config=retry_config)

        assert exc_info.value.response.status_code == 429
        assert func.await_count == 3
        assert no_sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_on_retry_callback(self, retry_config, no_sleep):
        func = AsyncMock(side_effect=[TimeoutError(), "ok"])
        on_retry = Mock()

        await call_with_retry(func, config=retry_config, on_retry=on_retry)

        on_retry.assert_called_once()
        attempt, error, delay = on_retry.call_args.args
        assert attempt == 0
        assert isinstance(error, TimeoutError)
        assert delay == pytest.approx(0.1)
