"""
Unit tests for the bounded exponential-backoff retry.
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from app.errors import JobCancelledError, TransientError, FatalError
from app.retry import RetryPolicy, with_retry


def is_transient(error: BaseException) -> bool:
    return isinstance(error, TransientError)


@pytest.fixture
def sleep():
    return AsyncMock()


class TestRetryPolicy:
    """Tests for the RetryPolicy value."""

    @pytest.mark.asyncio
    async def test_delays_double(self, sleep):
        """Test base * 2^(attempt-1) between attempts."""
        operation = AsyncMock(side_effect=TransientError("503"))

        with pytest.raises(TransientError):
            await with_retry(operation, RetryPolicy(max_attempts=4, base_delay=1.5), is_transient, sleep=sleep)

        assert [c.args[0] for c in sleep.await_args_list] == [1.5, 3.0, 6.0]

    @pytest.mark.parametrize("kwargs", [{"max_attempts": 0}, {"base_delay": -1}])
    def test_invalid_policy(self, kwargs):
        """Test that impossible policies are rejected."""
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


class TestWithRetry:
    """Tests for with_retry."""

    @pytest.mark.asyncio
    async def test_success_first_time(self, sleep):
        """Test that a successful call is not retried."""
        operation = AsyncMock(return_value="text")

        result = await with_retry(operation, RetryPolicy(), is_transient, sleep=sleep)

        assert result == "text"
        operation.assert_awaited_once()
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self, sleep):
        """Test that transient errors are retried with growing delays."""
        operation = AsyncMock(side_effect=[TransientError("503"), TransientError("503"), "text"])
        on_retry = Mock()

        result = await with_retry(
            operation, RetryPolicy(max_attempts=3, base_delay=1.5), is_transient, on_retry=on_retry, sleep=sleep
        )

        assert result == "text"
        assert operation.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.5, 3.0]
        assert [c.args[:2] for c in on_retry.call_args_list] == [(1, 1.5), (2, 3.0)]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts_without_final_sleep(self, sleep):
        """Test that the last error propagates and no wait follows the last attempt."""
        operation = AsyncMock(side_effect=TransientError("503"))

        with pytest.raises(TransientError):
            await with_retry(operation, RetryPolicy(max_attempts=3), is_transient, sleep=sleep)

        assert operation.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_non_retryable_error_propagates_at_once(self, sleep):
        """Test that fatal errors are not retried."""
        operation = AsyncMock(side_effect=FatalError("bad request"))

        with pytest.raises(FatalError):
            await with_retry(operation, RetryPolicy(max_attempts=5), is_transient, sleep=sleep)

        operation.assert_awaited_once()
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_during_backoff(self, sleep):
        """Test that a set cancel event aborts instead of waiting."""
        operation = AsyncMock(side_effect=TransientError("503"))
        cancel_event = asyncio.Event()
        cancel_event.set()

        with pytest.raises(JobCancelledError):
            await with_retry(operation, RetryPolicy(), is_transient, cancel_event=cancel_event, sleep=sleep)

        operation.assert_awaited_once()
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_set_while_sleeping(self):
        """Test that cancellation noticed after the wait stops the next attempt."""
        operation = AsyncMock(side_effect=TransientError("503"))
        cancel_event = asyncio.Event()

        async def sleep_and_cancel(delay):
            cancel_event.set()

        with pytest.raises(JobCancelledError):
            await with_retry(
                operation, RetryPolicy(), is_transient, cancel_event=cancel_event, sleep=sleep_and_cancel
            )

        operation.assert_awaited_once()
