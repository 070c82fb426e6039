"""
Unit tests for retry and circuit breaker utilities.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from errorwatch.exceptions import TrackerNotFoundError, TrackerTransientError
from errorwatch.utils.resilience import (
    CircuitBreaker,
    CircuitBreakerOpenError,
    CircuitState,
    create_tracker_circuit_breaker,
    handle_partial_failure,
    retry_with_backoff,
)


class TestRetryWithBackoff:
    """Test the retry decorator."""

    @pytest.mark.asyncio
    async def test_async_retries_listed_exceptions(self):
        operation = AsyncMock(side_effect=[TrackerTransientError("502"), "ok"])
        operation.__name__ = "operation"
        wrapped = retry_with_backoff(max_retries=3, base_delay=0, exceptions=(TrackerTransientError,))(operation)

        with patch("errorwatch.utils.resilience.asyncio.sleep", new=AsyncMock()) as sleep:
            assert await wrapped() == "ok"

        assert operation.await_count == 2
        sleep.assert_awaited_once_with(0)

    @pytest.mark.asyncio
    async def test_async_backoff_grows(self):
        operation = AsyncMock(side_effect=TrackerTransientError("503"))
        operation.__name__ = "operation"
        wrapped = retry_with_backoff(max_retries=4, base_delay=1.0, max_delay=3.0, exceptions=(TrackerTransientError,))(operation)

        with patch("errorwatch.utils.resilience.asyncio.sleep", new=AsyncMock()) as sleep:
            with pytest.raises(TrackerTransientError):
                await wrapped()

        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0, 3.0]

    @pytest.mark.asyncio
    async def test_unlisted_exceptions_not_retried(self):
        operation = AsyncMock(side_effect=TrackerNotFoundError("404", status_code=404))
        operation.__name__ = "operation"
        wrapped = retry_with_backoff(max_retries=3, base_delay=0, exceptions=(TrackerTransientError,))(operation)

        with pytest.raises(TrackerNotFoundError):
            await wrapped()

        assert operation.await_count == 1

    def test_sync_functions_supported(self):
        operation = MagicMock(side_effect=[ValueError("flaky"), 42])
        operation.__name__ = "operation"
        wrapped = retry_with_backoff(max_retries=2, base_delay=0, exceptions=(ValueError,))(operation)

        assert wrapped() == 42


class TestCircuitBreaker:
    """Test circuit breaker state transitions."""

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self):
        breaker = CircuitBreaker(name="test", failure_threshold=2, timeout=60)
        failing = AsyncMock(side_effect=RuntimeError("down"))

        for _ in range(2):
            with pytest.raises(RuntimeError):
                await breaker.call(failing)

        assert breaker.get_state() == CircuitState.OPEN
        with pytest.raises(CircuitBreakerOpenError):
            await breaker.call(AsyncMock(return_value="ok"))

    @pytest.mark.asyncio
    async def test_untracked_exceptions_ignored(self):
        breaker = CircuitBreaker(name="test", failure_threshold=1, tracked_exceptions=(TrackerTransientError,))

        with pytest.raises(TrackerNotFoundError):
            await breaker.call(AsyncMock(side_effect=TrackerNotFoundError("404")))

        assert breaker.get_state() == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_half_open_recovers(self):
        breaker = CircuitBreaker(name="test", failure_threshold=1, timeout=0, half_open_max_calls=2)

        with pytest.raises(RuntimeError):
            await breaker.call(AsyncMock(side_effect=RuntimeError("down")))
        assert breaker.get_state() == CircuitState.OPEN

        breaker.last_failure_time -= 1
        await breaker.call(AsyncMock(return_value="ok"))
        assert breaker.get_state() == CircuitState.HALF_OPEN

        await breaker.call(AsyncMock(return_value="ok"))
        assert breaker.get_state() == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_untracked_errors_count_as_half_open_successes(self):
        breaker = CircuitBreaker(
            name="test",
            failure_threshold=1,
            timeout=0,
            half_open_max_calls=2,
            tracked_exceptions=(TrackerTransientError,)
        )

        with pytest.raises(TrackerTransientError):
            await breaker.call(AsyncMock(side_effect=TrackerTransientError("503")))
        breaker.last_failure_time -= 1

        for _ in range(2):
            with pytest.raises(TrackerNotFoundError):
                await breaker.call(AsyncMock(side_effect=TrackerNotFoundError("404")))

        assert breaker.get_state() == CircuitState.CLOSED
        assert await breaker.call(AsyncMock(return_value="ok")) == "ok"

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self):
        breaker = CircuitBreaker(name="test", failure_threshold=1, timeout=0)

        with pytest.raises(RuntimeError):
            await breaker.call(AsyncMock(side_effect=RuntimeError("down")))
        breaker.last_failure_time -= 1

        with pytest.raises(RuntimeError):
            await breaker.call(AsyncMock(side_effect=RuntimeError("still down")))

        assert breaker.get_state() == CircuitState.OPEN

    def test_tracker_breaker_configuration(self):
        breaker = create_tracker_circuit_breaker(tracked_exceptions=(TrackerTransientError,))

        assert breaker.name == "issue_tracker"
        assert breaker.failure_threshold == 5
        assert breaker.tracked_exceptions == (TrackerTransientError,)


class TestHandlePartialFailure:
    """Test batch outcome logging."""

    def test_logs_warning_on_failures(self):
        with patch("errorwatch.utils.resilience.logger") as logger:
            handle_partial_failure("process_stale_issues", 3, 2, ["#4: boom"], project_id="proj_1")

        logger.warning.assert_called_once()
        extra = logger.warning.call_args.kwargs["extra"]
        assert extra["failed_items"] == 1
        assert extra["errors"] == ["#4: boom"]
        assert extra["project_id"] == "proj_1"

    def test_logs_info_on_success(self):
        with patch("errorwatch.utils.resilience.logger") as logger:
            handle_partial_failure("process_stale_issues", 2, 2, [])

        logger.info.assert_called_once()
        logger.warning.assert_not_called()
