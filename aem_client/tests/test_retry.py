"""
Unit tests for the retry executor.
"""

import asyncio
import errno
from unittest.mock import AsyncMock, patch

import pytest

from aem_shared.errors import (
    AEMException,
    ErrorKind,
    OperationTimeoutError,
    ServerError,
    ValidationError,
)
from aem_shared.retry import (
    RETRY_PRESETS,
    RetryConfig,
    RetryExecutor,
    calculate_delay,
    is_retryable,
)


def scripted(*outcomes):
    """Async operation returning or raising each outcome in turn."""
    calls = {"count": 0}

    async def operation():
        outcome = outcomes[min(calls["count"], len(outcomes) - 1)]
        calls["count"] += 1
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    operation.calls = calls
    return operation


class TestRetryExecutor:
    """Test cases for RetryExecutor."""

    @pytest.fixture
    def executor(self):
        return RetryExecutor(RetryConfig(max_attempts=3, base_delay=1.0, jitter=False, timeout=1.0))

    @pytest.fixture
    def mock_sleep(self):
        with patch("aem_shared.retry.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            yield mock_sleep

    @pytest.mark.asyncio
    async def test_first_attempt_success(self, executor, mock_sleep):
        """Test that a successful operation is not retried."""
        result = await executor.execute(scripted("done"))

        assert result.success is True
        assert result.result == "done"
        assert result.attempts == 1
        assert result.fallback_used is False
        mock_sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_recovers_after_retryable_failures(self, executor, mock_sleep):
        """Test that recoverable failures are retried with exponential delays."""
        operation = scripted(ServerError(), ServerError(), "recovered")

        result = await executor.execute(operation)

        assert result.success is True
        assert result.result == "recovered"
        assert result.attempts == 3
        assert [c.args[0] for c in mock_sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_non_retryable_error_stops_immediately(self, executor, mock_sleep):
        """Test that a validation failure is never retried."""
        operation = scripted(ValidationError("bad path"), "unreachable")

        result = await executor.execute(operation)

        assert result.success is False
        assert result.attempts == 1
        assert isinstance(result.error, ValidationError)
        assert operation.calls["count"] == 1
        mock_sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_exhausts_attempts(self, executor, mock_sleep):
        """Test that the last error is reported once attempts run out."""
        result = await executor.execute(scripted(ServerError("still down")))

        assert result.success is False
        assert result.attempts == 3
        assert result.error.message == "still down"
        assert mock_sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_attempt_timeout_is_a_timeout_error(self):
        """Test that an attempt exceeding its deadline fails as TIMEOUT."""
        executor = RetryExecutor()

        async def hang():
            await asyncio.Event().wait()

        result = await executor.execute(hang, config=RetryConfig(max_attempts=1, timeout=0.05))

        assert result.success is False
        assert isinstance(result.error, OperationTimeoutError)
        assert result.error.kind == ErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_fallback_runs_once_after_exhaustion(self, executor, mock_sleep):
        """Test that the fallback result becomes the final result."""
        fallback = AsyncMock(return_value={"source": "fallback"})

        result = await executor.execute(scripted(ServerError()), fallback=fallback)

        assert result.success is True
        assert result.result == {"source": "fallback"}
        assert result.fallback_used is True
        assert result.attempts == 3
        fallback.assert_awaited_once()
        assert mock_sleep.await_args_list[-1].args[0] == 5.0

    @pytest.mark.asyncio
    async def test_fallback_failure_is_final(self, executor, mock_sleep):
        """Test that a failing fallback is not retried and its error is reported."""
        fallback = AsyncMock(side_effect=RuntimeError("fallback broke"))

        result = await executor.execute(scripted(ValidationError()), fallback=fallback)

        assert result.success is False
        assert result.fallback_used is True
        assert str(result.error) == "fallback broke"
        fallback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_fallback_disabled(self, mock_sleep):
        """Test that a disabled fallback is never invoked."""
        executor = RetryExecutor()
        fallback = AsyncMock(return_value="unused")

        result = await executor.execute(
            scripted(ValidationError()),
            config=RetryConfig(fallback_enabled=False),
            fallback=fallback,
        )

        assert result.success is False
        fallback.assert_not_called()

    @pytest.mark.asyncio
    async def test_stats_per_context(self, executor, mock_sleep):
        """Test that counters are kept per context."""
        await executor.execute(scripted("ok"), context="pages")
        await executor.execute(scripted(ValidationError()), context="pages")

        stats = executor.get_stats()["pages"]
        assert stats["attempts"] == 2
        assert stats["successes"] == 1
        assert stats["failures"] == 1
        assert stats["success_rate"] == 0.5


class TestRetryPolicy:
    """Test cases for delays, classification and presets."""

    def test_calculate_delay_without_jitter(self):
        """Test exponential growth capped by max_delay."""
        config = RetryConfig(base_delay=1.0, exponential_base=2.0, max_delay=3.0, jitter=False)

        assert calculate_delay(1, config) == 1.0
        assert calculate_delay(2, config) == 2.0
        assert calculate_delay(3, config) == 3.0
        assert calculate_delay(10, config) == 3.0

    def test_calculate_delay_jitter_bounds(self):
        """Test that jitter adds at most 25%."""
        config = RetryConfig(base_delay=2.0, max_delay=30.0, jitter=True)

        for _ in range(50):
            delay = calculate_delay(2, config)
            assert 4.0 <= delay <= 5.0

    def test_is_retryable_classification(self):
        """Test retryability by kind, status, errno and recoverable flag."""
        config = RETRY_PRESETS["default"]

        assert is_retryable(ServerError(), config) is True
        assert is_retryable(ValidationError(), config) is False
        assert is_retryable(
            AEMException(ErrorKind.UNKNOWN, "gateway", details={"status_code": 503}), config
        ) is True
        assert is_retryable(ConnectionResetError(errno.ECONNRESET, "reset by peer"), config) is True
        assert is_retryable(ValueError("bad input"), config) is False

    def test_aem_preset_retries_busy_codes(self):
        """Test that AEM busy codes are retryable only under the aem preset."""
        busy = AEMException(ErrorKind.UNKNOWN, "instance busy", details={"error_code": "AEM_BUSY"})

        assert is_retryable(busy, RetryConfig.for_kind("aem")) is True
        assert is_retryable(busy, RetryConfig.for_kind("default")) is False

    def test_presets(self):
        """Test preset values and lookup."""
        http = RetryConfig.for_kind("http")
        assert http.max_attempts == 5
        assert 522 in http.retryable_status_codes
        assert RetryConfig.for_kind("cache").retryable_status_codes == frozenset()
        assert RetryConfig.for_kind("bulk").base_delay == 2.0

        with pytest.raises(ValueError):
            RetryConfig.for_kind("unknown")

    def test_with_overrides_ignores_none(self):
        """Test that None overrides keep the preset value."""
        config = RETRY_PRESETS["aem"].with_overrides(max_attempts=None, timeout=2.5)

        assert config.max_attempts == 3
        assert config.timeout == 2.5

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            RetryConfig(max_attempts=0)
