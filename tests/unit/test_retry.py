"""
Tests for the bounded exponential backoff retry manager.
"""

import pytest

from hms_eventbus.resilience import (
    ExponentialBackoff,
    RetryConfig,
    RetryError,
    RetryManager,
    retry_async,
)


class FlakyCall:
    """Fails a given number of times, then returns a value."""

    def __init__(self, failures: int, exc: type[Exception] = ConnectionError):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    async def __call__(self, value="ok"):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc(f"failure {self.calls}")
        return value


def no_wait(max_attempts: int = 3, **kwargs) -> RetryConfig:
    return RetryConfig(max_attempts=max_attempts, base_delay=0.0, max_delay=0.0, jitter=False, **kwargs)


@pytest.mark.unit
class TestRetryConfig:
    """Test suite for RetryConfig validation."""

    def test_defaults(self):
        config = RetryConfig()
        assert config.max_attempts == 5
        assert config.backoff_multiplier == 2.0

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryConfig(max_attempts=0)

    def test_rejects_negative_delay(self):
        with pytest.raises(ValueError):
            RetryConfig(base_delay=-1.0)


@pytest.mark.unit
class TestExponentialBackoff:
    """Test suite for backoff delays."""

    def test_delays_grow_and_cap(self):
        backoff = ExponentialBackoff(multiplier=2.0, jitter=False)
        delays = [backoff.calculate_delay(attempt, 1.0, 5.0) for attempt in range(1, 6)]
        assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_jitter_stays_within_factor(self):
        backoff = ExponentialBackoff(multiplier=2.0, jitter=True, jitter_factor=0.1)
        for _ in range(50):
            delay = backoff.calculate_delay(3, 1.0, 30.0)
            assert 3.6 <= delay <= 4.4


@pytest.mark.unit
@pytest.mark.asyncio
class TestRetryManager:
    """Test suite for RetryManager.execute_async."""

    async def test_recovers_before_attempts_run_out(self):
        call = FlakyCall(failures=2)
        result = await RetryManager(no_wait(3)).execute_async(call, "done")
        assert result == "done"
        assert call.calls == 3

    async def test_exhaustion_raises_retry_error(self):
        call = FlakyCall(failures=3)
        with pytest.raises(RetryError) as exc_info:
            await RetryManager(no_wait(3)).execute_async(call)
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_exception, ConnectionError)
        assert call.calls == 3

    async def test_non_retryable_exception_propagates_unchanged(self):
        call = FlakyCall(failures=1, exc=KeyError)
        manager = RetryManager(no_wait(3, non_retryable_exceptions=(KeyError,)))
        with pytest.raises(KeyError):
            await manager.execute_async(call)
        assert call.calls == 1

    async def test_exceptions_outside_retryable_set_are_not_retried(self):
        call = FlakyCall(failures=1, exc=ValueError)
        manager = RetryManager(no_wait(3, retryable_exceptions=(ConnectionError,)))
        with pytest.raises(ValueError):
            await manager.execute_async(call)
        assert call.calls == 1

    async def test_on_failure_sees_every_failed_attempt(self):
        seen = []

        async def on_failure(exc, attempt):
            seen.append((type(exc), attempt))

        call = FlakyCall(failures=2)
        await RetryManager(no_wait(5)).execute_async(call, on_failure=on_failure)
        assert seen == [(ConnectionError, 1), (ConnectionError, 2)]

    async def test_retry_async_helper(self):
        call = FlakyCall(failures=1)
        assert await retry_async(call, no_wait(2), "value") == "value"
