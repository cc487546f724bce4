"""
Retry Pattern Implementation

Provides bounded retry with exponential backoff and jitter, shared by the
broker connection, the publish path and resilient database transactions.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)


class RetryError(Exception):
    """Exception raised when all retry attempts are exhausted."""

    def __init__(self, message: str, attempts: int, last_exception: Exception | None):
        super().__init__(message)
        self.attempts = attempts
        self.last_exception = last_exception


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    # Total number of attempts, including the first one
    max_attempts: int = 5

    # Delay before the second attempt (seconds)
    base_delay: float = 1.0

    # Upper bound for a single delay (seconds)
    max_delay: float = 30.0

    # Exponential backoff multiplier
    backoff_multiplier: float = 2.0

    # Add random jitter to prevent thundering herd
    jitter: bool = True

    # Maximum jitter factor (0.0 to 1.0)
    jitter_factor: float = 0.1

    # Exception types that trigger retries
    retryable_exceptions: tuple = (Exception,)

    # Exception types that should not be retried
    non_retryable_exceptions: tuple = ()

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")


class ExponentialBackoff:
    """Exponential backoff with optional jitter."""

    def __init__(
        self, multiplier: float = 2.0, jitter: bool = True, jitter_factor: float = 0.1
    ):
        self.multiplier = multiplier
        self.jitter = jitter
        self.jitter_factor = jitter_factor

    def calculate_delay(
        self, attempt: int, base_delay: float, max_delay: float
    ) -> float:
        """Calculate exponential backoff delay."""
        delay = base_delay * (self.multiplier ** (attempt - 1))
        delay = min(delay, max_delay)

        if self.jitter:
            jitter_range = delay * self.jitter_factor
            jitter_value = random.uniform(-jitter_range, jitter_range)
            delay = max(0, delay + jitter_value)

        return delay


class RetryManager:
    """Manages retry logic for async callables."""

    def __init__(self, config: RetryConfig | None = None):
        self.config = config or RetryConfig()
        self._backoff = ExponentialBackoff(
            multiplier=self.config.backoff_multiplier,
            jitter=self.config.jitter,
            jitter_factor=self.config.jitter_factor,
        )

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        """Check if exception should trigger another attempt."""
        if attempt >= self.config.max_attempts:
            return False

        if isinstance(exception, self.config.non_retryable_exceptions):
            return False

        return isinstance(exception, self.config.retryable_exceptions)

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay after the given failed attempt."""
        return self._backoff.calculate_delay(
            attempt, self.config.base_delay, self.config.max_delay
        )

    async def execute_async(
        self,
        func: Callable[..., Awaitable[T]],
        *args,
        on_failure: Callable[[Exception, int], Awaitable[None] | None] | None = None,
        **kwargs,
    ) -> T:
        """Execute async function with retry logic.

        ``on_failure`` is called with the exception and attempt number after
        every failed attempt, before the backoff delay.

        Non-retryable exceptions propagate unchanged; exhausting the attempts
        raises ``RetryError``.
        """
        last_exception = None

        for attempt in range(1, self.config.max_attempts + 1):
            try:
                result = await func(*args, **kwargs)
                if attempt > 1:
                    logger.info("Succeeded on attempt %d/%d", attempt, self.config.max_attempts)
                return result

            except Exception as e:
                if isinstance(e, self.config.non_retryable_exceptions) or not isinstance(
                    e, self.config.retryable_exceptions
                ):
                    raise

                last_exception = e
                logger.warning(
                    "Attempt %d/%d failed: %s", attempt, self.config.max_attempts, e
                )

                if on_failure is not None:
                    outcome = on_failure(e, attempt)
                    if asyncio.iscoroutine(outcome):
                        await outcome

                if not self.should_retry(e, attempt):
                    break

                delay = self.calculate_delay(attempt)
                logger.debug("Waiting %.2f seconds before retry", delay)
                await asyncio.sleep(delay)

        raise RetryError(
            f"Operation failed after {self.config.max_attempts} attempts",
            self.config.max_attempts,
            last_exception,
        )


async def retry_async(
    func: Callable[..., Awaitable[T]], config: RetryConfig | None = None, *args, **kwargs
) -> T:
    """
    Execute async function with retry logic.

    Args:
        func: Async function to execute
        config: Retry configuration
        *args: Function arguments
        **kwargs: Function keyword arguments

    Returns:
        Function result

    Raises:
        RetryError: If all attempts fail
    """
    manager = RetryManager(config or RetryConfig())
    return await manager.execute_async(func, *args, **kwargs)
