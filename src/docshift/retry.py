"""
Retry policy for transient store failures.

The executor and the safety checks talk to a remote document store. Transient
failures (ConnectivityError and the standard network errors) are retried with
a configurable backoff; everything else propagates immediately.

This module provides:
- BackoffStrategy: FIXED or EXPONENTIAL delay growth
- RetryConfig: Configuration for retry behavior
- RetryStats: Statistics for a single retried operation
- RetryError: Raised when all retries are exhausted
- calculate_backoff: Delay for a given attempt
- RetryPolicy: Explicit policy object that runs an operation with retries
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from docshift.exceptions import ConnectivityError, DocshiftError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# Exceptions retried without inspecting a classification
TRANSIENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    ConnectivityError,
    ConnectionError,
    TimeoutError,
)


class BackoffStrategy(Enum):
    """
    How the delay grows between attempts.

    Attributes:
        FIXED: initial_delay * attempt number (linear, 1x, 2x, 3x, ...)
        EXPONENTIAL: initial_delay * exponential_base ** attempt
    """

    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class RetryConfig:
    """
    Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts (0 = no retries)
        initial_delay: Delay in seconds before the first retry
        max_delay: Maximum delay in seconds between retries
        strategy: FIXED (linear) or EXPONENTIAL growth
        exponential_base: Base for exponential backoff calculation
        jitter: Fraction of delay to add as random jitter (0-1)

    Example:
        >>> config = RetryConfig(max_retries=3, initial_delay=2.0)
        >>> config.strategy
        <BackoffStrategy.FIXED: 'fixed'>
    """

    max_retries: int = 3
    initial_delay: float = 2.0
    max_delay: float = 60.0
    strategy: BackoffStrategy = BackoffStrategy.FIXED
    exponential_base: float = 2.0
    jitter: float = 0.0

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.max_retries < 0:
            raise ValueError(
                f"max_retries must be >= 0, got {self.max_retries}. Use 0 for no retries."
            )

        if self.initial_delay < 0:
            raise ValueError(f"initial_delay must be >= 0, got {self.initial_delay}.")

        if self.max_delay < self.initial_delay:
            raise ValueError(
                f"max_delay ({self.max_delay}) must be >= initial_delay ({self.initial_delay})."
            )

        if self.exponential_base <= 1.0:
            raise ValueError(f"exponential_base must be > 1.0, got {self.exponential_base}.")

        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError(f"jitter must be between 0.0 and 1.0, got {self.jitter}.")

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "initial_delay": self.initial_delay,
            "max_delay": self.max_delay,
            "strategy": self.strategy.value,
            "exponential_base": self.exponential_base,
            "jitter": self.jitter,
        }


@dataclass
class RetryStats:
    """
    Statistics for a retried operation.

    Attributes:
        attempts: Total number of attempts (including initial)
        failures: Number of failed attempts
        total_delay_seconds: Total time spent in delays
        last_error: String representation of the last error
    """

    attempts: int = 0
    failures: int = 0
    total_delay_seconds: float = 0.0
    last_error: str | None = None


class RetryError(DocshiftError):
    """
    Raised when all retry attempts fail.

    Attributes:
        attempts: Number of attempts made
        last_error: The last exception that was raised
    """

    def __init__(self, message: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


def calculate_backoff(attempt: int, config: RetryConfig) -> float:
    """
    Calculate the delay before retrying.

    Args:
        attempt: Current attempt number (0-based; 0 is the first retry)
        config: Retry configuration

    Returns:
        Delay in seconds

    Example:
        >>> calculate_backoff(0, RetryConfig(initial_delay=2.0))
        2.0
        >>> calculate_backoff(2, RetryConfig(initial_delay=2.0))
        6.0
    """
    if config.strategy is BackoffStrategy.EXPONENTIAL:
        delay = config.initial_delay * (config.exponential_base**attempt)
    else:
        delay = config.initial_delay * (attempt + 1)

    delay = min(delay, config.max_delay)

    if config.jitter:
        jitter_range = delay * config.jitter
        delay += random.uniform(-jitter_range, jitter_range)  # nosec B311 - not crypto

    return max(0.0, delay)


def is_retryable_exception(
    exception: BaseException,
    retryable_exceptions: tuple[type[BaseException], ...] = TRANSIENT_EXCEPTIONS,
) -> bool:
    """
    Check if an exception should be retried.

    DocshiftError subclasses are retried when their classification is
    transient; other exceptions are matched against retryable_exceptions.
    """
    if isinstance(exception, DocshiftError):
        return exception.recoverability.should_retry
    return isinstance(exception, retryable_exceptions)


class RetryPolicy:
    """
    Explicit retry policy applied to store operations.

    Example:
        >>> policy = RetryPolicy(RetryConfig(max_retries=3, initial_delay=2.0))
        >>> await policy.run(lambda: store.commit_batch("trades", docs), "commit_page")
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        retryable_exceptions: tuple[type[BaseException], ...] = TRANSIENT_EXCEPTIONS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """
        Args:
            config: Retry configuration (defaults to 3 retries, linear 2s)
            retryable_exceptions: Non-docshift exception types to retry on
            sleep: Awaitable sleep used between attempts (injectable for tests)
        """
        self.config = config or RetryConfig()
        self._retryable = retryable_exceptions
        self._sleep = sleep

    @property
    def max_attempts(self) -> int:
        return self.config.max_retries + 1

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "operation",
        *,
        on_retry: Callable[[int, BaseException, float], None] | None = None,
    ) -> T:
        """
        Run an operation, retrying transient failures.

        Args:
            operation: Async callable to execute
            operation_name: Name for logging purposes
            on_retry: Callback invoked before each retry (attempt, error, delay)

        Returns:
            Result of the successful attempt

        Raises:
            RetryError: If all retries are exhausted
            Exception: Non-retryable exceptions are raised immediately
        """
        stats = RetryStats()
        last_error: BaseException | None = None

        for attempt in range(self.max_attempts):
            stats.attempts += 1
            try:
                result = await operation()
            except Exception as e:
                if not is_retryable_exception(e, self._retryable):
                    raise

                last_error = e
                stats.failures += 1
                stats.last_error = str(e)

                if attempt >= self.config.max_retries:
                    break

                delay = calculate_backoff(attempt, self.config)
                stats.total_delay_seconds += delay
                logger.warning(
                    "Retryable error in '%s' (attempt %d/%d): %s. Retrying in %.2fs",
                    operation_name,
                    attempt + 1,
                    self.max_attempts,
                    e,
                    delay,
                )
                if on_retry:
                    on_retry(attempt, e, delay)
                await self._sleep(delay)
            else:
                if attempt > 0:
                    logger.info(
                        "Operation '%s' succeeded after %d retries",
                        operation_name,
                        attempt,
                    )
                return result

        assert last_error is not None
        logger.error(
            "Exhausted %d attempts for '%s': %s",
            stats.attempts,
            operation_name,
            last_error,
        )
        raise RetryError(
            f"{operation_name} failed after {stats.attempts} attempts: {last_error}",
            attempts=stats.attempts,
            last_error=last_error,
        )


__all__ = [
    "BackoffStrategy",
    "RetryConfig",
    "RetryError",
    "RetryPolicy",
    "RetryStats",
    "TRANSIENT_EXCEPTIONS",
    "calculate_backoff",
    "is_retryable_exception",
]
