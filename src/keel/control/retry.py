"""Retry strategy for Keel.

Provides retry mechanisms with configurable strategies:
- Basic: Retry every error with exponential backoff
- Fail-Closed: Retry only explicitly retryable errors, fail on the rest
- Classified: Pick max retries and backoff from the error's class
"""

import asyncio
import inspect
import logging
import random
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Type

from ..exceptions import (
    CircuitOpenError,
    ConflictError,
    RepairExhaustedError,
    RetriesExhaustedError,
    SchemaValidationError,
    StoreUnavailableError,
)

logger = logging.getLogger(__name__)


class RetryMode(str, Enum):
    """Retry mode."""

    BASIC = "basic"  # Retry all errors
    FAIL_CLOSED = "fail_closed"  # Retry only retryable_errors
    CLASSIFIED = "classified"  # Per-class policy from RETRY_POLICIES


class ErrorClass(str, Enum):
    """Classes of failure that call for different retry behaviour."""

    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    NETWORK = "network"
    AUTHENTICATION = "authentication"
    MALFORMED_OUTPUT = "malformed_output"
    SCHEMA_MISMATCH = "schema_mismatch"
    CONFLICT = "conflict"
    CIRCUIT_OPEN = "circuit_open"
    UNKNOWN = "unknown"


class Backoff(str, Enum):
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    NONE = "none"


@dataclass(frozen=True)
class RetryPolicy:
    """How one class of error is retried."""

    max_retries: int
    backoff: Backoff = Backoff.EXPONENTIAL
    base_delay: float = 1.0  # seconds
    escalate: bool = False  # Re-raise immediately, never retry


RETRY_POLICIES: dict[ErrorClass, RetryPolicy] = {
    ErrorClass.RATE_LIMIT: RetryPolicy(max_retries=5, backoff=Backoff.EXPONENTIAL, base_delay=2.0),
    ErrorClass.TIMEOUT: RetryPolicy(max_retries=3, backoff=Backoff.LINEAR, base_delay=1.0),
    ErrorClass.NETWORK: RetryPolicy(max_retries=3, backoff=Backoff.EXPONENTIAL, base_delay=1.0),
    # Regenerating output is worth one more try, immediately
    ErrorClass.MALFORMED_OUTPUT: RetryPolicy(max_retries=1, backoff=Backoff.NONE, base_delay=0.0),
    ErrorClass.SCHEMA_MISMATCH: RetryPolicy(max_retries=1, backoff=Backoff.NONE, base_delay=0.0),
    ErrorClass.CONFLICT: RetryPolicy(max_retries=3, backoff=Backoff.EXPONENTIAL, base_delay=0.1),
    # Needs a human, or routing around a quarantined source
    ErrorClass.AUTHENTICATION: RetryPolicy(max_retries=0, backoff=Backoff.NONE, escalate=True),
    ErrorClass.CIRCUIT_OPEN: RetryPolicy(max_retries=0, backoff=Backoff.NONE, escalate=True),
    ErrorClass.UNKNOWN: RetryPolicy(max_retries=2, backoff=Backoff.LINEAR, base_delay=2.0),
}

_MESSAGE_PATTERNS: list[tuple[ErrorClass, tuple[str, ...]]] = [
    (ErrorClass.RATE_LIMIT, ("rate limit", "429", "too many requests")),
    (ErrorClass.TIMEOUT, ("timeout", "timed out", "504", "gateway timeout")),
    (ErrorClass.AUTHENTICATION, ("unauthorized", "401", "authentication", "invalid api key")),
    (ErrorClass.MALFORMED_OUTPUT, ("unexpected token", "parsing error", "invalid syntax", "expecting value")),
    (ErrorClass.NETWORK, ("network", "econnrefused", "enotfound", "connection")),
]


def classify_error(error: BaseException) -> ErrorClass:
    """Classify an error by type, falling back to message heuristics."""
    if isinstance(error, ConflictError):
        return ErrorClass.CONFLICT
    if isinstance(error, CircuitOpenError):
        return ErrorClass.CIRCUIT_OPEN
    if isinstance(error, RepairExhaustedError):
        return ErrorClass.MALFORMED_OUTPUT
    if isinstance(error, SchemaValidationError):
        return ErrorClass.SCHEMA_MISMATCH
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ErrorClass.TIMEOUT
    if isinstance(error, (StoreUnavailableError, ConnectionError)):
        return ErrorClass.NETWORK

    message = str(error).lower()
    for error_class, needles in _MESSAGE_PATTERNS:
        if any(needle in message for needle in needles):
            return error_class
    return ErrorClass.UNKNOWN


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    initial_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    exponential_base: float = 2.0
    jitter: bool = True  # Add randomness to delay
    mode: RetryMode = RetryMode.BASIC

    # Errors that should NOT be retried (fail immediately)
    fail_fast_errors: list[Type[Exception]] = field(default_factory=list)

    # Errors that SHOULD be retried
    retryable_errors: list[Type[Exception]] = field(default_factory=list)

    # Used in CLASSIFIED mode
    policies: dict[ErrorClass, RetryPolicy] = field(default_factory=lambda: dict(RETRY_POLICIES))


class RetryStrategy:
    """Handles retry logic for operations.

    Example:
        strategy = RetryStrategy(config=RetryConfig(mode=RetryMode.CLASSIFIED))

        # Retry a function
        result = await strategy.execute(call_model, prompt)

        # Or use as decorator
        @strategy.wrap
        async def my_function():
            ...
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        on_retry: Callable[[int, Exception, float], None] | None = None,
        on_failure: Callable[[int, Exception], None] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize retry strategy.

        Args:
            config: Retry configuration.
            on_retry: Callback on retry (attempt, error, delay).
            on_failure: Callback on final failure (attempts, error).
            sleep: Awaitable sleep used between attempts.
        """
        self._config = config or RetryConfig()
        self._on_retry = on_retry
        self._on_failure = on_failure
        self._sleep = sleep
        self._lock = threading.RLock()
        self._stats = {
            "total_attempts": 0,
            "successful_retries": 0,
            "failed_retries": 0,
        }

    @property
    def config(self) -> RetryConfig:
        return self._config

    def _attempt_budget(self, error: Exception) -> int:
        """Total attempts allowed given the latest error."""
        if self._config.mode == RetryMode.CLASSIFIED:
            policy = self._config.policies[classify_error(error)]
            return 1 if policy.escalate else policy.max_retries + 1
        return self._config.max_attempts

    def _should_retry(self, error: Exception) -> bool:
        """Determine if error should be retried."""
        # Fail-fast errors never retry
        for error_type in self._config.fail_fast_errors:
            if isinstance(error, error_type):
                return False

        if self._config.mode == RetryMode.CLASSIFIED:
            return not self._config.policies[classify_error(error)].escalate

        # In fail-closed mode, only retry explicitly retryable errors
        if self._config.mode == RetryMode.FAIL_CLOSED:
            return any(isinstance(error, e) for e in self._config.retryable_errors)

        if self._config.retryable_errors:
            return any(isinstance(error, e) for e in self._config.retryable_errors)

        return True

    def _calculate_delay(self, attempt: int, error: Exception) -> float:
        """Calculate delay before the next attempt."""
        if self._config.mode == RetryMode.CLASSIFIED:
            policy = self._config.policies[classify_error(error)]
            if policy.backoff == Backoff.EXPONENTIAL:
                delay = policy.base_delay * (2 ** (attempt - 1))
            elif policy.backoff == Backoff.LINEAR:
                delay = policy.base_delay * attempt
            else:
                delay = 0.0
        else:
            delay = self._config.initial_delay * (
                self._config.exponential_base ** (attempt - 1)
            )

        delay = min(delay, self._config.max_delay)

        if self._config.jitter:
            delay = delay * (0.5 + random.random())

        return delay

    def _fail(self, attempt: int, error: Exception) -> None:
        with self._lock:
            self._stats["failed_retries"] += 1
        if self._on_failure:
            self._on_failure(attempt, error)

    async def execute(
        self,
        func: Callable[..., Any],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """Execute function with retry logic.

        Args:
            func: Function to execute; its result is awaited if awaitable.
            *args: Positional arguments.
            **kwargs: Keyword arguments.

        Returns:
            Function result.

        Raises:
            RetriesExhaustedError: If all attempts fail with retryable errors.
            Exception: The original error if it is not retryable.
        """
        attempt = 0
        while True:
            attempt += 1
            with self._lock:
                self._stats["total_attempts"] += 1

            try:
                result = func(*args, **kwargs)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as e:
                logger.debug("Attempt %d failed: %s", attempt, e)

                if not self._should_retry(e):
                    self._fail(attempt, e)
                    raise

                if attempt >= self._attempt_budget(e):
                    self._fail(attempt, e)
                    raise RetriesExhaustedError(attempt, e) from e

                delay = self._calculate_delay(attempt, e)
                logger.info(
                    "Retrying in %.2fs (attempt %d failed: %s)", delay, attempt, type(e).__name__
                )
                if self._on_retry:
                    self._on_retry(attempt, e, delay)

                if delay > 0:
                    await self._sleep(delay)
                continue

            if attempt > 1:
                with self._lock:
                    self._stats["successful_retries"] += 1
            return result

    def wrap(self, func: Callable) -> Callable:
        """Decorator to wrap an async function with retry logic."""

        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            return await self.execute(func, *args, **kwargs)

        async_wrapper.__name__ = getattr(func, "__name__", "wrapped")
        async_wrapper.__doc__ = func.__doc__
        return async_wrapper

    def get_stats(self) -> dict[str, int]:
        """Get retry statistics."""
        with self._lock:
            return dict(self._stats)

    def reset_stats(self) -> None:
        """Reset statistics."""
        with self._lock:
            self._stats = {
                "total_attempts": 0,
                "successful_retries": 0,
                "failed_retries": 0,
            }


# Convenience function
def with_retry(
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    mode: RetryMode = RetryMode.BASIC,
) -> Callable:
    """Decorator factory for retry logic.

    Example:
        @with_retry(mode=RetryMode.CLASSIFIED)
        async def call_model():
            ...
    """
    config = RetryConfig(
        max_attempts=max_attempts,
        initial_delay=initial_delay,
        mode=mode,
    )
    strategy = RetryStrategy(config=config)
    return strategy.wrap
