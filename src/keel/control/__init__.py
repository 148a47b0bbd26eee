"""Keel Control Layer.

Safety mechanisms around unreliable sources, enforced by the system rather
than by prompts.

Components:
- circuit_breaker: Per-source fail-fast breakers and their registry
- retry: Retry strategies (basic, fail-closed, classified by error type)
"""

from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitStats,
)
from .retry import (
    RETRY_POLICIES,
    Backoff,
    ErrorClass,
    RetryConfig,
    RetryMode,
    RetryPolicy,
    RetryStrategy,
    classify_error,
    with_retry,
)

__all__ = [
    # Circuit breakers
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitStats",
    # Retry
    "RetryStrategy",
    "RetryConfig",
    "RetryMode",
    "RetryPolicy",
    "Backoff",
    "ErrorClass",
    "RETRY_POLICIES",
    "classify_error",
    "with_retry",
]
