"""Custom exceptions for Keel."""

from typing import Any


class KeelError(Exception):
    """Base exception for all Keel errors."""

    pass


# =============================================================================
# Store Exceptions
# =============================================================================


class StoreError(KeelError):
    """Base exception for shared store errors."""

    pass


class StoreUnavailableError(StoreError):
    """Raised when the backing store cannot be reached."""

    def __init__(self, backend: str, original_error: Exception | None = None):
        self.backend = backend
        self.original_error = original_error
        detail = f": {original_error}" if original_error else ""
        super().__init__(f"Store backend '{backend}' unavailable{detail}")


class ConflictError(StoreError):
    """Raised when an optimistic write loses to a concurrent writer."""

    def __init__(self, expected_version: int, actual_version: int | None = None):
        self.expected_version = expected_version
        self.actual_version = actual_version
        if actual_version is None:
            message = (
                f"Write aborted: state changed while committing version "
                f"{expected_version + 1}. Retry with a fresh read."
            )
        else:
            message = (
                f"State version mismatch. Expected {expected_version}, "
                f"got {actual_version}. Retry with a fresh read."
            )
        super().__init__(message)


class RetriesExhaustedError(KeelError):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, attempts: int, last_error: Exception):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Retry exhausted after {attempts} attempts: {last_error}")


# =============================================================================
# Control Layer Exceptions
# =============================================================================


class CircuitOpenError(KeelError):
    """Raised when a circuit breaker refuses a call."""

    def __init__(self, breaker_id: str, reason: str, retry_in: float | None = None):
        self.breaker_id = breaker_id
        self.reason = reason
        self.retry_in = retry_in
        super().__init__(f"Circuit breaker '{breaker_id}' is OPEN: {reason}")


# =============================================================================
# Repair / Schema Exceptions
# =============================================================================


class RepairExhaustedError(KeelError):
    """Raised when no repair strategy could turn text into structured data."""

    def __init__(self, attempts: list[Any], raw_excerpt: str, source: str | None = None):
        self.attempts = attempts
        self.raw_excerpt = raw_excerpt
        self.source = source
        trail = "; ".join(f"{a.strategy.value}: {a.error}" for a in attempts)
        prefix = f"[{source}] " if source else ""
        super().__init__(
            f"{prefix}Could not parse output after {len(attempts)} strategies: {trail}"
        )


class SchemaValidationError(KeelError):
    """Raised when parsed output doesn't match the registered schema."""

    def __init__(self, schema_key: str, violations: list[Any], value: Any = None):
        self.schema_key = schema_key
        self.violations = violations
        self.value = value
        error_list = "; ".join(f"{v.path}: {v.message}" for v in violations[:5])
        if len(violations) > 5:
            error_list += f" ... and {len(violations) - 5} more"
        super().__init__(f"Schema validation failed for '{schema_key}': {error_list}")


class SchemaRegistrationError(KeelError):
    """Raised when a schema key is registered twice with different shapes."""

    def __init__(self, schema_key: str):
        self.schema_key = schema_key
        super().__init__(
            f"Schema '{schema_key}' is already registered with a different descriptor"
        )


# =============================================================================
# Checkpoint Exceptions
# =============================================================================


class CheckpointError(KeelError):
    """Raised when checkpoint operations fail."""

    pass


class CheckpointNotFoundError(CheckpointError):
    """Raised when a checkpoint cannot be found."""

    def __init__(self, checkpoint_id: str):
        self.checkpoint_id = checkpoint_id
        super().__init__(f"Checkpoint '{checkpoint_id}' not found")


# =============================================================================
# Fixer Exceptions
# =============================================================================


class FixerError(KeelError):
    """Raised when the output fixer model call fails."""

    def __init__(self, provider: str, message: str, original_error: Exception | None = None):
        self.provider = provider
        self.original_error = original_error
        super().__init__(f"[{provider}] {message}")
