"""Keel - Resilience and coordination for fleets of LLM workers.

Simple usage:
    from keel import Keel

    keel = Keel()
    data = await keel.repair.parse_and_validate(raw_output, "ideation")
    await keel.store.write_with_retry(lambda state: {"ideas": data["ideas"]})

Advanced usage:
    from keel import VersionedStore, RedisBackend, CircuitBreakerRegistry
"""

__version__ = "0.1.0"

# =============================================================================
# SIMPLE API (start here)
# =============================================================================

from .client import CIRCUIT_CHANNEL, Keel, run_sync
from .config import CheckpointSettings, CircuitSettings, KeelSettings, StoreSettings

# =============================================================================
# ADVANCED API
# =============================================================================

# Types
from .types import (
    CheckpointRecord,
    CheckpointResult,
    CheckpointStatus,
    CircuitSnapshot,
    CircuitState,
    RepairAttempt,
    RepairContext,
    RepairStrategy,
    SchemaDescriptor,
    SchemaKind,
    SchemaViolation,
    StorePatch,
    StoreSnapshot,
    ValidationResult,
    WriteRecord,
)

# Exceptions
from .exceptions import (
    CheckpointError,
    CheckpointNotFoundError,
    CircuitOpenError,
    ConflictError,
    FixerError,
    KeelError,
    RepairExhaustedError,
    RetriesExhaustedError,
    SchemaRegistrationError,
    SchemaValidationError,
    StoreError,
    StoreUnavailableError,
)

# Control
from .control import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    ErrorClass,
    RetryConfig,
    RetryMode,
    RetryStrategy,
    classify_error,
    with_retry,
)

# Coordination
from .coordination import (
    AnthropicFixer,
    CheckpointGate,
    InMemoryBackend,
    RedisBackend,
    RepairPipeline,
    SchemaValidator,
    StoreBackend,
    StoreConfig,
    Subscription,
    VersionedStore,
    create_schema_from_example,
)

# Logging
from .utils import StructuredLogger, configure_logging, get_logger

__all__ = [
    "__version__",
    # Simple API
    "Keel",
    "run_sync",
    "CIRCUIT_CHANNEL",
    "KeelSettings",
    "CircuitSettings",
    "StoreSettings",
    "CheckpointSettings",
    # Types
    "CheckpointRecord",
    "CheckpointResult",
    "CheckpointStatus",
    "CircuitSnapshot",
    "CircuitState",
    "RepairAttempt",
    "RepairContext",
    "RepairStrategy",
    "SchemaDescriptor",
    "SchemaKind",
    "SchemaViolation",
    "StorePatch",
    "StoreSnapshot",
    "ValidationResult",
    "WriteRecord",
    # Exceptions
    "KeelError",
    "StoreError",
    "StoreUnavailableError",
    "ConflictError",
    "RetriesExhaustedError",
    "CircuitOpenError",
    "RepairExhaustedError",
    "SchemaValidationError",
    "SchemaRegistrationError",
    "CheckpointError",
    "CheckpointNotFoundError",
    "FixerError",
    # Control
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "RetryStrategy",
    "RetryConfig",
    "RetryMode",
    "ErrorClass",
    "classify_error",
    "with_retry",
    # Coordination
    "StoreBackend",
    "InMemoryBackend",
    "RedisBackend",
    "Subscription",
    "VersionedStore",
    "StoreConfig",
    "SchemaValidator",
    "create_schema_from_example",
    "RepairPipeline",
    "AnthropicFixer",
    "CheckpointGate",
    # Logging
    "configure_logging",
    "get_logger",
    "StructuredLogger",
]
