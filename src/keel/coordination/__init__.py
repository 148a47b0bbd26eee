"""Keel Coordination Layer.

Shared state and the handoff of worker output between stages.

Components:
- backends: In-memory and Redis storage with pub/sub
- store: Versioned shared state with optimistic writes
- schema: Schema registry and validator
- repair: Progressive repair of malformed output
- fixers: Model-backed last-resort repair
- checkpoint: Approval gates between pipeline stages
"""

from .backends import InMemoryBackend, RedisBackend, StoreBackend, Subscription
from .checkpoint import CHECKPOINT_CHANNEL, RESPONSE_CHANNEL, CheckpointGate
from .fixers import AnthropicFixer, Fixer, build_fix_prompt
from .repair import FIXER_BREAKER, RepairPipeline, clean_text, extract_structured
from .schema import SchemaValidator, create_schema_from_example
from .store import StoreConfig, VersionedStore

__all__ = [
    # Backends
    "StoreBackend",
    "InMemoryBackend",
    "RedisBackend",
    "Subscription",
    # Store
    "VersionedStore",
    "StoreConfig",
    # Schema
    "SchemaValidator",
    "create_schema_from_example",
    # Repair
    "RepairPipeline",
    "FIXER_BREAKER",
    "extract_structured",
    "clean_text",
    "Fixer",
    "AnthropicFixer",
    "build_fix_prompt",
    # Checkpoints
    "CheckpointGate",
    "CHECKPOINT_CHANNEL",
    "RESPONSE_CHANNEL",
]
