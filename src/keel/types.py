"""Core types and data models for Keel."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Enums
# =============================================================================


class CircuitState(str, Enum):
    """State of a circuit breaker."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Blocking all calls
    HALF_OPEN = "half_open"  # Testing if source recovered


class RepairStrategy(str, Enum):
    """Repair strategies, in the order they are tried."""

    DIRECT = "direct"
    EXTRACTED = "extracted"
    CLEANED = "cleaned"
    FIXER = "fixer"


class SchemaKind(str, Enum):
    """Kinds of value a schema descriptor can require."""

    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"
    NULL = "null"


class CheckpointStatus(str, Enum):
    """Lifecycle status of a checkpoint."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# =============================================================================
# Shared State
# =============================================================================


class StoreSnapshot(BaseModel):
    """Values read from the shared store and the version they were read at."""

    values: dict[str, Any] = Field(default_factory=dict)
    version: int = 0


class StorePatch(BaseModel):
    """A patch computed by a read-modify-write callback."""

    updates: dict[str, Any] = Field(default_factory=dict)
    deletes: list[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.updates and not self.deletes


class WriteRecord(BaseModel):
    """Audit entry for a committed write."""

    version: int
    agent_id: str | None = None
    keys: list[str] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=datetime.now)


# =============================================================================
# Circuit Breakers
# =============================================================================


class CircuitSnapshot(BaseModel):
    """Read-only view of a circuit breaker."""

    breaker_id: str
    state: CircuitState
    failure_count: int = 0
    success_count: int = 0
    failure_threshold: int
    half_open_in_flight: int = 0
    last_failure_time: float | None = None
    last_failure_error: str | None = None
    last_state_change: float
    retry_in: float | None = Field(
        default=None, description="Seconds until an OPEN circuit admits a probe"
    )


# =============================================================================
# Schema Validation
# =============================================================================


class SchemaDescriptor(BaseModel):
    """Declarative shape of a structured value.

    Descriptors are immutable once built and nest for objects (``properties``)
    and arrays (``items``). A descriptor without ``kind`` accepts any value.
    """

    model_config = ConfigDict(frozen=True)

    kind: SchemaKind | None = None
    description: str | None = None
    required: tuple[str, ...] = ()
    properties: dict[str, "SchemaDescriptor"] = Field(default_factory=dict)
    items: "SchemaDescriptor | None" = None
    min_length: int | None = None
    max_length: int | None = None
    minimum: float | None = None
    maximum: float | None = None
    min_items: int | None = None
    max_items: int | None = None
    enum: tuple[Any, ...] | None = None

    @classmethod
    def from_json_schema(cls, schema: dict[str, Any]) -> "SchemaDescriptor":
        """Build a descriptor from a JSON Schema style dict.

        Supports ``type``, ``required``, ``properties``, ``items``,
        ``minLength``, ``maxLength``, ``minimum``, ``maximum``, ``minItems``,
        ``maxItems``, ``enum`` and ``description``. Other keywords are ignored.

        Raises:
            ValueError: If ``type`` is not a single known kind.
        """
        kind = schema.get("type")
        if kind is not None and not isinstance(kind, str):
            raise ValueError(f"Union types are not supported: {kind!r}")

        items = schema.get("items")
        enum = schema.get("enum")
        return cls(
            kind=SchemaKind(kind) if kind is not None else None,
            description=schema.get("description"),
            required=tuple(schema.get("required", ())),
            properties={
                name: cls.from_json_schema(sub)
                for name, sub in schema.get("properties", {}).items()
            },
            items=cls.from_json_schema(items) if isinstance(items, dict) else None,
            min_length=schema.get("minLength"),
            max_length=schema.get("maxLength"),
            minimum=schema.get("minimum"),
            maximum=schema.get("maximum"),
            min_items=schema.get("minItems"),
            max_items=schema.get("maxItems"),
            enum=tuple(enum) if enum is not None else None,
        )

    def to_json_schema(self) -> dict[str, Any]:
        """Export as a JSON Schema style dict (used as a repair hint)."""
        schema: dict[str, Any] = {}
        if self.kind is not None:
            schema["type"] = self.kind.value
        if self.description:
            schema["description"] = self.description
        if self.required:
            schema["required"] = list(self.required)
        if self.properties:
            schema["properties"] = {
                name: sub.to_json_schema() for name, sub in self.properties.items()
            }
        if self.items is not None:
            schema["items"] = self.items.to_json_schema()

        bounds = {
            "minLength": self.min_length,
            "maxLength": self.max_length,
            "minimum": self.minimum,
            "maximum": self.maximum,
            "minItems": self.min_items,
            "maxItems": self.max_items,
        }
        schema.update({k: v for k, v in bounds.items() if v is not None})
        if self.enum is not None:
            schema["enum"] = list(self.enum)
        return schema


SchemaDescriptor.model_rebuild()


class SchemaViolation(BaseModel):
    """A single schema violation."""

    path: str
    message: str
    received: Any = None


class ValidationResult(BaseModel):
    """Outcome of validating a value against a registered schema."""

    valid: bool
    errors: list[SchemaViolation] = Field(default_factory=list)
    skipped: bool = False


# =============================================================================
# Repair
# =============================================================================


class RepairAttempt(BaseModel):
    """One failed repair strategy within a single parse call."""

    strategy: RepairStrategy
    error: str


class RepairContext(BaseModel):
    """Caller context for a parse call."""

    source: str | None = Field(default=None, description="Worker that produced the text")
    schema_key: str | None = Field(default=None, description="Schema used as a fixer hint")


# =============================================================================
# Checkpoints
# =============================================================================


class CheckpointRecord(BaseModel):
    """A pipeline pause point awaiting sign-off."""

    checkpoint_id: str
    payload: Any = None
    status: CheckpointStatus = CheckpointStatus.PENDING
    created_at: datetime = Field(default_factory=datetime.now)
    deadline: datetime
    approved: bool | None = None
    feedback: str | None = None
    auto_approved: bool = False
    resolved_at: datetime | None = None

    @property
    def resolved(self) -> bool:
        return self.status != CheckpointStatus.PENDING


class CheckpointResult(BaseModel):
    """Verdict returned to the stage that requested a checkpoint."""

    approved: bool
    feedback: str | None = None
    auto_approved: bool = False
