"""Schema validation for structured worker output.

Schemas are registered once per source type and looked up by key when a
worker's parsed output needs checking. Validation walks the whole value and
reports every violation with its path, so a worker can be told everything
that is wrong with its output in one round.
"""

import math
import threading
from typing import Any

from ..exceptions import SchemaRegistrationError, SchemaValidationError
from ..types import SchemaDescriptor, SchemaKind, SchemaViolation, ValidationResult


def _normalize_key(key: str) -> str:
    return key.strip().lower()


def _kind_of(value: Any) -> str:
    """JSON kind name of a Python value."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _check_kind(value: Any, kind: SchemaKind) -> bool:
    # bool is an int subclass in Python but never a JSON number
    if kind == SchemaKind.BOOLEAN:
        return isinstance(value, bool)
    if isinstance(value, bool):
        return False
    if kind == SchemaKind.INTEGER:
        if isinstance(value, int):
            return True
        return isinstance(value, float) and math.isfinite(value) and value.is_integer()
    if kind == SchemaKind.NUMBER:
        return isinstance(value, (int, float))
    if kind == SchemaKind.STRING:
        return isinstance(value, str)
    if kind == SchemaKind.ARRAY:
        return isinstance(value, list)
    if kind == SchemaKind.OBJECT:
        return isinstance(value, dict)
    return value is None


def _enum_match(value: Any, option: Any) -> bool:
    if isinstance(value, bool) or isinstance(option, bool):
        return value is option
    return bool(value == option)


def _child(path: str, name: str) -> str:
    return f"{path}.{name}" if path else name


class SchemaValidator:
    """Registry of schema descriptors and the validator that applies them.

    Example:
        validator = SchemaValidator()
        validator.register("ideation", {
            "type": "object",
            "required": ["ideas"],
            "properties": {"ideas": {"type": "array", "minItems": 1}},
        })

        result = validator.validate({"ideas": []}, "ideation")
        # result.valid is False, result.errors[0].path == "ideas"
    """

    def __init__(self) -> None:
        self._schemas: dict[str, SchemaDescriptor] = {}
        self._lock = threading.RLock()

    def register(
        self,
        key: str,
        schema: SchemaDescriptor | dict[str, Any],
        replace: bool = False,
    ) -> SchemaDescriptor:
        """Register a schema for a source type.

        Args:
            key: Source type, matched case-insensitively.
            schema: Descriptor or JSON Schema style dict.
            replace: Allow replacing a different descriptor under the same key.

        Returns:
            The registered descriptor.

        Raises:
            SchemaRegistrationError: If the key holds a different descriptor.
        """
        descriptor = (
            schema
            if isinstance(schema, SchemaDescriptor)
            else SchemaDescriptor.from_json_schema(schema)
        )
        normalized = _normalize_key(key)
        with self._lock:
            existing = self._schemas.get(normalized)
            if existing is not None and existing != descriptor and not replace:
                raise SchemaRegistrationError(key)
            self._schemas[normalized] = descriptor
        return descriptor

    def unregister(self, key: str) -> bool:
        with self._lock:
            return self._schemas.pop(_normalize_key(key), None) is not None

    def get(self, key: str) -> SchemaDescriptor | None:
        with self._lock:
            return self._schemas.get(_normalize_key(key))

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._schemas)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def validate(self, value: Any, key: str) -> ValidationResult:
        """Validate a value against the schema registered for ``key``.

        Unknown keys are not an error: the result is valid and marked
        ``skipped``.
        """
        descriptor = self.get(key)
        if descriptor is None:
            return ValidationResult(valid=True, skipped=True)
        errors = self.validate_against(value, descriptor)
        return ValidationResult(valid=not errors, errors=errors)

    def check(self, value: Any, key: str) -> Any:
        """Validate and return the value.

        Raises:
            SchemaValidationError: If the value violates the schema.
        """
        result = self.validate(value, key)
        if not result.valid:
            raise SchemaValidationError(key, result.errors, value)
        return value

    def validate_against(self, value: Any, descriptor: SchemaDescriptor) -> list[SchemaViolation]:
        """Collect every violation of ``descriptor`` by ``value``."""
        errors: list[SchemaViolation] = []
        self._validate_value(value, descriptor, "", errors)
        return errors

    def _validate_value(
        self,
        value: Any,
        schema: SchemaDescriptor,
        path: str,
        errors: list[SchemaViolation],
    ) -> None:
        """Recursively validate a value against schema."""
        where = path or "root"

        if schema.kind is not None and not _check_kind(value, schema.kind):
            errors.append(
                SchemaViolation(
                    path=where,
                    message=f"expected type '{schema.kind.value}', got '{_kind_of(value)}'",
                    received=value,
                )
            )
            return  # Nothing else applies to the wrong kind

        if schema.enum is not None and not any(_enum_match(value, o) for o in schema.enum):
            errors.append(
                SchemaViolation(
                    path=where,
                    message=f"value must be one of {list(schema.enum)}",
                    received=value,
                )
            )

        if isinstance(value, dict):
            self._validate_object(value, schema, path, errors)
        elif isinstance(value, list):
            self._validate_array(value, schema, path, errors)
        elif isinstance(value, str):
            self._validate_string(value, schema, where, errors)
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            self._validate_number(value, schema, where, errors)

    def _validate_object(
        self,
        obj: dict[str, Any],
        schema: SchemaDescriptor,
        path: str,
        errors: list[SchemaViolation],
    ) -> None:
        for prop in schema.required:
            if prop not in obj:
                errors.append(
                    SchemaViolation(path=_child(path, prop), message="required property missing")
                )

        for key, value in obj.items():
            if key in schema.properties:
                self._validate_value(value, schema.properties[key], _child(path, key), errors)

    def _validate_array(
        self,
        arr: list[Any],
        schema: SchemaDescriptor,
        path: str,
        errors: list[SchemaViolation],
    ) -> None:
        where = path or "root"
        if schema.min_items is not None and len(arr) < schema.min_items:
            errors.append(
                SchemaViolation(
                    path=where,
                    message=f"array must have at least {schema.min_items} items",
                    received=len(arr),
                )
            )
        if schema.max_items is not None and len(arr) > schema.max_items:
            errors.append(
                SchemaViolation(
                    path=where,
                    message=f"array must have at most {schema.max_items} items",
                    received=len(arr),
                )
            )

        if schema.items is not None:
            for i, item in enumerate(arr):
                self._validate_value(item, schema.items, f"{path}[{i}]", errors)

    def _validate_string(
        self, s: str, schema: SchemaDescriptor, where: str, errors: list[SchemaViolation]
    ) -> None:
        if schema.min_length is not None and len(s) < schema.min_length:
            errors.append(
                SchemaViolation(
                    path=where,
                    message=f"string must be at least {schema.min_length} characters",
                    received=len(s),
                )
            )
        if schema.max_length is not None and len(s) > schema.max_length:
            errors.append(
                SchemaViolation(
                    path=where,
                    message=f"string must be at most {schema.max_length} characters",
                    received=len(s),
                )
            )

    def _validate_number(
        self, n: int | float, schema: SchemaDescriptor, where: str, errors: list[SchemaViolation]
    ) -> None:
        if schema.minimum is not None and n < schema.minimum:
            errors.append(
                SchemaViolation(path=where, message=f"number must be >= {schema.minimum}", received=n)
            )
        if schema.maximum is not None and n > schema.maximum:
            errors.append(
                SchemaViolation(path=where, message=f"number must be <= {schema.maximum}", received=n)
            )


def create_schema_from_example(example: Any, required: bool = True) -> SchemaDescriptor:
    """Create a schema descriptor from an example value.

    Args:
        example: Example data.
        required: If True, mark every object field as required.

    Example:
        schema = create_schema_from_example({
            "ideas": [{"title": "...", "score": 7}],
            "summary": "..."
        })
    """

    def infer(value: Any) -> SchemaDescriptor:
        if value is None:
            return SchemaDescriptor(kind=SchemaKind.NULL)
        elif isinstance(value, bool):
            return SchemaDescriptor(kind=SchemaKind.BOOLEAN)
        elif isinstance(value, int):
            return SchemaDescriptor(kind=SchemaKind.INTEGER)
        elif isinstance(value, float):
            return SchemaDescriptor(kind=SchemaKind.NUMBER)
        elif isinstance(value, str):
            return SchemaDescriptor(kind=SchemaKind.STRING)
        elif isinstance(value, list):
            items = infer(value[0]) if value else None
            return SchemaDescriptor(kind=SchemaKind.ARRAY, items=items)
        elif isinstance(value, dict):
            return SchemaDescriptor(
                kind=SchemaKind.OBJECT,
                properties={k: infer(v) for k, v in value.items()},
                required=tuple(value) if required else (),
            )
        return SchemaDescriptor()

    return infer(example)
