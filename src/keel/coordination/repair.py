"""Progressive repair of unreliable model output.

Model output that should be JSON often arrives wrapped in prose, inside a
markdown fence, with comments or trailing commas, or with bare keys. The
pipeline escalates through increasingly invasive strategies and stops at
the first one that yields a value:

1. direct     - strict parse of the raw text
2. extracted  - strict parse of the first fenced or bare JSON block
3. cleaned    - strip comments, trailing commas and BOM, quote bare keys
4. fixer      - ask a model to rewrite it (only when a fixer is configured)

Every failed strategy is recorded; if all fail, RepairExhaustedError carries
the trail. No partial value is ever returned.
"""

import json
import re
import threading
from typing import Any

from ..control.circuit_breaker import CircuitBreakerRegistry
from ..exceptions import RepairExhaustedError, SchemaValidationError
from ..types import RepairAttempt, RepairContext, RepairStrategy, ValidationResult
from ..utils.logging import StructuredLogger
from .fixers import Fixer
from .schema import SchemaValidator

FIXER_BREAKER = "repair:fixer"
WORKER_BREAKER_PREFIX = "worker:"
EXCERPT_CHARS = 500

NO_BLOCK_FOUND = "no structured block found"

_JSON_FENCE = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)
_ANY_FENCE = re.compile(r"```[\w-]*\s*([\s\S]*?)```")
_BARE_BLOCK = re.compile(r"(\{[\s\S]*\}|\[[\s\S]*\])")

_BLOCK_COMMENT = re.compile(r"/\*[\s\S]*?\*/")
_LINE_COMMENT = re.compile(r"(?<!:)//.*$", re.MULTILINE)
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")
_BARE_KEY = re.compile(r"([{,])\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*:")


def extract_structured(text: str) -> str | None:
    """Find the most likely JSON block in ``text``.

    Looks for a ```json fence, then any fence whose content starts with
    ``{`` or ``[``, then the widest bare ``{...}`` or ``[...]`` span.
    """
    match = _JSON_FENCE.search(text)
    if match:
        return match.group(1).strip()

    for match in _ANY_FENCE.finditer(text):
        content = match.group(1).strip()
        if content.startswith(("{", "[")):
            return content

    match = _BARE_BLOCK.search(text)
    if match:
        return match.group(1)
    return None


def clean_text(text: str) -> str:
    """Apply the syntactic fixes models most often need."""
    candidate = extract_structured(text) or text
    candidate = candidate.lstrip("\ufeff")
    candidate = _BLOCK_COMMENT.sub("", candidate)
    candidate = _LINE_COMMENT.sub("", candidate)
    candidate = _TRAILING_COMMA.sub(r"\1", candidate)
    candidate = _BARE_KEY.sub(r'\1"\2":', candidate)
    return candidate.strip()


class RepairPipeline:
    """Turns unreliable text into validated structured data.

    Example:
        pipeline = RepairPipeline(registry, validator, fixer=AnthropicFixer())

        data = await pipeline.parse_and_validate(
            raw_output,
            "ideation",
            RepairContext(source="ideator"),
        )

    When ``context.source`` is set, the whole parse runs under the breaker
    ``worker:<source>``, so a worker that keeps producing unrepairable output
    is quarantined until a probe succeeds.
    """

    def __init__(
        self,
        registry: CircuitBreakerRegistry | None = None,
        validator: SchemaValidator | None = None,
        fixer: Fixer | None = None,
    ):
        """Initialize the pipeline.

        Args:
            registry: Breakers for the fixer and for each worker.
            validator: Schema registry used by validate().
            fixer: Optional model-backed fixer, tried last.
        """
        self._registry = registry if registry is not None else CircuitBreakerRegistry()
        self._validator = validator if validator is not None else SchemaValidator()
        self._fixer = fixer
        self._log = StructuredLogger("repair")
        self._lock = threading.Lock()
        self._stats = self._empty_stats()

    @property
    def validator(self) -> SchemaValidator:
        return self._validator

    @property
    def registry(self) -> CircuitBreakerRegistry:
        return self._registry

    @staticmethod
    def _empty_stats() -> dict[str, int]:
        stats = {f"{strategy.value}_success": 0 for strategy in RepairStrategy}
        stats.update(failures=0, schema_passes=0, schema_failures=0)
        return stats

    def _count(self, name: str) -> None:
        with self._lock:
            self._stats[name] += 1

    async def parse(self, raw_text: str, context: RepairContext | None = None) -> Any:
        """Parse ``raw_text`` into a value, escalating through strategies.

        Raises:
            RepairExhaustedError: If every strategy failed.
            CircuitOpenError: If the source worker is quarantined.
        """
        context = context or RepairContext()
        if context.source:
            return await self._registry.execute(
                f"{WORKER_BREAKER_PREFIX}{context.source}", self._parse, raw_text, context
            )
        return await self._parse(raw_text, context)

    async def _parse(self, raw_text: str, context: RepairContext) -> Any:
        log = self._log.with_context(source=context.source) if context.source else self._log
        attempts: list[RepairAttempt] = []

        def failed(strategy: RepairStrategy, error: Any) -> None:
            attempts.append(RepairAttempt(strategy=strategy, error=str(error)))
            log.debug("Repair strategy failed", strategy=strategy.value, error=error)

        def succeeded(strategy: RepairStrategy, value: Any) -> Any:
            self._count(f"{strategy.value}_success")
            if attempts:
                log.debug("Repaired output", strategy=strategy.value, failed=len(attempts))
            return value

        try:
            return succeeded(RepairStrategy.DIRECT, json.loads(raw_text))
        except ValueError as e:
            failed(RepairStrategy.DIRECT, e)

        extracted = extract_structured(raw_text)
        if extracted is None:
            failed(RepairStrategy.EXTRACTED, NO_BLOCK_FOUND)
        else:
            try:
                return succeeded(RepairStrategy.EXTRACTED, json.loads(extracted))
            except ValueError as e:
                failed(RepairStrategy.EXTRACTED, e)

        try:
            return succeeded(RepairStrategy.CLEANED, json.loads(clean_text(raw_text)))
        except ValueError as e:
            failed(RepairStrategy.CLEANED, e)

        if self._fixer is not None:
            try:
                fixed = await self._registry.execute(
                    FIXER_BREAKER, self._fixer, raw_text, self._schema_hint(context.schema_key)
                )
                return succeeded(
                    RepairStrategy.FIXER, json.loads(extract_structured(fixed) or fixed)
                )
            except Exception as e:
                # Breaker refusals and fixer errors both end up in the trail
                failed(RepairStrategy.FIXER, e)

        self._count("failures")
        log.warning("Repair exhausted", attempts=len(attempts))
        raise RepairExhaustedError(attempts, raw_text[:EXCERPT_CHARS], source=context.source)

    def _schema_hint(self, schema_key: str | None) -> dict[str, Any] | None:
        if not schema_key:
            return None
        descriptor = self._validator.get(schema_key)
        return descriptor.to_json_schema() if descriptor is not None else None

    def validate(self, value: Any, schema_key: str) -> ValidationResult:
        """Validate an already parsed value. See SchemaValidator.validate."""
        result = self._validator.validate(value, schema_key)
        if not result.skipped:
            self._count("schema_passes" if result.valid else "schema_failures")
        return result

    async def parse_and_validate(
        self,
        raw_text: str,
        schema_key: str,
        context: RepairContext | None = None,
    ) -> Any:
        """Parse then validate against the schema registered for ``schema_key``.

        Raises:
            RepairExhaustedError: If the text could not be parsed at all.
            SchemaValidationError: If it parsed but violates the schema.
        """
        if context is None:
            context = RepairContext(schema_key=schema_key)
        elif context.schema_key is None:
            context = context.model_copy(update={"schema_key": schema_key})

        value = await self.parse(raw_text, context)
        result = self.validate(value, schema_key)
        if not result.valid:
            self._log.warning(
                "Schema validation failed", schema=schema_key, violations=len(result.errors)
            )
            raise SchemaValidationError(schema_key, result.errors, value)
        return value

    def get_stats(self) -> dict[str, Any]:
        """Counts per strategy, failures, schema outcomes and success rate."""
        with self._lock:
            stats: dict[str, Any] = dict(self._stats)
        successes = sum(stats[f"{s.value}_success"] for s in RepairStrategy)
        total = successes + stats["failures"]
        stats["total"] = total
        stats["success_rate"] = successes / total if total else 1.0
        return stats

    def reset_stats(self) -> None:
        with self._lock:
            self._stats = self._empty_stats()
