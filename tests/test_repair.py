"""Tests for the repair pipeline."""

import json
import logging
from types import SimpleNamespace

import pytest

from keel.control.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from keel.coordination.fixers import AnthropicFixer, build_fix_prompt
from keel.coordination.repair import (
    FIXER_BREAKER,
    NO_BLOCK_FOUND,
    RepairPipeline,
    clean_text,
    extract_structured,
)
from keel.coordination.schema import SchemaValidator
from keel.exceptions import (
    CircuitOpenError,
    FixerError,
    RepairExhaustedError,
    SchemaValidationError,
)
from keel.types import CircuitState, RepairContext, RepairStrategy


class FakeFixer:
    """Fixer returning canned output and recording its calls."""

    def __init__(self, output: str = '{"fixed": true}', error: Exception | None = None):
        self.output = output
        self.error = error
        self.calls: list[tuple[str, dict | None]] = []

    async def __call__(self, text: str, schema_hint: dict | None = None) -> str:
        self.calls.append((text, schema_hint))
        if self.error:
            raise self.error
        return self.output


class TestExtraction:
    """Tests for extract_structured and clean_text."""

    def test_json_fence_preferred(self):
        """Test a ```json fence wins over other blocks."""
        text = 'Here:\n```\n{"other": 1}\n```\n```json\n{"a": 1}\n```'
        assert extract_structured(text) == '{"a": 1}'

    def test_untagged_fence_with_json_content(self):
        """Test an untagged fence is used when its content looks like JSON."""
        text = "```python\nprint('hi')\n```\nthen\n```\n[1, 2]\n```"
        assert extract_structured(text) == "[1, 2]"

    def test_bare_block(self):
        """Test a bare object embedded in prose is found."""
        assert extract_structured('Sure! {"a": {"b": 2}} Hope that helps.') == '{"a": {"b": 2}}'

    def test_nothing_to_extract(self):
        """Test plain prose yields None."""
        assert extract_structured("no structure here") is None

    def test_clean_text(self):
        """Test comments, trailing commas, bare keys and BOM are fixed."""
        text = "\ufeff{\n  // a comment\n  key: \"v\", /* block */\n  \"list\": [1, 2,],\n}"
        assert json.loads(clean_text(text)) == {"key": "v", "list": [1, 2]}

    def test_clean_text_keeps_urls(self):
        """Test // inside URLs is not treated as a comment."""
        assert clean_text('{"url": "https://example.com"}') == '{"url": "https://example.com"}'


class TestParse:
    """Tests for RepairPipeline.parse."""

    @pytest.mark.asyncio
    async def test_direct(self):
        """Test valid JSON parses on the first strategy."""
        pipeline = RepairPipeline()
        assert await pipeline.parse('{"a": [1, 2]}') == {"a": [1, 2]}
        assert pipeline.get_stats()["direct_success"] == 1

    @pytest.mark.asyncio
    async def test_extracted_from_fence(self):
        """Test fenced JSON inside prose is extracted."""
        pipeline = RepairPipeline()
        value = await pipeline.parse('Result:\n```json\n{"ok": true}\n```\nDone.')

        assert value == {"ok": True}
        assert pipeline.get_stats()["extracted_success"] == 1

    @pytest.mark.asyncio
    async def test_escalates_to_cleaned(self):
        """Test {key: "v",} fails direct and extracted, then cleans."""
        pipeline = RepairPipeline()
        value = await pipeline.parse('{key: "v",}')

        assert value == {"key": "v"}
        stats = pipeline.get_stats()
        assert stats["cleaned_success"] == 1
        assert stats["direct_success"] == 0
        assert stats["extracted_success"] == 0

    @pytest.mark.asyncio
    async def test_strategies_tried_in_order(self, caplog):
        """Test direct and extracted fail, in that order, before cleaning succeeds."""
        pipeline = RepairPipeline()

        with caplog.at_level(logging.DEBUG, logger="keel.repair"):
            await pipeline.parse('{key: "v",}')

        failed = [
            r.getMessage() for r in caplog.records if r.getMessage().startswith("Repair strategy failed")
        ]
        assert len(failed) == 2
        assert "strategy=direct" in failed[0]
        assert "strategy=extracted" in failed[1]

    @pytest.mark.asyncio
    async def test_exhausted_without_fixer(self):
        """Test three recorded attempts when every strategy fails."""
        pipeline = RepairPipeline()

        with pytest.raises(RepairExhaustedError) as exc_info:
            await pipeline.parse("I could not produce any output, sorry.")

        attempts = exc_info.value.attempts
        assert [a.strategy for a in attempts] == [
            RepairStrategy.DIRECT,
            RepairStrategy.EXTRACTED,
            RepairStrategy.CLEANED,
        ]
        assert attempts[1].error == NO_BLOCK_FOUND
        assert exc_info.value.raw_excerpt == "I could not produce any output, sorry."
        assert pipeline.get_stats()["failures"] == 1

    @pytest.mark.asyncio
    async def test_raw_excerpt_truncated(self):
        """Test the error carries at most 500 characters of input."""
        pipeline = RepairPipeline()
        with pytest.raises(RepairExhaustedError) as exc_info:
            await pipeline.parse("x" * 2000)

        assert len(exc_info.value.raw_excerpt) == 500

    @pytest.mark.asyncio
    async def test_fixer_used_last_with_schema_hint(self):
        """Test the fixer runs after local strategies and gets the schema."""
        validator = SchemaValidator()
        validator.register("result", {"type": "object", "required": ["fixed"]})
        fixer = FakeFixer(output='Here you go:\n```json\n{"fixed": true}\n```')
        pipeline = RepairPipeline(validator=validator, fixer=fixer)

        value = await pipeline.parse("garbage", RepairContext(schema_key="result"))

        assert value == {"fixed": True}
        assert fixer.calls == [("garbage", {"type": "object", "required": ["fixed"]})]
        assert pipeline.get_stats()["fixer_success"] == 1

    @pytest.mark.asyncio
    async def test_fixer_not_called_when_local_repair_works(self):
        """Test cheaper strategies short-circuit the fixer."""
        fixer = FakeFixer()
        pipeline = RepairPipeline(fixer=fixer)

        await pipeline.parse('{a: 1,}')

        assert fixer.calls == []

    @pytest.mark.asyncio
    async def test_fixer_failure_recorded(self):
        """Test a failing fixer becomes the fourth recorded attempt."""
        fixer = FakeFixer(error=FixerError("anthropic", "overloaded"))
        pipeline = RepairPipeline(fixer=fixer)

        with pytest.raises(RepairExhaustedError) as exc_info:
            await pipeline.parse("garbage")

        attempts = exc_info.value.attempts
        assert len(attempts) == 4
        assert attempts[3].strategy == RepairStrategy.FIXER
        assert "overloaded" in attempts[3].error

    @pytest.mark.asyncio
    async def test_fixer_breaker_open_recorded(self):
        """Test an open fixer breaker is recorded instead of calling the fixer."""
        registry = CircuitBreakerRegistry()
        registry.get(FIXER_BREAKER).force_open("fixer down")
        fixer = FakeFixer()
        pipeline = RepairPipeline(registry=registry, fixer=fixer)

        with pytest.raises(RepairExhaustedError) as exc_info:
            await pipeline.parse("garbage")

        assert fixer.calls == []
        assert exc_info.value.attempts[-1].strategy == RepairStrategy.FIXER
        assert "OPEN" in exc_info.value.attempts[-1].error

    @pytest.mark.asyncio
    async def test_fixer_breaker_trips(self):
        """Test repeated fixer errors open the fixer breaker."""
        registry = CircuitBreakerRegistry(default_config=CircuitBreakerConfig(failure_threshold=2))
        fixer = FakeFixer(error=FixerError("anthropic", "down"))
        pipeline = RepairPipeline(registry=registry, fixer=fixer)

        for _ in range(3):
            with pytest.raises(RepairExhaustedError):
                await pipeline.parse("garbage")

        assert len(fixer.calls) == 2
        assert registry.get(FIXER_BREAKER).state == CircuitState.OPEN


class TestWorkerQuarantine:
    """Tests for per-source breakers."""

    @pytest.mark.asyncio
    async def test_unrepairable_worker_quarantined(self):
        """Test a worker producing garbage is cut off after the threshold."""
        registry = CircuitBreakerRegistry(default_config=CircuitBreakerConfig(failure_threshold=2))
        pipeline = RepairPipeline(registry=registry)
        context = RepairContext(source="ideator")

        for _ in range(2):
            with pytest.raises(RepairExhaustedError) as exc_info:
                await pipeline.parse("garbage", context)
            assert exc_info.value.source == "ideator"

        with pytest.raises(CircuitOpenError) as open_info:
            await pipeline.parse('{"valid": true}', context)

        assert open_info.value.breaker_id == "worker:ideator"
        # Other workers are unaffected
        assert await pipeline.parse('{"valid": true}', RepairContext(source="critic")) == {
            "valid": True
        }

    @pytest.mark.asyncio
    async def test_empty_registry_is_used(self):
        """Test a caller's registry is kept even before it holds any breaker."""
        registry = CircuitBreakerRegistry(default_config=CircuitBreakerConfig(failure_threshold=1))
        pipeline = RepairPipeline(registry=registry)

        assert pipeline.registry is registry
        with pytest.raises(RepairExhaustedError):
            await pipeline.parse("garbage", RepairContext(source="ideator"))

        assert registry.get_open_breakers() == ["worker:ideator"]
        assert registry.get("worker:ideator").config.failure_threshold == 1


class TestParseAndValidate:
    """Tests for parse_and_validate."""

    @pytest.fixture
    def pipeline(self) -> RepairPipeline:
        validator = SchemaValidator()
        validator.register(
            "ideation",
            {
                "type": "object",
                "required": ["ideas"],
                "properties": {"ideas": {"type": "array", "minItems": 1}},
            },
        )
        return RepairPipeline(validator=validator)

    @pytest.mark.asyncio
    async def test_valid(self, pipeline):
        """Test repaired and valid output is returned."""
        value = await pipeline.parse_and_validate('{ideas: ["a"],}', "ideation")

        assert value == {"ideas": ["a"]}
        assert pipeline.get_stats()["schema_passes"] == 1

    @pytest.mark.asyncio
    async def test_parse_ok_schema_fails(self, pipeline):
        """Test {"ideas": []} parses but fails validation at path ideas."""
        with pytest.raises(SchemaValidationError) as exc_info:
            await pipeline.parse_and_validate('{"ideas": []}', "ideation")

        error = exc_info.value
        assert not isinstance(error, RepairExhaustedError)
        assert [v.path for v in error.violations] == ["ideas"]
        assert error.value == {"ideas": []}
        assert pipeline.get_stats()["schema_failures"] == 1

    @pytest.mark.asyncio
    async def test_unparseable_is_repair_error(self, pipeline):
        """Test unparseable text raises RepairExhaustedError, not a schema error."""
        with pytest.raises(RepairExhaustedError):
            await pipeline.parse_and_validate("nothing useful", "ideation")

    @pytest.mark.asyncio
    async def test_unknown_schema_passes_through(self, pipeline):
        """Test values for unregistered schemas are returned unvalidated."""
        assert await pipeline.parse_and_validate("[1]", "unregistered") == [1]

    @pytest.mark.asyncio
    async def test_stats_reset(self, pipeline):
        """Test success rate and reset."""
        await pipeline.parse("[]")
        with pytest.raises(RepairExhaustedError):
            await pipeline.parse("bad")

        stats = pipeline.get_stats()
        assert stats["total"] == 2
        assert stats["success_rate"] == 0.5

        pipeline.reset_stats()
        assert pipeline.get_stats()["total"] == 0


class TestFixPrompt:
    """Tests for the fixer prompt."""

    def test_prompt_truncates_and_includes_schema(self):
        """Test long input is truncated and the schema hint appended."""
        prompt = build_fix_prompt("y" * 10000, {"type": "object"})

        assert prompt.startswith("Fix this malformed JSON.")
        assert "y" * 8000 in prompt
        assert "y" * 8001 not in prompt
        assert "Expected schema:" in prompt

    def test_prompt_without_schema(self):
        """Test the schema section is omitted without a hint."""
        assert "Expected schema" not in build_fix_prompt("{bad")


class FakeMessages:
    def __init__(self, text: str | None = None, error: Exception | None = None):
        self.text = text
        self.error = error
        self.kwargs: dict = {}

    async def create(self, **kwargs):
        self.kwargs = kwargs
        if self.error:
            raise self.error
        block = SimpleNamespace(type="text", text=self.text)
        return SimpleNamespace(content=[block])


class TestAnthropicFixer:
    """Tests for AnthropicFixer with a stubbed client."""

    @pytest.mark.asyncio
    async def test_request_shape(self):
        """Test the model call uses the configured model and zero temperature."""
        fixer = AnthropicFixer(api_key="sk-ant-test")
        messages = FakeMessages(text='{"ok": true}')
        fixer._client = SimpleNamespace(messages=messages)

        assert await fixer("{ok: true", {"type": "object"}) == '{"ok": true}'
        assert messages.kwargs["model"] == AnthropicFixer.default_model
        assert messages.kwargs["temperature"] == 0
        assert "Expected schema:" in messages.kwargs["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_errors_wrapped(self):
        """Test SDK errors surface as FixerError."""
        fixer = AnthropicFixer(model="claude-3-5-haiku-20241022")
        fixer._client = SimpleNamespace(messages=FakeMessages(error=RuntimeError("overloaded")))

        with pytest.raises(FixerError) as exc_info:
            await fixer("{bad")

        assert exc_info.value.provider == "anthropic"
        assert isinstance(exc_info.value.original_error, RuntimeError)
