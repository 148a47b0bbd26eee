"""Model-backed fixers for malformed structured output.

A fixer is any async callable ``(malformed_text, schema_hint) -> str`` that
asks a model to rewrite broken output as valid JSON. It is the last and
most expensive repair strategy, so RepairPipeline always calls it through a
circuit breaker.
"""

import json
import logging
from typing import Any, Awaitable, Callable

from ..exceptions import FixerError

logger = logging.getLogger(__name__)

Fixer = Callable[[str, dict[str, Any] | None], Awaitable[str]]

MAX_INPUT_CHARS = 8000

FIX_PROMPT = "Fix this malformed JSON. Return ONLY valid JSON, no explanations or markdown."


def build_fix_prompt(malformed_text: str, schema_hint: dict[str, Any] | None = None) -> str:
    """Prompt asking a model to repair ``malformed_text``."""
    parts = [FIX_PROMPT, "", "Malformed input:", malformed_text[:MAX_INPUT_CHARS]]
    if schema_hint:
        parts += ["", "Expected schema:", json.dumps(schema_hint, indent=2)]
    return "\n".join(parts)


class AnthropicFixer:
    """Fixer backed by a small Anthropic model.

    Example:
        fixer = AnthropicFixer(api_key="sk-ant-...")
        pipeline = RepairPipeline(registry, validator, fixer=fixer)
    """

    default_model = "claude-3-haiku-20240307"

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        timeout: float = 60.0,
        max_tokens: int = 4096,
    ):
        """Initialize the fixer.

        Args:
            api_key: Anthropic API key. If None, uses ANTHROPIC_API_KEY env var.
            model: Model to use. Defaults to a fast, cheap model.
            base_url: Optional custom base URL.
            timeout: Request timeout in seconds.
            max_tokens: Max tokens for the repaired output.
        """
        self._api_key = api_key
        self._model = model or self.default_model
        self._base_url = base_url
        self._timeout = timeout
        self._max_tokens = max_tokens
        self._client: Any = None

    def _get_client(self) -> Any:
        """Lazily initialize and return the Anthropic client."""
        if self._client is None:
            try:
                from anthropic import AsyncAnthropic
            except ImportError:
                raise ImportError(
                    "Anthropic package not installed. Install with: pip install keel[anthropic]"
                )

            kwargs: dict[str, Any] = {"timeout": self._timeout}
            if self._api_key:
                kwargs["api_key"] = self._api_key
            if self._base_url:
                kwargs["base_url"] = self._base_url

            self._client = AsyncAnthropic(**kwargs)

        return self._client

    async def __call__(self, malformed_text: str, schema_hint: dict[str, Any] | None = None) -> str:
        """Ask the model to rewrite ``malformed_text`` as valid JSON.

        Raises:
            FixerError: If the request fails.
        """
        client = self._get_client()
        try:
            response = await client.messages.create(
                model=self._model,
                max_tokens=self._max_tokens,
                temperature=0,
                messages=[
                    {"role": "user", "content": build_fix_prompt(malformed_text, schema_hint)}
                ],
            )
        except Exception as e:
            raise FixerError("anthropic", str(e), original_error=e) from e

        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        logger.debug("Fixer returned %d characters", len(text))
        return text
