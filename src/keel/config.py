"""Settings for Keel.

Every field has a default, so ``KeelSettings()`` works with no environment
at all. ``KeelSettings.from_env()`` overlays ``KEEL_*`` variables:

    KEEL_REDIS_URL                 Redis URL; in-memory store when unset
    KEEL_NAMESPACE                 Redis key/channel prefix (default "keel")
    KEEL_LOG_LEVEL                 DEBUG, INFO, WARNING, ...
    KEEL_CIRCUIT_THRESHOLD         failures before a breaker opens
    KEEL_CIRCUIT_TIMEOUT_SECONDS   seconds a breaker stays open
    KEEL_CIRCUIT_HALF_OPEN_MAX     concurrent probes when half-open
    KEEL_STORE_MAX_RETRIES         attempts per read-modify-write
    KEEL_STORE_BASE_DELAY          first conflict backoff, in seconds
    KEEL_STORE_MAX_DELAY           backoff cap, in seconds
    KEEL_CHECKPOINT_POLL_INTERVAL  seconds between checkpoint checks
    KEEL_CHECKPOINT_TIMEOUT        seconds before auto-approval
    KEEL_FIXER_MODEL               model used by the output fixer
    ANTHROPIC_API_KEY              enables the output fixer
"""

import os
from typing import Any, Mapping

from pydantic import BaseModel, Field

from .control.circuit_breaker import CircuitBreakerConfig
from .coordination.store import StoreConfig


class CircuitSettings(BaseModel):
    failure_threshold: int = Field(default=3, ge=1)
    timeout_seconds: float = Field(default=60.0, ge=0)
    half_open_max: int = Field(default=1, ge=1)

    def to_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.failure_threshold,
            timeout_seconds=self.timeout_seconds,
            half_open_max=self.half_open_max,
        )


class StoreSettings(BaseModel):
    max_retries: int = Field(default=3, ge=1, description="Total attempts per read-modify-write")
    base_delay: float = Field(default=0.1, ge=0)
    max_delay: float = Field(default=5.0, ge=0)

    def to_config(self) -> StoreConfig:
        return StoreConfig(
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
        )


class CheckpointSettings(BaseModel):
    poll_interval: float = Field(default=2.0, gt=0)
    timeout: float = Field(default=900.0, ge=0, description="Seconds before auto-approval")


class KeelSettings(BaseModel):
    """Top-level settings."""

    redis_url: str | None = None
    namespace: str = "keel"
    log_level: str = "INFO"
    circuit: CircuitSettings = Field(default_factory=CircuitSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    checkpoint: CheckpointSettings = Field(default_factory=CheckpointSettings)
    anthropic_api_key: str | None = None
    fixer_model: str | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "KeelSettings":
        """Build settings from ``KEEL_*`` environment variables.

        Raises:
            pydantic.ValidationError: If a variable has an invalid value.
        """
        env = os.environ if environ is None else environ

        def pick(mapping: dict[str, str]) -> dict[str, Any]:
            return {field: env[var] for field, var in mapping.items() if env.get(var)}

        data = pick(
            {
                "redis_url": "KEEL_REDIS_URL",
                "namespace": "KEEL_NAMESPACE",
                "log_level": "KEEL_LOG_LEVEL",
                "anthropic_api_key": "ANTHROPIC_API_KEY",
                "fixer_model": "KEEL_FIXER_MODEL",
            }
        )
        data["circuit"] = pick(
            {
                "failure_threshold": "KEEL_CIRCUIT_THRESHOLD",
                "timeout_seconds": "KEEL_CIRCUIT_TIMEOUT_SECONDS",
                "half_open_max": "KEEL_CIRCUIT_HALF_OPEN_MAX",
            }
        )
        data["store"] = pick(
            {
                "max_retries": "KEEL_STORE_MAX_RETRIES",
                "base_delay": "KEEL_STORE_BASE_DELAY",
                "max_delay": "KEEL_STORE_MAX_DELAY",
            }
        )
        data["checkpoint"] = pick(
            {
                "poll_interval": "KEEL_CHECKPOINT_POLL_INTERVAL",
                "timeout": "KEEL_CHECKPOINT_TIMEOUT",
            }
        )
        return cls.model_validate(data)
