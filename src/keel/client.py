"""Keel - Simple API.

Usage:
    from keel import Keel

    # Single process, in-memory state
    keel = Keel()

    # Shared across processes
    keel = Keel(redis_url="redis://localhost:6379")

    data = await keel.repair.parse_and_validate(raw_output, "ideation")
    await keel.store.write_with_retry(lambda s: {"ideas": data["ideas"]})
"""

import asyncio

from .config import KeelSettings
from .control.circuit_breaker import CircuitBreakerRegistry
from .coordination.backends import InMemoryBackend, RedisBackend, StoreBackend, Subscription
from .coordination.checkpoint import RESPONSE_CHANNEL, CheckpointGate
from .coordination.fixers import AnthropicFixer, Fixer
from .coordination.repair import RepairPipeline
from .coordination.schema import SchemaValidator
from .coordination.store import VersionedStore
from .exceptions import StoreUnavailableError
from .utils.logging import configure_logging, get_logger

logger = get_logger("client")

CIRCUIT_CHANNEL = "circuits"


class Keel:
    """All Keel components wired from one set of settings.

    Usage:
        keel = Keel.from_env()

        keel.validator.register("ideation", {...})
        ideas = await keel.repair.parse_and_validate(text, "ideation")

        result = await keel.checkpoints.request("ideas", ideas)

        await keel.close()
    """

    def __init__(
        self,
        settings: KeelSettings | None = None,
        redis_url: str | None = None,
        backend: StoreBackend | None = None,
        fixer: Fixer | None = None,
    ):
        """Create a Keel instance.

        Args:
            settings: Settings (defaults to ``KeelSettings()``).
            redis_url: Overrides ``settings.redis_url``.
            backend: Use this backend instead of building one.
            fixer: Output fixer. Built from ``anthropic_api_key`` if not given.
        """
        self._settings = settings or KeelSettings()
        redis_url = redis_url or self._settings.redis_url

        if backend is None:
            if redis_url:
                backend = RedisBackend(url=redis_url, namespace=self._settings.namespace)
            else:
                backend = InMemoryBackend()
        logger.debug("Using %s backend", backend.name)

        if fixer is None and self._settings.anthropic_api_key:
            fixer = AnthropicFixer(
                api_key=self._settings.anthropic_api_key,
                model=self._settings.fixer_model,
            )

        self._store = VersionedStore(backend, config=self._settings.store.to_config())
        self._breakers = CircuitBreakerRegistry(
            default_config=self._settings.circuit.to_config(),
            on_any_trip=self._on_trip,
        )
        self._pending_notices: set[asyncio.Task] = set()
        self._validator = SchemaValidator()
        self._repair = RepairPipeline(self._breakers, self._validator, fixer=fixer)
        self._checkpoints = CheckpointGate(
            self._store,
            poll_interval=self._settings.checkpoint.poll_interval,
            default_timeout=self._settings.checkpoint.timeout,
        )

    @classmethod
    def from_env(cls) -> "Keel":
        """Build from environment variables and apply KEEL_LOG_LEVEL."""
        settings = KeelSettings.from_env()
        configure_logging(settings.log_level)
        return cls(settings)

    @property
    def settings(self) -> KeelSettings:
        return self._settings

    @property
    def store(self) -> VersionedStore:
        return self._store

    @property
    def breakers(self) -> CircuitBreakerRegistry:
        return self._breakers

    @property
    def validator(self) -> SchemaValidator:
        return self._validator

    @property
    def repair(self) -> RepairPipeline:
        return self._repair

    @property
    def checkpoints(self) -> CheckpointGate:
        return self._checkpoints

    async def listen_for_approvals(self) -> Subscription:
        """Subscribe to the response channel. Feed it to
        ``checkpoints.dispatch_responses`` and close it to stop."""
        return await self._store.subscribe(RESPONSE_CHANNEL)

    def _on_trip(self, breaker_id: str, reason: str) -> None:
        # Called with the breaker lock held, so the publish runs as a task
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No event loop, trip of %s not published", breaker_id)
            return
        task = loop.create_task(self._publish_trip(breaker_id, reason))
        self._pending_notices.add(task)
        task.add_done_callback(self._pending_notices.discard)

    async def _publish_trip(self, breaker_id: str, reason: str) -> None:
        state = self._breakers.get(breaker_id).get_state()
        try:
            await self._store.publish(
                CIRCUIT_CHANNEL,
                {
                    "type": "circuit_tripped",
                    "breaker_id": breaker_id,
                    "reason": reason,
                    "failure_count": state.failure_count,
                    "error": state.last_failure_error,
                },
            )
        except StoreUnavailableError as e:
            logger.warning("Could not publish trip of %s: %s", breaker_id, e)

    async def close(self) -> None:
        """Publish pending trip notices, then close subscriptions and backend
        connections."""
        if self._pending_notices:
            await asyncio.gather(*self._pending_notices)
        await self._store.close()


# Convenience function for sync usage
def run_sync(coro):
    """Run async code synchronously.

    Example:
        from keel import Keel, run_sync

        keel = Keel()
        snapshot = run_sync(keel.store.read())
    """
    return asyncio.run(coro)
