"""Versioned shared state for Keel.

A single mapping of keys to JSON values shared by every worker, guarded by
one version counter:
- Reads never block and return the version they were taken at
- A write names the version it was computed from and fails with
  ConflictError if anyone committed in between
- The version advances by exactly one per successful write

Read-modify-write cycles go through ``write_with_retry``, which re-reads and
recomputes after every conflict.
"""

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Mapping, Union

from ..control.retry import RetryConfig, RetryMode, RetryStrategy
from ..exceptions import ConflictError, StoreError
from ..types import StorePatch, StoreSnapshot, WriteRecord
from .backends import InMemoryBackend, StoreBackend, Subscription

logger = logging.getLogger(__name__)

PatchResult = Union[StorePatch, Mapping[str, Any], None]
UpdateFn = Callable[[dict[str, Any]], Union[PatchResult, Awaitable[PatchResult]]]


@dataclass
class StoreConfig:
    """Retry settings for read-modify-write cycles."""

    max_retries: int = 3  # Total attempts, first one included
    base_delay: float = 0.1  # seconds, doubled after each conflict
    max_delay: float = 5.0
    jitter: bool = False

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")


def _as_patch(result: PatchResult) -> StorePatch:
    if result is None:
        return StorePatch()
    if isinstance(result, StorePatch):
        return result
    return StorePatch(updates=dict(result))


class VersionedStore:
    """Shared state store with optimistic concurrency control.

    Example:
        store = VersionedStore(RedisBackend(url="redis://localhost:6379"))

        snapshot = await store.read(["ideas"])
        await store.write({"ideas": [...]}, snapshot.version, agent_id="ideator")

        # Or let the store handle conflicts
        await store.write_with_retry(
            lambda state: {"count": (state.get("count") or 0) + 1},
            agent_id="counter",
        )
    """

    def __init__(
        self,
        backend: StoreBackend | None = None,
        config: StoreConfig | None = None,
        on_write: Callable[[WriteRecord], None] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize the store.

        Args:
            backend: Backing store. Defaults to a fresh InMemoryBackend.
            config: Retry settings for write_with_retry.
            on_write: Callback after every committed write.
            sleep: Awaitable sleep used between conflict retries.
        """
        self._backend = backend or InMemoryBackend()
        self._config = config or StoreConfig()
        self._on_write = on_write
        self._sleep = sleep

    @property
    def backend(self) -> StoreBackend:
        return self._backend

    @property
    def config(self) -> StoreConfig:
        return self._config

    async def read(self, keys: Iterable[str] | None = None) -> StoreSnapshot:
        """Read values and the version they belong to.

        Args:
            keys: Keys to read, or a single key. All keys when None. Missing
                keys map to None.

        Raises:
            StoreUnavailableError: If the backend can't be reached.
        """
        if isinstance(keys, str):
            keys = [keys]
        raw, version = await self._backend.fetch(list(keys) if keys is not None else None)
        values: dict[str, Any] = {}
        for key, text in raw.items():
            if text is None:
                values[key] = None
                continue
            try:
                values[key] = json.loads(text)
            except ValueError as e:
                raise StoreError(f"Stored value for '{key}' is not valid JSON: {e}") from e
        return StoreSnapshot(values=values, version=version)

    async def get(self, key: str, default: Any = None) -> Any:
        """Read a single key."""
        snapshot = await self.read([key])
        value = snapshot.values.get(key)
        return default if value is None else value

    async def version(self) -> int:
        """Current version without reading any values."""
        _, version = await self._backend.fetch([])
        return version

    async def write(
        self,
        updates: Mapping[str, Any],
        expected_version: int,
        *,
        agent_id: str | None = None,
        deletes: Iterable[str] = (),
    ) -> int:
        """Commit updates if the version is still ``expected_version``.

        Args:
            updates: Keys to set; values must be JSON serialisable.
            expected_version: Version the updates were computed from.
            agent_id: Writer recorded in the audit trail.
            deletes: Keys to remove in the same commit.

        Returns:
            The new version.

        Raises:
            ConflictError: If another write committed first.
            StoreUnavailableError: If the backend can't be reached.
        """
        encoded = {key: json.dumps(value) for key, value in updates.items()}
        deleted = [key for key in deletes if key not in encoded]
        record = WriteRecord(
            version=expected_version + 1,
            agent_id=agent_id,
            keys=list(encoded),
            deleted=deleted,
        )

        try:
            version = await self._backend.commit(
                encoded, deleted, expected_version, record.model_dump_json()
            )
        except ConflictError as e:
            logger.debug("Write by %s rejected: %s", agent_id or "anonymous", e)
            raise

        logger.debug(
            "Committed version %d by %s (keys=%s, deleted=%s)",
            version,
            agent_id or "anonymous",
            record.keys,
            deleted,
        )
        if self._on_write:
            self._on_write(record)
        return version

    async def write_with_retry(
        self,
        update_fn: UpdateFn,
        max_retries: int | None = None,
        *,
        agent_id: str | None = None,
    ) -> int:
        """Read, compute a patch and write, retrying on conflicts.

        ``update_fn`` receives the current values and returns a mapping of
        updates, a StorePatch (for deletions) or None. It may be async. An
        empty patch commits nothing and the version that was read is
        returned.

        Args:
            update_fn: Computes the patch from current values.
            max_retries: Total attempts. Defaults to ``config.max_retries``.
            agent_id: Writer recorded in the audit trail.

        Returns:
            The version after the write.

        Raises:
            RetriesExhaustedError: If every attempt hit a conflict.
        """
        attempts = self._config.max_retries if max_retries is None else max_retries
        if attempts < 1:
            raise ValueError("max_retries must be at least 1")

        strategy = RetryStrategy(
            config=RetryConfig(
                max_attempts=attempts,
                initial_delay=self._config.base_delay,
                max_delay=self._config.max_delay,
                exponential_base=2.0,
                jitter=self._config.jitter,
                mode=RetryMode.FAIL_CLOSED,
                retryable_errors=[ConflictError],
            ),
            sleep=self._sleep,
        )

        async def attempt() -> int:
            snapshot = await self.read()
            result = update_fn(dict(snapshot.values))
            if inspect.isawaitable(result):
                result = await result
            patch = _as_patch(result)
            if patch.is_empty:
                return snapshot.version
            return await self.write(
                patch.updates,
                snapshot.version,
                agent_id=agent_id,
                deletes=patch.deletes,
            )

        return await strategy.execute(attempt)

    async def recent_writes(self, limit: int = 20) -> list[WriteRecord]:
        """Audit records of the latest commits, newest first."""
        entries = await self._backend.recent_writes(limit)
        return [WriteRecord.model_validate_json(entry) for entry in entries]

    async def reset(self) -> None:
        """Drop all state and restart versioning at 0. For tests and reinit."""
        await self._backend.clear()
        logger.info("Store reset")

    async def publish(self, channel: str, message: Any) -> int:
        """Publish a message; non-string messages are sent as JSON."""
        payload = message if isinstance(message, str) else json.dumps(message)
        return await self._backend.publish(channel, payload)

    async def subscribe(self, channel: str, maxsize: int = 100) -> Subscription:
        """Subscribe to a channel. Close the subscription to unsubscribe."""
        return await self._backend.subscribe(channel, maxsize=maxsize)

    async def close(self) -> None:
        await self._backend.close()
