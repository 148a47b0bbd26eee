"""Backing stores for the versioned shared state.

A backend owns three primitives:
- reading several fields together with the version counter,
- a check-and-set commit that applies a batch of writes only if the version
  counter still has the expected value,
- publish/subscribe channels.

Values cross this boundary as JSON text; encoding is the store's job.

Subscribers receive messages through their own bounded queue
(:class:`Subscription`) and pull them in an explicit loop. A full queue
drops the message and counts it.
"""

import asyncio
import contextlib
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, AsyncIterator, Awaitable, Callable

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from ..exceptions import ConflictError, StoreUnavailableError

logger = logging.getLogger(__name__)

_CLOSED = object()


class Subscription:
    """A single subscriber's inbox for one channel.

    Example:
        subscription = await backend.subscribe("checkpoints")
        async for message in subscription:
            handle(message)
        # loop ends once subscription.close() is called
    """

    def __init__(
        self,
        channel: str,
        maxsize: int = 100,
        on_close: Callable[["Subscription"], Awaitable[None]] | None = None,
    ):
        self.channel = channel
        self.maxsize = maxsize
        self.dropped = 0
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._on_close = on_close
        self._closed = False
        self._released = False

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        """Messages waiting to be read."""
        return self._queue.qsize() - (1 if self._closed and not self._queue.empty() else 0)

    def deliver(self, message: str) -> bool:
        """Queue a message. Returns False if it was dropped."""
        if self._closed:
            return False
        if self._queue.qsize() >= self.maxsize:
            self.dropped += 1
            logger.warning(
                "Subscriber queue full on channel '%s'; dropped message (%d so far)",
                self.channel,
                self.dropped,
            )
            return False
        self._queue.put_nowait(message)
        return True

    def terminate(self) -> None:
        """Stop accepting messages and wake the reader. Does not unsubscribe."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    async def close(self) -> None:
        """Unsubscribe and end iteration once queued messages are read."""
        self.terminate()
        if self._on_close is not None and not self._released:
            self._released = True
            await self._on_close(self)

    async def get(self, timeout: float | None = None) -> str | None:
        """Next message, or None once closed and drained.

        Raises:
            asyncio.TimeoutError: If ``timeout`` elapses first.
        """
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _CLOSED:
            # Keep the marker so later readers also see the end
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def __aiter__(self) -> AsyncIterator[str]:
        return self

    async def __anext__(self) -> str:
        message = await self.get()
        if message is None:
            raise StopAsyncIteration
        return message


class StoreBackend(ABC):
    """Abstract base class for shared-state backends."""

    name: str = "backend"

    @abstractmethod
    async def fetch(self, keys: list[str] | None) -> tuple[dict[str, str | None], int]:
        """Read raw values for ``keys`` (all keys if None) and the version.

        Missing keys map to None. Values and version come from one
        consistent snapshot.
        """

    @abstractmethod
    async def commit(
        self,
        updates: dict[str, str],
        deletes: list[str],
        expected_version: int,
        audit_entry: str,
    ) -> int:
        """Apply a batch atomically if the version is still ``expected_version``.

        Returns:
            The new version (``expected_version + 1``).

        Raises:
            ConflictError: If another writer committed first.
        """

    @abstractmethod
    async def recent_writes(self, limit: int) -> list[str]:
        """Audit entries of the latest commits, newest first."""

    @abstractmethod
    async def clear(self) -> None:
        """Drop all data, the version counter and the audit log."""

    @abstractmethod
    async def publish(self, channel: str, message: str) -> int:
        """Publish to a channel. Returns the number of receivers."""

    @abstractmethod
    async def subscribe(self, channel: str, maxsize: int = 100) -> Subscription:
        """Open a subscription on a channel."""

    async def close(self) -> None:
        """Release connections."""
        return None


class InMemoryBackend(StoreBackend):
    """Single-process backend for tests and local runs.

    Commits are atomic under the backend's own lock, which is held only for
    the compare-and-apply step and never across an ``await``. ``latency``
    simulates a network round trip so concurrent callers interleave.
    """

    name = "memory"

    def __init__(self, latency: float = 0.0, max_write_log: int = 1000):
        self._latency = latency
        self._data: dict[str, str] = {}
        self._version = 0
        self._writes: deque[str] = deque(maxlen=max_write_log)
        self._subscribers: dict[str, list[Subscription]] = {}
        self._lock = threading.Lock()

    async def _round_trip(self) -> None:
        # Always yield, even with zero latency, like a real client would
        await asyncio.sleep(self._latency)

    async def fetch(self, keys: list[str] | None) -> tuple[dict[str, str | None], int]:
        await self._round_trip()
        with self._lock:
            if keys is None:
                return dict(self._data), self._version
            return {key: self._data.get(key) for key in keys}, self._version

    async def commit(
        self,
        updates: dict[str, str],
        deletes: list[str],
        expected_version: int,
        audit_entry: str,
    ) -> int:
        await self._round_trip()
        with self._lock:
            if self._version != expected_version:
                raise ConflictError(expected_version, self._version)
            self._data.update(updates)
            for key in deletes:
                self._data.pop(key, None)
            self._version += 1
            self._writes.append(audit_entry)
            return self._version

    async def recent_writes(self, limit: int) -> list[str]:
        with self._lock:
            return list(reversed(self._writes))[:limit]

    async def clear(self) -> None:
        with self._lock:
            self._data = {}
            self._version = 0
            self._writes.clear()

    async def publish(self, channel: str, message: str) -> int:
        with self._lock:
            subscribers = list(self._subscribers.get(channel, []))
        return sum(1 for subscription in subscribers if subscription.deliver(message))

    async def subscribe(self, channel: str, maxsize: int = 100) -> Subscription:
        subscription = Subscription(channel, maxsize=maxsize, on_close=self._unsubscribe)
        with self._lock:
            self._subscribers.setdefault(channel, []).append(subscription)
        return subscription

    async def _unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.channel, [])
            if subscription in subscribers:
                subscribers.remove(subscription)

    async def close(self) -> None:
        with self._lock:
            subscriptions = [s for subs in self._subscribers.values() for s in subs]
        for subscription in subscriptions:
            await subscription.close()


def _text(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


class RedisBackend(StoreBackend):
    """Redis backend using ``WATCH``/``MULTI``/``EXEC`` for commits.

    Layout (``namespace`` defaults to ``keel``):
        <ns>:state:data     hash of key -> JSON value
        <ns>:state:version  integer version counter
        <ns>:state:writes   sorted set of audit entries scored by time
        <ns>:<channel>      pub/sub channels
    """

    name = "redis"

    def __init__(
        self,
        client: Redis | None = None,
        url: str | None = None,
        namespace: str = "keel",
        max_write_log: int = 1000,
    ):
        """Initialize the Redis backend.

        Args:
            client: Existing ``redis.asyncio.Redis`` client.
            url: Redis URL used when no client is given.
            namespace: Prefix for every key and channel.
            max_write_log: Audit entries kept.
        """
        if client is None:
            client = Redis.from_url(url) if url else Redis()
        self._client = client
        self._namespace = namespace
        self._max_write_log = max_write_log
        self._data_key = f"{namespace}:state:data"
        self._version_key = f"{namespace}:state:version"
        self._writes_key = f"{namespace}:state:writes"
        self._subscriptions: set[Subscription] = set()

    def _channel(self, channel: str) -> str:
        return f"{self._namespace}:{channel}"

    async def fetch(self, keys: list[str] | None) -> tuple[dict[str, str | None], int]:
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.get(self._version_key)
                if keys is None:
                    pipe.hgetall(self._data_key)
                elif keys:
                    pipe.hmget(self._data_key, keys)
                results = await pipe.execute()
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise StoreUnavailableError(self.name, e) from e

        version = int(results[0] or 0)
        if keys is None:
            values = {_text(k): _text(v) for k, v in (results[1] or {}).items()}
        elif keys:
            values = {key: _text(v) for key, v in zip(keys, results[1])}
        else:
            values = {}
        return values, version

    async def commit(
        self,
        updates: dict[str, str],
        deletes: list[str],
        expected_version: int,
        audit_entry: str,
    ) -> int:
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                await pipe.watch(self._version_key)
                current = int(await pipe.get(self._version_key) or 0)
                if current != expected_version:
                    raise ConflictError(expected_version, current)

                pipe.multi()
                pipe.incr(self._version_key)
                if updates:
                    pipe.hset(self._data_key, mapping=updates)
                if deletes:
                    pipe.hdel(self._data_key, *deletes)
                pipe.zadd(self._writes_key, {audit_entry: time.time()})
                pipe.zremrangebyrank(self._writes_key, 0, -(self._max_write_log + 1))
                results = await pipe.execute()
        except WatchError as e:
            raise ConflictError(expected_version) from e
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise StoreUnavailableError(self.name, e) from e

        return int(results[0])

    async def recent_writes(self, limit: int) -> list[str]:
        try:
            entries = await self._client.zrevrange(self._writes_key, 0, limit - 1)
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise StoreUnavailableError(self.name, e) from e
        return [_text(entry) for entry in entries]

    async def clear(self) -> None:
        try:
            await self._client.delete(self._data_key, self._version_key, self._writes_key)
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise StoreUnavailableError(self.name, e) from e

    async def publish(self, channel: str, message: str) -> int:
        try:
            return int(await self._client.publish(self._channel(channel), message))
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise StoreUnavailableError(self.name, e) from e

    async def subscribe(self, channel: str, maxsize: int = 100) -> Subscription:
        pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        try:
            await pubsub.subscribe(self._channel(channel))
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise StoreUnavailableError(self.name, e) from e

        task: asyncio.Task[None] | None = None

        async def release(subscription: Subscription) -> None:
            self._subscriptions.discard(subscription)
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            await pubsub.unsubscribe()
            await pubsub.aclose()

        subscription = Subscription(channel, maxsize=maxsize, on_close=release)
        task = asyncio.create_task(self._dispatch(pubsub, subscription))
        self._subscriptions.add(subscription)
        return subscription

    async def _dispatch(self, pubsub: Any, subscription: Subscription) -> None:
        """Move messages from the Redis connection into the subscriber queue."""
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                subscription.deliver(_text(message["data"]))
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.error("Subscription to '%s' lost: %s", subscription.channel, e)
            subscription.terminate()

    async def close(self) -> None:
        for subscription in list(self._subscriptions):
            await subscription.close()
        await self._client.aclose()
