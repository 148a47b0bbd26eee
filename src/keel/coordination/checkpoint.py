"""Checkpoint gate for Keel.

A checkpoint pauses a pipeline stage until someone signs off on a value.
Pending checkpoints live in the shared store, so any process can resolve
them:

    checkpoint:<id>          pending CheckpointRecord
    checkpoint_history:<id>  resolved CheckpointRecord

Resolving moves the record from the first key to the second in a single
optimistic write. Whoever commits that move first wins; later resolutions
see the record already retired and are ignored. A checkpoint nobody
answers is auto-approved when its timeout expires.
"""

import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from ..exceptions import CheckpointError, CheckpointNotFoundError
from ..types import CheckpointRecord, CheckpointResult, CheckpointStatus, StorePatch
from .backends import Subscription
from .store import VersionedStore

logger = logging.getLogger(__name__)

CHECKPOINT_CHANNEL = "checkpoints"
RESPONSE_CHANNEL = "checkpoint-responses"

ACTIVE_PREFIX = "checkpoint:"
HISTORY_PREFIX = "checkpoint_history:"

AUTO_APPROVE_FEEDBACK = "Auto-approved after timeout"
SKIP_FEEDBACK = "User skipped checkpoint"

GATE_AGENT_ID = "checkpoint-gate"


def _active_key(checkpoint_id: str) -> str:
    return f"{ACTIVE_PREFIX}{checkpoint_id}"


def _history_key(checkpoint_id: str) -> str:
    return f"{HISTORY_PREFIX}{checkpoint_id}"


def _to_result(record: CheckpointRecord) -> CheckpointResult:
    return CheckpointResult(
        approved=bool(record.approved),
        feedback=record.feedback,
        auto_approved=record.auto_approved,
    )


class CheckpointGate:
    """Pauses pipeline stages pending approval.

    Example:
        gate = CheckpointGate(store, default_timeout=900)

        # In the pipeline
        result = await gate.request("architecture", {"plan": plan})
        if not result.approved:
            revise(result.feedback)

        # From the approval surface (any process sharing the store)
        await gate.approve("architecture", "Looks good")
    """

    def __init__(
        self,
        store: VersionedStore,
        poll_interval: float = 2.0,
        default_timeout: float = 900.0,
        on_request: Callable[[CheckpointRecord], None] | None = None,
        on_resolve: Callable[[CheckpointRecord], None] | None = None,
    ):
        """Initialize the gate.

        Args:
            store: Shared store holding checkpoint records.
            poll_interval: Seconds between checks while waiting.
            default_timeout: Seconds before an unanswered checkpoint is
                auto-approved.
            on_request: Callback when a checkpoint is opened.
            on_resolve: Callback when a checkpoint is resolved.
        """
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self._store = store
        self._poll_interval = poll_interval
        self._default_timeout = default_timeout
        self._on_request = on_request
        self._on_resolve = on_resolve
        self._waiters: dict[str, asyncio.Event] = {}

    async def request(
        self,
        checkpoint_id: str,
        payload: Any = None,
        timeout: float | None = None,
    ) -> CheckpointResult:
        """Open a checkpoint and wait for its verdict.

        Args:
            checkpoint_id: Identifier, unique among pending checkpoints.
            payload: JSON-serialisable value presented for sign-off.
            timeout: Seconds before auto-approval. Defaults to the gate's.

        Returns:
            The verdict. ``auto_approved`` is set if the timeout expired.

        Raises:
            CheckpointError: If a checkpoint with this id is already pending.
        """
        timeout = self._default_timeout if timeout is None else timeout
        record = CheckpointRecord(
            checkpoint_id=checkpoint_id,
            payload=payload,
            deadline=datetime.now() + timedelta(seconds=timeout),
        )

        def open_checkpoint(state: dict[str, Any]) -> StorePatch:
            if state.get(_active_key(checkpoint_id)) is not None:
                raise CheckpointError(f"Checkpoint '{checkpoint_id}' is already pending")
            return StorePatch(
                updates={_active_key(checkpoint_id): record.model_dump(mode="json")},
                deletes=[_history_key(checkpoint_id)],
            )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        await self._store.write_with_retry(open_checkpoint, agent_id=GATE_AGENT_ID)
        # Only the request that opened the checkpoint owns its wake event
        event = asyncio.Event()
        self._waiters[checkpoint_id] = event
        try:
            logger.info("Checkpoint '%s' awaiting approval (timeout %.0fs)", checkpoint_id, timeout)
            if self._on_request:
                self._on_request(record)
            await self._store.publish(
                CHECKPOINT_CHANNEL,
                {"type": "checkpoint_required", "checkpoint": record.model_dump(mode="json")},
            )

            while True:
                resolved = await self._resolved_record(checkpoint_id)
                if resolved is not None:
                    return _to_result(resolved)

                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    await asyncio.wait_for(event.wait(), min(self._poll_interval, remaining))
                except asyncio.TimeoutError:
                    pass

            await self._settle(
                checkpoint_id, approved=True, feedback=AUTO_APPROVE_FEEDBACK, auto_approved=True
            )
            # Either our auto-approval or a resolution that landed just before it
            resolved = await self._resolved_record(checkpoint_id)
            if resolved is None:
                raise CheckpointNotFoundError(checkpoint_id)
            return _to_result(resolved)
        finally:
            if self._waiters.get(checkpoint_id) is event:
                del self._waiters[checkpoint_id]

    async def _resolved_record(self, checkpoint_id: str) -> CheckpointRecord | None:
        raw = await self._store.get(_history_key(checkpoint_id))
        return CheckpointRecord.model_validate(raw) if raw is not None else None

    async def _settle(
        self,
        checkpoint_id: str,
        approved: bool,
        feedback: str | None,
        auto_approved: bool = False,
    ) -> bool:
        """Retire a pending record with a verdict. False if already resolved."""
        outcome: dict[str, CheckpointRecord | None] = {}

        def retire(state: dict[str, Any]) -> StorePatch | None:
            outcome["record"] = None
            raw = state.get(_active_key(checkpoint_id))
            if raw is None:
                if state.get(_history_key(checkpoint_id)) is None:
                    raise CheckpointNotFoundError(checkpoint_id)
                return None
            record = CheckpointRecord.model_validate(raw).model_copy(
                update={
                    "status": CheckpointStatus.APPROVED if approved else CheckpointStatus.REJECTED,
                    "approved": approved,
                    "feedback": feedback,
                    "auto_approved": auto_approved,
                    "resolved_at": datetime.now(),
                }
            )
            outcome["record"] = record
            return StorePatch(
                updates={_history_key(checkpoint_id): record.model_dump(mode="json")},
                deletes=[_active_key(checkpoint_id)],
            )

        await self._store.write_with_retry(retire, agent_id=GATE_AGENT_ID)
        record = outcome.get("record")
        if record is None:
            logger.debug("Checkpoint '%s' already resolved; ignoring verdict", checkpoint_id)
            return False

        event = self._waiters.get(checkpoint_id)
        if event is not None:
            event.set()

        logger.info(
            "Checkpoint '%s' %s%s",
            checkpoint_id,
            record.status.value,
            " (auto)" if auto_approved else "",
        )
        if self._on_resolve:
            self._on_resolve(record)
        await self._store.publish(
            CHECKPOINT_CHANNEL,
            {"type": "checkpoint_resolved", "checkpoint": record.model_dump(mode="json")},
        )
        return True

    async def resolve(
        self,
        checkpoint_id: str,
        approved: bool,
        feedback: str | None = None,
    ) -> bool:
        """Record a verdict for a pending checkpoint.

        Returns:
            True if this call resolved it, False if it was already resolved.

        Raises:
            CheckpointNotFoundError: If no such checkpoint exists.
        """
        return await self._settle(checkpoint_id, approved, feedback)

    async def approve(self, checkpoint_id: str, feedback: str | None = None) -> bool:
        return await self.resolve(checkpoint_id, True, feedback)

    async def reject(self, checkpoint_id: str, feedback: str | None = None) -> bool:
        return await self.resolve(checkpoint_id, False, feedback)

    async def skip(self, checkpoint_id: str) -> bool:
        """Approve on the user's behalf."""
        return await self.resolve(checkpoint_id, True, SKIP_FEEDBACK)

    async def dispatch_responses(self, subscription: Subscription) -> int:
        """Resolve checkpoints from ``{"checkpoint_id", "approved", "feedback"}``
        messages until the subscription is closed.

        Returns:
            Number of checkpoints this loop resolved.
        """
        resolved = 0
        async for message in subscription:
            try:
                data = json.loads(message)
                checkpoint_id = str(data["checkpoint_id"])
                approved = data["approved"]
                if not isinstance(approved, bool):
                    raise TypeError("approved must be true or false")
                feedback = data.get("feedback")
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                logger.warning("Ignoring malformed checkpoint response %r: %s", message, e)
                continue

            try:
                if await self.resolve(checkpoint_id, approved, feedback):
                    resolved += 1
            except CheckpointNotFoundError:
                logger.warning("Response for unknown checkpoint '%s'", checkpoint_id)
        return resolved

    async def active(self) -> list[CheckpointRecord]:
        """Pending checkpoints, oldest first."""
        return await self._records(ACTIVE_PREFIX)

    async def history(self) -> list[CheckpointRecord]:
        """Resolved checkpoints, oldest first."""
        return await self._records(HISTORY_PREFIX)

    async def _records(self, prefix: str) -> list[CheckpointRecord]:
        snapshot = await self._store.read()
        records = [
            CheckpointRecord.model_validate(value)
            for key, value in snapshot.values.items()
            if key.startswith(prefix) and value is not None
        ]
        return sorted(records, key=lambda r: r.created_at)

    async def get_stats(self) -> dict[str, Any]:
        """Counts of resolved checkpoints by outcome."""
        history = await self.history()
        pending = await self.active()
        approved = sum(1 for r in history if r.approved)
        auto_approved = sum(1 for r in history if r.auto_approved)
        total = len(history)
        return {
            "total": total,
            "pending": len(pending),
            "approved": approved,
            "rejected": total - approved,
            "auto_approved": auto_approved,
            "manual_approvals": approved - auto_approved,
            "approval_rate": approved / total if total else 0.0,
        }

    async def reset(self) -> None:
        """Remove every checkpoint record, pending or resolved."""

        def clear(state: dict[str, Any]) -> StorePatch:
            return StorePatch(
                deletes=[k for k in state if k.startswith((ACTIVE_PREFIX, HISTORY_PREFIX))]
            )

        await self._store.write_with_retry(clear, agent_id=GATE_AGENT_ID)
        logger.info("Checkpoint records cleared")
