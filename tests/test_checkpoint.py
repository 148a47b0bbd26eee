"""Tests for the checkpoint gate."""

import asyncio
import json

import pytest

from keel.coordination.backends import InMemoryBackend
from keel.coordination.checkpoint import (
    AUTO_APPROVE_FEEDBACK,
    CHECKPOINT_CHANNEL,
    RESPONSE_CHANNEL,
    SKIP_FEEDBACK,
    CheckpointGate,
)
from keel.coordination.store import VersionedStore
from keel.exceptions import CheckpointError, CheckpointNotFoundError
from keel.types import CheckpointStatus


@pytest.fixture
def store() -> VersionedStore:
    return VersionedStore(InMemoryBackend())


async def wait_until_pending(gate: CheckpointGate, checkpoint_id: str) -> None:
    for _ in range(200):
        if any(r.checkpoint_id == checkpoint_id for r in await gate.active()):
            return
        await asyncio.sleep(0.005)
    raise AssertionError(f"checkpoint {checkpoint_id} never became pending")


class TestCheckpointGate:
    """Tests for CheckpointGate."""

    @pytest.mark.asyncio
    async def test_approve_wakes_waiter_promptly(self, store):
        """Test an in-process approval is noticed before the next poll."""
        gate = CheckpointGate(store, poll_interval=30.0)

        waiter = asyncio.create_task(gate.request("plan", {"steps": 3}, timeout=60))
        await wait_until_pending(gate, "plan")

        assert await gate.approve("plan", "ship it") is True
        result = await asyncio.wait_for(waiter, timeout=1.0)

        assert result.approved is True
        assert result.feedback == "ship it"
        assert result.auto_approved is False

    @pytest.mark.asyncio
    async def test_reject(self, store):
        """Test a rejection carries its feedback."""
        gate = CheckpointGate(store, poll_interval=0.01)

        waiter = asyncio.create_task(gate.request("plan", None, timeout=5))
        await wait_until_pending(gate, "plan")
        await gate.reject("plan", "needs tests")

        result = await waiter
        assert result.approved is False
        assert result.feedback == "needs tests"

    @pytest.mark.asyncio
    async def test_resolved_by_another_gate(self, store):
        """Test a resolution from another gate on the same store is seen by polling."""
        gate = CheckpointGate(store, poll_interval=0.01)
        other = CheckpointGate(store)

        waiter = asyncio.create_task(gate.request("deploy", {"env": "prod"}, timeout=5))
        await wait_until_pending(other, "deploy")
        await other.approve("deploy")

        result = await asyncio.wait_for(waiter, timeout=1.0)
        assert result.approved is True

    @pytest.mark.asyncio
    async def test_timeout_auto_approves(self, store):
        """Test an unanswered checkpoint is auto-approved at its timeout."""
        gate = CheckpointGate(store, poll_interval=0.01)

        result = await gate.request("idle", {"x": 1}, timeout=0.05)

        assert result.approved is True
        assert result.auto_approved is True
        assert result.feedback == AUTO_APPROVE_FEEDBACK
        assert await gate.active() == []

    @pytest.mark.asyncio
    async def test_only_first_resolution_counts(self, store):
        """Test later resolutions of the same checkpoint are ignored."""
        gate = CheckpointGate(store, poll_interval=0.01)

        waiter = asyncio.create_task(gate.request("plan", None, timeout=5))
        await wait_until_pending(gate, "plan")

        outcomes = await asyncio.gather(
            gate.approve("plan", "first"),
            gate.reject("plan", "second"),
        )
        result = await waiter

        assert sorted(outcomes) == [False, True]
        history = await gate.history()
        assert len(history) == 1
        assert history[0].approved == result.approved
        assert history[0].feedback == result.feedback

    @pytest.mark.asyncio
    async def test_resolution_after_timeout_ignored(self, store):
        """Test a late answer does not overwrite the auto-approval."""
        gate = CheckpointGate(store, poll_interval=0.01)
        await gate.request("late", None, timeout=0.02)

        assert await gate.reject("late", "too late") is False
        history = await gate.history()
        assert history[0].auto_approved is True

    @pytest.mark.asyncio
    async def test_unknown_checkpoint(self, store):
        """Test resolving a checkpoint that never existed raises."""
        gate = CheckpointGate(store)
        with pytest.raises(CheckpointNotFoundError):
            await gate.approve("ghost")

    @pytest.mark.asyncio
    async def test_duplicate_pending_id_rejected(self, store):
        """Test a second request for a pending id fails."""
        gate = CheckpointGate(store, poll_interval=0.01)

        waiter = asyncio.create_task(gate.request("plan", None, timeout=5))
        await wait_until_pending(gate, "plan")

        with pytest.raises(CheckpointError):
            await gate.request("plan", None, timeout=5)

        await gate.skip("plan")
        result = await waiter
        assert result.feedback == SKIP_FEEDBACK

    @pytest.mark.asyncio
    async def test_id_reusable_after_resolution(self, store):
        """Test a resolved id can be requested again with a fresh verdict."""
        gate = CheckpointGate(store, poll_interval=0.01)
        await gate.request("loop", None, timeout=0.02)

        waiter = asyncio.create_task(gate.request("loop", None, timeout=5))
        await wait_until_pending(gate, "loop")
        await gate.reject("loop", "again")

        result = await waiter
        assert result.approved is False
        assert result.auto_approved is False

    @pytest.mark.asyncio
    async def test_cancelled_request_leaves_no_waiter(self, store):
        """Test cancelling a waiting request cleans up its wake-up event."""
        gate = CheckpointGate(store, poll_interval=0.01)

        waiter = asyncio.create_task(gate.request("plan", None, timeout=5))
        await wait_until_pending(gate, "plan")
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        assert gate._waiters == {}

    @pytest.mark.asyncio
    async def test_notifications_published(self, store):
        """Test request and resolution are announced on the checkpoint channel."""
        gate = CheckpointGate(store, poll_interval=0.01)
        subscription = await store.subscribe(CHECKPOINT_CHANNEL)

        waiter = asyncio.create_task(gate.request("plan", {"steps": 2}, timeout=5))
        required = json.loads(await subscription.get(timeout=1))
        await gate.approve("plan")
        resolved = json.loads(await subscription.get(timeout=1))
        await waiter

        assert required["type"] == "checkpoint_required"
        assert required["checkpoint"]["checkpoint_id"] == "plan"
        assert required["checkpoint"]["payload"] == {"steps": 2}
        assert resolved["type"] == "checkpoint_resolved"
        assert resolved["checkpoint"]["status"] == CheckpointStatus.APPROVED.value

    @pytest.mark.asyncio
    async def test_dispatch_responses(self, store):
        """Test verdicts arriving on the response channel resolve checkpoints."""
        gate = CheckpointGate(store, poll_interval=0.01)
        responses = await store.subscribe(RESPONSE_CHANNEL)
        dispatcher = asyncio.create_task(gate.dispatch_responses(responses))

        waiter = asyncio.create_task(gate.request("plan", None, timeout=5))
        await wait_until_pending(gate, "plan")

        await store.publish(RESPONSE_CHANNEL, "not json")
        await store.publish(RESPONSE_CHANNEL, {"checkpoint_id": "ghost", "approved": True})
        await store.publish(
            RESPONSE_CHANNEL,
            {"checkpoint_id": "plan", "approved": False, "feedback": "from chat"},
        )

        result = await asyncio.wait_for(waiter, timeout=1.0)
        await responses.close()

        assert result.approved is False
        assert result.feedback == "from chat"
        assert await dispatcher == 1

    @pytest.mark.asyncio
    async def test_duplicate_request_keeps_original_waiter_prompt(self, store):
        """Test a refused duplicate request does not steal the wake event."""
        gate = CheckpointGate(store, poll_interval=1.0)

        waiter = asyncio.create_task(gate.request("plan", None, timeout=30))
        await wait_until_pending(gate, "plan")
        with pytest.raises(CheckpointError):
            await gate.request("plan", None, timeout=30)

        loop = asyncio.get_running_loop()
        started = loop.time()
        await gate.approve("plan")
        result = await asyncio.wait_for(waiter, timeout=2.0)

        assert result.approved is True
        assert loop.time() - started < 0.2

    @pytest.mark.asyncio
    async def test_dispatch_ignores_non_boolean_verdict(self, store):
        """Test "approved": "false" is not read as an approval."""
        gate = CheckpointGate(store, poll_interval=0.01)
        responses = await store.subscribe(RESPONSE_CHANNEL)
        dispatcher = asyncio.create_task(gate.dispatch_responses(responses))

        waiter = asyncio.create_task(gate.request("plan", None, timeout=5))
        await wait_until_pending(gate, "plan")

        await store.publish(RESPONSE_CHANNEL, {"checkpoint_id": "plan", "approved": "false"})
        await asyncio.sleep(0.05)
        assert [r.checkpoint_id for r in await gate.active()] == ["plan"]

        await store.publish(RESPONSE_CHANNEL, {"checkpoint_id": "plan", "approved": False})
        result = await asyncio.wait_for(waiter, timeout=1.0)
        await responses.close()

        assert result.approved is False
        assert await dispatcher == 1

    @pytest.mark.asyncio
    async def test_stats_and_reset(self, store):
        """Test statistics over resolved checkpoints and reset."""
        gate = CheckpointGate(store, poll_interval=0.01)
        await gate.request("a", None, timeout=0.02)

        waiter = asyncio.create_task(gate.request("b", None, timeout=5))
        await wait_until_pending(gate, "b")
        await gate.reject("b", "no")
        await waiter

        stats = await gate.get_stats()
        assert stats["total"] == 2
        assert stats["approved"] == 1
        assert stats["rejected"] == 1
        assert stats["auto_approved"] == 1
        assert stats["manual_approvals"] == 0
        assert stats["approval_rate"] == 0.5

        await gate.reset()
        assert await gate.history() == []
        assert (await gate.get_stats())["total"] == 0

    def test_invalid_poll_interval(self, store):
        """Test poll_interval must be positive."""
        with pytest.raises(ValueError):
            CheckpointGate(store, poll_interval=0)
