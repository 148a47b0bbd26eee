"""Example: Keel coordination demo.

Runs without any LLM calls or Redis: simulated workers produce messy output,
the repair pipeline cleans it up, writers race on the shared store and a
checkpoint is approved from the response channel.
"""

import asyncio

from keel import (
    CircuitBreakerConfig,
    CircuitOpenError,
    ConflictError,
    InMemoryBackend,
    Keel,
    KeelSettings,
    RepairContext,
    RepairExhaustedError,
    SchemaValidationError,
    configure_logging,
)
from keel.coordination import RESPONSE_CHANNEL


def banner(title: str) -> None:
    print("\n" + "=" * 50)
    print(title)
    print("=" * 50)


async def demo_repair(keel: Keel) -> None:
    """Demonstrate progressive repair and validation."""
    banner("REPAIR PIPELINE DEMO")

    keel.validator.register(
        "ideation",
        {
            "type": "object",
            "required": ["ideas"],
            "properties": {"ideas": {"type": "array", "minItems": 1}},
        },
    )

    outputs = [
        '{"ideas": ["plain json"]}',
        'Sure! Here it is:\n```json\n{"ideas": ["fenced"]}\n```',
        '{ideas: ["bare keys", "trailing comma",], // note\n}',
        '{"ideas": []}',
        "I'm sorry, I can't help with that.",
    ]

    for raw in outputs:
        try:
            value = await keel.repair.parse_and_validate(
                raw, "ideation", RepairContext(source="ideator")
            )
            print(f"  ok       {value}")
        except SchemaValidationError as e:
            print(f"  invalid  {[(v.path, v.message) for v in e.violations]}")
        except RepairExhaustedError as e:
            print(f"  failed   {[a.strategy.value for a in e.attempts]}")
        except CircuitOpenError as e:
            print(f"  blocked  {e}")

    print(f"\n  stats: {keel.repair.get_stats()}")


async def demo_store(keel: Keel) -> None:
    """Demonstrate optimistic writes under contention."""
    banner("VERSIONED STORE DEMO")

    first = await keel.store.read()
    await keel.store.write({"a": 1}, first.version, agent_id="A")
    try:
        await keel.store.write({"b": 2}, first.version, agent_id="B")
    except ConflictError as e:
        print(f"  B lost the race: {e}")
    await keel.store.write_with_retry(lambda state: {"b": 2}, agent_id="B")

    def increment(state):
        return {"count": (state.get("count") or 0) + 1}

    await asyncio.gather(
        *(keel.store.write_with_retry(increment, max_retries=10, agent_id=f"w{i}") for i in range(5))
    )

    snapshot = await keel.store.read()
    print(f"  state at version {snapshot.version}: {snapshot.values}")
    for record in await keel.store.recent_writes(limit=3):
        print(f"  v{record.version} by {record.agent_id}: {record.keys}")


async def demo_checkpoint(keel: Keel) -> None:
    """Demonstrate a checkpoint resolved from the response channel."""
    banner("CHECKPOINT DEMO")

    responses = await keel.listen_for_approvals()
    dispatcher = asyncio.create_task(keel.checkpoints.dispatch_responses(responses))

    async def approver():
        await asyncio.sleep(0.1)
        await keel.store.publish(
            RESPONSE_CHANNEL,
            {"checkpoint_id": "ideas", "approved": True, "feedback": "Go ahead"},
        )

    approval = asyncio.create_task(approver())
    result = await keel.checkpoints.request("ideas", {"count": 3}, timeout=5)
    print(f"  approved={result.approved} feedback={result.feedback!r}")

    await approval
    await responses.close()
    await dispatcher

    result = await keel.checkpoints.request("deploy", None, timeout=0.2)
    print(f"  unanswered: approved={result.approved} auto={result.auto_approved}")


async def main() -> None:
    configure_logging("WARNING")
    settings = KeelSettings()
    settings.checkpoint.poll_interval = 0.05
    keel = Keel(settings, backend=InMemoryBackend(latency=0.001))
    keel.breakers.register("worker:ideator", CircuitBreakerConfig(failure_threshold=5))

    try:
        await demo_repair(keel)
        await demo_store(keel)
        await demo_checkpoint(keel)
    finally:
        await keel.close()


if __name__ == "__main__":
    asyncio.run(main())
