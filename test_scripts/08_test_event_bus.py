#!/usr/bin/env python3
"""
Test: Event bus
Purpose: Verify in-process pub/sub, handler retries and the dead letter queue

Tests:
- Every subscriber receives each event, in publish order
- Failing handlers are retried, then dead-lettered
- One failing handler does not affect the others
- Dead-lettered events can be re-published
- Full queues reject new events
"""

import asyncio
import sys

from sqlalchemy import select

from fixtures import (
    run_tests, TestContext, EventCollector,
    assert_equal, assert_true, assert_false, assert_raises_async
)

from requestflow.core.event_bus import EventBus
from requestflow.models import DeadLetterQueue
from requestflow.models.schemas import EventType


async def _dlq_entries(ctx):
    async with ctx.get_session() as session:
        result = await session.execute(select(DeadLetterQueue).order_by(DeadLetterQueue.id))
        return list(result.scalars().all())


async def test_publish_and_subscribe():
    async with TestContext() as ctx:
        first, second = EventCollector(), EventCollector()
        ctx.event_bus.subscribe(EventType.REQUEST_CREATED, first.handler)
        ctx.event_bus.subscribe(EventType.REQUEST_CREATED, second.handler)

        for n in range(3):
            await ctx.event_bus.publish(EventType.REQUEST_CREATED, {"form_request_id": f"req-{n}"})
        await ctx.event_bus.publish(EventType.REQUEST_APPLIED, {"form_request_id": "req-0"})
        await ctx.event_bus.drain()

        assert_equal([e["form_request_id"] for e in first.events], ["req-0", "req-1", "req-2"])
        assert_equal(second.count(), 3)


async def test_failing_handler_goes_to_dlq():
    async with TestContext(start_event_bus=False) as ctx:
        bus = EventBus(db=ctx.db, max_retries=3)
        calls = []
        healthy = EventCollector()

        async def broken_handler(data):
            calls.append(data)
            raise RuntimeError("receiver unavailable")

        bus.subscribe(EventType.REQUEST_FAILED, broken_handler)
        bus.subscribe(EventType.REQUEST_FAILED, healthy.handler)
        await bus.start()
        try:
            await bus.publish(EventType.REQUEST_FAILED, {"form_request_id": "req-9", "failure_message": "boom"})
            await bus.drain()
        finally:
            await bus.stop()

        assert_equal(len(calls), 3, "Handler is attempted max_retries times")
        assert_equal(healthy.count(), 1, "Other handlers still run once")

        entries = await _dlq_entries(ctx)
        assert_equal(len(entries), 1)
        assert_equal(entries[0].original_event_type, "request.failed")
        assert_equal(entries[0].retry_count, 3)
        assert_equal(entries[0].form_request_id, "req-9")
        assert_equal(entries[0].error_message, "receiver unavailable")
        assert_equal(bus.get_stats()["failed"], 1)


async def test_flaky_handler_recovers():
    async with TestContext(start_event_bus=False) as ctx:
        bus = EventBus(db=ctx.db, max_retries=3)
        attempts = []

        async def flaky_handler(data):
            attempts.append(data)
            if len(attempts) < 3:
                raise RuntimeError("temporary")

        bus.subscribe(EventType.REQUEST_APPLIED, flaky_handler)
        await bus.start()
        try:
            await bus.publish(EventType.REQUEST_APPLIED, {"form_request_id": "req-1"})
            await bus.drain()
        finally:
            await bus.stop()

        assert_equal(len(attempts), 3)
        assert_equal(await _dlq_entries(ctx), [])
        assert_equal(bus.get_stats()["failed"], 0)


async def test_retry_dlq_entry():
    async with TestContext(start_event_bus=False) as ctx:
        bus = EventBus(db=ctx.db, max_retries=1)
        state = {"healthy": False}
        delivered = EventCollector()

        async def receiver(data):
            if not state["healthy"]:
                raise RuntimeError("down")
            await delivered.handler(data)

        bus.subscribe(EventType.WORKFLOW_FAILED, receiver)
        await bus.start()
        try:
            await bus.publish(EventType.WORKFLOW_FAILED, {"form_request_id": "req-3", "reason": "loop"})
            await bus.drain()

            entries = await _dlq_entries(ctx)
            assert_equal(len(entries), 1)

            state["healthy"] = True
            async with ctx.get_session() as session:
                assert_true(await bus.retry_dlq_entry(session, entries[0].id))
                await session.commit()
                assert_false(await bus.retry_dlq_entry(session, 12345), "Unknown entries are reported")
            await bus.drain()
        finally:
            await bus.stop()

        assert_equal(delivered.events, [{"form_request_id": "req-3", "reason": "loop"}])
        assert_equal(await _dlq_entries(ctx), [], "Re-published entries leave the DLQ")


async def test_dlq_without_database():
    bus = EventBus(max_retries=1)

    async def broken_handler(data):
        raise RuntimeError("nope")

    bus.subscribe(EventType.REQUEST_CREATED, broken_handler)
    await bus.start()
    try:
        await bus.publish(EventType.REQUEST_CREATED, {"form_request_id": "req-0"})
        await bus.drain()
    finally:
        await bus.stop()

    assert_equal(bus.get_stats()["failed"], 1, "Failures are counted even without a DLQ")


async def test_queue_full():
    bus = EventBus(max_queue_size=1)
    await bus.publish(EventType.REQUEST_CREATED, {"form_request_id": "req-1"})
    await assert_raises_async(asyncio.QueueFull, bus.publish(EventType.REQUEST_CREATED, {"form_request_id": "req-2"}))


async def test_stats():
    bus = EventBus(max_queue_size=10)
    collector = EventCollector()
    bus.subscribe(EventType.REQUEST_CREATED, collector.handler)
    bus.subscribe(EventType.REQUEST_APPLIED, collector.handler)
    await bus.publish(EventType.REQUEST_CREATED, {"form_request_id": "req-1"})

    stats = bus.get_stats()
    assert_false(stats["running"])
    assert_equal(stats["queue_size"], 1)
    assert_equal(stats["max_queue_size"], 10)
    assert_equal(stats["published"], 1)
    assert_equal(stats["total_handlers"], 2)
    assert_equal(sorted(stats["event_types"]), ["request.applied", "request.created"])


async def main():
    """Run all event bus tests"""
    return await run_tests("Event Bus Tests", [
        ("Publish and subscribe", test_publish_and_subscribe),
        ("Failing handler goes to DLQ", test_failing_handler_goes_to_dlq),
        ("Flaky handler recovers", test_flaky_handler_recovers),
        ("Retry DLQ entry", test_retry_dlq_entry),
        ("DLQ without database", test_dlq_without_database),
        ("Queue full", test_queue_full),
        ("Stats", test_stats),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
