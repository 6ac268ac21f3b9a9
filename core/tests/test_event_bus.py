"""
Tests for the EventBus: subscriptions, run streams, replay and backpressure.
"""

import asyncio

import pytest

from actorgraph.runtime.event_bus import EventBus, EventType, RunEvent
from actorgraph.schemas.run import RunStatus, StepEvent


def step_event(run_id: str, step: int) -> StepEvent:
    return StepEvent(run_id=run_id, step=step, version=step, state_delta={"n": step})


async def publish_run(bus: EventBus, run_id: str, steps: int = 2) -> None:
    await bus.emit_run_started(run_id, "g")
    for step in range(1, steps + 1):
        await bus.emit_step_completed(step_event(run_id, step))
    await bus.emit_run_completed(run_id, steps, {"n": steps})


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_handler_receives_matching_events(self):
        bus = EventBus()
        received: list[RunEvent] = []

        async def handler(event):
            received.append(event)

        bus.subscribe([EventType.STEP_COMPLETED], handler, filter_run="run_a")
        await publish_run(bus, "run_a")
        await publish_run(bus, "run_b")
        await bus.drain()

        assert [e.step for e in received] == [1, 2]
        assert all(e.run_id == "run_a" for e in received)

    @pytest.mark.asyncio
    async def test_node_filter(self):
        bus = EventBus()
        received: list[RunEvent] = []

        async def handler(event):
            received.append(event)

        bus.subscribe([EventType.NODE_RETRY], handler, filter_node="fetch")
        await bus.emit_node_retry("r", "fetch", 1, retry_count=1, max_retries=3)
        await bus.emit_node_retry("r", "parse", 1, retry_count=1, max_retries=3)
        await bus.drain()

        assert [e.node for e in received] == ["fetch"]

    @pytest.mark.asyncio
    async def test_handler_error_does_not_propagate(self):
        bus = EventBus()
        received: list[RunEvent] = []

        async def broken(event):
            raise RuntimeError("handler bug")

        async def healthy(event):
            received.append(event)

        bus.subscribe([EventType.RUN_STARTED], broken)
        bus.subscribe([EventType.RUN_STARTED], healthy)

        await bus.emit_run_started("r", "g")
        await bus.drain()

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        received: list[RunEvent] = []

        async def handler(event):
            received.append(event)

        sub_id = bus.subscribe([EventType.RUN_STARTED], handler)
        assert bus.unsubscribe(sub_id) is True
        assert bus.unsubscribe(sub_id) is False

        await bus.emit_run_started("r", "g")
        await bus.drain()
        assert received == []

    @pytest.mark.asyncio
    async def test_stuck_handler_does_not_block_publisher(self):
        bus = EventBus()
        never = asyncio.Event()

        async def stuck(event):
            await never.wait()

        bus.subscribe([EventType.STEP_COMPLETED], stuck)
        await asyncio.wait_for(publish_run(bus, "r", steps=3), timeout=1.0)

        assert bus.get_stats()["pending_handlers"] == 3
        assert await bus.drain(timeout=0.01) is False
        assert await bus.cancel_handlers() == 3


class TestStreaming:
    @pytest.mark.asyncio
    async def test_replay_ends_after_history_eviction(self):
        bus = EventBus(max_history=5)
        await publish_run(bus, "a")
        for _ in range(10):
            await bus.publish(RunEvent(type=EventType.CUSTOM, run_id="b"))

        assert bus.get_history(run_id="a") == []
        events = await asyncio.wait_for(_collect(bus, "a"), timeout=1.0)

        assert events == []

    @pytest.mark.asyncio
    async def test_replay_after_completion(self):
        bus = EventBus()
        await publish_run(bus, "run_done", steps=3)

        events = [e async for e in bus.stream("run_done")]

        assert [e.type for e in events] == [
            EventType.RUN_STARTED,
            EventType.STEP_COMPLETED,
            EventType.STEP_COMPLETED,
            EventType.STEP_COMPLETED,
            EventType.RUN_COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_live_stream_ends_at_terminal_event(self):
        bus = EventBus()
        consumer = asyncio.create_task(_collect_steps(bus, "run_live"))
        await asyncio.sleep(0)

        await publish_run(bus, "run_live", steps=2)
        steps = await asyncio.wait_for(consumer, timeout=1.0)

        assert [e.step for e in steps] == [1, 2]
        assert bus.get_stats()["streams"] == 0

    @pytest.mark.asyncio
    async def test_stream_continues_across_resume(self):
        bus = EventBus()
        await bus.emit_run_started("r", "g")
        await bus.emit_step_completed(step_event("r", 1))
        await bus.emit_run_interrupted("r", 1, ["b"])
        await bus.emit_run_resumed("r", 1, ["b"])

        consumer = asyncio.create_task(_collect_steps(bus, "r"))
        await asyncio.sleep(0)
        await bus.emit_step_completed(step_event("r", 2))
        await bus.emit_run_completed("r", 2)

        steps = await asyncio.wait_for(consumer, timeout=1.0)
        assert [e.step for e in steps] == [1, 2]

    @pytest.mark.asyncio
    async def test_stream_ends_at_interrupt(self):
        bus = EventBus()
        await bus.emit_run_started("r", "g")
        await bus.emit_run_interrupted("r", 0, ["a"], reason="requested")

        events = [e async for e in bus.stream("r")]

        assert events[-1].type == EventType.RUN_INTERRUPTED
        assert events[-1].data == {"pending": ["a"], "reason": "requested"}

    @pytest.mark.asyncio
    async def test_event_type_filter(self):
        bus = EventBus()
        await publish_run(bus, "r")

        events = [e async for e in bus.stream("r", event_types=[EventType.RUN_COMPLETED])]

        assert [e.type for e in events] == [EventType.RUN_COMPLETED]

    @pytest.mark.asyncio
    async def test_slow_consumer_drops_but_sees_end(self):
        bus = EventBus(stream_queue_size=2)
        stream = bus.stream("r", replay=False)
        first = asyncio.ensure_future(stream.__anext__())
        await asyncio.sleep(0)

        await publish_run(bus, "r", steps=5)

        events = [await first] + [e async for e in stream]
        assert len(events) < 7
        assert events[-1].type == EventType.RUN_COMPLETED

    @pytest.mark.asyncio
    async def test_early_break_detaches(self):
        bus = EventBus()
        await publish_run(bus, "r")

        stream = bus.stream("r")
        async for _ in stream:
            break
        await stream.aclose()

        assert bus.get_stats()["streams"] == 0


class TestHistory:
    @pytest.mark.asyncio
    async def test_history_most_recent_first(self):
        bus = EventBus()
        await publish_run(bus, "r")

        history = bus.get_history(run_id="r")

        assert history[0].type == EventType.RUN_COMPLETED
        assert bus.get_history(event_type=EventType.STEP_COMPLETED, limit=1)[0].step == 2

    @pytest.mark.asyncio
    async def test_max_history(self):
        bus = EventBus(max_history=3)
        await publish_run(bus, "r", steps=5)

        assert bus.get_stats()["total_events"] == 3

    @pytest.mark.asyncio
    async def test_forget(self):
        bus = EventBus()
        await publish_run(bus, "a")
        await publish_run(bus, "b")

        assert bus.forget("a") == 4
        assert {e.run_id for e in bus.get_history()} == {"b"}

    @pytest.mark.asyncio
    async def test_wait_for(self):
        bus = EventBus()

        waiter = asyncio.create_task(bus.wait_for(EventType.RUN_COMPLETED, run_id="r", timeout=1.0))
        await asyncio.sleep(0)
        await publish_run(bus, "r")

        event = await waiter
        assert event is not None
        assert event.data == {"output": {"n": 2}}

    @pytest.mark.asyncio
    async def test_wait_for_timeout(self):
        bus = EventBus()
        assert await bus.wait_for(EventType.RUN_COMPLETED, timeout=0.01) is None

    def test_to_dict(self):
        event = RunEvent(
            type=EventType.STEP_COMPLETED,
            run_id="r",
            step=1,
            step_event=StepEvent(run_id="r", step=1, version=1, status=RunStatus.COMPLETED),
        )

        data = event.to_dict()

        assert data["type"] == "step_completed"
        assert data["step_event"]["status"] == "completed"


async def _collect_steps(bus: EventBus, run_id: str) -> list[StepEvent]:
    return [e async for e in bus.step_events(run_id)]


async def _collect(bus: EventBus, run_id: str) -> list[RunEvent]:
    return [e async for e in bus.stream(run_id)]
