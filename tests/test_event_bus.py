"""
Tests for lifecycle event delivery.
"""

import asyncio
import json

import pytest

from flowgate.runtime.event_bus import (
    EventBus,
    EventType,
    LifecycleEvent,
    ListSink,
    QueueSink,
    RunEmitter,
)


class BrokenSink:
    async def emit(self, event):
        raise RuntimeError("sink down")


class TestRunEmitter:
    @pytest.mark.asyncio
    async def test_sequence_and_fields(self):
        sink = ListSink()
        emitter = RunEmitter("run-1", [sink])

        await emitter.emit(EventType.NODE_START, "a", kind="llm", label="Draft")
        event = await emitter.emit(EventType.FLOW_COMPLETE, status="completed")

        assert [e.sequence for e in sink.events] == [1, 2]
        assert event.is_terminal
        assert not sink.events[0].is_terminal
        data = sink.events[0].to_dict()
        assert data["type"] == "node-start"
        assert data["node_id"] == "a"
        assert data["kind"] == "llm"
        assert data["run_id"] == "run-1"

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_stop_delivery(self):
        sink = ListSink()
        emitter = RunEmitter("run-1", [BrokenSink(), sink])

        await emitter.emit(EventType.NODE_START, "a")
        await emitter.emit(EventType.NODE_COMPLETE, "a")

        assert sink.types() == ["node-start", "node-complete"]
        assert emitter.sequence == 2

    def test_sse_frame(self):
        event = LifecycleEvent(EventType.NODE_SKIPPED, "run-1", 3, "b", {"reason": "rejected"})
        frame = event.to_sse()

        assert frame.startswith("data: ")
        assert frame.endswith("\n\n")
        assert json.loads(frame[len("data: ") :])["reason"] == "rejected"


class TestQueueSink:
    @pytest.mark.asyncio
    async def test_iteration_stops_after_terminal(self):
        channel = QueueSink()
        emitter = RunEmitter("run-1", [channel])
        await emitter.emit(EventType.NODE_START, "a")
        await emitter.emit(EventType.FLOW_ERROR, status="cancelled")
        await emitter.emit(EventType.NODE_START, "late")

        received = [event.type async for event in channel]

        assert received == [EventType.NODE_START, EventType.FLOW_ERROR]

    @pytest.mark.asyncio
    async def test_close_ends_iteration_and_drops_later_events(self):
        channel = QueueSink()
        emitter = RunEmitter("run-1", [channel])
        await emitter.emit(EventType.NODE_START, "a")
        channel.close()
        await emitter.emit(EventType.NODE_COMPLETE, "a")

        received = [event.type async for event in channel]

        assert received == [EventType.NODE_START]


class TestEventBus:
    @pytest.mark.asyncio
    async def test_subscribers_filtered_by_type_and_run(self):
        bus = EventBus()
        blocked: list[str] = []

        async def on_blocked(event):
            blocked.append(event.node_id)

        bus.subscribe([EventType.NODE_BLOCKED], on_blocked, filter_run="run-1")
        one, two = RunEmitter("run-1", [bus]), RunEmitter("run-2", [bus])

        await one.emit(EventType.NODE_BLOCKED, "send")
        await two.emit(EventType.NODE_BLOCKED, "other")
        await one.emit(EventType.NODE_START, "draft")

        assert blocked == ["send"]
        assert len(bus.get_history()) == 3
        assert len(bus.get_history(run_id="run-2")) == 1

    @pytest.mark.asyncio
    async def test_handler_error_isolated(self):
        bus = EventBus()
        seen: list[int] = []

        async def broken(event):
            raise ValueError("handler bug")

        async def healthy(event):
            seen.append(event.sequence)

        bus.subscribe([EventType.NODE_START], broken)
        bus.subscribe([EventType.NODE_START], healthy)
        await RunEmitter("run-1", [bus]).emit(EventType.NODE_START, "a")

        assert seen == [1]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        seen: list[int] = []

        async def handler(event):
            seen.append(event.sequence)

        sub_id = bus.subscribe([EventType.NODE_START], handler)
        assert bus.unsubscribe(sub_id)
        assert not bus.unsubscribe(sub_id)
        await RunEmitter("run-1", [bus]).emit(EventType.NODE_START, "a")

        assert seen == []

    @pytest.mark.asyncio
    async def test_history_is_bounded(self):
        bus = EventBus(max_history=2)
        emitter = RunEmitter("run-1", [bus])
        for _ in range(4):
            await emitter.emit(EventType.NODE_START, "a")

        assert [e.sequence for e in bus.get_history()] == [4, 3]

    @pytest.mark.asyncio
    async def test_wait_for(self):
        bus = EventBus()
        emitter = RunEmitter("run-1", [bus])

        waiter = asyncio.create_task(bus.wait_for(EventType.FLOW_COMPLETE, run_id="run-1"))
        await asyncio.sleep(0)
        await emitter.emit(EventType.FLOW_COMPLETE, status="completed")

        event = await asyncio.wait_for(waiter, timeout=1)
        assert event.data["status"] == "completed"

    @pytest.mark.asyncio
    async def test_wait_for_timeout(self):
        bus = EventBus()
        assert await bus.wait_for(EventType.FLOW_COMPLETE, timeout=0.01) is None
