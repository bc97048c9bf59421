"""
Tests for EventBus: ordering, priorities, filters, handler isolation, history.
"""

import asyncio

import pytest

from smartgrid.core.event_bus import MODULE_ID, Event, EventBus, EventType


class TestDelivery:
    @pytest.mark.asyncio
    async def test_fifo_order(self):
        bus = EventBus()
        seen = []
        bus.subscribe(EventType.GRID_CREATED, lambda e: seen.append(e.data["n"]))
        for n in range(5):
            await bus.emit(EventType.GRID_CREATED, grid_id="g", n=n)
        assert await bus.drain() == 5
        assert seen == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_priority_and_global_first(self):
        bus = EventBus()
        calls = []
        bus.subscribe(EventType.GRID_COMPLETED, lambda e: calls.append("low"), priority=0)
        bus.subscribe(EventType.GRID_COMPLETED, lambda e: calls.append("high"), priority=10)
        bus.subscribe_all(lambda e: calls.append("global"))
        await bus.emit(EventType.GRID_COMPLETED, grid_id="g")
        await bus.drain()
        assert calls == ["global", "high", "low"]

    @pytest.mark.asyncio
    async def test_async_handler_and_filter(self):
        bus = EventBus()
        got = []

        async def handler(event):
            await asyncio.sleep(0)
            got.append(event.grid_id)

        bus.subscribe(EventType.POSITION_OPENED, handler, filter_fn=lambda e: e.grid_id == "keep")
        await bus.emit(EventType.POSITION_OPENED, grid_id="drop")
        await bus.emit(EventType.POSITION_OPENED, grid_id="keep")
        await bus.drain()
        assert got == ["keep"]

    @pytest.mark.asyncio
    async def test_failing_handler_isolated(self):
        bus = EventBus()
        got = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(EventType.GRID_ADJUSTED, broken, priority=5)
        bus.subscribe(EventType.GRID_ADJUSTED, got.append)
        await bus.emit(EventType.GRID_ADJUSTED, grid_id="g")
        await bus.drain()
        assert len(got) == 1
        assert bus.get_stats()["handler_errors"] == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        got = []
        sub = bus.subscribe(EventType.GRID_CREATED, got.append)
        assert bus.unsubscribe(EventType.GRID_CREATED, sub)
        assert not bus.unsubscribe(EventType.GRID_CREATED, sub)
        await bus.emit(EventType.GRID_CREATED, grid_id="g")
        await bus.drain()
        assert got == []

    @pytest.mark.asyncio
    async def test_background_loop(self):
        bus = EventBus()
        done = asyncio.Event()
        bus.subscribe(EventType.GRID_CREATED, lambda e: done.set())
        task = asyncio.create_task(bus.start())
        await bus.emit(EventType.GRID_CREATED, grid_id="g")
        await asyncio.wait_for(done.wait(), timeout=2.0)
        bus.stop()
        task.cancel()
        await task
        assert not bus.get_stats()["running"]


class TestQueueAndHistory:
    @pytest.mark.asyncio
    async def test_full_queue_drops(self):
        bus = EventBus(queue_size=1)
        assert await bus.emit(EventType.GRID_CREATED, grid_id="a")
        assert not await bus.emit(EventType.GRID_CREATED, grid_id="b")
        assert bus.get_stats()["events_dropped"] == 1

    @pytest.mark.asyncio
    async def test_history_bounded(self):
        bus = EventBus(history_size=2)
        for gid in ("a", "b", "c"):
            await bus.emit(EventType.GRID_CREATED, grid_id=gid)
        await bus.emit(EventType.GRID_COMPLETED, grid_id="c")
        await bus.drain()
        assert [e.grid_id for e in bus.get_history()] == ["c", "c"]
        assert [e.type for e in bus.get_history(EventType.GRID_CREATED)] == [EventType.GRID_CREATED]

    def test_event_wire_shape(self):
        event = Event(type=EventType.GRID_CREATED, data={"pair": "BTCUSDT"}, source=MODULE_ID, grid_id="g1")
        wire = event.to_dict()
        assert wire["type"] == "grid.created"
        assert wire["gridId"] == "g1"
        assert wire["moduleId"] == "adaptive-smart-grid"
        assert wire["pair"] == "BTCUSDT"
