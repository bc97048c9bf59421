"""
Tests for GridCoordinator - grid registry, admission, tick and completion.

Tests cover:
- Grid creation and admission control without state mutation
- Queued external events applied at tick start (fills by status, wrapped signals, external closes)
- TP/SL activation only after the entry fill
- Drawdown completion within one tick, deferred while a market close fails
- Manual close, history bounds, statistics
- Per-grid failure isolation
- State reload and shutdown
"""

import pytest

from conftest import FakeGateway, make_candles, make_settings
from smartgrid.core.errors import GridCreationError
from smartgrid.core.event_bus import Event, EventType
from smartgrid.core.models import (
    CompletionReason,
    Direction,
    GridStatus,
    ModuleStats,
    OrderKind,
    OrderStatus,
    Signal,
)
from smartgrid.engine_factory import EngineDependencies, create_engine
from smartgrid.monitoring.metrics_rich import GridMetrics
from smartgrid.state.state_store import EngineState, MemoryGridRepository


def _signal(pair="BTCUSDT", direction=Direction.LONG, anchor=50000.0, confidence=0.9) -> Signal:
    return Signal(pair=pair, direction=direction, entry_point=anchor, confidence=confidence)


def _engine(gateway, repository=None, bus=None, metrics=None, **overrides):
    return create_engine(EngineDependencies(
        cfg=make_settings(**overrides),
        gateway=gateway,
        repository=repository or MemoryGridRepository(),
        event_bus=bus,
        metrics=metrics,
    ))


def _fill_event(order, price=None, grid_id=None) -> Event:
    data = {"orderId": order.venue_order_id or order.id}
    if price is not None:
        data["fillPrice"] = price
    return Event(type=EventType.ORDER_EXECUTED, data=data, grid_id=grid_id)


def _assert_exits_follow_entries(grid):
    for exit_order in grid.take_profit_orders + grid.stop_loss_orders:
        if exit_order.status is OrderStatus.ACTIVE:
            entry = next(e for e in grid.entry_orders if e.id == exit_order.entry_order_id)
            assert entry.status is OrderStatus.FILLED


class TestCreation:
    @pytest.mark.asyncio
    async def test_create_registers_and_submits_first_entry(self, engine, gateway, repository, bus):
        grid = await engine.create_grid_from_signal(_signal())

        assert engine.get_active_grids() == [grid]
        assert grid.entry_orders[0].status is OrderStatus.ACTIVE
        assert all(o.status is OrderStatus.PENDING for o in grid.entry_orders[1:])
        assert len(gateway.created) == 1
        assert engine.get_stats()["total_grids_created"] == 1
        assert repository.saves == 1

        await bus.drain()
        created = bus.get_history(EventType.GRID_CREATED)
        assert len(created) == 1
        assert created[0].grid_id == grid.id
        assert created[0].data["pair"] == "BTCUSDT"

    @pytest.mark.asyncio
    async def test_first_entry_retried_when_venue_rejects(self, engine, gateway):
        gateway.fail_create = True
        grid = await engine.create_grid_from_signal(_signal())
        assert grid.entry_orders[0].status is OrderStatus.PENDING

        gateway.fail_create = False
        await engine.run_tick()
        assert grid.entry_orders[0].status is OrderStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_same_pair_rejected_without_mutation(self, engine, gateway, repository, metrics):
        await engine.create_grid_from_signal(_signal())
        before = (len(engine.get_active_grids()), engine.get_stats()["total_grids_created"],
                  len(gateway.created), repository.saves)

        with pytest.raises(GridCreationError) as exc_info:
            await engine.create_grid_from_signal(_signal(direction=Direction.SHORT))

        assert exc_info.value.reason == GridCreationError.PAIR_ALREADY_ACTIVE
        assert exc_info.value.is_admission
        after = (len(engine.get_active_grids()), engine.get_stats()["total_grids_created"],
                 len(gateway.created), repository.saves)
        assert after == before
        assert metrics.get_registry().get_sample_value(
            "grids_rejected_total", {"reason": GridCreationError.PAIR_ALREADY_ACTIVE}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_max_concurrent(self):
        engine = _engine(FakeGateway(), max_concurrent_grids=1)
        await engine.create_grid_from_signal(_signal())
        with pytest.raises(GridCreationError) as exc_info:
            await engine.create_grid_from_signal(_signal(pair="ETHUSDT", anchor=3000.0))
        assert exc_info.value.reason == GridCreationError.MAX_CONCURRENT

    @pytest.mark.asyncio
    async def test_low_confidence(self, engine):
        with pytest.raises(GridCreationError) as exc_info:
            await engine.create_grid_from_signal(_signal(confidence=0.5))
        assert exc_info.value.reason == GridCreationError.LOW_CONFIDENCE
        assert engine.get_active_grids() == []

    @pytest.mark.asyncio
    async def test_insufficient_volatility(self):
        gateway = FakeGateway(candles=make_candles(5))
        engine = _engine(gateway)
        with pytest.raises(GridCreationError) as exc_info:
            await engine.create_grid_from_signal(_signal())
        assert exc_info.value.reason == GridCreationError.INSUFFICIENT_VOLATILITY
        assert gateway.created == []
        assert engine.get_stats()["total_grids_created"] == 0

    @pytest.mark.asyncio
    async def test_market_data_unavailable(self, engine, gateway):
        gateway.fail_candles = True
        with pytest.raises(GridCreationError) as exc_info:
            await engine.create_grid_from_signal(_signal())
        assert exc_info.value.reason == GridCreationError.MARKET_DATA_UNAVAILABLE
        assert not exc_info.value.is_admission


class TestTick:
    @pytest.mark.asyncio
    async def test_fill_events_drive_ladder(self, engine, gateway):
        grid = await engine.create_grid_from_signal(_signal())
        _assert_exits_follow_entries(grid)

        entry0 = grid.entry_orders[0]
        engine.submit_event(_fill_event(entry0, 50000.0))
        result = await engine.run_tick()

        assert result.events_applied == 1
        assert result.persisted
        assert len(grid.positions) == 1
        assert grid.take_profit_orders[0].status is OrderStatus.ACTIVE
        assert grid.stop_loss_orders[0].status is OrderStatus.ACTIVE
        assert grid.entry_orders[1].status is OrderStatus.ACTIVE
        assert grid.take_profit_orders[1].status is OrderStatus.PENDING
        _assert_exits_follow_entries(grid)

        # Take-profit fill located by venue id alone
        gateway.set_price(50150.0)
        engine.submit_event(_fill_event(grid.take_profit_orders[0]))
        await engine.run_tick()

        assert grid.positions[0].close_reason == "TP"
        assert grid.stop_loss_orders[0].status is OrderStatus.CANCELED
        _assert_exits_follow_entries(grid)

    @pytest.mark.asyncio
    async def test_take_profit_keeps_ladder_running(self, engine, gateway):
        grid = await engine.create_grid_from_signal(_signal())
        engine.submit_event(_fill_event(grid.entry_orders[0], 50000.0))
        await engine.run_tick()

        gateway.set_price(50150.0)
        engine.submit_event(_fill_event(grid.take_profit_orders[0]))
        result = await engine.run_tick()

        assert result.grids_completed == 0
        assert grid.is_active
        assert grid.open_positions() == []
        assert grid.entry_orders[1].status is OrderStatus.ACTIVE
        assert engine.get_active_grids() == [grid]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["FILLED", "filled", None])
    async def test_executed_event_with_filled_status_opens_position(self, engine, status):
        grid = await engine.create_grid_from_signal(_signal())
        event = _fill_event(grid.entry_orders[0], 50000.0)
        if status is not None:
            event.data["status"] = status
        engine.submit_event(event)
        await engine.run_tick()

        assert grid.entry_orders[0].status is OrderStatus.FILLED
        assert len(grid.positions) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["CANCELED", "cancelled"])
    async def test_executed_event_with_canceled_status(self, engine, status):
        grid = await engine.create_grid_from_signal(_signal())
        event = _fill_event(grid.entry_orders[0], 50000.0)
        event.data["status"] = status
        engine.submit_event(event)
        await engine.run_tick()

        assert grid.entry_orders[0].status is OrderStatus.CANCELED
        assert grid.positions == []
        assert grid.take_profit_orders[0].status is not OrderStatus.ACTIVE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["REJECTED", "NEW", "PARTIALLY_FILLED"])
    async def test_executed_event_with_other_status_ignored(self, engine, status):
        grid = await engine.create_grid_from_signal(_signal())
        event = _fill_event(grid.entry_orders[0], 50000.0)
        event.data["status"] = status
        engine.submit_event(event)
        result = await engine.run_tick()

        assert result.errors == 0
        assert grid.entry_orders[0].status is OrderStatus.ACTIVE
        assert grid.positions == []
        assert grid.take_profit_orders[0].status is not OrderStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_external_position_close(self, engine, gateway):
        grid = await engine.create_grid_from_signal(_signal())
        engine.submit_event(_fill_event(grid.entry_orders[0], 50000.0))
        await engine.run_tick()
        position = grid.positions[0]

        engine.submit_event(Event(
            type=EventType.POSITION_CLOSED_EXTERNAL,
            data={"positionId": position.id, "closePrice": 50250.0, "profit": 2.5},
            grid_id=grid.id,
        ))
        result = await engine.run_tick()

        assert result.events_applied == 1
        assert not position.is_open
        assert position.close_reason == "EXTERNAL"
        assert position.close_price == 50250.0
        assert position.profit == pytest.approx(2.5)
        assert grid.take_profit_orders[0].status is OrderStatus.CANCELED
        assert grid.stop_loss_orders[0].status is OrderStatus.CANCELED
        # Level 1 entry is still working
        assert grid.is_active

    @pytest.mark.asyncio
    async def test_external_position_close_from_bus(self, engine, bus):
        engine.subscribe()
        grid = await engine.create_grid_from_signal(_signal())
        engine.submit_event(_fill_event(grid.entry_orders[0], 50000.0))
        await engine.run_tick()
        position = grid.positions[0]

        await bus.publish(Event(
            type=EventType.POSITION_CLOSED_EXTERNAL,
            data={"positionId": position.id, "gridId": grid.id},
        ))
        await bus.drain()
        assert position.is_open

        await engine.run_tick()

        assert not position.is_open
        assert position.close_reason == "EXTERNAL"
        # No reported price or profit: closed flat at entry
        assert position.close_price == 50000.0
        assert position.profit == pytest.approx(0.0)

    @pytest.mark.asyncio
    async def test_external_close_for_unknown_position_ignored(self, engine):
        grid = await engine.create_grid_from_signal(_signal())
        engine.submit_event(Event(
            type=EventType.POSITION_CLOSED_EXTERNAL,
            data={"positionId": "missing", "gridId": grid.id},
        ))
        result = await engine.run_tick()
        assert result.errors == 0
        assert grid.is_active

    @pytest.mark.asyncio
    async def test_unmatched_event_ignored(self, engine):
        await engine.create_grid_from_signal(_signal())
        engine.submit_event(Event(type=EventType.ORDER_EXECUTED, data={"orderId": "nope"}))
        result = await engine.run_tick()
        assert result.errors == 0

    @pytest.mark.asyncio
    async def test_venue_cancel_event(self, engine):
        grid = await engine.create_grid_from_signal(_signal())
        engine.submit_event(Event(
            type=EventType.ORDER_CANCELED,
            data={"orderId": grid.entry_orders[0].id},
            grid_id=grid.id,
        ))
        await engine.run_tick()
        assert grid.entry_orders[0].status is OrderStatus.CANCELED
        # Level 0 canceled and price is within 1% of level 1
        assert grid.entry_orders[1].status is OrderStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_drawdown_completes_within_one_tick(self, engine, gateway, bus):
        grid = await engine.create_grid_from_signal(_signal())
        engine.submit_event(_fill_event(grid.entry_orders[0], 50000.0))
        await engine.run_tick()

        gateway.set_price(44000.0)
        result = await engine.run_tick()

        assert result.grids_completed == 1
        assert grid.status is GridStatus.COMPLETED
        assert grid.completion_reason is CompletionReason.STOP_LOSS
        assert engine.get_active_grids() == []
        assert engine.get_grid_history() == [grid]
        assert all(o.status.is_terminal for o in grid.all_orders())
        assert grid.stats.final_profit == pytest.approx(-60.0)

        stats = engine.get_stats()
        assert stats["total_grids_completed"] == 1
        assert stats["successful_grids"] == 0
        assert stats["win_rate"] == 0.0

        await bus.drain()
        completed = bus.get_history(EventType.GRID_COMPLETED)
        assert completed[0].data["reason"] == "STOP_LOSS"

    @pytest.mark.asyncio
    async def test_drawdown_waits_for_market_close(self, engine, gateway):
        grid = await engine.create_grid_from_signal(_signal())
        engine.submit_event(_fill_event(grid.entry_orders[0], 50000.0))
        await engine.run_tick()

        gateway.set_price(44000.0)
        gateway.fail_market = True
        result = await engine.run_tick()

        assert result.grids_completed == 0
        assert grid.is_active
        assert grid.positions[0].is_open
        assert grid.take_profit_orders[0].status is OrderStatus.ACTIVE
        assert grid.stop_loss_orders[0].status is OrderStatus.ACTIVE

        gateway.fail_market = False
        result = await engine.run_tick()

        assert result.grids_completed == 1
        assert grid.completion_reason is CompletionReason.STOP_LOSS
        assert not grid.positions[0].is_open

    @pytest.mark.asyncio
    async def test_missing_price_skips_grid(self, engine, gateway):
        grid = await engine.create_grid_from_signal(_signal())
        gateway.fail_ticker = True
        result = await engine.run_tick()
        assert result.errors == 0
        assert grid.is_active

    @pytest.mark.asyncio
    async def test_volatility_change_adjusts_grid(self, engine, gateway, bus):
        grid = await engine.create_grid_from_signal(_signal())
        gateway.candles = make_candles(30, true_range=400.0)
        engine.volatility.clear_cache()

        await engine.run_tick()

        assert grid.params.grid_step == pytest.approx(200.0)
        assert grid.entry_orders[1].price == pytest.approx(49800.0)
        await bus.drain()
        adjusted = bus.get_history(EventType.GRID_ADJUSTED)
        assert adjusted[0].data["oldGridStep"] == pytest.approx(100.0)
        assert adjusted[0].data["newGridStep"] == pytest.approx(200.0)

    @pytest.mark.asyncio
    async def test_one_grid_failure_isolated(self, gateway, monkeypatch):
        metrics = GridMetrics()
        engine = _engine(gateway, metrics=metrics)
        btc = await engine.create_grid_from_signal(_signal())
        eth = await engine.create_grid_from_signal(_signal(pair="ETHUSDT", anchor=50000.0))

        original = engine.risk.evaluate

        async def flaky(grid, price):
            if grid.pair == "BTCUSDT":
                raise RuntimeError("boom")
            return await original(grid, price)

        monkeypatch.setattr(engine.risk, "evaluate", flaky)
        result = await engine.run_tick()

        assert result.errors == 1
        assert result.grids_processed == 1
        assert btc.is_active and eth.is_active
        assert metrics.get_registry().get_sample_value("tick_errors_total") == 1.0

    @pytest.mark.asyncio
    async def test_signal_from_bus(self, engine, gateway, bus):
        engine.subscribe()
        gateway.set_price(3000.0, pair="ETHUSDT")
        await bus.publish(Event(
            type=EventType.TRADING_SIGNAL,
            data={"pair": "ETHUSDT", "direction": "SELL", "entryPoint": 3000, "confidence": 0.9},
        ))
        await bus.drain()
        assert engine.get_active_grids() == []

        await engine.run_tick()

        grids = engine.get_active_grids()
        assert len(grids) == 1
        assert grids[0].direction is Direction.SHORT
        assert grids[0].entry_orders[0].side.value == "SELL"

    @pytest.mark.asyncio
    async def test_wrapped_signal_payload(self, engine, gateway):
        gateway.set_price(3000.0, pair="ETHUSDT")
        engine.submit_event(Event(
            type=EventType.TRADING_SIGNAL,
            data={"signal": {"pair": "ETHUSDT", "direction": "BUY", "entryPoint": 3000, "confidence": 0.9}},
        ))
        await engine.run_tick()

        grids = engine.get_active_grids()
        assert len(grids) == 1
        assert grids[0].pair == "ETHUSDT"
        assert grids[0].direction is Direction.LONG

    @pytest.mark.asyncio
    async def test_rejected_signal_from_bus_is_logged_only(self, engine):
        await engine.create_grid_from_signal(_signal())
        engine.submit_event(Event(
            type=EventType.TRADING_SIGNAL,
            data={"pair": "BTCUSDT", "direction": "BUY", "entryPoint": 50000},
        ))
        result = await engine.run_tick()
        assert result.errors == 0
        assert len(engine.get_active_grids()) == 1


class TestCloseAndHistory:
    @pytest.mark.asyncio
    async def test_manual_close(self, engine, gateway):
        grid = await engine.create_grid_from_signal(_signal())
        engine.submit_event(_fill_event(grid.entry_orders[0], 50000.0))
        await engine.run_tick()
        gateway.set_price(50100.0)

        assert await engine.close_grid(grid.id)

        assert grid.status is GridStatus.COMPLETED
        assert grid.completion_reason is CompletionReason.MANUAL
        assert grid.positions[0].close_price == 50100.0
        assert grid.stats.final_profit == pytest.approx(1.0)
        assert engine.get_stats()["win_rate"] == 100.0
        assert engine.get_grid(grid.id) is grid

    @pytest.mark.asyncio
    async def test_failed_market_close_leaves_grid_active(self, engine, gateway):
        grid = await engine.create_grid_from_signal(_signal())
        engine.submit_event(_fill_event(grid.entry_orders[0], 50000.0))
        await engine.run_tick()
        gateway.fail_market = True

        assert not await engine.close_grid(grid.id)

        assert grid.is_active
        assert grid.positions[0].is_open
        assert grid.stop_loss_orders[0].status is OrderStatus.ACTIVE
        assert engine.get_active_grids() == [grid]
        assert engine.get_grid_history() == []

        gateway.fail_market = False
        assert await engine.close_grid(grid.id)
        assert grid.status is GridStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_close_unknown(self, engine):
        assert not await engine.close_grid("grid_NOPE_1")

    @pytest.mark.asyncio
    async def test_close_twice(self, engine):
        grid = await engine.create_grid_from_signal(_signal())
        assert await engine.close_grid(grid.id)
        assert not await engine.close_grid(grid.id)

    @pytest.mark.asyncio
    async def test_history_bounded_newest_first(self):
        engine = _engine(FakeGateway(), max_history_size=2)
        closed = []
        for pair in ("BTCUSDT", "ETHUSDT", "SOLUSDT"):
            grid = await engine.create_grid_from_signal(_signal(pair=pair))
            await engine.close_grid(grid.id, "MANUAL")
            closed.append(grid)

        history = engine.get_grid_history()
        assert [g.pair for g in history] == ["SOLUSDT", "ETHUSDT"]
        assert engine.get_grid_history(limit=1) == [closed[-1]]
        assert engine.get_stats()["total_grids_completed"] == 3


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_load_state(self, gateway):
        source = _engine(FakeGateway())
        grid = await source.create_grid_from_signal(_signal())
        done = await source.create_grid_from_signal(_signal(pair="ETHUSDT"))
        done.status = GridStatus.COMPLETED
        repository = MemoryGridRepository(EngineState(
            grids={grid.id: grid, done.id: done},
            stats=ModuleStats(total_grids_created=7),
        ))

        engine = _engine(gateway, repository=repository)
        await engine.load_state()

        active = engine.get_active_grids()
        assert [g.id for g in active] == [grid.id]
        assert active[0].entry_orders[0].status is OrderStatus.ACTIVE
        assert active[0].entry_orders[0].kind is OrderKind.ENTRY
        assert engine.get_stats()["total_grids_created"] == 7

    @pytest.mark.asyncio
    async def test_shutdown_closes_when_configured(self, gateway):
        repository = MemoryGridRepository()
        engine = _engine(gateway, repository=repository, close_grids_on_shutdown=True)
        grid = await engine.create_grid_from_signal(_signal())
        saves = repository.saves

        await engine.shutdown()

        assert not engine.is_running
        assert engine.get_active_grids() == []
        assert grid.completion_reason is CompletionReason.SHUTDOWN
        assert repository.saves > saves

    @pytest.mark.asyncio
    async def test_shutdown_keeps_grids_by_default(self, engine):
        grid = await engine.create_grid_from_signal(_signal())
        await engine.shutdown()
        assert engine.get_active_grids() == [grid]
        assert grid.entry_orders[0].status is OrderStatus.ACTIVE
