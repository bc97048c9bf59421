"""
Tests for the grid data model.

Tests cover:
- Direction parsing and sides
- Signal parsing and validation
- Position P/L
- ModuleStats running averages
- Grid lookups and persisted shape
"""

import pytest

from smartgrid.core.errors import GridCreationError
from smartgrid.core.models import (
    Direction,
    Grid,
    GridOrder,
    GridParams,
    ModuleStats,
    OrderKind,
    OrderStatus,
    OrderType,
    Position,
    PositionStatus,
    Side,
    Signal,
)


class TestDirection:
    @pytest.mark.parametrize("raw", ["BUY", "buy", "LONG", " long "])
    def test_parse_long_aliases(self, raw):
        assert Direction.parse(raw) is Direction.LONG

    @pytest.mark.parametrize("raw", ["SELL", "short"])
    def test_parse_short_aliases(self, raw):
        assert Direction.parse(raw) is Direction.SHORT

    def test_parse_rejects_unknown(self):
        with pytest.raises(ValueError):
            Direction.parse("sideways")

    def test_sides_and_sign(self):
        assert Direction.LONG.entry_side is Side.BUY
        assert Direction.LONG.exit_side is Side.SELL
        assert Direction.SHORT.entry_side is Side.SELL
        assert Direction.SHORT.exit_side is Side.BUY
        assert Direction.LONG.sign == 1
        assert Direction.SHORT.sign == -1


class TestSignal:
    def test_from_dict_normalizes(self):
        signal = Signal.from_dict({"pair": "btcusdt", "direction": "buy", "entryPoint": "50000"})
        assert signal.pair == "BTCUSDT"
        assert signal.direction is Direction.LONG
        assert signal.entry_point == 50000.0
        assert signal.confidence == 0.8

    def test_from_dict_accepts_snake_case_anchor(self):
        signal = Signal.from_dict({"pair": "ETHUSDT", "direction": "SHORT", "entry_point": 3000, "confidence": 0.9})
        assert signal.entry_point == 3000.0
        assert signal.confidence == 0.9

    @pytest.mark.parametrize("payload", [
        {"direction": "BUY", "entryPoint": 50000},
        {"pair": "BTCUSDT", "direction": "HOLD", "entryPoint": 50000},
        {"pair": "BTCUSDT", "direction": "BUY", "entryPoint": -1},
        {"pair": "BTCUSDT", "direction": "BUY"},
        {"pair": "BTCUSDT", "direction": "BUY", "entryPoint": "abc"},
        {"pair": "BTCUSDT", "direction": "BUY", "entryPoint": 50000, "timestamp": "abc"},
    ])
    def test_invalid_payloads(self, payload):
        with pytest.raises(GridCreationError) as exc_info:
            Signal.from_dict(payload)
        assert exc_info.value.reason == GridCreationError.INVALID_SIGNAL
        assert not exc_info.value.is_admission

    def test_to_source_keeps_provenance(self):
        signal = Signal.from_dict({
            "pair": "BTCUSDT", "direction": "BUY", "entryPoint": 1, "id": "sig-1", "source": "ai",
        })
        source = signal.to_source()
        assert source.id == "sig-1"
        assert source.source == "ai"
        assert source.confidence == 0.8


class TestPosition:
    def test_long_pnl(self):
        pos = Position(id="p", entry_order_id="e", level=0, entry_price=100.0, size=2.0, direction=Direction.LONG)
        assert pos.pnl_at(110.0) == pytest.approx(20.0)
        assert pos.invested == pytest.approx(200.0)

    def test_short_pnl(self):
        pos = Position(id="p", entry_order_id="e", level=0, entry_price=100.0, size=2.0, direction=Direction.SHORT)
        assert pos.pnl_at(110.0) == pytest.approx(-20.0)
        assert pos.pnl_at(90.0) == pytest.approx(20.0)

    def test_closed_position_is_not_open(self):
        pos = Position(id="p", entry_order_id="e", level=0, entry_price=1.0, size=1.0, direction=Direction.LONG,
                       status=PositionStatus.CLOSED)
        assert not pos.is_open


class TestModuleStats:
    def test_record_completion(self):
        stats = ModuleStats()
        stats.record_completion(10.0, 1000)
        stats.record_completion(-5.0, 3000)
        assert stats.total_grids_completed == 2
        assert stats.successful_grids == 1
        assert stats.total_profit == pytest.approx(5.0)
        assert stats.avg_completion_time_ms == pytest.approx(2000.0)

    def test_from_dict_tolerates_missing(self):
        stats = ModuleStats.from_dict(None)
        assert stats.total_grids_created == 0


def _grid() -> Grid:
    entry = GridOrder(id="g_entry_0", kind=OrderKind.ENTRY, side=Side.BUY, level=0, price=100.0, size=1.0,
                      status=OrderStatus.ACTIVE, venue_order_id="777")
    tp = GridOrder(id="g_tp_0", kind=OrderKind.TAKE_PROFIT, side=Side.SELL, level=0, price=101.5, size=1.0,
                   entry_order_id="g_entry_0")
    sl = GridOrder(id="g_sl_0", kind=OrderKind.STOP_LOSS, side=Side.SELL, level=0, price=98.0, size=1.0,
                   entry_order_id="g_entry_0")
    params = GridParams(atr=2.0, grid_step=1.0, take_profit_distance=1.5, stop_loss_distance=2.0,
                        position_size=1.0, grid_levels=1, trailing_stop_activation_level=100.75)
    return Grid(id="g", pair="BTCUSDT", direction=Direction.LONG, anchor_price=100.0, params=params,
                entry_orders=[entry], take_profit_orders=[tp], stop_loss_orders=[sl])


class TestGrid:
    def test_find_order_by_local_and_venue_id(self):
        grid = _grid()
        assert grid.find_order("g_entry_0").id == "g_entry_0"
        assert grid.find_order("777").id == "g_entry_0"
        assert grid.find_order("missing") is None

    def test_exit_lookup(self):
        grid = _grid()
        assert grid.take_profit_for("g_entry_0").id == "g_tp_0"
        assert grid.stop_loss_for("g_entry_0").id == "g_sl_0"

    def test_stop_loss_is_stop_order(self):
        grid = _grid()
        assert grid.stop_loss_orders[0].order_type is OrderType.STOP
        assert grid.take_profit_orders[0].order_type is OrderType.LIMIT

    def test_persisted_shape_restores_enums(self):
        restored = Grid.from_dict(_grid().to_dict())
        assert restored.direction is Direction.LONG
        assert restored.entry_orders[0].status is OrderStatus.ACTIVE
        assert restored.stop_loss_orders[0].kind is OrderKind.STOP_LOSS
        assert restored.params.trailing_stop_activation_level == pytest.approx(100.75)
