"""
Tests for GridBuilder - ladder construction from a signal and ATR.

Tests cover:
- LONG and SHORT price layout
- Fixed and dynamic position sizing
- Level cap and trailing activation level
- Rejections without partial state
"""

import pytest

from smartgrid.core.errors import GridCreationError
from smartgrid.core.models import Direction, OrderKind, OrderStatus, Side, Signal
from smartgrid.execution.grid_builder import GridBuilder, GridBuilderConfig


def _signal(direction=Direction.LONG, anchor=50000.0, pair="BTCUSDT") -> Signal:
    return Signal(pair=pair, direction=direction, entry_point=anchor, confidence=0.9, id="sig-1")


@pytest.fixture
def builder() -> GridBuilder:
    return GridBuilder(GridBuilderConfig(dynamic_position_sizing=False, default_lot_size=0.01))


class TestLayout:
    def test_long_ladder(self, builder):
        grid = builder.build(_signal(), atr=200.0, created_at=1_700_000_000_000)

        assert grid.params.grid_step == pytest.approx(100.0)
        assert grid.params.take_profit_distance == pytest.approx(150.0)
        assert grid.params.stop_loss_distance == pytest.approx(200.0)
        assert [o.price for o in grid.entry_orders] == pytest.approx([50000, 49900, 49800, 49700, 49600])
        assert [o.price for o in grid.take_profit_orders] == pytest.approx([50150, 50050, 49950, 49850, 49750])
        assert [o.price for o in grid.stop_loss_orders] == pytest.approx([49800, 49700, 49600, 49500, 49400])
        assert all(o.side is Side.BUY for o in grid.entry_orders)
        assert all(o.side is Side.SELL for o in grid.take_profit_orders + grid.stop_loss_orders)

    def test_short_ladder_mirrors(self, builder):
        grid = builder.build(_signal(Direction.SHORT), atr=200.0)

        assert [o.price for o in grid.entry_orders] == pytest.approx([50000, 50100, 50200, 50300, 50400])
        assert grid.take_profit_orders[0].price == pytest.approx(49850)
        assert grid.stop_loss_orders[0].price == pytest.approx(50200)
        assert all(o.side is Side.SELL for o in grid.entry_orders)

    def test_every_order_pending_and_linked(self, builder):
        grid = builder.build(_signal(), atr=200.0, created_at=42)

        assert grid.id == "grid_BTCUSDT_42"
        assert all(o.status is OrderStatus.PENDING for o in grid.all_orders())
        for i, entry in enumerate(grid.entry_orders):
            assert entry.id == f"grid_BTCUSDT_42_entry_{i}"
            assert entry.kind is OrderKind.ENTRY
            assert grid.take_profit_for(entry.id).id == f"grid_BTCUSDT_42_tp_{i}"
            assert grid.stop_loss_for(entry.id).id == f"grid_BTCUSDT_42_sl_{i}"
        assert grid.positions == []
        assert grid.signal.id == "sig-1"

    def test_trailing_activation_level(self, builder):
        long_grid = builder.build(_signal(), atr=200.0)
        short_grid = builder.build(_signal(Direction.SHORT), atr=200.0)
        assert long_grid.params.trailing_stop_activation_level == pytest.approx(50075.0)
        assert short_grid.params.trailing_stop_activation_level == pytest.approx(49925.0)

    def test_level_count_capped_by_max_grid_size(self):
        builder = GridBuilder(GridBuilderConfig(default_grid_levels=20, max_grid_size=10))
        grid = builder.build(_signal(), atr=200.0)
        assert len(grid.entry_orders) == 10
        assert grid.params.grid_levels == 10

    def test_partial_levels_sorted(self):
        builder = GridBuilder(GridBuilderConfig(partial_take_profit_levels=(0.7, 0.3, 0.5)))
        grid = builder.build(_signal(), atr=200.0)
        assert grid.partial_take_profit_levels == [0.3, 0.5, 0.7]


class TestSizing:
    def test_fixed_lot(self, builder):
        assert builder.position_size(50000.0) == pytest.approx(0.01)

    def test_dynamic_sizing_converts_to_base_units(self):
        builder = GridBuilder(GridBuilderConfig(
            dynamic_position_sizing=True, initial_capital=10000.0, max_risk_per_trade=5.0,
            default_grid_levels=5, min_position_size=0.001,
        ))
        # 10000 x 5% / 5 levels = 100 quote per level
        assert builder.position_size(100.0) == pytest.approx(1.0)

    def test_dynamic_sizing_floor(self):
        builder = GridBuilder(GridBuilderConfig(dynamic_position_sizing=True, min_position_size=0.001))
        assert builder.position_size(50000.0) == pytest.approx(0.001)

    def test_balance_provider_failure_falls_back_to_lot(self):
        def broken() -> float:
            raise RuntimeError("balance unavailable")

        builder = GridBuilder(GridBuilderConfig(dynamic_position_sizing=True, default_lot_size=0.02),
                              balance_provider=broken)
        assert builder.position_size(100.0) == pytest.approx(0.02)


class TestRejections:
    @pytest.mark.parametrize("atr", [0.0, -1.0, float("nan")])
    def test_no_volatility(self, builder, atr):
        with pytest.raises(GridCreationError) as exc_info:
            builder.build(_signal(), atr=atr)
        assert exc_info.value.reason == GridCreationError.INSUFFICIENT_VOLATILITY

    def test_invalid_anchor(self, builder):
        with pytest.raises(GridCreationError) as exc_info:
            builder.build(_signal(anchor=0.0), atr=200.0)
        assert exc_info.value.reason == GridCreationError.INVALID_SIGNAL
