"""
Position risk monitor: per-tick exit rules for an ACTIVE grid.

Evaluated in order with the latest price:
1. Drawdown stop over OPEN positions      -> STOP_LOSS
2. All positions closed / target profit   -> ALL_POSITIONS_CLOSED / TAKE_PROFIT
3. Trailing stop (activate, ratchet, hit) -> TRAILING_STOP
4. Partial take-profit levels (each fires at most once per grid)

The monitor closes positions through the OrderTracker and reports the
completion reason; completing the grid is the coordinator's job.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, TYPE_CHECKING

from smartgrid.core.event_bus import EventType
from smartgrid.core.json_utils import dumps
from smartgrid.core.models import CLOSE_REASON_PARTIAL_TP, CompletionReason, Direction, Grid, OrderStatus

if TYPE_CHECKING:
    from smartgrid.config.config import Settings
    from smartgrid.core.event_bus import EventBus
    from smartgrid.execution.order_tracker import OrderTracker
    from smartgrid.monitoring.metrics_rich import GridMetrics

log = logging.getLogger("smartgrid")


@dataclass
class RiskConfig:
    max_drawdown_percent: float = 10.0
    target_profit_percent: float = 5.0
    stop_loss_factor: float = 2.0
    log_event_callback: Optional[Callable[..., None]] = None

    @classmethod
    def from_settings(cls, settings: "Settings", **kwargs: Any) -> "RiskConfig":
        return cls(
            max_drawdown_percent=settings.max_drawdown_percent,
            target_profit_percent=settings.target_profit_percent,
            stop_loss_factor=settings.stop_loss_factor,
            **kwargs,
        )


def drawdown_percent(grid: Grid, price: float) -> Optional[float]:
    """
    Unrealized P/L of OPEN positions as a percent of their invested capital.

    None when nothing is open.
    """
    open_positions = grid.open_positions()
    invested = sum(p.invested for p in open_positions)
    if invested <= 0:
        return None
    pnl = sum(p.pnl_at(price) for p in open_positions)
    return pnl / invested * 100.0


def realized_profit_percent(grid: Grid) -> Optional[float]:
    """Realized profit as a percent of capital invested across every position."""
    invested = sum(p.invested for p in grid.positions)
    if invested <= 0:
        return None
    realized = sum(p.profit for p in grid.positions if not p.is_open)
    return realized / invested * 100.0


class PositionRiskMonitor:
    """
    Exit rules for one grid at a time.
    """

    def __init__(
        self,
        tracker: "OrderTracker",
        config: Optional[RiskConfig] = None,
        event_bus: Optional["EventBus"] = None,
        metrics: Optional["GridMetrics"] = None,
    ) -> None:
        self.tracker = tracker
        self.config = config or RiskConfig()
        self.event_bus = event_bus
        self.metrics = metrics
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    async def _emit(self, event_type: EventType, grid: Grid, **payload: Any) -> None:
        if self.event_bus is not None:
            await self.event_bus.emit(event_type, grid_id=grid.id, pair=grid.pair, **payload)

    async def evaluate(self, grid: Grid, price: float) -> Optional[CompletionReason]:
        """
        Run every rule in order.

        Returns:
            The completion reason when the grid must complete, else None.
            None as well when a rule fired but positions are still OPEN
        """
        for check in (self.check_drawdown, self.check_completion, self.check_trailing_stop):
            reason = await check(grid, price)
            if reason is None:
                continue
            still_open = len(grid.open_positions())
            if still_open:
                # A market close failed; the grid stays ACTIVE and the rule runs again next tick
                self._log_event(
                    "completion_deferred",
                    grid_id=grid.id,
                    reason=reason.value,
                    still_open=still_open,
                )
                return None
            return reason
        await self.check_partial_take_profit(grid, price)
        return None

    async def close_all_open(self, grid: Grid, reason: str, price: float) -> int:
        """
        Market-close every OPEN position.

        Returns:
            Number of positions still OPEN afterwards
        """
        for position in list(grid.open_positions()):
            await self.tracker.close_position_at_market(grid, position, reason, price)
        remaining = len(grid.open_positions())
        if remaining:
            log.error(dumps({
                "event": "market_close_incomplete",
                "grid_id": grid.id,
                "reason": reason,
                "still_open": remaining,
            }))
        return remaining

    # ========== 1. Drawdown ==========

    async def check_drawdown(self, grid: Grid, price: float) -> Optional[CompletionReason]:
        dd = drawdown_percent(grid, price)
        if dd is None:
            return None
        if dd < grid.stats.max_drawdown:
            grid.stats.max_drawdown = dd
        if self.metrics:
            self.metrics.drawdown_pct.labels(pair=grid.pair).set(dd)
        if dd > -self.config.max_drawdown_percent:
            return None

        self._log_event(
            "drawdown_stop_triggered",
            grid_id=grid.id,
            pair=grid.pair,
            price=price,
            drawdown_percent=dd,
            limit=self.config.max_drawdown_percent,
        )
        await self.close_all_open(grid, CompletionReason.STOP_LOSS.value, price)
        return CompletionReason.STOP_LOSS

    # ========== 2. Completion ==========

    async def check_completion(self, grid: Grid, price: float) -> Optional[CompletionReason]:
        if not grid.positions:
            return None

        orders_active = any(o.status is OrderStatus.ACTIVE for o in grid.all_orders())
        if not grid.open_positions() and not orders_active:
            return CompletionReason.ALL_POSITIONS_CLOSED

        pct = realized_profit_percent(grid)
        if pct is not None and pct >= self.config.target_profit_percent:
            self._log_event(
                "target_profit_reached",
                grid_id=grid.id,
                pair=grid.pair,
                realized_percent=pct,
                target=self.config.target_profit_percent,
            )
            await self.close_all_open(grid, CompletionReason.TAKE_PROFIT.value, price)
            return CompletionReason.TAKE_PROFIT
        return None

    # ========== 3. Trailing stop ==========

    @staticmethod
    def trailing_stop_hit(grid: Grid, price: float) -> bool:
        if grid.trailing_stop_value is None:
            return False
        if grid.direction is Direction.LONG:
            return price <= grid.trailing_stop_value
        return price >= grid.trailing_stop_value

    async def check_trailing_stop(self, grid: Grid, price: float) -> Optional[CompletionReason]:
        if not grid.trailing_stop_enabled:
            return None
        sign = grid.direction.sign
        params = grid.params

        if grid.trailing_stop_value is None:
            activation = params.trailing_stop_activation_level
            if activation is None or (price - activation) * sign < 0:
                return None
            grid.trailing_stop_value = price - sign * params.grid_step * (self.config.stop_loss_factor / 2)
            grid.touch()
            self._log_event("trailing_stop_activated", grid_id=grid.id, value=grid.trailing_stop_value, price=price)
            await self._emit(
                EventType.TRAILING_STOP_ACTIVATED,
                grid,
                value=grid.trailing_stop_value,
                currentPrice=price,
            )
        else:
            candidate = price - sign * params.grid_step
            # Ratchet only in the favorable direction
            if (candidate - grid.trailing_stop_value) * sign > 0:
                grid.trailing_stop_value = candidate
                grid.touch()
                self._log_event("trailing_stop_updated", grid_id=grid.id, value=candidate, price=price)
                await self._emit(
                    EventType.TRAILING_STOP_UPDATED,
                    grid,
                    value=candidate,
                    currentPrice=price,
                )

        if self.trailing_stop_hit(grid, price):
            self._log_event(
                "trailing_stop_triggered",
                grid_id=grid.id,
                value=grid.trailing_stop_value,
                price=price,
            )
            await self.close_all_open(grid, CompletionReason.TRAILING_STOP.value, price)
            return CompletionReason.TRAILING_STOP
        return None

    # ========== 4. Partial take-profit ==========

    async def check_partial_take_profit(self, grid: Grid, price: float) -> List[float]:
        """
        Fire every reached partial take-profit level, lowest first.

        Returns:
            The levels executed on this call
        """
        fired: List[float] = []
        if not grid.partial_take_profit_enabled:
            return fired

        open_positions = grid.open_positions()
        total_size = sum(p.size for p in open_positions)
        if total_size <= 0:
            return fired
        # Average entry and profit are fixed for the whole pass
        avg_entry = sum(p.entry_price * p.size for p in open_positions) / total_size
        profit_pct = (price - avg_entry) / avg_entry * 100.0 * grid.direction.sign

        for level in sorted(grid.partial_take_profit_levels):
            if level in grid.partial_take_profit_executed:
                continue
            open_positions = grid.open_positions()
            if not open_positions:
                break
            threshold = level * grid.params.take_profit_distance / avg_entry * 100.0
            if profit_pct < threshold:
                break

            count = min(len(open_positions), math.ceil(len(open_positions) * level))
            # Least favorable first: highest entries for LONG, lowest for SHORT
            victims = sorted(
                open_positions,
                key=lambda p: p.entry_price,
                reverse=grid.direction is Direction.LONG,
            )[:count]
            closed_ids = []
            for position in victims:
                if await self.tracker.close_position_at_market(grid, position, CLOSE_REASON_PARTIAL_TP, price):
                    closed_ids.append(position.id)
            if not closed_ids:
                # Nothing closed; level stays armed for the next tick
                self._log_event("partial_take_profit_failed", grid_id=grid.id, level=level, price=price)
                break

            grid.partial_take_profit_executed.append(level)
            grid.touch()
            fired.append(level)
            self._log_event(
                "partial_take_profit",
                grid_id=grid.id,
                level=level,
                price=price,
                profit_percent=profit_pct,
                threshold_percent=threshold,
                closed=closed_ids,
            )
            await self._emit(
                EventType.PARTIAL_TAKE_PROFIT,
                grid,
                level=level,
                currentPrice=price,
                profitPercent=profit_pct,
                closedPositions=closed_ids,
            )
        return fired
