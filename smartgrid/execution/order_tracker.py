"""
OrderTracker: drives grid orders through their lifecycle on the venue.

Responsibilities:
- Sequential ladder activation (at most one ACTIVE entry per grid)
- Entry fill -> Position, then submit its TP (LIMIT) and SL (STOP)
- TP/SL fill -> close Position, cancel the sibling
- Market closes for risk-driven exits
- Retrying failed submits and orphaned exit cancels on later ticks

Every venue failure leaves the order in its prior status; the next tick retries.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional, TYPE_CHECKING

from smartgrid.core.event_bus import EventType
from smartgrid.core.json_utils import dumps
from smartgrid.core.models import (
    CLOSE_REASON_EXTERNAL,
    CLOSE_REASON_SL,
    CLOSE_REASON_TP,
    Direction,
    Grid,
    GridOrder,
    OrderKind,
    OrderStatus,
    Position,
    PositionStatus,
    now_ms,
)
from smartgrid.execution.order_state_machine import OrderStateMachine

if TYPE_CHECKING:
    from smartgrid.core.event_bus import EventBus
    from smartgrid.execution.execution_gateway import ExecutionGateway
    from smartgrid.monitoring.metrics_rich import GridMetrics

log = logging.getLogger("smartgrid")


def price_crossed(direction: Direction, level_price: float, price: float, tolerance: float) -> bool:
    """True once price has reached an entry level, within tolerance."""
    if direction is Direction.LONG:
        return price <= level_price * (1 + tolerance)
    return price >= level_price * (1 - tolerance)


class OrderTracker:
    """
    Order and position lifecycle for every grid.
    """

    def __init__(
        self,
        execution: "ExecutionGateway",
        state_machine: Optional[OrderStateMachine] = None,
        event_bus: Optional["EventBus"] = None,
        metrics: Optional["GridMetrics"] = None,
        price_cross_tolerance: float = 0.01,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.execution = execution
        self._log_event = log_event or self._default_log
        self.state_machine = state_machine or OrderStateMachine(log_event=self._log_event)
        self.event_bus = event_bus
        self.metrics = metrics
        self.price_cross_tolerance = price_cross_tolerance

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    async def _emit(self, event_type: EventType, grid: Grid, **payload: Any) -> None:
        if self.event_bus is not None:
            await self.event_bus.emit(event_type, grid_id=grid.id, pair=grid.pair, **payload)

    # ========== Submission ==========

    async def submit(self, grid: Grid, order: GridOrder) -> bool:
        """
        Submit a PENDING order. On success it becomes ACTIVE (or FILLED when
        the venue reports an immediate fill).

        Returns:
            True if the venue accepted the order
        """
        if order.status is not OrderStatus.PENDING:
            self._log_event(
                "order_submit_skipped",
                grid_id=grid.id,
                order_id=order.id,
                status=order.status.value,
            )
            return False

        result = await self.execution.submit_order(grid.pair, order)
        if not result.success:
            # Stays PENDING; retried next tick
            return False

        self.state_machine.activate(order, result.venue_order_id)
        grid.touch()
        if result.filled:
            await self.on_order_filled(grid, order, result.avg_price)
        return True

    def next_entry_to_activate(self, grid: Grid, price: Optional[float]) -> Optional[GridOrder]:
        """
        The entry that may be submitted now, or None.

        No entry is submitted while another one is ACTIVE. The lowest PENDING
        level goes next when it is level 0, when the level before it FILLED,
        or when the level before it was CANCELED and price has crossed this
        level within tolerance.
        """
        entries = sorted(grid.entry_orders, key=lambda o: o.level)
        if any(e.status is OrderStatus.ACTIVE for e in entries):
            return None
        pending = [e for e in entries if e.status is OrderStatus.PENDING]
        if not pending:
            return None
        candidate = pending[0]
        if candidate.level == 0:
            return candidate
        previous = next((e for e in entries if e.level == candidate.level - 1), None)
        if previous is None or previous.status is OrderStatus.FILLED:
            return candidate
        if previous.status is OrderStatus.CANCELED and price is not None and price_crossed(
            grid.direction, candidate.price, price, self.price_cross_tolerance
        ):
            return candidate
        return None

    async def activate_next_entry(self, grid: Grid, price: Optional[float] = None) -> Optional[GridOrder]:
        """Submit the next ladder rung if the activation rule allows it."""
        if not grid.is_active:
            return None
        candidate = self.next_entry_to_activate(grid, price)
        if candidate is None:
            return None
        if await self.submit(grid, candidate):
            return candidate
        return None

    async def process_pending_orders(self, grid: Grid, price: Optional[float]) -> None:
        """
        Per-tick retry pass: exits of open positions that failed to submit,
        then the next entry rung.
        """
        for position in grid.open_positions():
            for exit_order in (grid.take_profit_for(position.entry_order_id),
                               grid.stop_loss_for(position.entry_order_id)):
                if exit_order is not None and exit_order.status is OrderStatus.PENDING:
                    await self.submit(grid, exit_order)
                if not position.is_open:
                    break
        await self.activate_next_entry(grid, price)

    # ========== Fills ==========

    async def on_order_filled(
        self,
        grid: Grid,
        order: GridOrder,
        fill_price: Optional[float] = None,
        fill_time: Optional[int] = None,
    ) -> bool:
        """Apply a fill notification to order and derive position changes."""
        if not self.state_machine.fill(order, fill_price, fill_time):
            return False
        grid.touch()
        if order.kind is OrderKind.ENTRY:
            await self._on_entry_filled(grid, order)
        else:
            await self._on_exit_filled(grid, order)
        return True

    async def _on_entry_filled(self, grid: Grid, entry: GridOrder) -> None:
        entry_price = entry.fill_price if entry.fill_price is not None else entry.price
        position = Position(
            id=f"{grid.id}_position_{entry.level}",
            entry_order_id=entry.id,
            level=entry.level,
            entry_price=entry_price,
            size=entry.size,
            direction=grid.direction,
            open_time=entry.fill_time or now_ms(),
        )
        grid.positions.append(position)
        grid.stats.filled_orders += 1

        tp = grid.take_profit_for(entry.id)
        sl = grid.stop_loss_for(entry.id)
        for exit_order in (tp, sl):
            if exit_order is not None:
                exit_order.position_id = position.id

        if self.metrics:
            self.metrics.positions_opened.labels(pair=grid.pair).inc()
        self._log_event(
            "position_opened",
            grid_id=grid.id,
            position_id=position.id,
            level=entry.level,
            entry_price=entry_price,
            size=entry.size,
        )
        await self._emit(
            EventType.POSITION_OPENED,
            grid,
            position=position.to_dict(),
        )

        for exit_order in (tp, sl):
            if exit_order is None:
                self._log_event("exit_order_missing", grid_id=grid.id, entry_order_id=entry.id)
                continue
            if position.is_open:
                await self.submit(grid, exit_order)

        await self.activate_next_entry(grid, entry_price)

    async def _on_exit_filled(self, grid: Grid, order: GridOrder) -> None:
        position = grid.find_position(order.position_id)
        if position is None:
            self._log_event("exit_fill_without_position", grid_id=grid.id, order_id=order.id)
            return
        if not position.is_open:
            self._log_event("exit_fill_on_closed_position", grid_id=grid.id, order_id=order.id,
                            position_id=position.id)
            return

        reason = CLOSE_REASON_TP if order.kind is OrderKind.TAKE_PROFIT else CLOSE_REASON_SL
        close_price = order.fill_price if order.fill_price is not None else order.price
        await self._close_position(grid, position, close_price, reason, order.id)

        sibling = (
            grid.stop_loss_for(position.entry_order_id)
            if order.kind is OrderKind.TAKE_PROFIT
            else grid.take_profit_for(position.entry_order_id)
        )
        if sibling is not None:
            await self.cancel(grid, sibling, reason=f"sibling_{reason.lower()}_filled")

    def on_order_canceled(self, grid: Grid, order: GridOrder) -> bool:
        """Venue reported the order canceled."""
        applied = self.state_machine.cancel(order, reason="venue_canceled")
        if applied:
            grid.touch()
        return applied

    # ========== Positions ==========

    async def _close_position(
        self,
        grid: Grid,
        position: Position,
        close_price: float,
        reason: str,
        close_order_id: Optional[str],
        profit: Optional[float] = None,
    ) -> None:
        position.status = PositionStatus.CLOSED
        position.close_price = close_price
        position.close_time = now_ms()
        position.close_reason = reason
        position.close_order_id = close_order_id
        position.profit = profit if profit is not None else position.pnl_at(close_price)

        grid.stats.closed_positions += 1
        grid.stats.total_profit += position.profit
        grid.touch()

        if self.metrics:
            self.metrics.positions_closed.labels(pair=grid.pair, reason=reason).inc()
            self.metrics.realized_profit.labels(pair=grid.pair).set(grid.stats.total_profit)
        self._log_event(
            "position_closed",
            grid_id=grid.id,
            position_id=position.id,
            reason=reason,
            entry_price=position.entry_price,
            close_price=close_price,
            profit=position.profit,
        )
        await self._emit(
            EventType.POSITION_CLOSED,
            grid,
            position=position.to_dict(),
            reason=reason,
            profit=position.profit,
        )

    async def close_position_at_market(
        self,
        grid: Grid,
        position: Position,
        reason: str,
        reference_price: float,
    ) -> bool:
        """
        Close an OPEN position with a market order on the exit side.

        The close price is the venue's average fill price when reported,
        otherwise reference_price. The position's exits are canceled
        (ACTIVE on the venue, PENDING locally).

        Returns:
            True if the position was closed
        """
        if not position.is_open:
            return False
        result = await self.execution.market_order(
            grid.pair, position.direction.exit_side, position.size, ref=position.id
        )
        if not result.success:
            self._log_event(
                "market_close_failed",
                grid_id=grid.id,
                position_id=position.id,
                reason=reason,
                error=result.error,
            )
            return False

        close_price = result.avg_price if result.avg_price else reference_price
        await self._close_position(grid, position, close_price, reason, result.venue_order_id)
        await self.cancel_exits(grid, position)
        return True

    async def on_position_closed_external(
        self,
        grid: Grid,
        position: Position,
        close_price: Optional[float] = None,
        profit: Optional[float] = None,
    ) -> bool:
        """
        A position was closed outside the engine. Record it with the reported
        price and profit and cancel its exits.

        Without a reported price the entry price is used, so the profit is
        zero unless one was reported.

        Returns:
            True if the position was OPEN
        """
        if not position.is_open:
            return False
        price = close_price if close_price is not None else position.entry_price
        await self._close_position(grid, position, price, CLOSE_REASON_EXTERNAL, None, profit=profit)
        await self.cancel_exits(grid, position)
        return True

    async def cancel_exits(self, grid: Grid, position: Position) -> None:
        for exit_order in (grid.take_profit_for(position.entry_order_id),
                           grid.stop_loss_for(position.entry_order_id)):
            if exit_order is not None:
                await self.cancel(grid, exit_order, reason="position_closed")

    # ========== Cancellation ==========

    async def cancel(self, grid: Grid, order: GridOrder, reason: str = "cancel") -> bool:
        """
        Cancel an order: on the venue when ACTIVE, locally when PENDING.

        Returns:
            True if the order ended CANCELED
        """
        if order.status is OrderStatus.PENDING:
            return self.state_machine.cancel(order, reason=reason)
        if order.status is not OrderStatus.ACTIVE:
            return False
        result = await self.execution.cancel_order(grid.pair, order)
        if not result.success:
            # Stays ACTIVE; the orphan sweep retries
            return False
        grid.touch()
        return self.state_machine.cancel(order, reason=reason)

    async def cancel_all_open(self, grid: Grid, reason: str = "grid_completed") -> int:
        """Cancel every non-terminal order of grid. Returns how many ended CANCELED."""
        canceled = 0
        for order in grid.all_orders():
            if order.status in (OrderStatus.ACTIVE, OrderStatus.PENDING):
                if await self.cancel(grid, order, reason=reason):
                    canceled += 1
        return canceled

    async def sweep_orphans(self, grid: Grid) -> List[str]:
        """Re-cancel ACTIVE TP/SL orders whose position is already CLOSED."""
        swept: List[str] = []
        for order in [*grid.take_profit_orders, *grid.stop_loss_orders]:
            if order.status is not OrderStatus.ACTIVE:
                continue
            position = grid.find_position(order.position_id)
            if position is not None and not position.is_open:
                if await self.cancel(grid, order, reason="orphan_sweep"):
                    swept.append(order.id)
        if swept:
            self._log_event("orphan_orders_swept", grid_id=grid.id, order_ids=swept)
        return swept
