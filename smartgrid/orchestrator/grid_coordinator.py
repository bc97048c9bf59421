"""
GridCoordinator: owns the grid registry and drives the reconciliation tick.

Architecture:
    The coordinator holds engine state (active grids, bounded history,
    ModuleStats) and delegates the business rules:
    - GridBuilder: ladder construction
    - VolatilityAdapter: ATR and re-spacing
    - OrderTracker: order/position lifecycle on the venue
    - PositionRiskMonitor: exit rules
    - GridRepository: snapshot persistence

Control flow:
    signal -> admission -> ATR -> build -> register -> submit entry 0
    tick   -> queued events -> per grid: sweep, risk, pending orders, re-adapt
           -> persist when something changed

External notifications (signals, fills, cancels, external closes) are queued with
submit_event() and applied at the start of the next tick, so the tick is
the only place fills mutate a grid.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, TYPE_CHECKING

from smartgrid.core.errors import GridCreationError
from smartgrid.core.event_bus import Event, EventType, Subscription
from smartgrid.core.json_utils import dumps
from smartgrid.core.models import (
    CompletionReason,
    Grid,
    GridOrder,
    GridStatus,
    ModuleStats,
    Signal,
    now_ms,
)
from smartgrid.state.state_store import EngineState

if TYPE_CHECKING:
    from smartgrid.config.config import Settings
    from smartgrid.core.event_bus import EventBus
    from smartgrid.execution.execution_gateway import ExecutionGateway
    from smartgrid.execution.grid_builder import GridBuilder
    from smartgrid.execution.order_tracker import OrderTracker
    from smartgrid.monitoring.metrics_rich import GridMetrics
    from smartgrid.risk.position_risk import PositionRiskMonitor
    from smartgrid.state.state_store import GridRepository
    from smartgrid.strategy.volatility import VolatilityAdapter

log = logging.getLogger("smartgrid")

CONSUMED_EVENTS = (
    EventType.TRADING_SIGNAL,
    EventType.ORDER_EXECUTED,
    EventType.ORDER_CANCELED,
    EventType.POSITION_CLOSED_EXTERNAL,
)

ORDER_STATUS_FILLED = "FILLED"
ORDER_STATUS_CANCELED = ("CANCELED", "CANCELLED")


@dataclass
class CoordinatorConfig:
    """Configuration for GridCoordinator."""
    max_concurrent_grids: int = 3
    minimum_signal_confidence: float = 0.7
    status_check_interval_sec: float = 60.0
    max_history_size: int = 1000
    close_grids_on_shutdown: bool = False

    # Logging
    log_event_callback: Optional[Callable[..., None]] = None

    @classmethod
    def from_settings(cls, settings: "Settings", **kwargs: Any) -> "CoordinatorConfig":
        return cls(
            max_concurrent_grids=settings.max_concurrent_grids,
            minimum_signal_confidence=settings.minimum_signal_confidence,
            status_check_interval_sec=settings.status_check_interval_sec,
            max_history_size=settings.max_history_size,
            close_grids_on_shutdown=settings.close_grids_on_shutdown,
            **kwargs,
        )


@dataclass
class TickResult:
    """Result of a single reconciliation tick."""
    events_applied: int = 0
    grids_processed: int = 0
    grids_completed: int = 0
    errors: int = 0
    persisted: bool = False
    duration_ms: float = 0.0


def _completion_reason(reason: Any) -> CompletionReason:
    if isinstance(reason, CompletionReason):
        return reason
    try:
        return CompletionReason(str(reason).upper())
    except ValueError:
        return CompletionReason.MANUAL


class GridCoordinator:
    """
    Grid lifecycle coordinator.

    Grid state machine: ACTIVE -> COMPLETED, never back.
    """

    def __init__(
        self,
        execution: "ExecutionGateway",
        builder: "GridBuilder",
        volatility: "VolatilityAdapter",
        tracker: "OrderTracker",
        risk: "PositionRiskMonitor",
        repository: "GridRepository",
        event_bus: Optional["EventBus"] = None,
        metrics: Optional["GridMetrics"] = None,
        config: Optional[CoordinatorConfig] = None,
    ) -> None:
        self.execution = execution
        self.builder = builder
        self.volatility = volatility
        self.tracker = tracker
        self.risk = risk
        self.repository = repository
        self.event_bus = event_bus
        self.metrics = metrics
        self.config = config or CoordinatorConfig()

        self._grids: Dict[str, Grid] = {}
        self._history: List[Grid] = []
        self._stats = ModuleStats()
        self._pending_events: Deque[Event] = deque()
        self._subscriptions: List[Tuple[EventType, Subscription]] = []

        self._running = False
        self._stop_event = asyncio.Event()
        self._tick_count = 0

        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    async def _emit(self, event_type: EventType, grid: Grid, **payload: Any) -> None:
        if self.event_bus is not None:
            await self.event_bus.emit(event_type, grid_id=grid.id, pair=grid.pair, **payload)

    def _update_active_gauge(self) -> None:
        if self.metrics:
            self.metrics.active_grids.set(len(self._grids))

    @property
    def is_running(self) -> bool:
        return self._running

    # ========== Persistence ==========

    def snapshot(self) -> EngineState:
        return EngineState(grids=self._grids, history=self._history, stats=self._stats)

    async def load_state(self) -> None:
        """Replace in-memory state with the persisted snapshot."""
        state = await self.repository.load()
        self._grids = {gid: g for gid, g in state.grids.items() if g.is_active}
        self._history = list(state.history)
        self._stats = state.stats
        self._trim_history()
        self._update_active_gauge()
        self._log_event(
            "state_loaded",
            active_grids=len(self._grids),
            history=len(self._history),
            total_grids_created=self._stats.total_grids_created,
        )

    async def persist(self) -> bool:
        try:
            await self.repository.save(self.snapshot())
        except Exception as exc:
            log.error(dumps({"event": "state_save_error", "error": str(exc), "error_type": type(exc).__name__}))
            return False
        return True

    def _trim_history(self) -> None:
        overflow = len(self._history) - self.config.max_history_size
        if overflow > 0:
            del self._history[:overflow]

    # ========== Creation ==========

    def _check_admission(self, signal: Signal) -> None:
        cfg = self.config
        if len(self._grids) >= cfg.max_concurrent_grids:
            raise GridCreationError(
                GridCreationError.MAX_CONCURRENT,
                f"{len(self._grids)} grids active (max {cfg.max_concurrent_grids})",
            )
        if any(g.pair == signal.pair and g.is_active for g in self._grids.values()):
            raise GridCreationError(
                GridCreationError.PAIR_ALREADY_ACTIVE,
                f"an active grid already exists for {signal.pair}",
            )
        if signal.confidence < cfg.minimum_signal_confidence:
            raise GridCreationError(
                GridCreationError.LOW_CONFIDENCE,
                f"confidence {signal.confidence} below {cfg.minimum_signal_confidence}",
            )

    def _reject(self, signal: Signal, exc: GridCreationError) -> None:
        if self.metrics:
            self.metrics.grids_rejected.labels(reason=exc.reason).inc()
        self._log_event(
            "grid_rejected",
            pair=signal.pair,
            direction=signal.direction.value,
            reason=exc.reason,
            detail=str(exc),
        )

    async def create_grid_from_signal(self, signal: Signal) -> Grid:
        """
        Admit a signal and start its grid.

        Returns:
            The registered grid, with entry level 0 submitted when the venue
            accepted it (otherwise it stays PENDING for the next tick)

        Raises:
            GridCreationError: the signal was rejected; engine state is untouched
        """
        try:
            self._check_admission(signal)
            candles = await self.volatility.get_candles(signal.pair)
            if candles is None:
                raise GridCreationError(
                    GridCreationError.MARKET_DATA_UNAVAILABLE,
                    f"candles unavailable for {signal.pair}",
                )
            atr = await self.volatility.current_atr(signal.pair)
            # The fetch above may have yielded; re-check before mutating state
            self._check_admission(signal)
            grid = self.builder.build(signal, atr)
        except GridCreationError as exc:
            self._reject(signal, exc)
            raise

        self._grids[grid.id] = grid
        self._stats.total_grids_created += 1
        self._stats.last_update = now_ms()
        if self.metrics:
            self.metrics.grids_created.labels(pair=grid.pair, direction=grid.direction.value).inc()
            self.metrics.atr_value.labels(pair=grid.pair).set(grid.params.atr)
            self.metrics.grid_step.labels(pair=grid.pair).set(grid.params.grid_step)
        self._update_active_gauge()

        await self.tracker.activate_next_entry(grid)
        await self.persist()

        self._log_event(
            "grid_created",
            grid_id=grid.id,
            pair=grid.pair,
            direction=grid.direction.value,
            anchor=grid.anchor_price,
            atr=grid.params.atr,
            grid_step=grid.params.grid_step,
            levels=grid.params.grid_levels,
        )
        await self._emit(
            EventType.GRID_CREATED,
            grid,
            direction=grid.direction.value,
            anchorPrice=grid.anchor_price,
            params=grid.params.to_dict(),
            signal=grid.signal.to_dict(),
        )
        return grid

    # ========== Completion ==========

    async def _complete_grid(self, grid: Grid, reason: CompletionReason) -> None:
        if not grid.is_active:
            return
        await self.tracker.cancel_all_open(grid, reason="grid_completed")

        completed_at = now_ms()
        grid.status = GridStatus.COMPLETED
        grid.completed_at = completed_at
        grid.completion_reason = reason
        grid.stats.final_profit = grid.stats.total_profit
        grid.stats.duration_ms = max(0, completed_at - grid.created_at)
        grid.touch()

        self._grids.pop(grid.id, None)
        self._history.append(grid)
        self._trim_history()
        self._stats.record_completion(grid.stats.final_profit, grid.stats.duration_ms)

        if self.metrics:
            self.metrics.grids_completed.labels(pair=grid.pair, reason=reason.value).inc()
        self._update_active_gauge()

        level = logging.WARNING if reason is CompletionReason.STOP_LOSS else logging.INFO
        log.log(level, dumps({
            "event": "grid_completed",
            "grid_id": grid.id,
            "pair": grid.pair,
            "reason": reason.value,
            "final_profit": grid.stats.final_profit,
            "duration_ms": grid.stats.duration_ms,
            "positions": len(grid.positions),
        }))

        await self.persist()
        await self._emit(
            EventType.GRID_COMPLETED,
            grid,
            reason=reason.value,
            stats=grid.stats.to_dict(),
        )

    async def close_grid(self, grid_id: str, reason: Any = CompletionReason.MANUAL) -> bool:
        """
        Close every OPEN position at market and complete the grid.

        Returns:
            False if grid_id is not an active grid, or if a market close
            failed; the grid then stays ACTIVE with the unclosed positions
            still protected by their exits
        """
        grid = self._grids.get(grid_id)
        if grid is None or not grid.is_active:
            return False
        completion = _completion_reason(reason)

        price = await self.execution.fetch_price(grid.pair)
        if price is None:
            price = grid.anchor_price
            self._log_event("close_reference_price_fallback", grid_id=grid.id, price=price)
        remaining = await self.risk.close_all_open(grid, completion.value, price)
        if remaining:
            self._log_event("close_grid_incomplete", grid_id=grid.id, reason=completion.value, still_open=remaining)
            return False
        await self._complete_grid(grid, completion)
        return True

    # ========== External events ==========

    def submit_event(self, event: Event) -> None:
        """Queue an external notification for the next tick."""
        self._pending_events.append(event)

    def _locate_order(self, event: Event) -> Tuple[Optional[Grid], Optional[GridOrder]]:
        data = event.data
        order_id = data.get("orderId") or data.get("order_id") or data.get("id")
        if order_id is None:
            return None, None
        order_id = str(order_id)
        grid_id = event.grid_id or data.get("gridId") or data.get("grid_id")
        candidates = [self._grids[grid_id]] if grid_id in self._grids else list(self._grids.values())
        for grid in candidates:
            order = grid.find_order(order_id)
            if order is not None:
                return grid, order
        return None, None

    async def _apply_event(self, event: Event) -> bool:
        """Apply one queued notification. Returns True if a grid changed."""
        if event.type is EventType.TRADING_SIGNAL:
            # Producers send either the signal itself or {"signal": {...}}
            payload = event.data.get("signal")
            if not isinstance(payload, dict):
                payload = event.data
            try:
                signal = Signal.from_dict(payload)
                await self.create_grid_from_signal(signal)
            except GridCreationError as exc:
                self._log_event("signal_rejected", reason=exc.reason, detail=str(exc))
            return False

        if event.type is EventType.POSITION_CLOSED_EXTERNAL:
            return await self._apply_position_closed(event)

        grid, order = self._locate_order(event)
        if grid is None or order is None:
            self._log_event("order_event_unmatched", event_type=event.type.value, data=event.data)
            return False

        if event.type is EventType.ORDER_EXECUTED:
            data = event.data
            status = str(data.get("status") or ORDER_STATUS_FILLED).upper()
            if status in ORDER_STATUS_CANCELED:
                return self.tracker.on_order_canceled(grid, order)
            if status != ORDER_STATUS_FILLED:
                self._log_event(
                    "order_event_status_ignored",
                    grid_id=grid.id,
                    order_id=order.id,
                    status=status,
                )
                return False
            raw_price = next(
                (data[k] for k in ("fillPrice", "avgPrice", "price") if data.get(k) is not None),
                None,
            )
            fill_price = float(raw_price) if raw_price is not None else None
            fill_time = int(data["timestamp"]) if data.get("timestamp") else None
            return await self.tracker.on_order_filled(grid, order, fill_price, fill_time)
        if event.type is EventType.ORDER_CANCELED:
            return self.tracker.on_order_canceled(grid, order)
        return False

    async def _apply_position_closed(self, event: Event) -> bool:
        data = event.data
        position_id = data.get("positionId") or data.get("position_id")
        grid_id = event.grid_id or data.get("gridId") or data.get("grid_id")
        grid = self._grids.get(grid_id) if grid_id else None
        position = grid.find_position(str(position_id)) if grid is not None and position_id else None
        if grid is None or position is None:
            self._log_event("position_event_unmatched", grid_id=grid_id, position_id=position_id)
            return False
        raw_price = next((data[k] for k in ("closePrice", "price") if data.get(k) is not None), None)
        raw_profit = data.get("profit")
        return await self.tracker.on_position_closed_external(
            grid,
            position,
            close_price=float(raw_price) if raw_price is not None else None,
            profit=float(raw_profit) if raw_profit is not None else None,
        )

    async def _apply_pending_events(self, result: TickResult) -> bool:
        changed = False
        while self._pending_events:
            event = self._pending_events.popleft()
            try:
                changed = await self._apply_event(event) or changed
                result.events_applied += 1
            except Exception as exc:
                result.errors += 1
                log.error(dumps({
                    "event": "event_apply_error",
                    "event_type": event.type.value,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                }))
        return changed

    def _queue_external(self, event: Event) -> None:
        self.submit_event(event)

    def subscribe(self) -> None:
        if self.event_bus is None or self._subscriptions:
            return
        for event_type in CONSUMED_EVENTS:
            sub = self.event_bus.subscribe(event_type, self._queue_external, name=f"coordinator:{event_type.value}")
            self._subscriptions.append((event_type, sub))

    def unsubscribe(self) -> None:
        if self.event_bus is None:
            return
        for event_type, sub in self._subscriptions:
            self.event_bus.unsubscribe(event_type, sub)
        self._subscriptions.clear()

    # ========== Tick ==========

    async def _process_grid(self, grid: Grid, result: TickResult) -> bool:
        """One grid's tick. Returns True if the grid changed."""
        price = await self.execution.fetch_price(grid.pair)
        if price is None:
            # Nothing can be evaluated without a price; retried next tick
            return False
        before = grid.last_update_time

        await self.tracker.sweep_orphans(grid)

        reason = await self.risk.evaluate(grid, price)
        if reason is not None:
            await self._complete_grid(grid, reason)
            result.grids_completed += 1
            return True

        await self.tracker.process_pending_orders(grid, price)

        new_atr = await self.volatility.current_atr(grid.pair)
        adjustment = self.volatility.readapt(grid, new_atr)
        if adjustment is not None:
            if self.metrics:
                self.metrics.grid_adjustments.labels(pair=grid.pair).inc()
            await self._emit(EventType.GRID_ADJUSTED, grid, **adjustment.to_payload())
        if self.metrics:
            self.metrics.atr_value.labels(pair=grid.pair).set(grid.params.atr)
            self.metrics.grid_step.labels(pair=grid.pair).set(grid.params.grid_step)

        return grid.last_update_time != before

    async def run_tick(self) -> TickResult:
        """
        One reconciliation pass over every active grid.

        A failing grid is logged and skipped; the others still run.
        """
        started = time.perf_counter()
        result = TickResult()
        self._tick_count += 1

        changed = await self._apply_pending_events(result)

        for grid in list(self._grids.values()):
            if not grid.is_active:
                continue
            try:
                changed = await self._process_grid(grid, result) or changed
                result.grids_processed += 1
            except Exception as exc:
                result.errors += 1
                if self.metrics:
                    self.metrics.tick_errors.inc()
                log.error(dumps({
                    "event": "grid_tick_error",
                    "grid_id": grid.id,
                    "pair": grid.pair,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                }))

        if changed:
            result.persisted = await self.persist()

        result.duration_ms = (time.perf_counter() - started) * 1000
        if self.metrics:
            self.metrics.tick_duration_ms.observe(result.duration_ms)
        log.debug(
            "tick=%d grids=%d completed=%d events=%d errors=%d %.1fms",
            self._tick_count, result.grids_processed, result.grids_completed,
            result.events_applied, result.errors, result.duration_ms,
        )
        return result

    async def start(self) -> None:
        """
        Load state, subscribe to the bus and tick until stop().

        Should be run as a background task.
        """
        await self.load_state()
        self.subscribe()
        self._running = True
        self._stop_event.clear()
        self._log_event("coordinator_started", interval_sec=self.config.status_check_interval_sec)

        while self._running:
            await self.run_tick()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.config.status_check_interval_sec)
            except asyncio.TimeoutError:
                continue

        self._log_event("coordinator_stopped", ticks=self._tick_count)

    def stop(self) -> None:
        self._running = False
        self._stop_event.set()

    async def shutdown(self) -> None:
        """Stop ticking, optionally close every grid, persist."""
        self._log_event("coordinator_shutdown_start", active_grids=len(self._grids))
        self.stop()
        self.unsubscribe()
        if self.config.close_grids_on_shutdown:
            for grid_id in list(self._grids):
                try:
                    await self.close_grid(grid_id, CompletionReason.SHUTDOWN)
                except Exception as exc:
                    log.error(dumps({"event": "shutdown_close_error", "grid_id": grid_id, "error": str(exc)}))
        await self.persist()
        self._log_event("coordinator_shutdown_complete", active_grids=len(self._grids))

    # ========== Queries ==========

    def get_active_grids(self) -> List[Grid]:
        return list(self._grids.values())

    def get_grid_history(self, limit: int = 50) -> List[Grid]:
        """Completed grids, most recent completion first."""
        if limit <= 0:
            return []
        return list(reversed(self._history))[:limit]

    def get_grid(self, grid_id: str) -> Optional[Grid]:
        grid = self._grids.get(grid_id)
        if grid is not None:
            return grid
        for old in reversed(self._history):
            if old.id == grid_id:
                return old
        return None

    def get_stats(self) -> Dict[str, Any]:
        stats = self._stats
        completed = stats.total_grids_completed
        win_rate = stats.successful_grids / completed * 100.0 if completed else 0.0
        return {
            **stats.to_dict(),
            "active_grids": len(self._grids),
            "historical_grids": len(self._history),
            "win_rate": win_rate,
            "running": self._running,
            "tick_count": self._tick_count,
            "pending_events": len(self._pending_events),
            "orders": self.tracker.state_machine.get_stats(),
        }
