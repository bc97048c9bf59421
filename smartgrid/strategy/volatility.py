"""
Volatility adapter: ATR from candle history and ATR-driven grid re-spacing.

ATR uses the Wilder recurrence seeded by the simple mean of the first
`period` true ranges. Candle history is cached per (pair, interval, limit).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TYPE_CHECKING

from smartgrid.core.json_utils import dumps
from smartgrid.core.models import Grid, GridOrder, OrderStatus
from smartgrid.exchange.gateway import Candle

if TYPE_CHECKING:
    from smartgrid.config.config import Settings
    from smartgrid.execution.execution_gateway import ExecutionGateway

log = logging.getLogger("smartgrid")


def true_ranges(candles: Sequence[Candle]) -> List[float]:
    """TR for every candle after the first."""
    trs: List[float] = []
    for prev, cur in zip(candles, candles[1:]):
        trs.append(max(
            cur.high - cur.low,
            abs(cur.high - prev.close),
            abs(cur.low - prev.close),
        ))
    return trs


def wilder_atr(candles: Sequence[Candle], period: int) -> float:
    """
    Wilder-smoothed ATR over the candle series.

    Returns 0.0 when fewer than period + 1 candles are available.
    """
    if period <= 0 or len(candles) < period + 1:
        return 0.0
    trs = true_ranges(candles)
    atr = sum(trs[:period]) / period
    for tr in trs[period:]:
        atr = (atr * (period - 1) + tr) / period
    return atr


@dataclass
class VolatilityConfig:
    atr_period: int = 14
    candle_interval: str = "1h"
    candle_limit: int = 100
    cache_lifetime_sec: float = 300.0
    atr_spacing_multiplier: float = 0.5
    take_profit_factor: float = 1.5
    stop_loss_factor: float = 2.0
    trailing_stop_activation_percent: float = 0.5
    adaptation_enabled: bool = True
    atr_ratio_lower: float = 0.7
    atr_ratio_upper: float = 1.5
    log_event_callback: Optional[Callable[..., None]] = None

    @classmethod
    def from_settings(cls, settings: "Settings", **kwargs: Any) -> "VolatilityConfig":
        return cls(
            atr_period=settings.atr_period,
            candle_interval=settings.candle_interval,
            candle_limit=settings.candle_limit,
            cache_lifetime_sec=settings.data_cache_lifetime_sec,
            atr_spacing_multiplier=settings.atr_spacing_multiplier,
            take_profit_factor=settings.take_profit_factor,
            stop_loss_factor=settings.stop_loss_factor,
            trailing_stop_activation_percent=settings.trailing_stop_activation_percent,
            adaptation_enabled=settings.market_conditions_adaptation,
            atr_ratio_lower=settings.atr_ratio_lower,
            atr_ratio_upper=settings.atr_ratio_upper,
            **kwargs,
        )


@dataclass
class AdjustmentResult:
    """Outcome of one re-spacing pass."""
    old_atr: float
    new_atr: float
    old_step: float
    new_step: float
    repriced_orders: List[str] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "oldAtr": self.old_atr,
            "newAtr": self.new_atr,
            "oldGridStep": self.old_step,
            "newGridStep": self.new_step,
            "repricedOrders": len(self.repriced_orders),
        }


class VolatilityAdapter:
    """
    ATR source and grid re-spacer.

    Candle fetches go through ExecutionGateway so failures degrade to ATR 0.
    """

    def __init__(
        self,
        execution: "ExecutionGateway",
        config: Optional[VolatilityConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.execution = execution
        self.config = config or VolatilityConfig()
        self._clock = clock
        self._cache: Dict[Tuple[str, str, int], Tuple[float, List[Candle]]] = {}
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    # ========== Candles & ATR ==========

    async def get_candles(
        self,
        pair: str,
        interval: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Optional[List[Candle]]:
        interval = interval or self.config.candle_interval
        limit = limit or self.config.candle_limit
        key = (pair, interval, limit)
        now = self._clock()

        cached = self._cache.get(key)
        if cached and now - cached[0] < self.config.cache_lifetime_sec:
            return cached[1]

        candles = await self.execution.fetch_candles(pair, interval, limit)
        if candles is None:
            return None
        self._cache[key] = (now, candles)
        return candles

    async def current_atr(self, pair: str) -> float:
        """ATR for pair from (cached) candles; 0.0 when history is missing or short."""
        candles = await self.get_candles(pair)
        if not candles:
            return 0.0
        atr = wilder_atr(candles, self.config.atr_period)
        if atr <= 0:
            self._log_event(
                "atr_insufficient_history",
                pair=pair,
                candles=len(candles),
                period=self.config.atr_period,
            )
        return atr

    def spacing_for(self, atr: float) -> float:
        return atr * self.config.atr_spacing_multiplier

    def clear_cache(self) -> None:
        self._cache.clear()

    # ========== Re-adaptation ==========

    def needs_adjustment(self, old_atr: float, new_atr: float) -> bool:
        if not self.config.adaptation_enabled:
            return False
        if new_atr <= 0 or old_atr <= 0:
            return False
        ratio = new_atr / old_atr
        return ratio < self.config.atr_ratio_lower or ratio > self.config.atr_ratio_upper

    def readapt(self, grid: Grid, new_atr: float) -> Optional[AdjustmentResult]:
        """
        Re-space grid for new_atr if it left the ratio band.

        Only PENDING entries and their PENDING TP/SL are re-priced. Entries are
        laid out from the deepest already-submitted rung (or the anchor) so the
        ladder stays strictly monotonic.

        Returns:
            AdjustmentResult, or None when no adjustment was needed
        """
        params = grid.params
        if not self.needs_adjustment(params.atr, new_atr):
            return None

        cfg = self.config
        sign = grid.direction.sign
        old_atr, old_step = params.atr, params.grid_step
        new_step = self.spacing_for(new_atr)

        params.atr = new_atr
        params.grid_step = new_step
        params.take_profit_distance = new_step * cfg.take_profit_factor
        params.stop_loss_distance = new_step * cfg.stop_loss_factor
        if grid.trailing_stop_value is None:
            params.trailing_stop_activation_level = (
                grid.anchor_price + sign * params.take_profit_distance * cfg.trailing_stop_activation_percent
            )

        submitted = [o for o in grid.entry_orders if o.status is not OrderStatus.PENDING]
        if submitted:
            deepest = max(submitted, key=lambda o: o.level)
            base_price, base_level = deepest.price, deepest.level
        else:
            base_price, base_level = grid.anchor_price, 0

        result = AdjustmentResult(old_atr=old_atr, new_atr=new_atr, old_step=old_step, new_step=new_step)
        for entry in sorted(grid.entry_orders, key=lambda o: o.level):
            if entry.status is not OrderStatus.PENDING:
                continue
            entry.price = base_price - sign * (entry.level - base_level) * new_step
            entry.updated_at = int(time.time() * 1000)
            result.repriced_orders.append(entry.id)
            self._reprice_exit(grid.take_profit_for(entry.id), entry.price + sign * params.take_profit_distance, result)
            self._reprice_exit(grid.stop_loss_for(entry.id), entry.price - sign * params.stop_loss_distance, result)

        grid.touch()
        self._log_event(
            "grid_readapted",
            grid_id=grid.id,
            pair=grid.pair,
            old_atr=old_atr,
            new_atr=new_atr,
            old_step=old_step,
            new_step=new_step,
            repriced=len(result.repriced_orders),
        )
        return result

    @staticmethod
    def _reprice_exit(order: Optional[GridOrder], price: float, result: AdjustmentResult) -> None:
        if order is None or order.status is not OrderStatus.PENDING:
            return
        order.price = price
        order.updated_at = int(time.time() * 1000)
        result.repriced_orders.append(order.id)
