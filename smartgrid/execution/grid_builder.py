"""
GridBuilder: turns a directional signal and an ATR into a complete ladder.

Layout (LONG shown, SHORT mirrors it):
    spacing   = ATR x atr_spacing_multiplier
    entry[i]  = anchor - i x spacing
    tp[i]     = entry[i] + spacing x take_profit_factor
    sl[i]     = entry[i] - spacing x stop_loss_factor

Nothing is submitted here; every order starts PENDING. Admission control
(pair already gridded, concurrency, confidence) is the coordinator's job.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple, TYPE_CHECKING

from smartgrid.core.errors import GridCreationError
from smartgrid.core.json_utils import dumps
from smartgrid.core.models import (
    Grid,
    GridOrder,
    GridParams,
    OrderKind,
    Signal,
)

if TYPE_CHECKING:
    from smartgrid.config.config import Settings

log = logging.getLogger("smartgrid")


@dataclass
class GridBuilderConfig:
    """Configuration for GridBuilder."""
    default_grid_levels: int = 5
    max_grid_size: int = 10
    atr_spacing_multiplier: float = 0.5
    take_profit_factor: float = 1.5
    stop_loss_factor: float = 2.0
    default_lot_size: float = 0.01
    min_position_size: float = 0.001
    dynamic_position_sizing: bool = True
    max_risk_per_trade: float = 1.0  # percent
    initial_capital: float = 1000.0
    trailing_stop_enabled: bool = True
    trailing_stop_activation_percent: float = 0.5
    partial_take_profit_enabled: bool = True
    partial_take_profit_levels: Tuple[float, ...] = (0.3, 0.5, 0.7)

    # Logging
    log_event_callback: Optional[Callable[..., None]] = None

    @property
    def level_count(self) -> int:
        return min(self.default_grid_levels, self.max_grid_size)

    @classmethod
    def from_settings(cls, settings: "Settings", **kwargs: Any) -> "GridBuilderConfig":
        return cls(
            default_grid_levels=settings.default_grid_levels,
            max_grid_size=settings.max_grid_size,
            atr_spacing_multiplier=settings.atr_spacing_multiplier,
            take_profit_factor=settings.take_profit_factor,
            stop_loss_factor=settings.stop_loss_factor,
            default_lot_size=settings.default_lot_size,
            min_position_size=settings.min_position_size,
            dynamic_position_sizing=settings.dynamic_position_sizing,
            max_risk_per_trade=settings.max_risk_per_trade,
            initial_capital=settings.initial_capital,
            trailing_stop_enabled=settings.trailing_stop_enabled,
            trailing_stop_activation_percent=settings.trailing_stop_activation_percent,
            partial_take_profit_enabled=settings.partial_take_profit_enabled,
            partial_take_profit_levels=tuple(settings.partial_take_profit_levels),
            **kwargs,
        )


class GridBuilder:
    """
    Grid construction from a signal and the current ATR.
    """

    def __init__(
        self,
        config: Optional[GridBuilderConfig] = None,
        balance_provider: Optional[Callable[[], float]] = None,
    ) -> None:
        """
        Args:
            config: Optional configuration
            balance_provider: Returns the capital used for dynamic sizing
                (defaults to config.initial_capital)
        """
        self.config = config or GridBuilderConfig()
        self._balance = balance_provider or (lambda: self.config.initial_capital)
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    def position_size(self, anchor_price: float) -> float:
        """
        Size per level in base units.

        Dynamic sizing spreads balance x max_risk_per_trade% over the levels
        and converts the notional at the anchor price; the result is floored
        at min_position_size.
        """
        cfg = self.config
        if not cfg.dynamic_position_sizing:
            return cfg.default_lot_size
        try:
            balance = float(self._balance())
        except Exception as exc:
            self._log_event("balance_unavailable", error=str(exc))
            return cfg.default_lot_size
        notional = balance * (cfg.max_risk_per_trade / 100.0) / cfg.level_count
        return max(cfg.min_position_size, notional / anchor_price)

    def build(self, signal: Signal, atr: float, created_at: Optional[int] = None) -> Grid:
        """
        Build a fully populated grid with every order PENDING.

        Raises:
            GridCreationError: invalid_signal or insufficient_volatility_data
        """
        if not signal.pair or signal.entry_point is None or not math.isfinite(signal.entry_point) \
                or signal.entry_point <= 0:
            raise GridCreationError(GridCreationError.INVALID_SIGNAL, "signal needs a pair and a positive entry point")
        if atr is None or not math.isfinite(atr) or atr <= 0:
            raise GridCreationError(
                GridCreationError.INSUFFICIENT_VOLATILITY,
                f"ATR unavailable for {signal.pair}",
            )

        cfg = self.config
        created_at = created_at or int(time.time() * 1000)
        direction = signal.direction
        sign = direction.sign
        anchor = signal.entry_point

        step = atr * cfg.atr_spacing_multiplier
        tp_distance = step * cfg.take_profit_factor
        sl_distance = step * cfg.stop_loss_factor
        size = self.position_size(anchor)
        levels = cfg.level_count

        params = GridParams(
            atr=atr,
            grid_step=step,
            take_profit_distance=tp_distance,
            stop_loss_distance=sl_distance,
            position_size=size,
            grid_levels=levels,
            trailing_stop_activation_level=anchor + sign * tp_distance * cfg.trailing_stop_activation_percent,
        )

        grid_id = f"grid_{signal.pair}_{created_at}"
        entries: List[GridOrder] = []
        tps: List[GridOrder] = []
        sls: List[GridOrder] = []
        for i in range(levels):
            price = anchor - sign * i * step
            entry_id = f"{grid_id}_entry_{i}"
            entries.append(GridOrder(
                id=entry_id,
                kind=OrderKind.ENTRY,
                side=direction.entry_side,
                level=i,
                price=price,
                size=size,
                created_at=created_at,
                updated_at=created_at,
            ))
            tps.append(GridOrder(
                id=f"{grid_id}_tp_{i}",
                kind=OrderKind.TAKE_PROFIT,
                side=direction.exit_side,
                level=i,
                price=price + sign * tp_distance,
                size=size,
                entry_order_id=entry_id,
                created_at=created_at,
                updated_at=created_at,
            ))
            sls.append(GridOrder(
                id=f"{grid_id}_sl_{i}",
                kind=OrderKind.STOP_LOSS,
                side=direction.exit_side,
                level=i,
                price=price - sign * sl_distance,
                size=size,
                entry_order_id=entry_id,
                created_at=created_at,
                updated_at=created_at,
            ))

        grid = Grid(
            id=grid_id,
            pair=signal.pair,
            direction=direction,
            anchor_price=anchor,
            params=params,
            created_at=created_at,
            last_update_time=created_at,
            trailing_stop_enabled=cfg.trailing_stop_enabled,
            partial_take_profit_enabled=cfg.partial_take_profit_enabled,
            partial_take_profit_levels=sorted(cfg.partial_take_profit_levels),
            entry_orders=entries,
            take_profit_orders=tps,
            stop_loss_orders=sls,
            signal=signal.to_source(),
        )

        self._log_event(
            "grid_built",
            grid_id=grid_id,
            pair=signal.pair,
            direction=direction.value,
            anchor=anchor,
            atr=atr,
            grid_step=step,
            levels=levels,
            size=size,
        )
        return grid
