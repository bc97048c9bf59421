"""
Grid engine data model.

Every type here round-trips through to_dict()/from_dict() so the file store
and the management API share one JSON shape. Enums are str-valued and
serialize as their names.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from smartgrid.core.errors import GridCreationError


def now_ms() -> int:
    return int(time.time() * 1000)


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    LIMIT = "LIMIT"
    MARKET = "MARKET"
    STOP = "STOP"


class Direction(str, Enum):
    """Grid direction. LONG buys the dips below the anchor, SHORT sells the rallies above it."""
    LONG = "LONG"
    SHORT = "SHORT"

    @classmethod
    def parse(cls, value: Any) -> "Direction":
        if isinstance(value, Direction):
            return value
        raw = str(value or "").strip().upper()
        if raw in ("BUY", "LONG"):
            return cls.LONG
        if raw in ("SELL", "SHORT"):
            return cls.SHORT
        raise ValueError(f"unknown direction: {value!r}")

    @property
    def sign(self) -> int:
        return 1 if self is Direction.LONG else -1

    @property
    def entry_side(self) -> Side:
        return Side.BUY if self is Direction.LONG else Side.SELL

    @property
    def exit_side(self) -> Side:
        return Side.SELL if self is Direction.LONG else Side.BUY


class OrderKind(str, Enum):
    ENTRY = "ENTRY"
    TAKE_PROFIT = "TAKE_PROFIT"
    STOP_LOSS = "STOP_LOSS"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    FILLED = "FILLED"
    CANCELED = "CANCELED"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.FILLED, OrderStatus.CANCELED)


class PositionStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class GridStatus(str, Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


class CompletionReason(str, Enum):
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"
    ALL_POSITIONS_CLOSED = "ALL_POSITIONS_CLOSED"
    TRAILING_STOP = "TRAILING_STOP"
    MANUAL = "MANUAL"
    SHUTDOWN = "SHUTDOWN"


# Position close reasons besides the CompletionReason names
CLOSE_REASON_TP = "TP"
CLOSE_REASON_SL = "SL"
CLOSE_REASON_PARTIAL_TP = "PARTIAL_TAKE_PROFIT"
CLOSE_REASON_EXTERNAL = "EXTERNAL"


def _opt_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


@dataclass
class GridOrder:
    """One entry, take-profit or stop-loss instruction of a grid."""
    id: str
    kind: OrderKind
    side: Side
    level: int
    price: float
    size: float
    status: OrderStatus = OrderStatus.PENDING
    venue_order_id: Optional[str] = None
    entry_order_id: Optional[str] = None  # TP/SL only
    position_id: Optional[str] = None     # TP/SL only, set on entry fill
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)
    fill_price: Optional[float] = None
    fill_time: Optional[int] = None

    @property
    def order_type(self) -> OrderType:
        return OrderType.STOP if self.kind is OrderKind.STOP_LOSS else OrderType.LIMIT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "side": self.side.value,
            "level": self.level,
            "price": self.price,
            "size": self.size,
            "status": self.status.value,
            "venue_order_id": self.venue_order_id,
            "entry_order_id": self.entry_order_id,
            "position_id": self.position_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "fill_price": self.fill_price,
            "fill_time": self.fill_time,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GridOrder":
        return cls(
            id=data["id"],
            kind=OrderKind(data["kind"]),
            side=Side(data["side"]),
            level=int(data["level"]),
            price=float(data["price"]),
            size=float(data["size"]),
            status=OrderStatus(data.get("status", OrderStatus.PENDING.value)),
            venue_order_id=data.get("venue_order_id"),
            entry_order_id=data.get("entry_order_id"),
            position_id=data.get("position_id"),
            created_at=int(data.get("created_at", 0)),
            updated_at=int(data.get("updated_at", 0)),
            fill_price=_opt_float(data.get("fill_price")),
            fill_time=data.get("fill_time"),
        )


@dataclass
class Position:
    """Exposure created by one filled entry."""
    id: str
    entry_order_id: str
    level: int
    entry_price: float
    size: float
    direction: Direction
    status: PositionStatus = PositionStatus.OPEN
    open_time: int = field(default_factory=now_ms)
    close_price: Optional[float] = None
    close_time: Optional[int] = None
    close_reason: Optional[str] = None
    close_order_id: Optional[str] = None
    profit: float = 0.0

    @property
    def is_open(self) -> bool:
        return self.status is PositionStatus.OPEN

    @property
    def invested(self) -> float:
        return self.entry_price * self.size

    def pnl_at(self, price: float) -> float:
        """Direction-adjusted P/L if closed at price."""
        return (price - self.entry_price) * self.size * self.direction.sign

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entry_order_id": self.entry_order_id,
            "level": self.level,
            "entry_price": self.entry_price,
            "size": self.size,
            "direction": self.direction.value,
            "status": self.status.value,
            "open_time": self.open_time,
            "close_price": self.close_price,
            "close_time": self.close_time,
            "close_reason": self.close_reason,
            "close_order_id": self.close_order_id,
            "profit": self.profit,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        return cls(
            id=data["id"],
            entry_order_id=data["entry_order_id"],
            level=int(data.get("level", 0)),
            entry_price=float(data["entry_price"]),
            size=float(data["size"]),
            direction=Direction.parse(data["direction"]),
            status=PositionStatus(data.get("status", PositionStatus.OPEN.value)),
            open_time=int(data.get("open_time", 0)),
            close_price=_opt_float(data.get("close_price")),
            close_time=data.get("close_time"),
            close_reason=data.get("close_reason"),
            close_order_id=data.get("close_order_id"),
            profit=float(data.get("profit", 0.0)),
        )


@dataclass
class GridParams:
    atr: float
    grid_step: float
    take_profit_distance: float
    stop_loss_distance: float
    position_size: float
    grid_levels: int
    trailing_stop_activation_level: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "atr": self.atr,
            "grid_step": self.grid_step,
            "take_profit_distance": self.take_profit_distance,
            "stop_loss_distance": self.stop_loss_distance,
            "position_size": self.position_size,
            "grid_levels": self.grid_levels,
            "trailing_stop_activation_level": self.trailing_stop_activation_level,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GridParams":
        return cls(
            atr=float(data["atr"]),
            grid_step=float(data["grid_step"]),
            take_profit_distance=float(data["take_profit_distance"]),
            stop_loss_distance=float(data["stop_loss_distance"]),
            position_size=float(data["position_size"]),
            grid_levels=int(data["grid_levels"]),
            trailing_stop_activation_level=_opt_float(data.get("trailing_stop_activation_level")),
        )


@dataclass
class GridStats:
    filled_orders: int = 0
    closed_positions: int = 0
    total_profit: float = 0.0
    max_drawdown: float = 0.0  # most negative drawdown % seen
    final_profit: Optional[float] = None
    duration_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filled_orders": self.filled_orders,
            "closed_positions": self.closed_positions,
            "total_profit": self.total_profit,
            "max_drawdown": self.max_drawdown,
            "final_profit": self.final_profit,
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GridStats":
        return cls(
            filled_orders=int(data.get("filled_orders", 0)),
            closed_positions=int(data.get("closed_positions", 0)),
            total_profit=float(data.get("total_profit", 0.0)),
            max_drawdown=float(data.get("max_drawdown", 0.0)),
            final_profit=_opt_float(data.get("final_profit")),
            duration_ms=data.get("duration_ms"),
        )


@dataclass
class SignalSource:
    """Provenance of the signal a grid was built from."""
    id: Optional[str] = None
    confidence: Optional[float] = None
    source: Optional[str] = None
    timestamp: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "confidence": self.confidence,
            "source": self.source,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SignalSource":
        data = data or {}
        return cls(
            id=data.get("id"),
            confidence=_opt_float(data.get("confidence")),
            source=data.get("source"),
            timestamp=data.get("timestamp"),
        )


@dataclass
class Signal:
    """Directional trading signal that originates a grid."""
    pair: str
    direction: Direction
    entry_point: float
    confidence: float = 0.8
    id: Optional[str] = None
    source: Optional[str] = None
    timestamp: int = field(default_factory=now_ms)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Signal":
        """
        Parse a signal payload.

        Accepts the anchor price as entryPoint, entry_point, anchor or price.

        Raises:
            GridCreationError: invalid_signal when a field is missing or malformed
        """
        if not isinstance(data, dict):
            raise GridCreationError(GridCreationError.INVALID_SIGNAL, "signal must be an object")
        pair = str(data.get("pair") or "").strip().upper()
        if not pair:
            raise GridCreationError(GridCreationError.INVALID_SIGNAL, "missing pair")
        anchor = None
        for key in ("entryPoint", "entry_point", "anchor", "price"):
            if data.get(key) is not None:
                anchor = data[key]
                break
        try:
            direction = Direction.parse(data.get("direction"))
            entry_point = float(anchor) if anchor is not None else math.nan
            confidence = float(data["confidence"]) if data.get("confidence") is not None else 0.8
            timestamp = int(data.get("timestamp") or now_ms())
        except (TypeError, ValueError) as exc:
            raise GridCreationError(GridCreationError.INVALID_SIGNAL, str(exc)) from exc
        if not math.isfinite(entry_point) or entry_point <= 0:
            raise GridCreationError(GridCreationError.INVALID_SIGNAL, "entry point must be a positive number")
        return cls(
            pair=pair,
            direction=direction,
            entry_point=entry_point,
            confidence=confidence,
            id=data.get("id"),
            source=data.get("source"),
            timestamp=timestamp,
        )

    def to_source(self) -> SignalSource:
        return SignalSource(
            id=self.id,
            confidence=self.confidence,
            source=self.source,
            timestamp=self.timestamp,
        )


@dataclass
class Grid:
    """One directional ladder of entry/TP/SL orders for a single pair."""
    id: str
    pair: str
    direction: Direction
    anchor_price: float
    params: GridParams
    created_at: int = field(default_factory=now_ms)
    status: GridStatus = GridStatus.ACTIVE
    completed_at: Optional[int] = None
    completion_reason: Optional[CompletionReason] = None
    last_update_time: int = field(default_factory=now_ms)
    trailing_stop_enabled: bool = True
    trailing_stop_value: Optional[float] = None
    partial_take_profit_enabled: bool = True
    partial_take_profit_levels: List[float] = field(default_factory=list)
    partial_take_profit_executed: List[float] = field(default_factory=list)
    entry_orders: List[GridOrder] = field(default_factory=list)
    take_profit_orders: List[GridOrder] = field(default_factory=list)
    stop_loss_orders: List[GridOrder] = field(default_factory=list)
    positions: List[Position] = field(default_factory=list)
    stats: GridStats = field(default_factory=GridStats)
    signal: SignalSource = field(default_factory=SignalSource)

    @property
    def is_active(self) -> bool:
        return self.status is GridStatus.ACTIVE

    def all_orders(self) -> List[GridOrder]:
        return [*self.entry_orders, *self.take_profit_orders, *self.stop_loss_orders]

    def find_order(self, order_id: str) -> Optional[GridOrder]:
        """Look up an order by local id or venue id."""
        for order in self.all_orders():
            if order.id == order_id:
                return order
        for order in self.all_orders():
            if order.venue_order_id is not None and order.venue_order_id == order_id:
                return order
        return None

    def take_profit_for(self, entry_order_id: str) -> Optional[GridOrder]:
        for order in self.take_profit_orders:
            if order.entry_order_id == entry_order_id:
                return order
        return None

    def stop_loss_for(self, entry_order_id: str) -> Optional[GridOrder]:
        for order in self.stop_loss_orders:
            if order.entry_order_id == entry_order_id:
                return order
        return None

    def find_position(self, position_id: Optional[str]) -> Optional[Position]:
        if position_id is None:
            return None
        for pos in self.positions:
            if pos.id == position_id:
                return pos
        return None

    def open_positions(self) -> List[Position]:
        return [p for p in self.positions if p.is_open]

    def touch(self) -> None:
        self.last_update_time = now_ms()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pair": self.pair,
            "direction": self.direction.value,
            "anchor_price": self.anchor_price,
            "created_at": self.created_at,
            "status": self.status.value,
            "completed_at": self.completed_at,
            "completion_reason": self.completion_reason.value if self.completion_reason else None,
            "last_update_time": self.last_update_time,
            "params": self.params.to_dict(),
            "trailing_stop_enabled": self.trailing_stop_enabled,
            "trailing_stop_value": self.trailing_stop_value,
            "partial_take_profit_enabled": self.partial_take_profit_enabled,
            "partial_take_profit_levels": list(self.partial_take_profit_levels),
            "partial_take_profit_executed": list(self.partial_take_profit_executed),
            "entry_orders": [o.to_dict() for o in self.entry_orders],
            "take_profit_orders": [o.to_dict() for o in self.take_profit_orders],
            "stop_loss_orders": [o.to_dict() for o in self.stop_loss_orders],
            "positions": [p.to_dict() for p in self.positions],
            "stats": self.stats.to_dict(),
            "signal": self.signal.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Grid":
        reason = data.get("completion_reason")
        return cls(
            id=data["id"],
            pair=data["pair"],
            direction=Direction.parse(data["direction"]),
            anchor_price=float(data["anchor_price"]),
            params=GridParams.from_dict(data["params"]),
            created_at=int(data.get("created_at", 0)),
            status=GridStatus(data.get("status", GridStatus.ACTIVE.value)),
            completed_at=data.get("completed_at"),
            completion_reason=CompletionReason(reason) if reason else None,
            last_update_time=int(data.get("last_update_time", 0)),
            trailing_stop_enabled=bool(data.get("trailing_stop_enabled", True)),
            trailing_stop_value=_opt_float(data.get("trailing_stop_value")),
            partial_take_profit_enabled=bool(data.get("partial_take_profit_enabled", True)),
            partial_take_profit_levels=[float(x) for x in data.get("partial_take_profit_levels", [])],
            partial_take_profit_executed=[float(x) for x in data.get("partial_take_profit_executed", [])],
            entry_orders=[GridOrder.from_dict(o) for o in data.get("entry_orders", [])],
            take_profit_orders=[GridOrder.from_dict(o) for o in data.get("take_profit_orders", [])],
            stop_loss_orders=[GridOrder.from_dict(o) for o in data.get("stop_loss_orders", [])],
            positions=[Position.from_dict(p) for p in data.get("positions", [])],
            stats=GridStats.from_dict(data.get("stats", {})),
            signal=SignalSource.from_dict(data.get("signal")),
        )


@dataclass
class ModuleStats:
    """Process-wide aggregate counters."""
    total_grids_created: int = 0
    total_grids_completed: int = 0
    total_profit: float = 0.0
    successful_grids: int = 0
    avg_completion_time_ms: float = 0.0
    last_update: int = field(default_factory=now_ms)

    def record_completion(self, final_profit: float, duration_ms: int) -> None:
        self.total_grids_completed += 1
        self.total_profit += final_profit
        if final_profit > 0:
            self.successful_grids += 1
        n = self.total_grids_completed
        self.avg_completion_time_ms = (self.avg_completion_time_ms * (n - 1) + duration_ms) / n
        self.last_update = now_ms()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_grids_created": self.total_grids_created,
            "total_grids_completed": self.total_grids_completed,
            "total_profit": self.total_profit,
            "successful_grids": self.successful_grids,
            "avg_completion_time_ms": self.avg_completion_time_ms,
            "last_update": self.last_update,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ModuleStats":
        data = data or {}
        return cls(
            total_grids_created=int(data.get("total_grids_created", 0)),
            total_grids_completed=int(data.get("total_grids_completed", 0)),
            total_profit=float(data.get("total_profit", 0.0)),
            successful_grids=int(data.get("successful_grids", 0)),
            avg_completion_time_ms=float(data.get("avg_completion_time_ms", 0.0)),
            last_update=int(data.get("last_update", 0)),
        )
