"""
Venue capability interface consumed by the engine.

Any venue adapter that implements ExchangeGateway can drive the engine.
All calls are async and may raise; ExecutionGateway wraps them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol, runtime_checkable

from smartgrid.core.models import OrderType, Side


@dataclass(frozen=True)
class OrderAck:
    """Venue acknowledgement of an accepted order."""
    order_id: str
    avg_price: Optional[float] = None  # set when the venue filled immediately
    filled: bool = False


@dataclass(frozen=True)
class Ticker:
    pair: str
    last_price: float


@dataclass(frozen=True)
class Candle:
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


@runtime_checkable
class ExchangeGateway(Protocol):
    async def create_order(
        self,
        pair: str,
        side: Side,
        order_type: OrderType,
        size: float,
        price: Optional[float] = None,
    ) -> OrderAck:
        ...

    async def cancel_order(self, pair: str, order_id: str) -> bool:
        ...

    async def get_ticker(self, pair: str) -> Ticker:
        ...

    async def get_candles(self, pair: str, interval: str, limit: int) -> List[Candle]:
        ...
