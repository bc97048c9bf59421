"""
Shared fakes and fixtures for the grid engine tests.
"""

from __future__ import annotations

import dataclasses
from typing import Any, Dict, List, Optional

import pytest

from smartgrid.config.config import Settings
from smartgrid.core.errors import VenueError
from smartgrid.core.event_bus import EventBus
from smartgrid.core.models import OrderType, Side
from smartgrid.engine_factory import EngineDependencies, create_engine
from smartgrid.exchange.gateway import Candle, OrderAck, Ticker
from smartgrid.monitoring.metrics_rich import GridMetrics
from smartgrid.state.state_store import MemoryGridRepository


def make_candles(count: int = 30, true_range: float = 200.0, base: float = 50000.0) -> List[Candle]:
    """Flat candles whose true range is exactly true_range, so ATR == true_range."""
    half = true_range / 2
    return [
        Candle(open_time=i * 3_600_000, open=base, high=base + half, low=base - half, close=base, volume=1.0)
        for i in range(count)
    ]


class FakeGateway:
    """In-memory ExchangeGateway with switchable failures."""

    def __init__(self, price: float = 50000.0, candles: Optional[List[Candle]] = None) -> None:
        self.prices: Dict[str, Optional[float]] = {}
        self.default_price = price
        self.candles = candles if candles is not None else make_candles()
        self.created: List[Dict[str, Any]] = []
        self.canceled: List[str] = []
        self.fail_create = False
        self.fail_market = False
        self.fail_cancel = False
        self.refuse_cancel = False
        self.fail_ticker = False
        self.fail_candles = False
        self.market_fill_price: Optional[float] = None
        self.candle_calls = 0
        self._next_id = 1000

    def price_for(self, pair: str) -> Optional[float]:
        return self.prices.get(pair, self.default_price)

    def set_price(self, price: float, pair: str = "BTCUSDT") -> None:
        self.prices[pair] = price

    def orders_of_type(self, order_type: OrderType) -> List[Dict[str, Any]]:
        return [o for o in self.created if o["type"] is order_type]

    async def create_order(
        self,
        pair: str,
        side: Side,
        order_type: OrderType,
        size: float,
        price: Optional[float] = None,
    ) -> OrderAck:
        if order_type is OrderType.MARKET and self.fail_market:
            raise VenueError("market_open", "insufficient margin")
        if order_type is not OrderType.MARKET and self.fail_create:
            raise VenueError("order", "rejected")
        self._next_id += 1
        oid = str(self._next_id)
        self.created.append({
            "id": oid, "pair": pair, "side": side, "type": order_type, "size": size, "price": price,
        })
        if order_type is OrderType.MARKET:
            fill = self.market_fill_price if self.market_fill_price is not None else self.price_for(pair)
            return OrderAck(order_id=oid, avg_price=fill, filled=True)
        return OrderAck(order_id=oid)

    async def cancel_order(self, pair: str, order_id: str) -> bool:
        if self.fail_cancel:
            raise VenueError("cancel", "timeout")
        if self.refuse_cancel:
            return False
        self.canceled.append(order_id)
        return True

    async def get_ticker(self, pair: str) -> Ticker:
        if self.fail_ticker:
            raise VenueError("allMids", "unavailable")
        return Ticker(pair=pair, last_price=self.price_for(pair))

    async def get_candles(self, pair: str, interval: str, limit: int) -> List[Candle]:
        self.candle_calls += 1
        if self.fail_candles:
            raise VenueError("candleSnapshot", "unavailable")
        return self.candles[-limit:]


def make_settings(**overrides: Any) -> Settings:
    base = dict(dynamic_position_sizing=False, log_file=None)
    base.update(overrides)
    return dataclasses.replace(Settings(), **base)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def bus() -> EventBus:
    return EventBus(history_size=500)


@pytest.fixture
def metrics() -> GridMetrics:
    return GridMetrics()


@pytest.fixture
def repository() -> MemoryGridRepository:
    return MemoryGridRepository()


@pytest.fixture
def engine(settings, gateway, repository, bus, metrics):
    return create_engine(EngineDependencies(
        cfg=settings,
        gateway=gateway,
        repository=repository,
        event_bus=bus,
        metrics=metrics,
    ))
