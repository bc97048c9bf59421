"""
ExecutionGateway: the engine's only path to the venue.

Wraps an ExchangeGateway so that every call:
- carries a fixed timeout
- never raises (failures come back as SubmitResult/CancelResult with success=False)
- is logged and counted in metrics

Local order state is not touched here; the OrderTracker applies results.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, TYPE_CHECKING, TypeVar

from smartgrid.core.json_utils import dumps
from smartgrid.core.models import GridOrder, OrderType, Side
from smartgrid.exchange.gateway import Candle, ExchangeGateway

if TYPE_CHECKING:
    from smartgrid.config.config import Settings
    from smartgrid.monitoring.metrics_rich import GridMetrics

log = logging.getLogger("smartgrid")

T = TypeVar("T")


@dataclass
class SubmitResult:
    """Result of order submission."""
    success: bool
    order_id: Optional[str] = None        # local id
    venue_order_id: Optional[str] = None
    avg_price: Optional[float] = None
    filled: bool = False                  # venue reported an immediate fill
    error: Optional[str] = None


@dataclass
class CancelResult:
    """Result of order cancellation."""
    success: bool
    order_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ExecutionGatewayConfig:
    """Configuration for ExecutionGateway."""
    venue_timeout_sec: float = 10.0
    log_event_callback: Optional[Callable[..., None]] = None

    @classmethod
    def from_settings(cls, settings: "Settings", **kwargs: Any) -> "ExecutionGatewayConfig":
        return cls(venue_timeout_sec=settings.venue_timeout_sec, **kwargs)


class ExecutionGateway:
    """
    Timeout-bounded, exception-free facade over ExchangeGateway.
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        metrics: Optional["GridMetrics"] = None,
        config: Optional[ExecutionGatewayConfig] = None,
    ) -> None:
        self.gateway = gateway
        self.metrics = metrics
        self.config = config or ExecutionGatewayConfig()
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    async def _timed(self, operation: str, make_call: Callable[[], Awaitable[T]]) -> T:
        """Await a venue call under the configured timeout, recording latency."""
        started = time.monotonic()
        try:
            return await asyncio.wait_for(make_call(), timeout=self.config.venue_timeout_sec)
        finally:
            if self.metrics:
                elapsed_ms = (time.monotonic() - started) * 1000
                self.metrics.venue_latency_ms.labels(operation=operation).observe(elapsed_ms)

    def _record_error(self, operation: str) -> None:
        if self.metrics:
            self.metrics.venue_errors.labels(operation=operation).inc()

    @staticmethod
    def _describe(exc: BaseException) -> str:
        if isinstance(exc, asyncio.TimeoutError):
            return "timeout"
        return str(exc) or type(exc).__name__

    # ========== Order Submission ==========

    async def submit_order(self, pair: str, order: GridOrder) -> SubmitResult:
        """
        Place a grid order (LIMIT for entries/TPs, STOP for SLs).

        Returns:
            SubmitResult with the venue id on success
        """
        try:
            ack = await self._timed(
                "create_order",
                lambda: self.gateway.create_order(
                    pair, order.side, order.order_type, order.size, order.price
                ),
            )
        except Exception as exc:
            self._record_error("create_order")
            self._log_event(
                "order_submit_error",
                pair=pair,
                order_id=order.id,
                kind=order.kind.value,
                price=order.price,
                size=order.size,
                error=self._describe(exc),
            )
            return SubmitResult(success=False, order_id=order.id, error=self._describe(exc))

        if self.metrics:
            self.metrics.orders_submitted.labels(pair=pair, kind=order.kind.value).inc()
        self._log_event(
            "order_submitted",
            pair=pair,
            order_id=order.id,
            venue_order_id=ack.order_id,
            kind=order.kind.value,
            side=order.side.value,
            price=order.price,
            size=order.size,
        )
        return SubmitResult(
            success=True,
            order_id=order.id,
            venue_order_id=ack.order_id,
            avg_price=ack.avg_price,
            filled=ack.filled,
        )

    async def market_order(self, pair: str, side: Side, size: float, ref: Optional[str] = None) -> SubmitResult:
        """Market order used to close a position."""
        try:
            ack = await self._timed(
                "market_order",
                lambda: self.gateway.create_order(pair, side, OrderType.MARKET, size, None),
            )
        except Exception as exc:
            self._record_error("market_order")
            self._log_event(
                "market_order_error",
                pair=pair,
                ref=ref,
                side=side.value,
                size=size,
                error=self._describe(exc),
            )
            return SubmitResult(success=False, order_id=ref, error=self._describe(exc))

        self._log_event(
            "market_order_filled",
            pair=pair,
            ref=ref,
            side=side.value,
            size=size,
            venue_order_id=ack.order_id,
            avg_price=ack.avg_price,
        )
        return SubmitResult(
            success=True,
            order_id=ref,
            venue_order_id=ack.order_id,
            avg_price=ack.avg_price,
            filled=True,
        )

    # ========== Cancellation ==========

    async def cancel_order(self, pair: str, order: GridOrder) -> CancelResult:
        """Cancel a resting order by its venue id."""
        if not order.venue_order_id:
            return CancelResult(success=False, order_id=order.id, error="no_venue_order_id")
        venue_id = order.venue_order_id
        try:
            ok = await self._timed("cancel_order", lambda: self.gateway.cancel_order(pair, venue_id))
        except Exception as exc:
            self._record_error("cancel_order")
            self._log_event(
                "order_cancel_error",
                pair=pair,
                order_id=order.id,
                venue_order_id=venue_id,
                error=self._describe(exc),
            )
            return CancelResult(success=False, order_id=order.id, error=self._describe(exc))

        if not ok:
            self._record_error("cancel_order")
            self._log_event("order_cancel_failed", pair=pair, order_id=order.id, venue_order_id=venue_id)
            return CancelResult(success=False, order_id=order.id, error="venue_refused")

        if self.metrics:
            self.metrics.orders_cancelled.labels(pair=pair, kind=order.kind.value).inc()
        self._log_event("order_cancelled", pair=pair, order_id=order.id, venue_order_id=venue_id)
        return CancelResult(success=True, order_id=order.id)

    # ========== Market Data ==========

    async def fetch_price(self, pair: str) -> Optional[float]:
        """Last price, or None when the venue call fails."""
        try:
            ticker = await self._timed("get_ticker", lambda: self.gateway.get_ticker(pair))
        except Exception as exc:
            self._record_error("get_ticker")
            self._log_event("price_fetch_failed", pair=pair, error=self._describe(exc))
            return None
        price = ticker.last_price
        if price is None or price <= 0:
            self._log_event("price_fetch_failed", pair=pair, error=f"invalid price {price!r}")
            return None
        return float(price)

    async def fetch_candles(self, pair: str, interval: str, limit: int) -> Optional[List[Candle]]:
        """Candle history, or None when the venue call fails."""
        try:
            return await self._timed(
                "get_candles", lambda: self.gateway.get_candles(pair, interval, limit)
            )
        except Exception as exc:
            self._record_error("get_candles")
            self._log_event(
                "candles_fetch_failed",
                pair=pair,
                interval=interval,
                limit=limit,
                error=self._describe(exc),
            )
            return None
