"""
Hyperliquid venue adapter implementing ExchangeGateway.

Writes go through the SDK Exchange (signed with an eth_account wallet) wrapped
in AsyncExchange; reads use the httpx AsyncInfo client against /info.
Pairs are mapped to Hyperliquid coins by stripping the quote suffix
(BTCUSDT -> BTC).
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from smartgrid.core.errors import VenueError
from smartgrid.core.json_utils import dumps
from smartgrid.core.models import OrderType, Side
from smartgrid.exchange.gateway import Candle, OrderAck, Ticker
from smartgrid.infra.async_execution import AsyncExchange
from smartgrid.infra.async_info import AsyncInfo

log = logging.getLogger("smartgrid")

INTERVAL_MS: Dict[str, int] = {
    "1m": 60_000,
    "3m": 180_000,
    "5m": 300_000,
    "15m": 900_000,
    "30m": 1_800_000,
    "1h": 3_600_000,
    "2h": 7_200_000,
    "4h": 14_400_000,
    "8h": 28_800_000,
    "12h": 43_200_000,
    "1d": 86_400_000,
    "3d": 259_200_000,
    "1w": 604_800_000,
}


def hl_round_price(px: float, sz_decimals: int) -> float:
    """
    Hyperliquid perp price rounding: 5 significant figures and at most
    (6 - szDecimals) decimals. Integer prices above 100k.
    """
    if px > 100_000:
        return float(round(px))
    max_decimals = max(0, 6 - sz_decimals)
    return round(float(f"{px:.5g}"), max_decimals)


def hl_round_size(sz: float, sz_decimals: int) -> float:
    return round(sz, max(0, sz_decimals))


def parse_order_response(resp: Any) -> OrderAck:
    """
    Turn an SDK order response into an OrderAck.

    Raises:
        VenueError: on a non-ok envelope or an error status
    """
    if not isinstance(resp, dict) or resp.get("status") != "ok":
        raise VenueError("create_order", f"bad response: {resp!r}")
    response = resp.get("response") or {}
    data = response.get("data") if isinstance(response, dict) else None
    statuses = (data or {}).get("statuses") or []
    if not statuses:
        raise VenueError("create_order", f"no status in response: {resp!r}")
    st = statuses[0]
    if not isinstance(st, dict):
        raise VenueError("create_order", f"unexpected status: {st!r}")
    if "error" in st:
        raise VenueError("create_order", str(st["error"]))
    if "resting" in st:
        return OrderAck(order_id=str(st["resting"]["oid"]))
    if "filled" in st:
        filled = st["filled"]
        avg_px = filled.get("avgPx")
        return OrderAck(
            order_id=str(filled["oid"]),
            avg_price=float(avg_px) if avg_px is not None else None,
            filled=True,
        )
    raise VenueError("create_order", f"unknown status: {st!r}")


class HyperliquidGateway:
    """ExchangeGateway over the Hyperliquid SDK and info API."""

    def __init__(
        self,
        exchange: AsyncExchange,
        info: AsyncInfo,
        quote_suffixes: Sequence[str] = ("USDT", "USDC", "USD"),
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.exchange = exchange
        self.info = info
        # Longest suffix first so USDT is not matched as USD
        self.quote_suffixes = sorted((s.upper() for s in quote_suffixes), key=len, reverse=True)
        self._sz_decimals: Dict[str, int] = {}
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    def coin_for(self, pair: str) -> str:
        raw = pair.upper().replace("/", "").replace("-", "")
        for suffix in self.quote_suffixes:
            if raw.endswith(suffix) and len(raw) > len(suffix):
                return raw[: -len(suffix)]
        return raw

    async def _decimals_for(self, coin: str) -> int:
        if not self._sz_decimals:
            meta = await self.info.meta()
            for asset in (meta or {}).get("universe", []):
                name = asset.get("name")
                if name:
                    self._sz_decimals[name] = int(asset.get("szDecimals", 0))
            self._log_event("meta_loaded", assets=len(self._sz_decimals))
        if coin not in self._sz_decimals:
            raise VenueError("meta", f"unknown coin {coin}")
        return self._sz_decimals[coin]

    # ========== Writes ==========

    async def create_order(
        self,
        pair: str,
        side: Side,
        order_type: OrderType,
        size: float,
        price: Optional[float] = None,
    ) -> OrderAck:
        coin = self.coin_for(pair)
        decimals = await self._decimals_for(coin)
        is_buy = side is Side.BUY
        sz = hl_round_size(size, decimals)
        if sz <= 0:
            raise VenueError("create_order", f"size {size} rounds to zero for {coin}")

        if order_type is OrderType.MARKET:
            resp = await self.exchange.market_open(coin, is_buy, sz)
            return parse_order_response(resp)

        if price is None:
            raise VenueError("create_order", f"{order_type.value} order requires a price")
        px = hl_round_price(price, decimals)

        if order_type is OrderType.STOP:
            wire_type: Dict[str, Any] = {"trigger": {"triggerPx": px, "isMarket": True, "tpsl": "sl"}}
            resp = await self.exchange.order(coin, is_buy, sz, px, wire_type, reduce_only=True)
        else:
            resp = await self.exchange.order(coin, is_buy, sz, px, {"limit": {"tif": "Gtc"}})
        return parse_order_response(resp)

    async def cancel_order(self, pair: str, order_id: str) -> bool:
        coin = self.coin_for(pair)
        try:
            oid = int(order_id)
        except (TypeError, ValueError) as exc:
            raise VenueError("cancel_order", f"invalid order id {order_id!r}") from exc
        resp = await self.exchange.cancel(coin, oid)
        if not isinstance(resp, dict) or resp.get("status") != "ok":
            raise VenueError("cancel_order", f"bad response: {resp!r}")
        statuses = ((resp.get("response") or {}).get("data") or {}).get("statuses") or []
        ok = bool(statuses) and statuses[0] == "success"
        if not ok:
            self._log_event("cancel_rejected", coin=coin, oid=oid, statuses=statuses)
        return ok

    # ========== Reads ==========

    async def get_ticker(self, pair: str) -> Ticker:
        coin = self.coin_for(pair)
        mids = await self.info.all_mids()
        if not isinstance(mids, dict) or coin not in mids:
            raise VenueError("get_ticker", f"no mid for {coin}")
        return Ticker(pair=pair, last_price=float(mids[coin]))

    async def get_candles(self, pair: str, interval: str, limit: int) -> List[Candle]:
        coin = self.coin_for(pair)
        step = INTERVAL_MS.get(interval)
        if step is None:
            raise VenueError("get_candles", f"unsupported interval {interval}")
        end_ms = int(time.time() * 1000)
        start_ms = end_ms - step * limit
        raw = await self.info.candle_snapshot(coin, interval, start_ms, end_ms)
        if not isinstance(raw, list):
            raise VenueError("get_candles", f"unexpected candle payload for {coin}")
        candles = [
            Candle(
                open_time=int(c["t"]),
                open=float(c["o"]),
                high=float(c["h"]),
                low=float(c["l"]),
                close=float(c["c"]),
                volume=float(c.get("v", 0.0)),
            )
            for c in raw
        ]
        candles.sort(key=lambda c: c.open_time)
        return candles[-limit:]
