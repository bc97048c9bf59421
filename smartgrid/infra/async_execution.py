"""
Async wrapper around the blocking Hyperliquid Exchange using a shared thread pool.

Single attempt per call with a fixed timeout; the engine retries on its next tick.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable


class AsyncExchange:
    def __init__(self, exchange, timeout: float = 10.0, max_workers: int = 4) -> None:
        self._exchange = exchange
        self._timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="hl-exec")

    async def order(self, *args, **kwargs) -> Any:
        return await self._call(lambda: self._exchange.order(*args, **kwargs))

    async def market_open(self, *args, **kwargs) -> Any:
        return await self._call(lambda: self._exchange.market_open(*args, **kwargs))

    async def cancel(self, coin: str, oid: int) -> Any:
        return await self._call(lambda: self._exchange.cancel(coin, oid))

    async def close(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    async def _call(self, fn: Callable[[], Any]) -> Any:
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(loop.run_in_executor(self._executor, fn), timeout=self._timeout)
