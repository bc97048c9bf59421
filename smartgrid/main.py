"""
Entry point wiring all components.
"""

from __future__ import annotations

import asyncio
import logging
import signal

import httpx
from hyperliquid.exchange import Exchange

from smartgrid.config.config import Settings
from smartgrid.core.event_bus import EventBus
from smartgrid.core.json_utils import dumps
from smartgrid.engine_factory import EngineDependencies, create_engine
from smartgrid.exchange.hyperliquid_gateway import HyperliquidGateway
from smartgrid.infra.async_execution import AsyncExchange
from smartgrid.infra.async_info import AsyncInfo
from smartgrid.infra.logging_cfg import build_logger, event_logger
from smartgrid.monitoring.http_api import ApiHandler, start_api_server
from smartgrid.monitoring.metrics_rich import GridMetrics
from smartgrid.state.state_store import FileGridRepository


async def main() -> None:
    cfg = Settings.load()
    log = build_logger("smartgrid", file_path=cfg.log_file)

    wallet = cfg.resolve_signer()
    base_exchange = Exchange(wallet, cfg.base_url, account_address=cfg.resolve_account())
    async_exchange = AsyncExchange(base_exchange, timeout=cfg.venue_timeout_sec)
    # One shared HTTP/2 client for every info read
    shared_info_client = httpx.AsyncClient(
        base_url=cfg.base_url.rstrip("/"), http2=True, timeout=cfg.venue_timeout_sec
    )
    async_info = AsyncInfo(cfg.base_url, timeout=cfg.venue_timeout_sec, client=shared_info_client)
    gateway = HyperliquidGateway(
        async_exchange,
        async_info,
        quote_suffixes=cfg.quote_suffixes,
        log_event=event_logger(log),
    )

    metrics = GridMetrics()
    event_bus = EventBus(history_size=cfg.max_history_size, log_event=event_logger(log, logging.DEBUG))
    coordinator = create_engine(EngineDependencies(
        cfg=cfg,
        gateway=gateway,
        repository=FileGridRepository(cfg.state_dir),
        event_bus=event_bus,
        metrics=metrics,
        logger=log,
    ))
    srv = await start_api_server(
        ApiHandler(coordinator, metrics=metrics, auth_token=cfg.http_token),
        host=cfg.http_host,
        port=cfg.http_port,
    )
    log.info(dumps({"event": "startup", "config": cfg.dump()}))

    bus_task = asyncio.create_task(event_bus.start())
    run_task = asyncio.create_task(coordinator.start())

    loop = asyncio.get_running_loop()
    # Windows doesn't support add_signal_handler, so rely on KeyboardInterrupt handling
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, coordinator.stop)
        except NotImplementedError:
            pass

    try:
        await run_task
    except (asyncio.CancelledError, KeyboardInterrupt):
        log.info("Shutdown signal received, cleaning up...")
    finally:
        log.info("Closing servers and connections...")
        srv.close()
        await srv.wait_closed()
        await coordinator.shutdown()
        # Deliver the final grid.completed events before stopping the bus
        await event_bus.drain(timeout=5.0)
        event_bus.stop()
        bus_task.cancel()
        try:
            await bus_task
        except asyncio.CancelledError:
            pass
        await async_exchange.close()
        await async_info.close()
        await shared_info_client.aclose()
        log.info(dumps({"event": "shutdown_complete"}))


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
