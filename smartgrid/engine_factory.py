"""
EngineFactory: builds a fully wired GridCoordinator.

The venue gateway and the repository are injected so the same wiring runs
against Hyperliquid in production and against fakes in tests.

Usage:
    from smartgrid.engine_factory import EngineDependencies, create_engine

    deps = EngineDependencies(
        cfg=settings,
        gateway=HyperliquidGateway(...),
        repository=FileGridRepository(settings.state_dir),
        event_bus=bus,
        metrics=GridMetrics(),
    )
    coordinator = create_engine(deps)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, TYPE_CHECKING

from smartgrid.execution.execution_gateway import ExecutionGateway, ExecutionGatewayConfig
from smartgrid.execution.grid_builder import GridBuilder, GridBuilderConfig
from smartgrid.execution.order_state_machine import OrderStateMachine
from smartgrid.execution.order_tracker import OrderTracker
from smartgrid.infra.logging_cfg import event_logger
from smartgrid.orchestrator.grid_coordinator import CoordinatorConfig, GridCoordinator
from smartgrid.risk.position_risk import PositionRiskMonitor, RiskConfig
from smartgrid.strategy.volatility import VolatilityAdapter, VolatilityConfig

if TYPE_CHECKING:
    from smartgrid.config.config import Settings
    from smartgrid.core.event_bus import EventBus
    from smartgrid.exchange.gateway import ExchangeGateway
    from smartgrid.monitoring.metrics_rich import GridMetrics
    from smartgrid.state.state_store import GridRepository

log = logging.getLogger("smartgrid")


@dataclass
class EngineDependencies:
    """Everything the engine needs from the outside."""
    cfg: "Settings"
    gateway: "ExchangeGateway"
    repository: "GridRepository"
    event_bus: Optional["EventBus"] = None
    metrics: Optional["GridMetrics"] = None
    logger: Optional[logging.Logger] = None


def create_engine(deps: EngineDependencies) -> GridCoordinator:
    """Assemble execution, strategy, risk and lifecycle around deps.gateway."""
    cfg = deps.cfg
    log_cb = event_logger(deps.logger or log)

    execution = ExecutionGateway(
        deps.gateway,
        metrics=deps.metrics,
        config=ExecutionGatewayConfig.from_settings(cfg, log_event_callback=log_cb),
    )
    volatility = VolatilityAdapter(
        execution,
        VolatilityConfig.from_settings(cfg, log_event_callback=log_cb),
    )
    builder = GridBuilder(GridBuilderConfig.from_settings(cfg, log_event_callback=log_cb))
    tracker = OrderTracker(
        execution,
        state_machine=OrderStateMachine(log_event=log_cb, audit_size=cfg.max_history_size),
        event_bus=deps.event_bus,
        metrics=deps.metrics,
        price_cross_tolerance=cfg.price_cross_tolerance,
        log_event=log_cb,
    )
    risk = PositionRiskMonitor(
        tracker,
        RiskConfig.from_settings(cfg, log_event_callback=log_cb),
        event_bus=deps.event_bus,
        metrics=deps.metrics,
    )
    return GridCoordinator(
        execution=execution,
        builder=builder,
        volatility=volatility,
        tracker=tracker,
        risk=risk,
        repository=deps.repository,
        event_bus=deps.event_bus,
        metrics=deps.metrics,
        config=CoordinatorConfig.from_settings(cfg, log_event_callback=log_cb),
    )
