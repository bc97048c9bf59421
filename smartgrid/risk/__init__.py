"""
Risk package - per-grid exit rules.
"""

from smartgrid.risk.position_risk import (
    PositionRiskMonitor,
    RiskConfig,
    drawdown_percent,
    realized_profit_percent,
)

__all__ = [
    "PositionRiskMonitor",
    "RiskConfig",
    "drawdown_percent",
    "realized_profit_percent",
]
