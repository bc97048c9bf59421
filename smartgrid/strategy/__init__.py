"""
Strategy package - volatility measurement and grid re-spacing.
"""

from smartgrid.strategy.volatility import (
    AdjustmentResult,
    VolatilityAdapter,
    VolatilityConfig,
    true_ranges,
    wilder_atr,
)

__all__ = [
    "VolatilityAdapter",
    "VolatilityConfig",
    "AdjustmentResult",
    "true_ranges",
    "wilder_atr",
]
