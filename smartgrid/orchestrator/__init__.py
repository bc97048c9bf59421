"""
Orchestrator package - grid registry, lifecycle and the reconciliation tick.
"""

from smartgrid.orchestrator.grid_coordinator import (
    CoordinatorConfig,
    GridCoordinator,
    TickResult,
)

__all__ = [
    "GridCoordinator",
    "CoordinatorConfig",
    "TickResult",
]
