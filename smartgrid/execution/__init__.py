"""
Execution layer: venue-call wrapper, grid construction and order lifecycle.
"""

from smartgrid.execution.execution_gateway import (
    CancelResult,
    ExecutionGateway,
    ExecutionGatewayConfig,
    SubmitResult,
)
from smartgrid.execution.grid_builder import GridBuilder, GridBuilderConfig
from smartgrid.execution.order_state_machine import OrderStateMachine, StateTransition, VALID_TRANSITIONS
from smartgrid.execution.order_tracker import OrderTracker, price_crossed

__all__ = [
    "ExecutionGateway",
    "ExecutionGatewayConfig",
    "SubmitResult",
    "CancelResult",
    "GridBuilder",
    "GridBuilderConfig",
    "OrderStateMachine",
    "StateTransition",
    "VALID_TRANSITIONS",
    "OrderTracker",
    "price_crossed",
]
