"""
Error taxonomy for the grid engine.

GridCreationError carries a machine-readable reason code so the management
surface can map admission rejections to HTTP statuses without parsing text.
"""

from __future__ import annotations

from typing import Optional


class GridError(Exception):
    """Base class for grid engine errors."""


class GridCreationError(GridError):
    """Grid could not be created (bad signal, no volatility data, admission)."""

    # Reason codes
    INVALID_SIGNAL = "invalid_signal"
    INSUFFICIENT_VOLATILITY = "insufficient_volatility_data"
    PAIR_ALREADY_ACTIVE = "pair_already_active"
    MAX_CONCURRENT = "max_concurrent_grids"
    LOW_CONFIDENCE = "low_confidence"
    MARKET_DATA_UNAVAILABLE = "market_data_unavailable"

    ADMISSION_REASONS = frozenset({PAIR_ALREADY_ACTIVE, MAX_CONCURRENT, LOW_CONFIDENCE})

    def __init__(self, reason: str, message: Optional[str] = None) -> None:
        self.reason = reason
        self.message = message or reason
        super().__init__(f"{reason}: {self.message}")

    @property
    def is_admission(self) -> bool:
        return self.reason in self.ADMISSION_REASONS


class VenueError(GridError):
    """Venue call failed or was rejected."""

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        super().__init__(f"{operation}: {message}")
