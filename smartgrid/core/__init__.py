"""
Core package: data model, errors, event bus and JSON helpers.
"""

from smartgrid.core.errors import GridCreationError, GridError, VenueError
from smartgrid.core.event_bus import Event, EventBus, EventType, Subscription

__all__ = [
    "EventBus",
    "EventType",
    "Event",
    "Subscription",
    "GridError",
    "GridCreationError",
    "VenueError",
]
