"""
Event Bus: typed pub/sub channel between the grid engine and its subscribers.

The engine publishes grid lifecycle events (grid.created, grid.completed, ...)
and consumes trading signals and order notifications. Events flow through a
FIFO queue so per-publisher ordering is preserved.

Features:
- Closed set of event types
- Async or sync handlers
- Priority-based handler execution
- Error isolation (one handler failure doesn't stop others)
- Bounded event history for debugging
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, List, Optional, Union

from smartgrid.core.json_utils import dumps

log = logging.getLogger("smartgrid")

MODULE_ID = "adaptive-smart-grid"


class EventType(str, Enum):
    """
    Event types carried by the bus.

    Values are the wire names used by external subscribers.
    """
    # Emitted by the engine
    GRID_CREATED = "grid.created"
    GRID_COMPLETED = "grid.completed"
    POSITION_OPENED = "grid.position.opened"
    POSITION_CLOSED = "grid.position.closed"
    PARTIAL_TAKE_PROFIT = "grid.partialTakeProfit"
    TRAILING_STOP_ACTIVATED = "grid.trailingStop.activated"
    TRAILING_STOP_UPDATED = "grid.trailingStop.updated"
    GRID_ADJUSTED = "grid.adjusted"

    # Consumed by the engine
    TRADING_SIGNAL = "trading-signal"
    ORDER_EXECUTED = "order.executed"
    ORDER_CANCELED = "order.canceled"
    POSITION_CLOSED_EXTERNAL = "position.closed"


@dataclass
class Event:
    """
    Event container.

    - type: EventType value
    - data: event-specific payload
    - timestamp_ms: creation time
    - source: module id of the publisher
    - grid_id: grid the event refers to (None for signals)
    """
    type: EventType
    data: Dict[str, Any]
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    source: Optional[str] = None
    grid_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "gridId": self.grid_id,
            "timestamp": self.timestamp_ms,
            "moduleId": self.source,
            **self.data,
        }

    def __str__(self) -> str:
        return f"Event({self.type.value}, ts={self.timestamp_ms}, grid={self.grid_id})"


Handler = Union[
    Callable[[Event], Coroutine[Any, Any, None]],
    Callable[[Event], None],
]


@dataclass
class Subscription:
    """Internal subscription record."""
    handler: Handler
    priority: int = 0  # Higher = called first
    filter_fn: Optional[Callable[[Event], bool]] = None
    name: Optional[str] = None


class EventBus:
    """
    Central event bus.

    Usage:
        bus = EventBus()
        bus.subscribe(EventType.GRID_COMPLETED, on_completed)

        await bus.emit(EventType.GRID_CREATED, grid_id=grid.id, pair=grid.pair)

        asyncio.create_task(bus.start())
        ...
        bus.stop()
    """

    DEFAULT_HISTORY_SIZE = 1000
    DEFAULT_QUEUE_SIZE = 0

    def __init__(
        self,
        history_size: int = DEFAULT_HISTORY_SIZE,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        """
        Args:
            history_size: Max events to keep in history (0 = disabled)
            queue_size: Max queue size (0 = unlimited)
            log_event: Callback for structured logging
        """
        self._log = log_event or self._default_log

        self._subscribers: Dict[EventType, List[Subscription]] = {}
        self._global_subscribers: List[Subscription] = []

        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max(queue_size, 0))

        self._running = False

        self._history_size = history_size
        self._history: List[Event] = []

        self._stats = {
            "events_published": 0,
            "events_processed": 0,
            "events_dropped": 0,
            "handler_errors": 0,
            "queue_high_water": 0,
        }

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.debug(dumps({"event": event, **kwargs}))

    # -------------------------------------------------------------------------
    # Subscription Management
    # -------------------------------------------------------------------------

    @staticmethod
    def _insert_sorted(subs: List[Subscription], sub: Subscription) -> None:
        insert_idx = len(subs)
        for i, existing in enumerate(subs):
            if existing.priority < sub.priority:
                insert_idx = i
                break
        subs.insert(insert_idx, sub)

    def subscribe(
        self,
        event_type: EventType,
        handler: Handler,
        priority: int = 0,
        filter_fn: Optional[Callable[[Event], bool]] = None,
        name: Optional[str] = None,
    ) -> Subscription:
        """
        Subscribe to a specific event type.

        Args:
            event_type: Type of events to receive
            handler: Async or sync function to handle events
            priority: Higher priority handlers called first (default 0)
            filter_fn: Optional filter function (receives event, returns bool)
            name: Optional name for debugging

        Returns:
            Subscription object (for unsubscribing)
        """
        sub = Subscription(handler=handler, priority=priority, filter_fn=filter_fn, name=name)
        subs = self._subscribers.setdefault(event_type, [])
        self._insert_sorted(subs, sub)

        self._log(
            "event_bus_subscribe",
            event_type=event_type.value,
            handler_name=name or getattr(handler, "__name__", "handler"),
            priority=priority,
            total_subscribers=len(subs),
        )
        return sub

    def subscribe_all(
        self,
        handler: Handler,
        priority: int = 0,
        filter_fn: Optional[Callable[[Event], bool]] = None,
        name: Optional[str] = None,
    ) -> Subscription:
        """
        Subscribe to every event type.

        Global subscribers are called before type-specific subscribers.
        """
        sub = Subscription(handler=handler, priority=priority, filter_fn=filter_fn, name=name)
        self._insert_sorted(self._global_subscribers, sub)
        self._log(
            "event_bus_subscribe_all",
            handler_name=name or getattr(handler, "__name__", "handler"),
            priority=priority,
        )
        return sub

    def unsubscribe(self, event_type: Optional[EventType], subscription: Subscription) -> bool:
        """Remove a subscription. event_type None means a global subscriber."""
        subs = self._global_subscribers if event_type is None else self._subscribers.get(event_type, [])
        if subscription in subs:
            subs.remove(subscription)
            return True
        return False

    # -------------------------------------------------------------------------
    # Event Publishing
    # -------------------------------------------------------------------------

    def publish_nowait(self, event: Event) -> bool:
        """
        Queue an event for the subscribers.

        Returns:
            True if queued, False if queue full
        """
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._stats["events_dropped"] += 1
            self._log("event_bus_queue_full", event_type=event.type.value, dropped=True)
            return False
        self._stats["events_published"] += 1
        qsize = self._queue.qsize()
        if qsize > self._stats["queue_high_water"]:
            self._stats["queue_high_water"] = qsize
        return True

    async def publish(self, event: Event) -> bool:
        return self.publish_nowait(event)

    async def emit(
        self,
        event_type: EventType,
        grid_id: Optional[str] = None,
        source: Optional[str] = MODULE_ID,
        **data: Any,
    ) -> bool:
        """Create and publish an event in one call."""
        return await self.publish(Event(type=event_type, data=data, source=source, grid_id=grid_id))

    # -------------------------------------------------------------------------
    # Event Processing
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """
        Process events until stop() is called.

        Should be run as a background task.
        """
        self._running = True
        self._log("event_bus_started")

        while self._running:
            try:
                try:
                    event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue
                await self._process_event(event)
            except asyncio.CancelledError:
                self._log("event_bus_cancelled")
                break
            except Exception as e:
                self._log("event_bus_error", error=str(e), error_type=type(e).__name__)

        self._log("event_bus_stopped")

    async def _process_event(self, event: Event) -> None:
        if self._history_size > 0:
            self._history.append(event)
            if len(self._history) > self._history_size:
                self._history.pop(0)

        handlers: List[Subscription] = [
            *self._global_subscribers,
            *self._subscribers.get(event.type, []),
        ]

        for sub in handlers:
            if sub.filter_fn and not sub.filter_fn(event):
                continue
            try:
                if asyncio.iscoroutinefunction(sub.handler):
                    await sub.handler(event)
                else:
                    sub.handler(event)
            except Exception as e:
                self._stats["handler_errors"] += 1
                self._log(
                    "event_bus_handler_error",
                    event_type=event.type.value,
                    handler_name=sub.name or "unknown",
                    error=str(e),
                    error_type=type(e).__name__,
                )

        self._stats["events_processed"] += 1

    def stop(self) -> None:
        self._running = False

    async def drain(self, timeout: float = 5.0) -> int:
        """
        Process all queued events inline.

        Returns:
            Number of events processed
        """
        count = 0
        deadline = time.time() + timeout
        while not self._queue.empty() and time.time() < deadline:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            await self._process_event(event)
            count += 1
        return count

    # -------------------------------------------------------------------------
    # Query Methods
    # -------------------------------------------------------------------------

    def get_history(self, event_type: Optional[EventType] = None, limit: int = 100) -> List[Event]:
        """Recent events, most recent last."""
        events = self._history
        if event_type:
            events = [e for e in events if e.type == event_type]
        return events[-limit:]

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "queue_size": self._queue.qsize(),
            "history_size": len(self._history),
            "subscriber_count": sum(len(s) for s in self._subscribers.values()),
            "global_subscriber_count": len(self._global_subscribers),
            "running": self._running,
        }

