"""
Order State Machine - explicit lifecycle for grid orders.

    PENDING ──submit──> ACTIVE ──fill──> FILLED
       │                  │
       ├──fill (immediate)┘
       └──────cancel──────┴──────────> CANCELED

FILLED and CANCELED are terminal. Invalid transitions are refused and
logged, never applied.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional

from smartgrid.core.json_utils import dumps
from smartgrid.core.models import GridOrder, OrderStatus

log = logging.getLogger("smartgrid")


@dataclass
class StateTransition:
    """Record of a state transition."""
    order_id: str
    from_state: OrderStatus
    to_state: OrderStatus
    timestamp_ms: int
    reason: Optional[str] = None


VALID_TRANSITIONS: Dict[OrderStatus, List[OrderStatus]] = {
    OrderStatus.PENDING: [
        OrderStatus.ACTIVE,    # Venue accepted
        OrderStatus.FILLED,    # Filled before we saw the ack
        OrderStatus.CANCELED,  # Canceled before submission
    ],
    OrderStatus.ACTIVE: [
        OrderStatus.FILLED,
        OrderStatus.CANCELED,
    ],
    # Terminal states - no transitions allowed
    OrderStatus.FILLED: [],
    OrderStatus.CANCELED: [],
}


class OrderStateMachine:
    """
    Applies validated status transitions to GridOrder objects.

    Keeps a bounded audit trail of transitions and counters for /api/stats.
    """

    def __init__(
        self,
        log_event: Optional[Callable[..., None]] = None,
        on_state_change: Optional[Callable[[GridOrder, OrderStatus, OrderStatus], None]] = None,
        audit_size: int = 1000,
    ) -> None:
        self._log_event = log_event or self._default_log
        self._on_state_change = on_state_change
        self._audit: Deque[StateTransition] = deque(maxlen=audit_size)
        self._stats = {
            "total_activated": 0,
            "total_filled": 0,
            "total_canceled": 0,
            "invalid_transitions_blocked": 0,
        }

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    @staticmethod
    def is_valid_transition(from_state: OrderStatus, to_state: OrderStatus) -> bool:
        return to_state in VALID_TRANSITIONS.get(from_state, [])

    def transition(
        self,
        order: GridOrder,
        to_state: OrderStatus,
        reason: Optional[str] = None,
        venue_order_id: Optional[str] = None,
        fill_price: Optional[float] = None,
        fill_time: Optional[int] = None,
    ) -> bool:
        """
        Move order to to_state if the transition is allowed.

        Returns:
            True if applied, False if blocked
        """
        from_state = order.status
        if not self.is_valid_transition(from_state, to_state):
            self._stats["invalid_transitions_blocked"] += 1
            self._log_event(
                "order_state_invalid_transition",
                order_id=order.id,
                from_state=from_state.value,
                to_state=to_state.value,
                reason=reason,
            )
            return False

        now_ms = int(time.time() * 1000)
        order.status = to_state
        order.updated_at = now_ms
        if venue_order_id is not None:
            order.venue_order_id = venue_order_id
        if to_state is OrderStatus.FILLED:
            order.fill_price = fill_price if fill_price is not None else order.price
            order.fill_time = fill_time or now_ms

        self._audit.append(StateTransition(
            order_id=order.id,
            from_state=from_state,
            to_state=to_state,
            timestamp_ms=now_ms,
            reason=reason,
        ))

        if to_state is OrderStatus.ACTIVE:
            self._stats["total_activated"] += 1
            # Routine ack - DEBUG only
            log.debug("order_ack order_id=%s venue_order_id=%s", order.id, order.venue_order_id)
        else:
            if to_state is OrderStatus.FILLED:
                self._stats["total_filled"] += 1
            else:
                self._stats["total_canceled"] += 1
            self._log_event(
                "order_state_transition",
                order_id=order.id,
                kind=order.kind.value,
                from_state=from_state.value,
                to_state=to_state.value,
                reason=reason,
                fill_price=order.fill_price,
            )

        if self._on_state_change:
            try:
                self._on_state_change(order, from_state, to_state)
            except Exception as e:
                self._log_event("order_state_callback_error", error=str(e), order_id=order.id)

        return True

    def activate(self, order: GridOrder, venue_order_id: Optional[str]) -> bool:
        """PENDING -> ACTIVE after the venue accepted the order."""
        return self.transition(order, OrderStatus.ACTIVE, reason="venue_ack", venue_order_id=venue_order_id)

    def fill(self, order: GridOrder, fill_price: Optional[float] = None, fill_time: Optional[int] = None) -> bool:
        return self.transition(order, OrderStatus.FILLED, reason="fill", fill_price=fill_price, fill_time=fill_time)

    def cancel(self, order: GridOrder, reason: str = "cancel") -> bool:
        return self.transition(order, OrderStatus.CANCELED, reason=reason)

    def recent_transitions(self, order_id: Optional[str] = None, limit: int = 100) -> List[StateTransition]:
        items = [t for t in self._audit if order_id is None or t.order_id == order_id]
        return items[-limit:]

    def get_stats(self) -> Dict[str, Any]:
        return dict(self._stats)
