"""
Order State Machine

Single source of truth for which status changes an order may make.
Every writer (scheduler claim, recorder, service, reconciler) goes through
``transition`` or ``can_transition`` instead of assigning ``status`` directly.
"""

from datetime import datetime
from typing import Dict, Optional, Set

from .models import Order, OrderStatus, utc_now


class InvalidTransitionError(Exception):
    """Raised when an invalid status transition is attempted."""

    def __init__(
        self,
        from_status: OrderStatus,
        to_status: OrderStatus,
        message: Optional[str] = None,
    ):
        self.from_status = from_status
        self.to_status = to_status
        self.message = message or f"Cannot transition from {from_status.value} to {to_status.value}"
        super().__init__(self.message)


TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.ACTIVE: {
        OrderStatus.EXECUTING,   # Claimed by a sweep
        OrderStatus.CANCELLED,
        OrderStatus.EXPIRED,
        OrderStatus.COMPLETED,   # Mirrored from an external order book
    },
    OrderStatus.EXECUTING: {
        OrderStatus.ACTIVE,      # Cycle done, or stale claim rolled back
        OrderStatus.INSUFFICIENT_BALANCE,
        OrderStatus.COMPLETED,
    },
    OrderStatus.INSUFFICIENT_BALANCE: {
        OrderStatus.EXECUTING,   # Automatic retry claim
        OrderStatus.ACTIVE,      # Explicit resume
        OrderStatus.CANCELLED,
        OrderStatus.EXPIRED,
    },
    OrderStatus.COMPLETED: set(),
    OrderStatus.CANCELLED: set(),
    OrderStatus.EXPIRED: set(),
}


def can_transition(from_status: OrderStatus, to_status: OrderStatus) -> bool:
    """Check if a status change is allowed. Staying put is always allowed."""
    if from_status == to_status:
        return True
    return to_status in TRANSITIONS.get(from_status, set())


def transition(order: Order, to_status: OrderStatus, now: Optional[datetime] = None) -> Order:
    """
    Return a copy of ``order`` moved to ``to_status``.

    Raises:
        InvalidTransitionError: If the move is not in TRANSITIONS
    """
    if not can_transition(order.status, to_status):
        raise InvalidTransitionError(order.status, to_status)

    changes = {"status": to_status, "updated_at": now or utc_now()}
    if to_status == OrderStatus.EXECUTING:
        changes["claimed_at"] = changes["updated_at"]
    elif order.status == OrderStatus.EXECUTING:
        changes["claimed_at"] = None
    return order.copy(**changes)
