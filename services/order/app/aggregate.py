"""
Order Service — order state machine

Status flow of one ticket:

    pending ──▶ cooking ──▶ ready ──▶ delivered
       │           │          │
       └───────────┴──────────┴──────▶ cancelled

delivered and cancelled are terminal. Steps cannot be skipped. Every status
change in the store goes through ``transition``; there is no other way to
write the status column.
"""

from datetime import datetime

from .errors import InvalidTransition
from .models import Order, OrderStatus

INITIAL_STATUS = OrderStatus.pending

TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.pending: frozenset({OrderStatus.cooking, OrderStatus.cancelled}),
    OrderStatus.cooking: frozenset({OrderStatus.ready, OrderStatus.cancelled}),
    OrderStatus.ready: frozenset({OrderStatus.delivered, OrderStatus.cancelled}),
    OrderStatus.delivered: frozenset(),
    OrderStatus.cancelled: frozenset(),
}


# how far along the flow a status is; an order never moves to a lower stage
STAGE: dict[OrderStatus, int] = {
    OrderStatus.pending: 0,
    OrderStatus.cooking: 1,
    OrderStatus.ready: 2,
    OrderStatus.delivered: 3,
    OrderStatus.cancelled: 3,
}


def is_terminal(status: OrderStatus) -> bool:
    return not TRANSITIONS[status]


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return new in TRANSITIONS[current]


def check_transition(current: OrderStatus, new: OrderStatus) -> None:
    if not can_transition(current, new):
        raise InvalidTransition(current.value, new.value)


def transition(order: Order, new_status: OrderStatus, now: datetime) -> Order:
    """Return a copy of ``order`` moved to ``new_status``; completedAt is stamped on delivery."""
    check_transition(order.status, new_status)
    changes: dict = {"status": new_status}
    if new_status is OrderStatus.delivered:
        changes["completed_at"] = now
    return order.model_copy(update=changes)


def is_legal_history(statuses: list[OrderStatus]) -> bool:
    """True when ``statuses`` is a prefix of a path through the transition graph."""
    if not statuses:
        return True
    if statuses[0] is not INITIAL_STATUS:
        return False
    return all(can_transition(a, b) for a, b in zip(statuses, statuses[1:]))
