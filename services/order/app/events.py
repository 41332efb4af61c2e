"""
Order Service — event definitions

Three families of facts travel through the service:

* store events published after each commit (``OrderCreated``,
  ``OrderStatusChanged``); the push feed receives them over Redis
* feed output: ``OrderChange`` and ``OrderSnapshot``
* role notifications raised by the dispatcher: ``NewOrder`` and
  ``OrderNoLongerReady``
"""

from datetime import datetime
from enum import Enum
from typing import Literal, Union

from pydantic import Field, TypeAdapter

from .models import Order, WireModel


# ── Store events ────────────────────────────────


class OrderCreated(WireModel):
    """A waiter placed an order"""
    event_type: Literal["OrderCreated"] = "OrderCreated"
    data: Order


class OrderStatusChanged(WireModel):
    """An order moved along the state machine"""
    event_type: Literal["OrderStatusChanged"] = "OrderStatusChanged"
    previous_status: str
    data: Order


StoreEvent = Union[OrderCreated, OrderStatusChanged]
store_event_adapter: TypeAdapter[StoreEvent] = TypeAdapter(StoreEvent)


def parse_store_event(raw: str | bytes) -> StoreEvent:
    return store_event_adapter.validate_json(raw)


# ── Feed output ─────────────────────────────────


class ChangeType(str, Enum):
    added = "added"
    modified = "modified"
    removed = "removed"


class OrderChange(WireModel):
    type: ChangeType
    order: Order


class OrderSnapshot(WireModel):
    """
    Current content of a subscribed order set plus what changed since the
    previous delivery. ``initial`` marks the first snapshot of a connection,
    in which every order is reported as ``added``.
    """
    orders: list[Order]
    changes: list[OrderChange] = Field(default_factory=list)
    initial: bool = False
    read_at: datetime


# ── Role notifications ──────────────────────────


class NewOrder(WireModel):
    type: Literal["newOrder"] = "newOrder"
    order: Order


class OrderNoLongerReady(WireModel):
    type: Literal["orderNoLongerReady"] = "orderNoLongerReady"
    order: Order


Notification = Union[NewOrder, OrderNoLongerReady]
