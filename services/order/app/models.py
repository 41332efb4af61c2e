"""
Order Service — order payload models

The same shape is used for persistence, for feed snapshots and on the wire.
Python attributes are snake_case; the JSON form is camelCase
(``restaurantId``, ``orderNumber``, ...).
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

TOTAL_TOLERANCE = 0.005


class OrderStatus(str, Enum):
    pending = "pending"
    cooking = "cooking"
    ready = "ready"
    delivered = "delivered"
    cancelled = "cancelled"


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class OrderItem(WireModel):
    menu_id: str
    name: str
    price: float = Field(ge=0)
    quantity: int = Field(ge=1)

    @property
    def line_total(self) -> float:
        return self.price * self.quantity


class OrderDraft(WireModel):
    """What a waiter submits when placing an order."""

    table: str = Field(min_length=1)
    items: list[OrderItem] = Field(min_length=1)
    waiter_id: str = Field(min_length=1)
    waiter_name: str = ""
    total_amount: float = Field(ge=0)
    estimated_time: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def check_total(self) -> "OrderDraft":
        # totalAmount is recomputed here, a caller-supplied figure is never trusted
        expected = sum(item.line_total for item in self.items)
        if abs(expected - self.total_amount) > TOTAL_TOLERANCE:
            raise ValueError(
                f"totalAmount {self.total_amount} does not match items total {expected:.2f}"
            )
        return self


class Order(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    restaurant_id: str
    order_number: str
    table: str
    items: list[OrderItem]
    status: OrderStatus
    waiter_id: str
    waiter_name: str = ""
    total_amount: float
    timestamp: datetime
    estimated_time: int | None = None
    completed_at: datetime | None = None

    @property
    def sort_key(self) -> tuple[datetime, str]:
        return (self.timestamp, self.id)


class OrderFilter(WireModel):
    """Optional narrowing of a restaurant's orders: by status, by waiter, newest N."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    status: OrderStatus | None = None
    waiter_id: str | None = None
    limit: int | None = Field(default=None, ge=1)

    def matches(self, order: Order) -> bool:
        if self.status is not None and order.status != self.status:
            return False
        if self.waiter_id is not None and order.waiter_id != self.waiter_id:
            return False
        return True
