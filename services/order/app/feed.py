"""
Order Service — change feed

A change feed turns the order store into a live, filtered, newest-first view
for one restaurant:

    subscribe(restaurant_id, filter, on_snapshot) -> Subscription

Two adapters implement it (push_feed over Redis pub/sub, poll_feed by
re-reading the store on a timer). Both compute their diffs with the same
``OrderView`` so a consumer cannot tell them apart:

* the first snapshot of a subscription has ``initial=True`` and reports
  every order as ``added``
* snapshots of one subscription are delivered one at a time, in order, with
  non-decreasing ``read_at``
* after ``unsubscribe()`` nothing more is delivered
"""

import abc
import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, Protocol

from .events import ChangeType, OrderChange, OrderSnapshot, StoreEvent
from .models import Order, OrderFilter

logger = logging.getLogger(__name__)

SnapshotHandler = Callable[[OrderSnapshot], Awaitable[None]]


class ChangePublisher(Protocol):
    """Called by the write side after every commit."""

    async def publish(self, event: StoreEvent) -> None: ...


def newest_first(orders: Iterable[Order]) -> list[Order]:
    return sorted(orders, key=lambda order: order.sort_key, reverse=True)


class OrderView:
    """Last known content of one subscription, used to derive change lists."""

    def __init__(self, restaurant_id: str, order_filter: OrderFilter) -> None:
        self.restaurant_id = restaurant_id
        self.order_filter = order_filter
        self._orders: dict[str, Order] = {}

    @property
    def orders(self) -> list[Order]:
        return newest_first(self._orders.values())

    def __contains__(self, order_id: str) -> bool:
        return order_id in self._orders

    def __len__(self) -> int:
        return len(self._orders)

    def replace(self, orders: list[Order]) -> list[OrderChange]:
        """Swap in a fresh read of the whole set and return what changed."""
        previous = self._orders
        current = {
            order.id: order
            for order in orders
            if order.restaurant_id == self.restaurant_id
        }
        changes: list[OrderChange] = []
        for order in newest_first(current.values()):
            old = previous.get(order.id)
            if old is None:
                changes.append(OrderChange(type=ChangeType.added, order=order))
            elif old != order:
                changes.append(OrderChange(type=ChangeType.modified, order=order))
        for order_id, old in previous.items():
            if order_id not in current:
                # removals carry the last version that was inside the set
                changes.append(OrderChange(type=ChangeType.removed, order=old))
        self._orders = current
        return changes

    def apply(self, order: Order) -> list[OrderChange]:
        """Fold a single changed document into the view."""
        if order.restaurant_id != self.restaurant_id:
            return []
        candidate = dict(self._orders)
        if self.order_filter.matches(order):
            candidate[order.id] = order
        else:
            candidate.pop(order.id, None)
        ordered = newest_first(candidate.values())
        if self.order_filter.limit is not None:
            ordered = ordered[: self.order_filter.limit]
        return self.replace(ordered)


class Subscription:
    """
    Handle of one live subscription. Owns the background task that reads
    the feed and the callback it delivers to.
    """

    def __init__(self, name: str, on_snapshot: SnapshotHandler) -> None:
        self.name = name
        self._on_snapshot = on_snapshot
        self._task: asyncio.Task | None = None
        self._closed = False
        self._last_read_at: datetime | None = None

    @property
    def active(self) -> bool:
        return not self._closed

    def start(self, runner: Awaitable[None]) -> None:
        self._task = asyncio.create_task(runner, name=self.name)
        logger.info("Subscription %s started", self.name)

    async def deliver(
        self,
        orders: list[Order],
        changes: list[OrderChange],
        initial: bool = False,
    ) -> None:
        if self._closed:
            return
        read_at = datetime.now(timezone.utc)
        if self._last_read_at is not None and read_at < self._last_read_at:
            read_at = self._last_read_at
        self._last_read_at = read_at
        snapshot = OrderSnapshot(
            orders=orders, changes=changes, initial=initial, read_at=read_at
        )
        try:
            await self._on_snapshot(snapshot)
        except Exception:
            logger.exception("Snapshot handler of %s failed", self.name)

    async def unsubscribe(self) -> None:
        if self._closed:
            return
        self._closed = True
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        if task is asyncio.current_task():
            return
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Subscription %s stopped", self.name)


class ChangeFeed(abc.ABC):
    """Common interface of the push and poll adapters."""

    publisher: ChangePublisher

    @abc.abstractmethod
    async def subscribe(
        self,
        restaurant_id: str,
        order_filter: OrderFilter,
        on_snapshot: SnapshotHandler,
        *,
        interval: float | None = None,
    ) -> Subscription:
        """
        Start delivering snapshots of ``restaurant_id``'s orders matching
        ``order_filter``. ``interval`` is a polling hint that push feeds ignore.
        """

    async def close(self) -> None:
        """Release adapter-wide resources."""
