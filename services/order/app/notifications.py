"""
Order Service — role notification dispatcher

Turns a change feed into at-most-once alerts per order per role:

  kitchen  watches pending orders             → NewOrder
  waiter   watches own orders that are ready  → NewOrder, OrderNoLongerReady

Each dispatcher owns its ``handled`` memory. It outlives individual feed
connections (``reconnect`` keeps it) and is discarded by ``close``.

The very first snapshot a dispatcher receives only primes ``handled``: what
is already on the board when a screen opens is not news. A later initial
snapshot (after ``reconnect``) is reconciled against ``handled`` instead, so
orders that arrived or left while disconnected are reported exactly once.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from .errors import TenantMissing
from .events import ChangeType, NewOrder, Notification, OrderNoLongerReady, OrderSnapshot
from .feed import ChangeFeed, Subscription
from .models import Order, OrderFilter, OrderStatus

logger = logging.getLogger(__name__)

NotificationHandler = Callable[[Notification], Awaitable[None]]


class Role(str, Enum):
    kitchen = "kitchen"
    waiter = "waiter"


@dataclass(frozen=True)
class RolePolicy:
    status: OrderStatus
    per_waiter: bool
    # raise OrderNoLongerReady when an order leaves the set
    reports_cleared: bool
    # an update to an order not yet handled counts as it entering the set
    modified_enters: bool


POLICIES: dict[Role, RolePolicy] = {
    Role.kitchen: RolePolicy(
        status=OrderStatus.pending,
        per_waiter=False,
        reports_cleared=False,
        modified_enters=False,
    ),
    Role.waiter: RolePolicy(
        status=OrderStatus.ready,
        per_waiter=True,
        reports_cleared=True,
        modified_enters=True,
    ),
}


class NotificationDispatcher:
    def __init__(
        self,
        feed: ChangeFeed,
        role: Role | str,
        restaurant_id: str | None,
        on_event: NotificationHandler,
        *,
        waiter_id: str | None = None,
        interval: float | None = None,
    ) -> None:
        if not restaurant_id:
            raise TenantMissing()
        self.role = Role(role)
        self.policy = POLICIES[self.role]
        if self.policy.per_waiter and not waiter_id:
            raise ValueError("waiter notifications need a waiter_id")
        self.feed = feed
        self.restaurant_id = restaurant_id
        self.waiter_id = waiter_id
        self.on_event = on_event
        self.interval = interval
        self.order_filter = OrderFilter(
            status=self.policy.status,
            waiter_id=waiter_id if self.policy.per_waiter else None,
        )
        self._handled: dict[str, Order] = {}
        self._primed = False
        self._closed = False
        self._subscription: Subscription | None = None

    @property
    def handled(self) -> frozenset[str]:
        return frozenset(self._handled)

    @property
    def primed(self) -> bool:
        """True once the first snapshot has been seen."""
        return self._primed

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None and self._subscription.active

    async def start(self) -> None:
        if self._closed:
            raise RuntimeError("dispatcher is closed")
        if self.subscribed:
            return
        self._subscription = await self.feed.subscribe(
            self.restaurant_id,
            self.order_filter,
            self._on_snapshot,
            interval=self.interval,
        )
        logger.info(
            "%s notifications started for restaurant %s", self.role.value, self.restaurant_id
        )

    async def reconnect(self) -> None:
        """Replace the feed connection; what was already handled stays handled."""
        await self._drop_subscription()
        await self.start()

    async def close(self) -> None:
        self._closed = True
        await self._drop_subscription()
        self._handled.clear()

    async def _drop_subscription(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.unsubscribe()

    async def _on_snapshot(self, snapshot: OrderSnapshot) -> None:
        if self._closed:
            return
        try:
            notifications = self.process(snapshot)
        except Exception:
            logger.exception(
                "%s dispatcher for %s could not process a snapshot",
                self.role.value, self.restaurant_id,
            )
            return
        for notification in notifications:
            try:
                await self.on_event(notification)
            except Exception:
                logger.exception("%s notification handler failed", self.role.value)

    def process(self, snapshot: OrderSnapshot) -> list[Notification]:
        """Update ``handled`` from one snapshot and return the alerts to raise."""
        if snapshot.initial:
            return self._process_initial(snapshot)

        notifications: list[Notification] = []
        for change in snapshot.changes:
            order = change.order
            entering = change.type is ChangeType.added or (
                change.type is ChangeType.modified and self.policy.modified_enters
            )
            if change.type is ChangeType.removed:
                if self._handled.pop(order.id, None) is not None:
                    notifications.extend(self._cleared(order))
            elif order.id in self._handled:
                self._handled[order.id] = order
            elif entering:
                self._handled[order.id] = order
                notifications.append(NewOrder(order=order))
        return notifications

    def _process_initial(self, snapshot: OrderSnapshot) -> list[Notification]:
        present = {order.id: order for order in snapshot.orders}
        if not self._primed:
            self._primed = True
            self._handled.update(present)
            logger.info(
                "%s notifications: %d orders already present, not notifying",
                self.role.value, len(present),
            )
            return []

        notifications: list[Notification] = []
        for order_id in [oid for oid in self._handled if oid not in present]:
            notifications.extend(self._cleared(self._handled.pop(order_id)))
        for order in snapshot.orders:
            if order.id not in self._handled:
                notifications.append(NewOrder(order=order))
            self._handled[order.id] = order
        return notifications

    def _cleared(self, order: Order) -> list[Notification]:
        if not self.policy.reports_cleared:
            return []
        return [OrderNoLongerReady(order=order)]
