"""
Order Service — poll change feed

Used where no push transport is available. Each subscription re-reads its
filtered order set on a fixed interval (1s for order lists, 0.5s for
notifications) and diffs the result against the previous read.

Writes made in this process also ring the ``LocalSignalBus`` so that
subscriptions of the same restaurant re-read immediately instead of waiting
for the next tick. Writes from other processes are picked up by the timer.
"""

import asyncio
import logging
from collections import defaultdict

from .errors import NetworkFailure, PermissionDenied
from .events import StoreEvent
from .feed import ChangeFeed, OrderView, SnapshotHandler, Subscription
from .models import OrderFilter
from .queries import OrderReader

logger = logging.getLogger(__name__)


class LocalSignalBus:
    """In-process fan-out of "restaurant X changed" wake-ups."""

    def __init__(self) -> None:
        self._listeners: dict[str, set[asyncio.Event]] = defaultdict(set)

    def listen(self, restaurant_id: str) -> asyncio.Event:
        event = asyncio.Event()
        self._listeners[restaurant_id].add(event)
        return event

    def forget(self, restaurant_id: str, event: asyncio.Event) -> None:
        listeners = self._listeners.get(restaurant_id)
        if listeners is None:
            return
        listeners.discard(event)
        if not listeners:
            del self._listeners[restaurant_id]

    def notify(self, restaurant_id: str) -> None:
        for event in self._listeners.get(restaurant_id, ()):
            event.set()

    async def publish(self, event: StoreEvent) -> None:
        self.notify(event.data.restaurant_id)


class PollChangeFeed(ChangeFeed):
    def __init__(
        self,
        read_orders: OrderReader,
        signals: LocalSignalBus | None = None,
        *,
        interval: float = 1.0,
    ) -> None:
        self.read_orders = read_orders
        self.signals = signals or LocalSignalBus()
        self.interval = interval
        self.publisher = self.signals

    async def subscribe(
        self,
        restaurant_id: str,
        order_filter: OrderFilter,
        on_snapshot: SnapshotHandler,
        *,
        interval: float | None = None,
    ) -> Subscription:
        sub = Subscription(f"poll:{restaurant_id}:{id(on_snapshot):x}", on_snapshot)
        sub.start(
            self._run(sub, restaurant_id, order_filter, interval or self.interval)
        )
        return sub

    async def _run(
        self,
        sub: Subscription,
        restaurant_id: str,
        order_filter: OrderFilter,
        interval: float,
    ) -> None:
        view = OrderView(restaurant_id, order_filter)
        wake = self.signals.listen(restaurant_id)
        first = True
        try:
            while True:
                wake.clear()
                try:
                    orders = await self.read_orders(restaurant_id, order_filter)
                except PermissionDenied:
                    logger.warning(
                        "Poll feed for restaurant %s denied, treating as empty",
                        restaurant_id,
                    )
                    if first:
                        await sub.deliver([], [], initial=True)
                    return
                except NetworkFailure:
                    logger.warning("Poll feed for %s could not read the store", restaurant_id)
                except Exception:
                    logger.exception("Poll feed for %s failed, retrying next tick", restaurant_id)
                else:
                    changes = view.replace(orders)
                    if first or changes:
                        await sub.deliver(view.orders, changes, initial=first)
                        first = False

                try:
                    await asyncio.wait_for(wake.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            self.signals.forget(restaurant_id, wake)
