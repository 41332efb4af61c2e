"""
Order Service — push change feed (Redis Pub/Sub)

┌──────────────┐  orders:restaurant:{id}  ┌────────────────────┐
│ commands.py  │ ──────── Redis ────────▶ │ PushChangeFeed     │
│ (write side) │        Pub/Sub           │ one task per       │
└──────────────┘                          │ subscription       │
                                          └─────────┬──────────┘
                                                    ▼
                                              on_snapshot()

On (re)connect the subscription first subscribes to the channel and then
reads the store, so no commit can fall between the two. After that every
published order is folded into the subscription's ``OrderView``.

Redis Pub/Sub is fire-and-forget: messages published while a subscription
is disconnected are lost, which is why every reconnect re-reads the store
and diffs against the view it already had.
"""

import asyncio
import contextlib
import logging
from collections import OrderedDict

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import AuthenticationError, NoPermissionError, RedisError
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .aggregate import STAGE, is_terminal
from .errors import NetworkFailure, PermissionDenied
from .events import StoreEvent, parse_store_event
from .feed import ChangeFeed, OrderView, SnapshotHandler, Subscription
from .models import Order, OrderFilter
from .queries import OrderReader

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "orders:restaurant:"

# delivered or cancelled ids remembered per subscription to reject late messages
FINISHED_MEMORY = 512

# ACL and credential rejections; AuthenticationError is also a ConnectionError
REDIS_DENIALS = (NoPermissionError, AuthenticationError)


def channel_for(restaurant_id: str) -> str:
    return f"{CHANNEL_PREFIX}{restaurant_id}"


class RedisChangePublisher:
    """Publishes store events on the restaurant's channel."""

    def __init__(self, redis: aioredis.Redis) -> None:
        self.redis = redis

    async def publish(self, event: StoreEvent) -> None:
        try:
            await self.redis.publish(
                channel_for(event.data.restaurant_id),
                event.model_dump_json(by_alias=True),
            )
        except REDIS_DENIALS as e:
            raise PermissionDenied() from e
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise NetworkFailure() from e


class _StageTracker:
    """
    Drops messages that would move an order back to an earlier stage.

    Open orders are tracked until they reach a terminal status; after that
    only the most recent ``finished_memory`` ids are kept.
    """

    def __init__(self, finished_memory: int = FINISHED_MEMORY) -> None:
        self._stages: dict[str, int] = {}
        self._finished: OrderedDict[str, None] = OrderedDict()
        self.finished_memory = finished_memory

    def __len__(self) -> int:
        return len(self._stages) + len(self._finished)

    def seed(self, orders: list[Order]) -> None:
        for order in orders:
            self.is_stale(order)

    def is_stale(self, order: Order) -> bool:
        if order.id in self._finished:
            return True
        stage = STAGE[order.status]
        known = self._stages.get(order.id)
        if known is not None and stage < known:
            return True
        if is_terminal(order.status):
            self._stages.pop(order.id, None)
            self._finished[order.id] = None
            while len(self._finished) > self.finished_memory:
                self._finished.popitem(last=False)
        else:
            self._stages[order.id] = stage
        return False


class PushChangeFeed(ChangeFeed):
    def __init__(
        self,
        redis: aioredis.Redis,
        read_orders: OrderReader,
        *,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 30.0,
        receive_timeout: float = 1.0,
    ) -> None:
        self.redis = redis
        self.read_orders = read_orders
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.receive_timeout = receive_timeout
        self.publisher = RedisChangePublisher(redis)

    async def subscribe(
        self,
        restaurant_id: str,
        order_filter: OrderFilter,
        on_snapshot: SnapshotHandler,
        *,
        interval: float | None = None,
    ) -> Subscription:
        sub = Subscription(f"push:{restaurant_id}:{id(on_snapshot):x}", on_snapshot)
        sub.start(self._run(sub, restaurant_id, order_filter))
        return sub

    async def _run(
        self,
        sub: Subscription,
        restaurant_id: str,
        order_filter: OrderFilter,
    ) -> None:
        """
        Connection loop of one subscription. Any failure other than a denial
        is logged, backs off exponentially and reconnects. PermissionDenied
        and Redis ACL rejections end the subscription with an empty result.
        """
        view = OrderView(restaurant_id, order_filter)
        stages = _StageTracker()
        channel = channel_for(restaurant_id)
        delay = self.reconnect_delay
        first = True

        while True:
            pubsub = self.redis.pubsub()
            try:
                await pubsub.subscribe(channel)
                orders = await self.read_orders(restaurant_id, order_filter)
                stages.seed(orders)
                changes = view.replace(orders)
                if first or changes:
                    await sub.deliver(view.orders, changes, initial=first)
                first = False
                delay = self.reconnect_delay
                logger.info("Push feed subscribed to %s", channel)

                while True:
                    message = await pubsub.get_message(
                        ignore_subscribe_messages=True, timeout=self.receive_timeout
                    )
                    if not message or message["type"] != "message":
                        continue
                    try:
                        event = parse_store_event(message["data"])
                    except ValidationError:
                        logger.exception("Ignoring malformed message on %s", channel)
                        continue

                    order = event.data
                    if order.restaurant_id != restaurant_id or stages.is_stale(order):
                        continue
                    if order_filter.limit is not None:
                        # a limited window can only be refilled by the store
                        changes = view.replace(
                            await self.read_orders(restaurant_id, order_filter)
                        )
                    else:
                        changes = view.apply(order)
                    if changes:
                        await sub.deliver(view.orders, changes)
            except (PermissionDenied, *REDIS_DENIALS):
                logger.warning(
                    "Push feed for restaurant %s denied, treating as empty", restaurant_id
                )
                if first:
                    await sub.deliver([], [], initial=True)
                return
            except (RedisError, NetworkFailure, OSError) as e:
                logger.warning(
                    "Push feed for %s lost its connection (%s), reconnecting in %.1fs",
                    channel, e.__class__.__name__, delay,
                )
            except Exception:
                logger.exception(
                    "Push feed for %s failed, reconnecting in %.1fs", channel, delay
                )
            finally:
                await self._close_pubsub(pubsub, channel)

            await asyncio.sleep(delay)
            delay = min(delay * 2, self.max_reconnect_delay)

    @staticmethod
    async def _close_pubsub(pubsub, channel: str) -> None:
        with contextlib.suppress(RedisError, OSError):
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()
