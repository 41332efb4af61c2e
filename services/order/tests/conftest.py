"""
Shared fixtures for the order service tests.

The store runs on a throwaway SQLite file per test. The push feed is driven
by ``FakeRedis``, an in-memory double of the small part of the
``redis.asyncio`` client it uses (``publish`` and ``pubsub()``).
"""
import asyncio

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from app.models import OrderDraft, OrderItem
from app.poll_feed import LocalSignalBus, PollChangeFeed
from app.push_feed import PushChangeFeed
from app.queries import make_order_reader
from app.schema import create_schema


# ============================================================================
# PUB/SUB DOUBLE
# ============================================================================

_DROP = object()


class FakePubSub:
    def __init__(self, redis: "FakeRedis") -> None:
        self.redis = redis
        self.channels: set[str] = set()
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def subscribe(self, *channels: str) -> None:
        self.redis.subscribe_attempts += 1
        if self.redis.subscribe_error is not None:
            raise self.redis.subscribe_error
        if self.redis.refuse_subscriptions > 0:
            self.redis.refuse_subscriptions -= 1
            raise RedisConnectionError("connection refused")
        self.channels.update(channels)
        self.redis.pubsubs.add(self)

    async def unsubscribe(self, *channels: str) -> None:
        self.channels.difference_update(channels)
        self.redis.pubsubs.discard(self)

    async def get_message(self, ignore_subscribe_messages: bool = False, timeout: float = 0.0):
        try:
            message = await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None
        if message is _DROP:
            raise RedisConnectionError("connection lost")
        return message

    async def aclose(self) -> None:
        self.closed = True


class FakeRedis:
    def __init__(self) -> None:
        self.pubsubs: set[FakePubSub] = set()
        self.published: list[tuple[str, str]] = []
        self.refuse_subscriptions = 0
        self.subscribe_attempts = 0
        # raised by every subscribe, e.g. an ACL denial
        self.subscribe_error: Exception | None = None

    def pubsub(self) -> FakePubSub:
        return FakePubSub(self)

    async def publish(self, channel: str, data: str) -> int:
        self.published.append((channel, data))
        receivers = [ps for ps in self.pubsubs if channel in ps.channels]
        for ps in receivers:
            ps.queue.put_nowait({"type": "message", "channel": channel, "data": data})
        return len(receivers)

    def drop_connections(self) -> None:
        for ps in list(self.pubsubs):
            ps.queue.put_nowait(_DROP)

    @property
    def subscriber_count(self) -> int:
        return len(self.pubsubs)


# ============================================================================
# STORE
# ============================================================================

@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def reader(session_factory):
    return make_order_reader(session_factory)


class RecordingPublisher:
    def __init__(self) -> None:
        self.events = []

    async def publish(self, event) -> None:
        self.events.append(event)


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def make_draft():
    def build(table: str = "T1", waiter_id: str = "w1", items=None, **overrides) -> OrderDraft:
        items = items or [
            OrderItem(menu_id="m1", name="Pho", price=9.5, quantity=2),
            OrderItem(menu_id="m2", name="Iced tea", price=2.0, quantity=1),
        ]
        fields = {
            "table": table,
            "items": items,
            "waiter_id": waiter_id,
            "waiter_name": "Alex",
            "total_amount": sum(item.price * item.quantity for item in items),
        }
        fields.update(overrides)
        return OrderDraft(**fields)

    return build


# ============================================================================
# FEEDS
# ============================================================================

@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def poll_feed(reader):
    return PollChangeFeed(reader, LocalSignalBus(), interval=0.05)


@pytest.fixture
def push_feed(fake_redis, reader):
    return PushChangeFeed(
        fake_redis, reader, reconnect_delay=0.01, max_reconnect_delay=0.05, receive_timeout=0.05
    )


@pytest.fixture
def feeds(poll_feed, push_feed):
    return {"poll": poll_feed, "push": push_feed}


@pytest.fixture
def make_feed(fake_redis):
    """Feed of either backend over an arbitrary reader."""
    def build(backend: str, read_orders):
        if backend == "push":
            return PushChangeFeed(
                fake_redis, read_orders,
                reconnect_delay=0.01, max_reconnect_delay=0.05, receive_timeout=0.05,
            )
        return PollChangeFeed(read_orders, LocalSignalBus(), interval=0.01)

    return build


@pytest.fixture
def eventually():
    async def wait(predicate, timeout: float = 3.0, step: float = 0.01) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(step)

    return wait
