"""
Order Service — FastAPI entry point

Commands (POST) and queries (GET) are kept apart as on the write/read sides
of the service. Live views are WebSockets backed by the change feed chosen at
startup:

  ORDER_FEED_BACKEND=push  Redis Pub/Sub   (PushChangeFeed)
  ORDER_FEED_BACKEND=poll  store re-reads  (PollChangeFeed)
"""

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from starlette.requests import HTTPConnection

from . import commands, queries
from .config import Settings
from .errors import OrderNotFound, OrderServiceError
from .events import Notification, OrderSnapshot
from .feed import ChangeFeed
from .identity import Identity, identity_from_headers
from .logging_config import setup_logging
from .models import OrderDraft, OrderFilter, OrderStatus
from .notifications import NotificationDispatcher, Role
from .poll_feed import PollChangeFeed
from .push_feed import PushChangeFeed
from .schema import create_schema

logger = logging.getLogger(__name__)

POLICY_VIOLATION = 1008


def build_change_feed(
    settings: Settings,
    session_factory: sessionmaker,
    redis: aioredis.Redis | None = None,
) -> ChangeFeed:
    reader = queries.make_order_reader(session_factory)
    if settings.feed_backend == "push":
        if redis is None:
            raise ValueError("the push feed needs a Redis client")
        return PushChangeFeed(
            redis,
            reader,
            reconnect_delay=settings.push_reconnect_delay,
            max_reconnect_delay=settings.push_reconnect_max_delay,
        )
    return PollChangeFeed(reader, interval=settings.order_poll_interval)


# ── Request Models ───────────────────────────────


class UpdateStatusRequest(BaseModel):
    status: OrderStatus


# ── Dependencies ─────────────────────────────────


def get_identity(conn: HTTPConnection) -> Identity:
    return identity_from_headers(conn.headers)


def get_filter(
    status: OrderStatus | None = None,
    waiter_id: str | None = Query(default=None, alias="waiterId"),
    limit: int | None = Query(default=None, ge=1),
) -> OrderFilter:
    return OrderFilter(status=status, waiter_id=waiter_id, limit=limit)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level)
        engine = create_async_engine(settings.database_url, echo=False)
        await create_schema(engine)
        redis = None
        if settings.feed_backend == "push":
            redis = aioredis.from_url(settings.redis_url, decode_responses=True)
        app.state.session_factory = sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )
        app.state.feed = build_change_feed(settings, app.state.session_factory, redis)
        logger.info("Order service started with the %s feed", settings.feed_backend)
        yield
        await app.state.feed.close()
        if redis is not None:
            await redis.aclose()
        await engine.dispose()

    app = FastAPI(title="Order Service", lifespan=lifespan)
    app.state.settings = settings

    @app.exception_handler(OrderServiceError)
    async def order_error_handler(request: Request, exc: OrderServiceError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "error": type(exc).__name__},
        )

    # ── Command Endpoints (write side) ───────────

    @app.post("/commands/orders")
    async def cmd_create_order(
        draft: OrderDraft,
        request: Request,
        identity: Identity = Depends(get_identity),
    ):
        """Place a new order; returns its id and the number to show on the ticket."""
        order = await commands.create_order(
            request.app.state.session_factory,
            request.app.state.feed.publisher,
            identity.restaurant_id,
            draft,
            tz=settings.tz,
            max_retries=settings.counter_max_retries,
        )
        return {"id": order.id, "orderNumber": order.order_number}

    @app.post("/commands/orders/{order_id}/status")
    async def cmd_update_status(
        order_id: str,
        req: UpdateStatusRequest,
        request: Request,
        identity: Identity = Depends(get_identity),
    ):
        order = await commands.update_order_status(
            request.app.state.session_factory,
            request.app.state.feed.publisher,
            identity.restaurant_id,
            order_id,
            req.status,
        )
        return order.to_wire()

    # ── Query Endpoints (read side) ──────────────

    @app.get("/queries/orders")
    async def query_list_orders(
        request: Request,
        order_filter: OrderFilter = Depends(get_filter),
        identity: Identity = Depends(get_identity),
    ):
        restaurant_id = identity.require_restaurant()
        async with request.app.state.session_factory() as session:
            orders = await queries.list_orders(session, restaurant_id, order_filter)
        return [order.to_wire() for order in orders]

    @app.get("/queries/orders/{order_id}")
    async def query_get_order(
        order_id: str,
        request: Request,
        identity: Identity = Depends(get_identity),
    ):
        restaurant_id = identity.require_restaurant()
        async with request.app.state.session_factory() as session:
            order = await queries.get_order(session, restaurant_id, order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order.to_wire()

    # ── Live Endpoints ───────────────────────────

    @app.websocket("/ws/orders")
    async def ws_orders(
        websocket: WebSocket,
        order_filter: OrderFilter = Depends(get_filter),
    ):
        """One JSON snapshot per feed delivery, starting with the current state."""
        identity = identity_from_headers(websocket.headers)
        if not identity.restaurant_id:
            await websocket.close(code=POLICY_VIOLATION)
            return
        await websocket.accept()

        async def send_snapshot(snapshot: OrderSnapshot) -> None:
            await websocket.send_json(snapshot.to_wire())

        subscription = await websocket.app.state.feed.subscribe(
            identity.restaurant_id,
            order_filter,
            send_snapshot,
            interval=settings.order_poll_interval,
        )
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            await subscription.unsubscribe()

    @app.websocket("/ws/notifications/{role}")
    async def ws_notifications(websocket: WebSocket, role: str):
        """newOrder / orderNoLongerReady events for the kitchen or one waiter."""
        identity = identity_from_headers(websocket.headers)
        if role not in Role.__members__ or not identity.restaurant_id:
            await websocket.close(code=POLICY_VIOLATION)
            return
        if role == Role.waiter.value and not identity.user_id:
            await websocket.close(code=POLICY_VIOLATION)
            return
        await websocket.accept()

        async def send_notification(notification: Notification) -> None:
            await websocket.send_json(notification.to_wire())

        dispatcher = NotificationDispatcher(
            websocket.app.state.feed,
            role,
            identity.restaurant_id,
            send_notification,
            waiter_id=identity.user_id,
            interval=settings.notification_poll_interval,
        )
        await dispatcher.start()
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            await dispatcher.close()

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "order-service", "feed": settings.feed_backend}

    return app


app = create_app()
