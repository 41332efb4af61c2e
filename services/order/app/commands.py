"""
Order Service — command handlers (write side)

The only two ways to change an order:

1. ``create_order``        number the order, insert it as pending
2. ``update_order_status`` move it one legal step along the state machine

After each commit the full order is handed to the change feed's publisher so
that every live subscription sees the mutation.
"""

import json
import logging
from datetime import datetime, timezone, tzinfo
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import sessionmaker

from . import aggregate, order_numbers, queries
from .errors import (
    NetworkFailure,
    OrderNotFound,
    PermissionDenied,
    TenantMissing,
    TransactionConflict,
)
from .events import OrderCreated, OrderStatusChanged, StoreEvent
from .feed import ChangePublisher
from .models import Order, OrderDraft, OrderStatus
from .schema import to_db_time

logger = logging.getLogger(__name__)

STATUS_UPDATE_ATTEMPTS = 3


def _require_tenant(restaurant_id: str | None) -> str:
    if not restaurant_id:
        raise TenantMissing()
    return restaurant_id


async def _publish(publisher: ChangePublisher, event: StoreEvent) -> None:
    # the write is already committed; a lost signal only delays live views
    try:
        await publisher.publish(event)
    except (NetworkFailure, PermissionDenied) as e:
        logger.warning(
            "Could not publish %s for order %s: %s",
            event.event_type, event.data.id, e.__class__.__name__,
        )


async def create_order(
    session_factory: sessionmaker,
    publisher: ChangePublisher,
    restaurant_id: str | None,
    draft: OrderDraft,
    *,
    tz: tzinfo = timezone.utc,
    max_retries: int = 5,
    now: datetime | None = None,
) -> Order:
    """
    Order creation command

    1. Resolve the tenant (TenantMissing when absent)
    2. Take the next order number of the day (TransactionConflict on failure)
    3. Insert the order as pending
    4. Publish OrderCreated
    """
    restaurant_id = _require_tenant(restaurant_id)
    now = now or datetime.now(timezone.utc)

    order_number = await order_numbers.generate_order_number(
        session_factory, restaurant_id, now, tz, max_retries
    )
    order = Order(
        id=str(uuid4()),
        restaurant_id=restaurant_id,
        order_number=order_number,
        table=draft.table,
        items=draft.items,
        status=aggregate.INITIAL_STATUS,
        waiter_id=draft.waiter_id,
        waiter_name=draft.waiter_name,
        total_amount=draft.total_amount,
        estimated_time=draft.estimated_time,
        timestamp=now,
    )

    try:
        async with session_factory() as session:
            await session.execute(
                text("""
                    INSERT INTO orders
                        (id, restaurant_id, order_number, table_label, items, status,
                         waiter_id, waiter_name, total_amount, estimated_time,
                         created_at, completed_at, updated_at, version)
                    VALUES
                        (:id, :rid, :number, :table, :items, :status,
                         :waiter_id, :waiter_name, :total, :eta,
                         :now, NULL, :now, 1)
                """),
                {
                    "id": order.id,
                    "rid": restaurant_id,
                    "number": order.order_number,
                    "table": order.table,
                    "items": json.dumps([item.to_wire() for item in order.items]),
                    "status": order.status.value,
                    "waiter_id": order.waiter_id,
                    "waiter_name": order.waiter_name,
                    "total": order.total_amount,
                    "eta": order.estimated_time,
                    "now": to_db_time(now),
                },
            )
            await session.commit()
    except (OperationalError, InterfaceError) as e:
        raise NetworkFailure() from e

    logger.info(
        "Created order %s (#%s) for restaurant %s, table %s",
        order.id, order.order_number, restaurant_id, order.table,
    )
    await _publish(publisher, OrderCreated(data=order))
    return order


async def update_order_status(
    session_factory: sessionmaker,
    publisher: ChangePublisher,
    restaurant_id: str | None,
    order_id: str,
    new_status: OrderStatus | str,
    *,
    now: datetime | None = None,
) -> Order:
    """
    Status change command

    The transition is validated against the row as currently stored and
    written with a conditional UPDATE on (status, version). If another writer
    got there first the row is re-read and the transition checked again from
    the new status.
    """
    restaurant_id = _require_tenant(restaurant_id)
    new_status = OrderStatus(new_status)
    now = now or datetime.now(timezone.utc)

    try:
        for _ in range(STATUS_UPDATE_ATTEMPTS):
            async with session_factory() as session:
                row = await queries.get_order_row(session, restaurant_id, order_id)
                if row is None:
                    raise OrderNotFound(order_id)
                current = queries.row_to_order(row)
                updated = aggregate.transition(current, new_status, now)

                result = await session.execute(
                    text("""
                        UPDATE orders
                        SET status = :status,
                            completed_at = :completed_at,
                            updated_at = :now,
                            version = version + 1
                        WHERE id = :id AND restaurant_id = :rid
                          AND status = :current AND version = :version
                    """),
                    {
                        "status": updated.status.value,
                        "completed_at": to_db_time(updated.completed_at)
                        if updated.completed_at
                        else None,
                        "now": to_db_time(now),
                        "id": order_id,
                        "rid": restaurant_id,
                        "current": current.status.value,
                        "version": row.version,
                    },
                )
                if result.rowcount == 1:
                    await session.commit()
                    break
                await session.rollback()
                logger.info("Order %s changed concurrently, re-reading", order_id)
        else:
            raise TransactionConflict("Order was changed by someone else, please retry")
    except (OperationalError, InterfaceError) as e:
        raise NetworkFailure() from e

    logger.info(
        "Order %s: %s -> %s", order_id, current.status.value, updated.status.value
    )
    await _publish(
        publisher,
        OrderStatusChanged(previous_status=current.status.value, data=updated),
    )
    return updated
