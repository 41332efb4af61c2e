"""
Order Service — query handlers (read side)

Every read is scoped by restaurant_id and returns orders newest first.
``make_order_reader`` wraps ``list_orders`` in its own session so the change
feeds can re-read the store without knowing about sessions.
"""

import json
from typing import Awaitable, Callable

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, ProgrammingError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from .errors import NetworkFailure, PermissionDenied
from .models import Order, OrderFilter, OrderItem
from .schema import from_db_time

OrderReader = Callable[[str, OrderFilter], Awaitable[list[Order]]]

# SQLSTATE insufficient_privilege
INSUFFICIENT_PRIVILEGE = "42501"


def row_to_order(row) -> Order:
    items = json.loads(row.items) if isinstance(row.items, str) else row.items
    return Order(
        id=row.id,
        restaurant_id=row.restaurant_id,
        order_number=row.order_number,
        table=row.table_label,
        items=[OrderItem.model_validate(item) for item in items],
        status=row.status,
        waiter_id=row.waiter_id,
        waiter_name=row.waiter_name,
        total_amount=float(row.total_amount),
        estimated_time=row.estimated_time,
        timestamp=from_db_time(row.created_at),
        completed_at=from_db_time(row.completed_at),
    )


async def get_order_row(session: AsyncSession, restaurant_id: str, order_id: str):
    """Raw row, including the version column used for conditional updates."""
    result = await session.execute(
        text("SELECT * FROM orders WHERE id = :id AND restaurant_id = :rid"),
        {"id": order_id, "rid": restaurant_id},
    )
    return result.first()


async def get_order(session: AsyncSession, restaurant_id: str, order_id: str) -> Order | None:
    row = await get_order_row(session, restaurant_id, order_id)
    if not row:
        return None
    return row_to_order(row)


async def list_orders(
    session: AsyncSession,
    restaurant_id: str,
    order_filter: OrderFilter | None = None,
) -> list[Order]:
    """Orders of one restaurant matching ``order_filter``, newest first."""
    order_filter = order_filter or OrderFilter()
    sql = "SELECT * FROM orders WHERE restaurant_id = :rid"
    params: dict = {"rid": restaurant_id}
    if order_filter.status is not None:
        sql += " AND status = :status"
        params["status"] = order_filter.status.value
    if order_filter.waiter_id is not None:
        sql += " AND waiter_id = :waiter_id"
        params["waiter_id"] = order_filter.waiter_id
    sql += " ORDER BY created_at DESC, id DESC"
    if order_filter.limit is not None:
        sql += " LIMIT :limit"
        params["limit"] = order_filter.limit

    result = await session.execute(text(sql), params)
    return [row_to_order(row) for row in result.fetchall()]


def is_privilege_error(error: DBAPIError) -> bool:
    """True when the driver reports a missing GRANT (e.g. asyncpg InsufficientPrivilegeError)."""
    for candidate in (error.orig, getattr(error.orig, "__cause__", None)):
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code == INSUFFICIENT_PRIVILEGE:
            return True
    return False


def make_order_reader(session_factory: sessionmaker) -> OrderReader:
    async def read(restaurant_id: str, order_filter: OrderFilter) -> list[Order]:
        try:
            async with session_factory() as session:
                return await list_orders(session, restaurant_id, order_filter)
        except ProgrammingError as e:
            if is_privilege_error(e):
                raise PermissionDenied() from e
            raise
        except (OperationalError, InterfaceError) as e:
            raise NetworkFailure() from e

    return read
