"""
Order Service — order number generator

Order numbers are for people, not for joins: ``<dayOfMonth><counter>``,
e.g. the 2nd order on the 16th is "162". They are unique per restaurant per
calendar day only.

The counter row is bumped with a single atomic upsert
(INSERT ... ON CONFLICT DO UPDATE ... RETURNING), so two waiters placing an
order in the same second can never read the same value. A transaction that
still fails to commit (lock timeout, serialization failure) is retried a
bounded number of times before ``TransactionConflict`` is raised.
"""

import asyncio
import logging
from datetime import datetime, tzinfo

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, InterfaceError
from sqlalchemy.orm import sessionmaker

from .errors import NetworkFailure, TransactionConflict

logger = logging.getLogger(__name__)

RETRY_BACKOFF = 0.02

_INCREMENT = text("""
    INSERT INTO order_counters (restaurant_id, date_key, last_counter)
    VALUES (:restaurant_id, :date_key, 1)
    ON CONFLICT (restaurant_id, date_key) DO UPDATE
        SET last_counter = order_counters.last_counter + 1
    RETURNING last_counter
""")


def date_key(moment: datetime, tz: tzinfo) -> str:
    """Calendar day of ``moment`` in the restaurant's zone, as YYYY-MM-DD."""
    return moment.astimezone(tz).date().isoformat()


def format_order_number(moment: datetime, tz: tzinfo, counter: int) -> str:
    return f"{moment.astimezone(tz).day}{counter}"


async def next_counter(
    session_factory: sessionmaker,
    restaurant_id: str,
    day_key: str,
    max_retries: int = 5,
) -> int:
    """
    Increment and return the counter for (restaurant_id, day_key).

    Each attempt runs in its own session and transaction. On a database error
    the transaction is rolled back and retried; connection-level errors that
    persist through every attempt surface as ``NetworkFailure``.
    """
    last_error: DBAPIError | None = None
    for attempt in range(1, max_retries + 1):
        async with session_factory() as session:
            try:
                result = await session.execute(
                    _INCREMENT, {"restaurant_id": restaurant_id, "date_key": day_key}
                )
                counter = result.scalar_one()
                await session.commit()
                return counter
            except DBAPIError as e:
                await session.rollback()
                last_error = e
                logger.warning(
                    "Counter transaction for %s/%s failed (attempt %d/%d): %s",
                    restaurant_id, day_key, attempt, max_retries, e.__class__.__name__,
                )
        await asyncio.sleep(RETRY_BACKOFF * attempt)

    if isinstance(last_error, InterfaceError) or (
        last_error is not None and last_error.connection_invalidated
    ):
        raise NetworkFailure() from last_error
    raise TransactionConflict() from last_error


async def generate_order_number(
    session_factory: sessionmaker,
    restaurant_id: str,
    now: datetime,
    tz: tzinfo,
    max_retries: int = 5,
) -> str:
    counter = await next_counter(
        session_factory, restaurant_id, date_key(now, tz), max_retries
    )
    return format_order_number(now, tz, counter)
