"""
Order Service — storage schema

Two tables:

  orders          one row per ticket, scoped by restaurant_id
  order_counters  last order number handed out per (restaurant, day)

Timestamps are stored as fixed-width UTC ISO-8601 strings so that
``ORDER BY created_at`` behaves the same on PostgreSQL and SQLite.
"""

from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS orders (
        id             VARCHAR(36)  PRIMARY KEY,
        restaurant_id  VARCHAR(128) NOT NULL,
        order_number   VARCHAR(16)  NOT NULL,
        table_label    VARCHAR(64)  NOT NULL,
        items          TEXT         NOT NULL,
        status         VARCHAR(16)  NOT NULL,
        waiter_id      VARCHAR(128) NOT NULL,
        waiter_name    VARCHAR(128) NOT NULL DEFAULT '',
        total_amount   FLOAT        NOT NULL,
        estimated_time INTEGER,
        created_at     VARCHAR(32)  NOT NULL,
        completed_at   VARCHAR(32),
        updated_at     VARCHAR(32)  NOT NULL,
        version        INTEGER      NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_orders_restaurant_created
        ON orders (restaurant_id, created_at)
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_orders_restaurant_status
        ON orders (restaurant_id, status, waiter_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS order_counters (
        restaurant_id  VARCHAR(128) NOT NULL,
        date_key       VARCHAR(10)  NOT NULL,
        last_counter   INTEGER      NOT NULL,
        PRIMARY KEY (restaurant_id, date_key)
    )
    """,
)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in STATEMENTS:
            await conn.execute(text(statement))


def to_db_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)
