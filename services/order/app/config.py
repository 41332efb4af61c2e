"""
Order Service — configuration

All settings come from environment variables and are read once at startup.
The resulting ``Settings`` is passed down explicitly; nothing below this
module looks at ``os.environ``.
"""

import os
from dataclasses import dataclass
from typing import Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

FEED_BACKENDS = ("push", "poll")


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite+aiosqlite:///./orders.db"
    redis_url: str = "redis://localhost:6379"
    feed_backend: str = "poll"
    order_poll_interval: float = 1.0
    notification_poll_interval: float = 0.5
    push_reconnect_delay: float = 1.0
    push_reconnect_max_delay: float = 30.0
    counter_max_retries: int = 5
    order_timezone: str = "UTC"
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.feed_backend not in FEED_BACKENDS:
            raise ValueError(
                f"ORDER_FEED_BACKEND must be one of {FEED_BACKENDS}, got {self.feed_backend!r}"
            )
        if self.counter_max_retries < 1:
            raise ValueError("COUNTER_MAX_RETRIES must be at least 1")
        try:
            ZoneInfo(self.order_timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown ORDER_TIMEZONE {self.order_timezone!r}") from e

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.order_timezone)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            database_url=env.get("DATABASE_URL", cls.database_url),
            redis_url=env.get("REDIS_URL", cls.redis_url),
            feed_backend=env.get("ORDER_FEED_BACKEND", cls.feed_backend).lower(),
            order_poll_interval=float(env.get("ORDER_POLL_INTERVAL", cls.order_poll_interval)),
            notification_poll_interval=float(
                env.get("NOTIFICATION_POLL_INTERVAL", cls.notification_poll_interval)
            ),
            push_reconnect_delay=float(env.get("PUSH_RECONNECT_DELAY", cls.push_reconnect_delay)),
            push_reconnect_max_delay=float(
                env.get("PUSH_RECONNECT_MAX_DELAY", cls.push_reconnect_max_delay)
            ),
            counter_max_retries=int(env.get("COUNTER_MAX_RETRIES", cls.counter_max_retries)),
            order_timezone=env.get("ORDER_TIMEZONE", cls.order_timezone),
            log_level=env.get("LOG_LEVEL", cls.log_level).upper(),
        )
