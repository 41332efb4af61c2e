"""
Order Service — acting user

Authentication lives in a separate service; by the time a request reaches
this one the gateway has put the caller's identity into headers:

  X-User-Id    the account making the request
  X-Owner-Id   for staff accounts, the owner account they belong to
  X-User-Role  admin | waiter | kitchen

A restaurant is identified by its owner's account id, so staff resolve to
their owner and the owner resolves to themself.
"""

from dataclasses import dataclass
from typing import Mapping

from .errors import TenantMissing


@dataclass(frozen=True)
class Identity:
    user_id: str | None = None
    owner_id: str | None = None
    role: str | None = None

    @property
    def restaurant_id(self) -> str | None:
        return self.owner_id or self.user_id

    def require_restaurant(self) -> str:
        if not self.restaurant_id:
            raise TenantMissing()
        return self.restaurant_id


def identity_from_headers(headers: Mapping[str, str]) -> Identity:
    return Identity(
        user_id=headers.get("x-user-id") or None,
        owner_id=headers.get("x-owner-id") or None,
        role=(headers.get("x-user-role") or "").lower() or None,
    )
