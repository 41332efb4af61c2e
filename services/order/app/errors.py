"""
Order Service — error taxonomy

Every failure the order core can report to a caller. The API layer turns
these into HTTP responses using ``status_code``; feeds and dispatchers
catch them to decide between degrading silently and retrying.
"""


class OrderServiceError(Exception):
    """Base class for all order-core failures."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class TenantMissing(OrderServiceError):
    """No restaurant scope could be resolved for the acting user."""

    status_code = 400

    def __init__(self, message: str = "No restaurant is associated with this account") -> None:
        super().__init__(message)


class OrderNotFound(OrderServiceError):
    status_code = 404

    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class InvalidTransition(OrderServiceError):
    """Illegal status change, e.g. pending → ready or anything out of delivered."""

    status_code = 409

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Cannot move an order from '{current}' to '{requested}'")
        self.current = current
        self.requested = requested


class TransactionConflict(OrderServiceError):
    """The order counter could not be incremented; retry the whole creation."""

    status_code = 409

    def __init__(self, message: str = "Order could not be numbered, please retry") -> None:
        super().__init__(message)


class PermissionDenied(OrderServiceError):
    status_code = 403

    def __init__(self, message: str = "Not allowed to read this restaurant's orders") -> None:
        super().__init__(message)


class NetworkFailure(OrderServiceError):
    """Transport-level failure talking to the database or Redis."""

    status_code = 503

    def __init__(self, message: str = "Order store is unreachable, please retry") -> None:
        super().__init__(message)
