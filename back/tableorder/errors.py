"""
Typed failures raised by the ordering core.

Each error carries a machine-readable ``kind`` plus a ``detail`` payload; the
HTTP layer maps kinds to status codes, the core never deals with transport.
"""

from typing import Any


class OrderingError(Exception):
    kind = "OrderingError"

    def __init__(self, message: str, **detail: Any):
        self.message = message
        self.detail = detail
        super().__init__(message)

    def to_dict(self) -> dict:
        payload = {"success": False, "kind": self.kind, "message": self.message}
        if self.detail:
            payload["data"] = self.detail
        return payload


class ValidationFailed(OrderingError):
    kind = "ValidationFailed"


class SessionNotFound(OrderingError):
    kind = "SessionNotFound"


class SessionExpired(OrderingError):
    kind = "SessionExpired"


class TableNotFound(OrderingError):
    kind = "TableNotFound"


class StockInsufficient(OrderingError):
    kind = "StockInsufficient"

    def __init__(self, stock_errors: list[dict], available_items: list[dict]):
        self.stock_errors = stock_errors
        self.available_items = available_items
        super().__init__(
            "Some items are not available",
            stock_errors=stock_errors,
            available_items=available_items,
        )


class OrderNotFound(OrderingError):
    kind = "OrderNotFound"


class OrderItemNotFound(OrderingError):
    kind = "OrderItemNotFound"


class AlreadyPaid(OrderingError):
    kind = "AlreadyPaid"


class NotYetPaid(OrderingError):
    kind = "NotYetPaid"


class ItemsNotAllDone(OrderingError):
    kind = "ItemsNotAllDone"


class AlreadyCompleted(OrderingError):
    kind = "AlreadyCompleted"


class InvalidTransition(OrderingError):
    kind = "InvalidTransition"


class PaymentGatewayUnavailable(OrderingError):
    kind = "PaymentGatewayUnavailable"


class StockRaceLost(Exception):
    """A conditional stock decrement matched no row; the whole order is retried."""
    def __init__(self, menu_id: int, requested: int):
        self.menu_id = menu_id
        self.requested = requested
        super().__init__(f"Stock for menu {menu_id} changed while reserving {requested}")
