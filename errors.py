"""Exceptions raised by the order service.

``ShopError`` subclasses are rendered to clients by the exception handlers in
``main.py`` as ``{"error": message, "details": ...}`` with their status code.
``GatewayError`` subclasses never reach clients directly; the lifecycle manager
translates them.
"""
from __future__ import annotations
from typing import Optional


class ShopError(Exception):
    """Base exception for all client-visible errors."""

    status_code = 500
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None, details: Optional[str] = None):
        self.message = message or self.message
        self.details = details
        super().__init__(self.message)


class Unauthorized(ShopError):
    status_code = 401
    message = "Unauthorized"


class SuperAdminRemovalError(ShopError):
    status_code = 400
    message = "Cannot delete superadmin"


class OrderNotFoundError(ShopError):
    """Raised when an order doesn't exist or is owned by someone else."""

    status_code = 404
    message = "Order not found"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__()


class InvalidOrderError(ShopError):
    status_code = 400
    message = "Invalid order"


class PaymentNotConfirmedError(ShopError):
    """Raised when an order is submitted without a successful payment."""

    status_code = 400
    message = "Payment has not been confirmed"


class AlreadyCancelledError(ShopError):
    status_code = 400
    message = "Order is already cancelled"


class NotCancellableError(ShopError):
    status_code = 400
    message = "Cannot cancel order that has been shipped or delivered"


class TooCloseToDeliveryError(ShopError):
    status_code = 400

    def __init__(self, min_days: int, days_left: int):
        self.min_days = min_days
        self.days_left = days_left
        super().__init__(f"Cannot cancel order with delivery date less than {min_days} days away")


class ConflictError(ShopError):
    """Raised when an order changed between being read and being written."""

    status_code = 409
    message = "Order was modified by another request, reload and retry"


class RefundFailedError(ShopError):
    """Raised when the refund could not be issued; the order is left unchanged.

    ``retriable`` marks gateway timeouts and transport failures, which are
    answered with 503 instead of 500.
    """

    message = "Failed to process refund. Please contact support."

    def __init__(self, details: Optional[str] = None, retriable: bool = False):
        self.retriable = retriable
        self.status_code = 503 if retriable else 500
        super().__init__(details=details)


class GatewayError(Exception):
    """An error reported by, or while talking to, the payment gateway."""

    def __init__(self, description: str, status_code: Optional[int] = None, code: Optional[str] = None):
        self.description = description
        self.status_code = status_code
        self.code = code
        super().__init__(description)

    @property
    def is_bad_request(self) -> bool:
        return self.status_code == 400 and self.code == "BAD_REQUEST_ERROR"


class GatewayLookupError(GatewayError):
    """Payment id is malformed or unknown to the gateway."""


class GatewayRefundError(GatewayError):
    """The gateway rejected a refund."""


class GatewayTimeoutError(GatewayError):
    """The gateway did not answer in time or the connection failed."""


class ProductNotFoundError(ShopError):
    status_code = 404
    message = "Product not found"
