"""Typed failures raised by the inventory, order and payment core.

Every error carries a machine readable ``code`` and the HTTP status the route
layer answers with, so callers can tell a "no" (insufficient stock, wrong
status) apart from a missing resource, a permission problem or a payment
provider outage.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class ShopError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "", **extra: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.extra: Dict[str, Any] = extra

    def to_detail(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.extra}


# -----------------------------
# Not found
# -----------------------------


class NotFound(ShopError):
    status_code = 404
    code = "not_found"


class ProductNotFound(NotFound):
    code = "product_not_found"

    def __init__(self, product_id: int):
        super().__init__(f"Product {product_id} not found", product_id=product_id)


class OrderNotFound(NotFound):
    code = "order_not_found"

    def __init__(self, order_id: int):
        super().__init__(f"Order {order_id} not found", order_id=order_id)


class ReservationNotFound(NotFound):
    code = "reservation_not_found"

    def __init__(self, reservation_id: int):
        super().__init__(f"Reservation {reservation_id} not found", reservation_id=reservation_id)


class PaymentNotFound(NotFound):
    code = "payment_not_found"


# -----------------------------
# Conflict / invalid state
# -----------------------------


class Conflict(ShopError):
    status_code = 409
    code = "conflict"


class InsufficientStock(Conflict):
    code = "insufficient_stock"

    def __init__(self, product_id: int, available: int, requested: int, product_name: Optional[str] = None):
        label = f"'{product_name}' (ID: {product_id})" if product_name else str(product_id)
        super().__init__(
            f"Insufficient stock for product {label}. Available: {available}, Requested: {requested}",
            product_id=product_id,
            available=available,
            requested=requested,
        )
        self.product_id = product_id
        self.available = available
        self.requested = requested


class ProductNotTracked(Conflict):
    code = "product_not_tracked"

    def __init__(self, product_id: int):
        super().__init__(f"Product {product_id} does not track inventory", product_id=product_id)


class EmptyCart(Conflict):
    status_code = 400
    code = "empty_cart"

    def __init__(self):
        super().__init__("Cart is empty")


class InvalidOrderStatus(Conflict):
    code = "invalid_order_status"

    def __init__(self, order_id: int, status: str):
        super().__init__(f"Invalid order status: {status}", order_id=order_id, status=status)
        self.status = status


class InvalidPaymentStatus(Conflict):
    code = "invalid_payment_status"

    def __init__(self, payment_id: int, status: str):
        super().__init__(f"Invalid payment status: {status}", payment_id=payment_id, status=status)


class InvalidAmount(ShopError):
    status_code = 400
    code = "invalid_amount"


class InvalidWebhookPayload(ShopError):
    status_code = 400
    code = "invalid_webhook_payload"


# -----------------------------
# Permissions
# -----------------------------


class Forbidden(ShopError):
    status_code = 403
    code = "forbidden"


# -----------------------------
# Upstream and invariants
# -----------------------------


class GatewayError(ShopError):
    """The payment provider rejected the call or could not be reached."""

    status_code = 502
    code = "payment_gateway_error"

    def __init__(self, message: str, *, retryable: bool = False):
        super().__init__(message, retryable=retryable)
        self.retryable = retryable


class DataIntegrityError(ShopError):
    code = "data_integrity_error"
