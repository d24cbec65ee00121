from __future__ import annotations

from enum import Enum

from sqlalchemy.types import String, TypeDecorator

from .errors import DataIntegrityError


class _StoredEnum(str, Enum):
    """Enum persisted as its text value.

    ``from_db`` is the only way a stored string becomes a member; anything
    outside the closed set is a data-integrity problem, not a default.
    """

    @classmethod
    def from_db(cls, raw: str):
        try:
            return cls(raw)
        except ValueError:
            raise DataIntegrityError(
                f"Unrecognized {cls.__name__} value in database: {raw!r}",
                value=raw,
            ) from None

    def to_db(self) -> str:
        return self.value


class OrderStatus(_StoredEnum):
    CART = "cart"
    PENDING_PAYMENT = "pending_payment"
    PAYMENT_PROCESSING = "payment_processing"
    PAID = "paid"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentStatus(_StoredEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


ACTIVE_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING)


class InventoryChangeType(_StoredEnum):
    STOCK_IN = "stock_in"
    STOCK_OUT = "stock_out"
    RESERVED = "reserved"
    UNRESERVED = "unreserved"
    SOLD = "sold"


class Role(str, Enum):
    ADMIN = "admin"
    USER = "user"


class EnumText(TypeDecorator):
    """Text column holding a ``_StoredEnum`` member."""

    impl = String(32)
    cache_ok = True

    def __init__(self, enum_cls, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.enum_cls = enum_cls

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, self.enum_cls):
            return value.to_db()
        # plain strings are accepted on write only if they name a member
        return self.enum_cls.from_db(value).to_db()

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return self.enum_cls.from_db(value)
