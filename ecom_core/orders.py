"""Order lifecycle: checkout, direct pay, gateway pay and the internal
transitions the payment webhook drives.

Status moves along::

    pending_payment -> payment_processing -> paid -> processing -> shipped -> delivered
           ^                   |
           +---- (failed) -----+

plus ``cancelled`` and ``refunded``. Admin ``update_status`` may set any state.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from . import carts
from .auth import CurrentUser
from .clock import utcnow
from .database import transaction
from .enums import ACTIVE_PAYMENT_STATUSES, InventoryChangeType, OrderStatus, PaymentStatus
from .errors import (
    EmptyCart,
    Forbidden,
    GatewayError,
    InsufficientStock,
    InvalidOrderStatus,
    OrderNotFound,
    ProductNotFound,
)
from .gateway import to_minor_units
from .models import Order, OrderItem, Payment
from .reservations import release_cart_reservations
from .stock_ledger import reserved_for_product
from .stock_mutator import adjust_stock, lock_product

logger = logging.getLogger(__name__)

SUPERSEDED_PAYMENT_STATUSES = (*ACTIVE_PAYMENT_STATUSES, PaymentStatus.FAILED)


@dataclass
class PaymentIntentResult:
    order: Order
    payment: Payment
    client_secret: str


# -----------------------------
# Reads
# -----------------------------


def _find_order(db: Session, order_id: int) -> Order:
    order = db.query(Order).filter(Order.id == order_id).first()
    if order is None:
        raise OrderNotFound(order_id)
    return order


def lock_order(db: Session, order_id: int) -> Order:
    order = (
        db.query(Order)
        .filter(Order.id == order_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if order is None:
        raise OrderNotFound(order_id)
    return order


def ensure_access(order: Order, caller: CurrentUser) -> None:
    if caller.is_admin:
        return
    if order.user_id != caller.id:
        raise Forbidden("You are not allowed to access this order", order_id=order.id)


def get_order(db: Session, caller: CurrentUser, order_id: int) -> Order:
    order = _find_order(db, order_id)
    ensure_access(order, caller)
    return order


def list_orders_for_user(db: Session, user_id: int, skip: int = 0, limit: int = 100) -> Tuple[List[Order], int]:
    q = db.query(Order).filter(Order.user_id == user_id)
    orders = q.order_by(Order.id.desc()).offset(skip).limit(limit).all()
    return orders, q.count()


def list_all_orders(db: Session, skip: int = 0, limit: int = 100) -> Tuple[List[Order], int]:
    q = db.query(Order)
    orders = q.order_by(Order.id.desc()).offset(skip).limit(limit).all()
    return orders, q.count()


# -----------------------------
# Checkout
# -----------------------------


def checkout(db: Session, user_id: int) -> Order:
    """Turn the user's cart into a ``pending_payment`` order.

    All-or-nothing: every product row is locked (in id order), and each line
    must fit into on-hand stock minus what *other* carts currently hold. Prices
    are snapshotted onto the order items and the cart is emptied.
    """
    with transaction(db):
        cart = carts.get_cart_by_user(db, user_id)
        if cart is None or not cart.items:
            raise EmptyCart()

        now = utcnow()
        lines = []
        total = Decimal("0.00")
        for item in sorted(cart.items, key=lambda i: i.product_id):
            product = lock_product(db, item.product_id)
            if product is None:
                raise ProductNotFound(item.product_id)

            if product.track_inventory:
                held_elsewhere = reserved_for_product(db, product.id, now=now, exclude_cart_id=cart.id)
                available = int(product.stock) - held_elsewhere
                if item.quantity > available:
                    raise InsufficientStock(
                        product_id=product.id,
                        available=max(available, 0),
                        requested=item.quantity,
                        product_name=product.name,
                    )

            price = Decimal(str(product.price))
            total += price * item.quantity
            lines.append((product.id, item.quantity, price))

        order = Order(user_id=user_id, total=total, status=OrderStatus.PENDING_PAYMENT)
        db.add(order)
        db.flush()

        for product_id, quantity, price in lines:
            db.add(OrderItem(order_id=order.id, product_id=product_id, quantity=quantity, price=price))

        carts.clear_cart(db, cart)
        db.flush()

    db.refresh(order)
    logger.info("order created", extra={"order_id": order.id, "user_id": user_id, "total": str(order.total)})
    return order


# -----------------------------
# Sale (stock leaves the warehouse)
# -----------------------------


def _quantities_by_product(order: Order) -> Dict[int, int]:
    quantities: Dict[int, int] = {}
    for item in sorted(order.items, key=lambda i: i.product_id):
        quantities[item.product_id] = quantities.get(item.product_id, 0) + int(item.quantity)
    return quantities


def find_stock_shortage(db: Session, order: Order) -> Optional[InsufficientStock]:
    """Lock every product in the order and return the first line that cannot be sold.

    Reservations held by the buyer's own cart do not count against the sale.
    """
    cart = carts.get_cart_by_user(db, order.user_id)
    own_cart_id = cart.id if cart is not None else None
    now = utcnow()

    for product_id, quantity in _quantities_by_product(order).items():
        product = lock_product(db, product_id)
        if product is None:
            raise ProductNotFound(product_id)
        if not product.track_inventory:
            continue
        available = int(product.stock) - reserved_for_product(db, product_id, now=now, exclude_cart_id=own_cart_id)
        if quantity > available:
            return InsufficientStock(
                product_id=product_id,
                available=max(available, 0),
                requested=quantity,
                product_name=product.name,
            )
    return None


def finalize_sale(db: Session, order: Order) -> Order:
    """Decrement stock for every line, release the buyer's holds and mark the order paid.

    Runs inside the caller's unit of work; raises ``InsufficientStock`` so the
    caller's transaction rolls back without a partial decrement.
    """
    shortage = find_stock_shortage(db, order)
    if shortage is not None:
        raise shortage

    cart = carts.get_cart_by_user(db, order.user_id)
    own_cart_id = cart.id if cart is not None else None

    quantities = _quantities_by_product(order)
    for product_id, quantity in quantities.items():
        product = lock_product(db, product_id)
        if not product.track_inventory:
            continue
        adjust_stock(
            db,
            product_id,
            -quantity,
            InventoryChangeType.SOLD,
            reference_id=order.id,
            notes=f"Sold {quantity} units in order #{order.id}",
            exclude_cart_id=own_cart_id,
        )

    if cart is not None:
        release_cart_reservations(
            db,
            cart.id,
            quantities.keys(),
            reference_id=order.id,
            notes=f"Reservation released by sale of order #{order.id}",
        )

    order.status = OrderStatus.PAID
    db.flush()
    return order


def pay_order(db: Session, caller: CurrentUser, order_id: int) -> Optional[Order]:
    """Pay an order directly (no gateway).

    Returns None when the order is not awaiting payment or any line is short
    of stock; in that case nothing changes.
    """
    get_order(db, caller, order_id)

    with transaction(db):
        order = lock_order(db, order_id)
        if order.status != OrderStatus.PENDING_PAYMENT:
            logger.info("pay skipped", extra={"order_id": order_id, "status": order.status.value})
            return None

        shortage = find_stock_shortage(db, order)
        if shortage is not None:
            logger.info(
                "pay skipped: insufficient stock",
                extra={"order_id": order_id, "product_id": shortage.product_id},
            )
            return None

        finalize_sale(db, order)

    db.refresh(order)
    logger.info("order paid", extra={"order_id": order.id})
    return order


# -----------------------------
# Gateway payment
# -----------------------------


def _cancel_intent_quietly(gateway, intent_id: str) -> None:
    try:
        gateway.cancel(intent_id)
    except GatewayError:
        logger.exception("could not cancel payment intent", extra={"intent_id": intent_id})


def begin_gateway_payment(
    db: Session,
    gateway,
    caller: CurrentUser,
    order_id: int,
    currency: str,
) -> PaymentIntentResult:
    """Open a payment intent for an order and move it to ``payment_processing``.

    The provider call runs between two short transactions so no row lock is
    held across the network. If the order changed status in between, the new
    intent is cancelled and ``InvalidOrderStatus`` is raised. Earlier pending,
    processing or failed payments of the order are canceled here and at the
    provider, so only the newest intent can be charged.
    """
    with transaction(db):
        order = get_order(db, caller, order_id)
        if order.status != OrderStatus.PENDING_PAYMENT:
            raise InvalidOrderStatus(order_id, order.status.value)
        amount = Decimal(str(order.total))
        user_id = order.user_id
    to_minor_units(amount)

    intent = gateway.create_payment_intent(
        amount,
        currency,
        metadata={"order_id": str(order_id), "user_id": str(user_id)},
    )

    superseded: List[str] = []
    try:
        with transaction(db):
            order = lock_order(db, order_id)
            if order.status != OrderStatus.PENDING_PAYMENT:
                raise InvalidOrderStatus(order_id, order.status.value)

            # a failed intent can still be confirmed by the buyer, so it is retired too
            stale = (
                db.query(Payment)
                .filter(Payment.order_id == order_id, Payment.status.in_(SUPERSEDED_PAYMENT_STATUSES))
                .with_for_update()
                .all()
            )
            for old in stale:
                old.status = PaymentStatus.CANCELED
                superseded.append(old.external_intent_id)

            payment = Payment(
                order_id=order_id,
                external_intent_id=intent.id,
                amount=amount,
                currency=currency,
                status=PaymentStatus.PENDING,
            )
            db.add(payment)
            db.flush()

            order.payment_id = payment.id
            order.status = OrderStatus.PAYMENT_PROCESSING
            db.flush()
    except InvalidOrderStatus:
        _cancel_intent_quietly(gateway, intent.id)
        raise

    for intent_id in superseded:
        _cancel_intent_quietly(gateway, intent_id)

    db.refresh(order)
    db.refresh(payment)
    logger.info(
        "payment intent created",
        extra={"order_id": order_id, "payment_id": payment.id, "intent_id": intent.id},
    )
    return PaymentIntentResult(order=order, payment=payment, client_secret=intent.client_secret)


# -----------------------------
# Status transitions
# -----------------------------


def update_status(db: Session, order_id: int, status: OrderStatus) -> Order:
    """Admin override: set any status."""
    with transaction(db):
        order = lock_order(db, order_id)
        previous = order.status
        order.status = status
        db.flush()
    db.refresh(order)
    logger.info(
        "order status updated",
        extra={"order_id": order_id, "from": previous.value, "to": status.value},
    )
    return order


def mark_payment_failed(db: Session, order: Order) -> bool:
    """Send an order back to ``pending_payment`` after its payment failed."""
    if order.status != OrderStatus.PAYMENT_PROCESSING:
        return False
    order.status = OrderStatus.PENDING_PAYMENT
    db.flush()
    return True


def mark_refunded(db: Session, order: Order) -> None:
    # stock is not returned to inventory on refund
    order.status = OrderStatus.REFUNDED
    db.flush()
