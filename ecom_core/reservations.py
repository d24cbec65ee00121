"""Time-bounded stock holds for carts.

A reservation lowers *available* stock without touching on-hand stock. Each
create/cancel/expire runs in one transaction together with its
``reserved``/``unreserved`` audit row. Reservation rows in the log carry
previous/new stock of 0/0 because on-hand stock is not affected.

Competing reservations for the same product are serialized by locking the
product row before availability is computed.
"""
from __future__ import annotations

import datetime as dt
import logging
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from .clock import utcnow
from .database import transaction
from .enums import InventoryChangeType
from .errors import InsufficientStock, ProductNotFound, ProductNotTracked
from .models import StockReservation
from .stock_ledger import reserved_for_product
from .stock_mutator import lock_product, record_change

logger = logging.getLogger(__name__)

DEFAULT_TTL = dt.timedelta(minutes=30)


def get_reservation(db: Session, reservation_id: int) -> Optional[StockReservation]:
    return db.query(StockReservation).filter(StockReservation.id == reservation_id).first()


def reserve(
    db: Session,
    product_id: int,
    cart_id: int,
    quantity: int,
    ttl: dt.timedelta = DEFAULT_TTL,
) -> StockReservation:
    if quantity <= 0:
        raise ValueError("quantity must be > 0")
    if ttl.total_seconds() <= 0:
        ttl = DEFAULT_TTL

    with transaction(db):
        product = lock_product(db, product_id)
        if product is None:
            raise ProductNotFound(product_id)
        if not product.track_inventory:
            raise ProductNotTracked(product_id)

        now = utcnow()
        available = int(product.stock) - reserved_for_product(db, product_id, now=now)
        if quantity > available:
            raise InsufficientStock(
                product_id=product_id,
                available=available,
                requested=quantity,
                product_name=product.name,
            )

        reservation = StockReservation(
            product_id=product_id,
            cart_id=cart_id,
            quantity=quantity,
            reserved_at=now,
            expires_at=now + ttl,
        )
        db.add(reservation)
        record_change(
            db,
            product_id=product_id,
            change_type=InventoryChangeType.RESERVED,
            quantity_change=-quantity,
            previous_stock=0,
            new_stock=0,
            reference_id=cart_id,
            notes=f"Reserved {quantity} units for cart",
        )
        db.flush()

    logger.info(
        "stock reserved",
        extra={"product_id": product_id, "cart_id": cart_id, "quantity": quantity},
    )
    return reservation


def _release(db: Session, reservation: StockReservation, *, reference_id: Optional[int], notes: str) -> None:
    record_change(
        db,
        product_id=reservation.product_id,
        change_type=InventoryChangeType.UNRESERVED,
        quantity_change=reservation.quantity,
        previous_stock=0,
        new_stock=0,
        reference_id=reference_id,
        notes=notes,
    )
    db.delete(reservation)


def cancel(db: Session, reservation_id: int) -> bool:
    with transaction(db):
        reservation = (
            db.query(StockReservation)
            .filter(StockReservation.id == reservation_id)
            .with_for_update()
            .first()
        )
        if reservation is None:
            return False
        _release(
            db,
            reservation,
            reference_id=reservation.cart_id,
            notes=f"Unreserved {reservation.quantity} units from cart",
        )
        db.flush()
    return True


def cleanup_expired(db: Session) -> int:
    """Delete every reservation whose ``expires_at`` has passed."""
    with transaction(db):
        now = utcnow()
        expired: List[StockReservation] = (
            db.query(StockReservation)
            .filter(StockReservation.expires_at <= now)
            .with_for_update(skip_locked=True)
            .all()
        )
        for reservation in expired:
            _release(db, reservation, reference_id=reservation.cart_id, notes="Expired reservation cleanup")
        db.flush()

    if expired:
        logger.info("expired reservations cleaned up", extra={"count": len(expired)})
    return len(expired)


def release_cart_reservations(
    db: Session,
    cart_id: int,
    product_ids: Iterable[int],
    *,
    reference_id: Optional[int] = None,
    notes: str = "Reservation superseded by sale",
) -> int:
    """Drop a cart's holds on ``product_ids`` inside the caller's unit of work."""
    product_ids = list(product_ids)
    if not product_ids:
        return 0
    held: List[StockReservation] = (
        db.query(StockReservation)
        .filter(
            StockReservation.cart_id == cart_id,
            StockReservation.product_id.in_(product_ids),
        )
        .with_for_update()
        .all()
    )
    for reservation in held:
        _release(db, reservation, reference_id=reference_id, notes=notes)
    db.flush()
    return len(held)
