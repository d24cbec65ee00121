"""The single code path that changes a product's on-hand stock.

Manual stock-in/out, direct order payment and gateway-confirmed sales all go
through ``apply_stock_change`` so that every change leaves exactly one
``InventoryLog`` row written in the same transaction.
"""
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.orm import Session

from .clock import utcnow
from .database import transaction
from .enums import InventoryChangeType
from .errors import InsufficientStock, ProductNotFound
from .models import InventoryLog, Product
from .stock_ledger import reserved_for_product

logger = logging.getLogger(__name__)


def record_change(
    db: Session,
    *,
    product_id: int,
    change_type: InventoryChangeType,
    quantity_change: int,
    previous_stock: int,
    new_stock: int,
    reference_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> InventoryLog:
    entry = InventoryLog(
        product_id=product_id,
        change_type=change_type,
        quantity_change=quantity_change,
        previous_stock=previous_stock,
        new_stock=new_stock,
        reference_id=reference_id,
        notes=notes,
    )
    db.add(entry)
    return entry


def lock_product(db: Session, product_id: int) -> Optional[Product]:
    return (
        db.query(Product)
        .filter(Product.id == product_id)
        .with_for_update()
        .populate_existing()
        .first()
    )


def apply_stock_change(
    db: Session,
    product_id: int,
    new_on_hand: int,
    change_type: Optional[InventoryChangeType] = None,
    reference_id: Optional[int] = None,
    notes: Optional[str] = None,
    exclude_cart_id: Optional[int] = None,
) -> Optional[InventoryLog]:
    """Set on-hand stock inside the caller's unit of work.

    Without ``change_type`` the change is logged as ``stock_in`` or
    ``stock_out`` depending on its direction. A decrease that would leave
    less stock than live reservations hold raises ``InsufficientStock``;
    holds of ``exclude_cart_id`` (the cart being sold) are not counted.
    Returns the log entry, or None when the product does not exist.
    """
    product = lock_product(db, product_id)
    if product is None:
        return None

    previous = int(product.stock)
    if product.track_inventory and new_on_hand < 0:
        raise InsufficientStock(
            product_id=product.id,
            available=previous,
            requested=previous - int(new_on_hand),
            product_name=product.name,
        )

    # on-hand stock may not drop below what live reservations still hold
    if product.track_inventory and new_on_hand < previous:
        held = reserved_for_product(db, product.id, now=utcnow(), exclude_cart_id=exclude_cart_id)
        if new_on_hand < held:
            raise InsufficientStock(
                product_id=product.id,
                available=max(previous - held, 0),
                requested=previous - int(new_on_hand),
                product_name=product.name,
            )

    if change_type is None:
        change_type = InventoryChangeType.STOCK_IN if new_on_hand >= previous else InventoryChangeType.STOCK_OUT
    product.stock = int(new_on_hand)
    entry = record_change(
        db,
        product_id=product.id,
        change_type=change_type,
        quantity_change=int(new_on_hand) - previous,
        previous_stock=previous,
        new_stock=int(new_on_hand),
        reference_id=reference_id,
        notes=notes,
    )
    db.flush()
    logger.info(
        "stock changed",
        extra={
            "product_id": product.id,
            "change_type": change_type.value,
            "previous_stock": previous,
            "new_stock": int(new_on_hand),
            "reference_id": reference_id,
        },
    )
    return entry


def adjust_stock(
    db: Session,
    product_id: int,
    delta: int,
    change_type: InventoryChangeType,
    reference_id: Optional[int] = None,
    notes: Optional[str] = None,
    exclude_cart_id: Optional[int] = None,
) -> InventoryLog:
    """Move on-hand stock by ``delta`` inside the caller's unit of work."""
    product = lock_product(db, product_id)
    if product is None:
        raise ProductNotFound(product_id)
    return apply_stock_change(
        db,
        product_id,
        int(product.stock) + int(delta),
        change_type,
        reference_id=reference_id,
        notes=notes,
        exclude_cart_id=exclude_cart_id,
    )


def set_stock(
    db: Session,
    product_id: int,
    new_on_hand: int,
    change_type: Optional[InventoryChangeType] = None,
    reference_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> bool:
    with transaction(db):
        entry = apply_stock_change(
            db,
            product_id,
            new_on_hand,
            change_type,
            reference_id=reference_id,
            notes=notes,
        )
    return entry is not None
