"""Read-side view of stock: availability, alerts, report and audit history.

Available stock is on-hand stock minus the quantities of reservations whose
``expires_at`` is still in the future. Expired reservations stop counting the
moment they expire, whether or not the sweeper has deleted them yet.
Everything here is read-only.
"""
from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .clock import utcnow
from .errors import ProductNotFound, ProductNotTracked
from .models import InventoryLog, Product, StockReservation


@dataclass
class StockSnapshot:
    product_id: int
    name: str
    on_hand: int
    reserved: int
    track_inventory: bool
    low_stock_threshold: Optional[int]

    @property
    def available(self) -> int:
        return self.on_hand - self.reserved


@dataclass
class LowStockAlert:
    product_id: int
    product_name: str
    current_stock: int
    available_stock: int
    threshold: int
    is_critical: bool


@dataclass
class InventoryReport:
    total_products: int
    low_stock_products: int
    out_of_stock_products: int
    total_reserved: int
    total_available: int
    alerts: List[LowStockAlert] = field(default_factory=list)


def _reserved_select(product_id, *, now: dt.datetime, exclude_cart_id: int | None = None):
    q = select(func.coalesce(func.sum(StockReservation.quantity), 0)).where(
        StockReservation.product_id == product_id,
        StockReservation.expires_at > now,
    )
    if exclude_cart_id is not None:
        q = q.where(StockReservation.cart_id != exclude_cart_id)
    return q


def reserved_quantity(product_id_col, *, now: dt.datetime, exclude_cart_id: int | None = None):
    """Correlated scalar subquery: live reserved quantity for a product column."""
    return _reserved_select(product_id_col, now=now, exclude_cart_id=exclude_cart_id).scalar_subquery()


def reserved_for_product(
    db: Session,
    product_id: int,
    *,
    now: dt.datetime | None = None,
    exclude_cart_id: int | None = None,
) -> int:
    q = _reserved_select(product_id, now=now or utcnow(), exclude_cart_id=exclude_cart_id)
    return int(db.execute(q).scalar() or 0)


def stock_snapshot(db: Session, product_id: int, *, now: dt.datetime | None = None) -> StockSnapshot:
    now = now or utcnow()
    reserved = reserved_quantity(Product.id, now=now)
    row = db.execute(
        select(
            Product.id,
            Product.name,
            Product.stock,
            reserved.label("reserved"),
            Product.track_inventory,
            Product.low_stock_threshold,
        ).where(Product.id == product_id)
    ).first()
    if row is None:
        raise ProductNotFound(product_id)
    return StockSnapshot(
        product_id=row.id,
        name=row.name,
        on_hand=int(row.stock),
        reserved=int(row.reserved or 0),
        track_inventory=bool(row.track_inventory),
        low_stock_threshold=row.low_stock_threshold,
    )


def available_stock(db: Session, product_id: int, *, now: dt.datetime | None = None) -> int:
    snapshot = stock_snapshot(db, product_id, now=now)
    if not snapshot.track_inventory:
        raise ProductNotTracked(product_id)
    return snapshot.available


def low_stock_alerts(db: Session, *, now: dt.datetime | None = None) -> List[LowStockAlert]:
    now = now or utcnow()
    available = Product.stock - reserved_quantity(Product.id, now=now)
    rows = db.execute(
        select(
            Product.id,
            Product.name,
            Product.stock,
            available.label("available"),
            Product.low_stock_threshold,
        )
        .where(
            Product.track_inventory.is_(True),
            Product.low_stock_threshold.isnot(None),
            available <= Product.low_stock_threshold,
        )
        .order_by(available.asc(), Product.id.asc())
    ).all()

    return [
        LowStockAlert(
            product_id=row.id,
            product_name=row.name,
            current_stock=int(row.stock),
            available_stock=int(row.available),
            threshold=int(row.low_stock_threshold),
            is_critical=int(row.available) <= 0,
        )
        for row in rows
    ]


def inventory_report(db: Session, *, now: dt.datetime | None = None) -> InventoryReport:
    now = now or utcnow()
    reserved = reserved_quantity(Product.id, now=now)
    rows = db.execute(
        select(Product.stock, reserved.label("reserved")).where(Product.track_inventory.is_(True))
    ).all()

    total_reserved = sum(int(r.reserved or 0) for r in rows)
    total_available = sum(int(r.stock) - int(r.reserved or 0) for r in rows)
    out_of_stock = sum(1 for r in rows if int(r.stock) - int(r.reserved or 0) <= 0)
    alerts = low_stock_alerts(db, now=now)

    return InventoryReport(
        total_products=len(rows),
        low_stock_products=len(alerts),
        out_of_stock_products=out_of_stock,
        total_reserved=total_reserved,
        total_available=total_available,
        alerts=alerts,
    )


def inventory_history(db: Session, product_id: int, *, limit: int = 50, offset: int = 0) -> List[InventoryLog]:
    return (
        db.query(InventoryLog)
        .filter(InventoryLog.product_id == product_id)
        .order_by(InventoryLog.created_at.desc(), InventoryLog.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
