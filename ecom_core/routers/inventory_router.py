import datetime as dt
from typing import List

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from .. import carts, reservations, schemas, stock_ledger
from ..auth import CurrentUser, get_current_admin, get_current_user
from ..config import Settings
from ..database import get_db
from ..deps import get_settings
from ..errors import Forbidden, ProductNotFound, ReservationNotFound
from ..models import Cart
from ..stock_mutator import set_stock

router = APIRouter(prefix="/inventory", tags=["Inventory"])


def _stock_out(snapshot: stock_ledger.StockSnapshot) -> dict:
    return {
        "product_id": snapshot.product_id,
        "name": snapshot.name,
        "on_hand": snapshot.on_hand,
        "reserved": snapshot.reserved,
        "available": snapshot.available,
        "track_inventory": snapshot.track_inventory,
        "low_stock_threshold": snapshot.low_stock_threshold,
    }


# -----------------------------
# Stock
# -----------------------------


@router.get("/products/{product_id}/stock", response_model=schemas.StockOut)
def get_stock(
    product_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return _stock_out(stock_ledger.stock_snapshot(db, product_id))


@router.put("/products/{product_id}/stock", response_model=schemas.StockOut)
def update_stock(
    product_id: int,
    body: schemas.StockUpdate,
    current_admin: CurrentUser = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    """Set on-hand stock; logged as ``stock_in`` or ``stock_out`` by direction."""
    if not set_stock(db, product_id, body.stock, notes=body.notes or "Manual stock update"):
        raise ProductNotFound(product_id)
    return _stock_out(stock_ledger.stock_snapshot(db, product_id))


@router.get("/products/{product_id}/history", response_model=List[schemas.InventoryLogOut])
def get_stock_history(
    product_id: int,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_admin: CurrentUser = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    stock_ledger.stock_snapshot(db, product_id)
    return stock_ledger.inventory_history(db, product_id, limit=limit, offset=offset)


# -----------------------------
# Reservations
# -----------------------------


@router.post("/reservations", response_model=schemas.ReservationOut, status_code=status.HTTP_201_CREATED)
def reserve_stock(
    body: schemas.ReservationCreate,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Hold stock for the caller's cart until the reservation expires."""
    cart = carts.get_or_create_cart(db, current_user.id)
    ttl = dt.timedelta(minutes=body.ttl_minutes or settings.reservation_ttl_minutes)
    return reservations.reserve(db, body.product_id, cart.id, body.quantity, ttl=ttl)


@router.post("/reservations/{reservation_id}/cancel")
def cancel_reservation(
    reservation_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    reservation = reservations.get_reservation(db, reservation_id)
    if reservation is None:
        raise ReservationNotFound(reservation_id)
    if not current_user.is_admin:
        owner = db.query(Cart.user_id).filter(Cart.id == reservation.cart_id).scalar()
        if owner != current_user.id:
            raise Forbidden("You are not allowed to cancel this reservation", reservation_id=reservation_id)

    if not reservations.cancel(db, reservation_id):
        raise ReservationNotFound(reservation_id)
    return {"message": "Reservation cancelled", "reservation_id": reservation_id}


@router.post("/cleanup-expired", response_model=schemas.CleanupOut)
def cleanup_expired_reservations(
    current_admin: CurrentUser = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    return {"deleted": reservations.cleanup_expired(db)}


# -----------------------------
# Reports
# -----------------------------


@router.get("/alerts", response_model=List[schemas.LowStockAlertOut])
def get_low_stock_alerts(
    current_admin: CurrentUser = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    return stock_ledger.low_stock_alerts(db)


@router.get("/report", response_model=schemas.InventoryReportOut)
def get_inventory_report(
    current_admin: CurrentUser = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    return stock_ledger.inventory_report(db)
