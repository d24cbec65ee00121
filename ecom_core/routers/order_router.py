from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from .. import orders, schemas
from ..auth import CurrentUser, get_current_admin, get_current_user
from ..database import get_db
from ..deps import get_publisher
from ..messaging import EventPublisher

router = APIRouter(prefix="/orders", tags=["Orders"])


def _items(order):
    return [{"product_id": i.product_id, "quantity": i.quantity} for i in order.items]


@router.post("/", response_model=schemas.OrderOut, status_code=status.HTTP_201_CREATED)
def checkout_my_cart(
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
):
    """Turn the caller's cart into an order awaiting payment."""
    order = orders.checkout(db, current_user.id)
    publisher.publish(
        "order.created",
        {
            "order_id": order.id,
            "user_id": order.user_id,
            "total": float(Decimal(str(order.total))),
            "items": _items(order),
        },
    )
    return order


@router.get("/me", response_model=schemas.OrderListResponse)
def get_my_orders(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    found, total = orders.list_orders_for_user(db, current_user.id, skip=skip, limit=limit)
    return {"orders": found, "total": total, "skip": skip, "limit": limit}


@router.get("/", response_model=schemas.OrderListResponse)
def get_all_orders(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    current_admin: CurrentUser = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    found, total = orders.list_all_orders(db, skip=skip, limit=limit)
    return {"orders": found, "total": total, "skip": skip, "limit": limit}


@router.get("/{order_id}", response_model=schemas.OrderOut)
def get_order(
    order_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return orders.get_order(db, current_user, order_id)


@router.put("/{order_id}/status", response_model=schemas.OrderOut)
def update_order_status(
    order_id: int,
    body: schemas.OrderStatusUpdate,
    current_admin: CurrentUser = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    return orders.update_status(db, order_id, body.status)


@router.post("/{order_id}/pay", response_model=schemas.OrderOut)
def pay_order(
    order_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
):
    """Pay an order directly, without the payment provider."""
    order = orders.pay_order(db, current_user, order_id)
    if order is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error": "order_not_payable",
                "message": "Order is not awaiting payment or some items are out of stock",
                "order_id": order_id,
            },
        )
    publisher.publish(
        "order.paid",
        {
            "order_id": order.id,
            "user_id": order.user_id,
            "total": float(Decimal(str(order.total))),
            "items": _items(order),
        },
    )
    return order
