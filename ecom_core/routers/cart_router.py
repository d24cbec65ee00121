from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session

from .. import carts, schemas
from ..auth import CurrentUser, get_current_user
from ..database import get_db

router = APIRouter(prefix="/cart", tags=["Cart"])


@router.get("", response_model=schemas.CartOut)
def get_my_cart(
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Return the caller's cart, creating an empty one on first use."""
    return carts.get_or_create_cart(db, current_user.id)


@router.post("/items", response_model=schemas.CartOut, status_code=status.HTTP_201_CREATED)
def add_cart_item(
    body: schemas.CartItemAdd,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return carts.add_item(db, current_user.id, body.product_id, body.quantity)


@router.delete("/items/{product_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_cart_item(
    product_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if not carts.remove_item(db, current_user.id, product_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="This product is not in your cart",
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
