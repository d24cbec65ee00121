from typing import Optional

from sqlalchemy.orm import Session

from .database import transaction
from .errors import ProductNotFound
from .models import Cart, CartItem, Product


def get_cart_by_user(db: Session, user_id: int) -> Optional[Cart]:
    return db.query(Cart).filter(Cart.user_id == user_id).first()


def get_or_create_cart(db: Session, user_id: int) -> Cart:
    cart = get_cart_by_user(db, user_id)
    if cart is not None:
        return cart
    with transaction(db):
        cart = Cart(user_id=user_id)
        db.add(cart)
        db.flush()
    return cart


def add_item(db: Session, user_id: int, product_id: int, quantity: int) -> Cart:
    """Add ``quantity`` of a product to the user's cart, merging with an existing line."""
    if quantity <= 0:
        raise ValueError("quantity must be > 0")

    cart = get_or_create_cart(db, user_id)
    with transaction(db):
        if db.query(Product.id).filter(Product.id == product_id).first() is None:
            raise ProductNotFound(product_id)

        existing = (
            db.query(CartItem)
            .filter(CartItem.cart_id == cart.id, CartItem.product_id == product_id)
            .first()
        )
        if existing is None:
            db.add(CartItem(cart_id=cart.id, product_id=product_id, quantity=quantity))
        else:
            existing.quantity += quantity
        db.flush()
    db.refresh(cart)
    return cart


def remove_item(db: Session, user_id: int, product_id: int) -> bool:
    cart = get_cart_by_user(db, user_id)
    if cart is None:
        return False
    with transaction(db):
        deleted = (
            db.query(CartItem)
            .filter(CartItem.cart_id == cart.id, CartItem.product_id == product_id)
            .delete(synchronize_session=False)
        )
    return bool(deleted)


def clear_cart(db: Session, cart: Cart) -> None:
    """Remove every line from ``cart`` inside the caller's unit of work."""
    db.query(CartItem).filter(CartItem.cart_id == cart.id).delete(synchronize_session=False)
    db.flush()
    db.expire(cart, ["items"])
