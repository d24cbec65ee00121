from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import schemas
from ..auth import CurrentUser, get_current_admin
from ..database import get_db, transaction
from ..enums import InventoryChangeType
from ..errors import ProductNotFound
from ..models import Product
from ..stock_mutator import apply_stock_change

router = APIRouter(prefix="/products", tags=["Products"])


@router.post("/", response_model=schemas.ProductOut, status_code=status.HTTP_201_CREATED)
def create_product(
    body: schemas.ProductCreate,
    current_admin: CurrentUser = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    """Create a product; opening stock is logged as ``stock_in``."""
    data = body.model_dump()
    opening_stock = data.pop("stock")
    try:
        with transaction(db):
            product = Product(stock=0, **data)
            db.add(product)
            db.flush()
            if opening_stock:
                apply_stock_change(
                    db,
                    product.id,
                    opening_stock,
                    InventoryChangeType.STOCK_IN,
                    notes="Opening stock",
                )
    except IntegrityError:
        # DB-level unique constraint
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Product name already exists")
    db.refresh(product)
    return product


@router.get("/", response_model=List[schemas.ProductOut])
def list_products(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    return db.query(Product).order_by(Product.id).offset(skip).limit(limit).all()


@router.get("/{product_id}", response_model=schemas.ProductOut)
def get_product(product_id: int, db: Session = Depends(get_db)):
    product = db.query(Product).filter(Product.id == product_id).first()
    if product is None:
        raise ProductNotFound(product_id)
    return product
