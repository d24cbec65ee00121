from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from .enums import InventoryChangeType, OrderStatus, PaymentStatus


# -----------------------------
# Products
# -----------------------------


class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    price: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    stock: int = Field(0, ge=0)
    low_stock_threshold: Optional[int] = Field(10, ge=0)
    track_inventory: bool = True


class ProductOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    price: Decimal
    stock: int
    low_stock_threshold: Optional[int] = None
    track_inventory: bool

    model_config = {"from_attributes": True}


# -----------------------------
# Cart
# -----------------------------


class CartItemAdd(BaseModel):
    product_id: int = Field(..., gt=0, description="Product ID")
    quantity: int = Field(..., gt=0, description="Product quantity")


class CartItemOut(BaseModel):
    id: int
    product_id: int
    quantity: int

    model_config = {"from_attributes": True}


class CartOut(BaseModel):
    id: int
    user_id: int
    items: List[CartItemOut] = []

    model_config = {"from_attributes": True}


# -----------------------------
# Orders
# -----------------------------


class OrderItemOut(BaseModel):
    id: int
    order_id: int
    product_id: int
    quantity: int
    price: Decimal

    model_config = {"from_attributes": True}


class OrderOut(BaseModel):
    id: int
    user_id: int
    total: Decimal
    status: OrderStatus
    payment_id: Optional[int] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    items: List[OrderItemOut] = []

    model_config = {"from_attributes": True}


class OrderListResponse(BaseModel):
    orders: List[OrderOut]
    total: int
    skip: int
    limit: int


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


# -----------------------------
# Payments
# -----------------------------


class PaymentIntentCreate(BaseModel):
    order_id: int = Field(..., gt=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)


class PaymentIntentOut(BaseModel):
    payment_id: int
    order_id: int
    payment_intent_id: str
    client_secret: str
    amount: Decimal
    currency: str


class PaymentOut(BaseModel):
    id: int
    order_id: int
    external_intent_id: str
    amount: Decimal
    currency: str
    status: PaymentStatus
    payment_method: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class WebhookAck(BaseModel):
    received: bool = True
    event_id: str
    duplicate: bool = False
    processed: bool = False


# -----------------------------
# Inventory
# -----------------------------


class StockOut(BaseModel):
    product_id: int
    name: str
    on_hand: int
    reserved: int
    available: int
    track_inventory: bool
    low_stock_threshold: Optional[int] = None


class StockUpdate(BaseModel):
    stock: int = Field(..., ge=0)
    notes: Optional[str] = Field(None, max_length=500)


class ReservationCreate(BaseModel):
    product_id: int = Field(..., gt=0)
    quantity: int = Field(..., gt=0)
    ttl_minutes: Optional[int] = Field(None, gt=0, le=24 * 60)


class ReservationOut(BaseModel):
    id: int
    product_id: int
    cart_id: int
    quantity: int
    reserved_at: datetime
    expires_at: datetime

    model_config = {"from_attributes": True}


class InventoryLogOut(BaseModel):
    id: int
    product_id: int
    change_type: InventoryChangeType
    quantity_change: int
    previous_stock: int
    new_stock: int
    reference_id: Optional[int] = None
    notes: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class LowStockAlertOut(BaseModel):
    product_id: int
    product_name: str
    current_stock: int
    available_stock: int
    threshold: int
    is_critical: bool

    model_config = {"from_attributes": True}


class InventoryReportOut(BaseModel):
    total_products: int
    low_stock_products: int
    out_of_stock_products: int
    total_reserved: int
    total_available: int
    alerts: List[LowStockAlertOut] = []

    model_config = {"from_attributes": True}


class CleanupOut(BaseModel):
    deleted: int
