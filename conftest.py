"""Shared fixtures: in-memory SQLite, a stub payment gateway and JWT helpers."""
import datetime as dt
from decimal import Decimal
from itertools import count

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ecom_core.auth import CurrentUser
from ecom_core.config import Settings
from ecom_core.enums import Role
from ecom_core.errors import GatewayError
from ecom_core.gateway import PaymentIntent, to_minor_units
from ecom_core.messaging import EventPublisher
from ecom_core.models import Base, Cart, CartItem, Order, OrderItem, Product

JWT_SECRET = "test-secret"


class StubGateway:
    """Payment gateway stub: records calls, never touches the network."""

    def __init__(self):
        self._ids = count(1)
        self.created = []
        self.refunded = []
        self.canceled = []
        self.fail_create = False

    def create_payment_intent(self, amount, currency, metadata):
        to_minor_units(amount)
        if self.fail_create:
            raise GatewayError("Payment provider unreachable: timeout", retryable=True)
        intent = PaymentIntent(id=f"pi_test_{next(self._ids)}", client_secret="secret_test")
        self.created.append((intent.id, Decimal(str(amount)), currency, dict(metadata)))
        return intent

    def refund(self, intent_id):
        self.refunded.append(intent_id)

    def cancel(self, intent_id):
        self.canceled.append(intent_id)

    def verify_webhook(self, payload, signature):
        return None


class RecordingPublisher(EventPublisher):
    def __init__(self):
        super().__init__("")
        self.published = []

    def publish(self, routing_key, payload):
        self.published.append((routing_key, payload))


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        jwt_secret=JWT_SECRET,
        reservation_sweep_seconds=0,
    )


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway():
    return StubGateway()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def client(settings, session_factory, gateway, publisher):
    from ecom_core.main import create_app

    app = create_app(settings, session_factory=session_factory, gateway=gateway, publisher=publisher)
    return TestClient(app)


# -----------------------------
# Builders
# -----------------------------


def make_token(user_id: int, role: str = "user") -> str:
    return jwt.encode({"sub": str(user_id), "role": role}, JWT_SECRET, algorithm="HS256")


def auth_header(user_id: int, role: str = "user") -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}


def user(user_id: int = 1) -> CurrentUser:
    return CurrentUser(id=user_id, role=Role.USER)


def admin(user_id: int = 99) -> CurrentUser:
    return CurrentUser(id=user_id, role=Role.ADMIN)


def add_product(db, name="Widget", price="10.00", stock=10, threshold=None, tracked=True) -> Product:
    product = Product(
        name=name,
        price=Decimal(price),
        stock=stock,
        low_stock_threshold=threshold,
        track_inventory=tracked,
    )
    db.add(product)
    db.commit()
    return product


def add_cart(db, user_id, lines=()) -> Cart:
    cart = Cart(user_id=user_id)
    db.add(cart)
    db.flush()
    for product_id, quantity in lines:
        db.add(CartItem(cart_id=cart.id, product_id=product_id, quantity=quantity))
    db.commit()
    return cart


def add_order(db, user_id, product, quantity, status=None) -> Order:
    price = Decimal(str(product.price))
    order = Order(user_id=user_id, total=price * quantity)
    if status is not None:
        order.status = status
    db.add(order)
    db.flush()
    db.add(OrderItem(order_id=order.id, product_id=product.id, quantity=quantity, price=price))
    db.commit()
    return order


def past(minutes: int = 1) -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc) - dt.timedelta(minutes=minutes)
