import pytest

from conftest import add_cart, add_product
from ecom_core import reservations
from ecom_core.enums import InventoryChangeType
from ecom_core.errors import InsufficientStock, ProductNotFound, ProductNotTracked
from ecom_core.models import InventoryLog, Product
from ecom_core.stock_ledger import (
    available_stock,
    inventory_history,
    inventory_report,
    low_stock_alerts,
    stock_snapshot,
)
from ecom_core.stock_mutator import adjust_stock, set_stock


def test_set_stock_log_replays_to_final_stock(db):
    product = add_product(db, stock=10)

    for new_on_hand in (15, 4, 4, 30, 0):
        assert set_stock(db, product.id, new_on_hand) is True

    logs = (
        db.query(InventoryLog)
        .filter(InventoryLog.product_id == product.id)
        .order_by(InventoryLog.id)
        .all()
    )
    assert len(logs) == 5

    on_hand = 10
    replayed = []
    for entry in logs:
        assert entry.previous_stock == on_hand
        on_hand += entry.quantity_change
        assert entry.new_stock == on_hand
        replayed.append(on_hand)

    assert replayed == [15, 4, 4, 30, 0]
    db.refresh(product)
    assert product.stock == 10 + sum(e.quantity_change for e in logs)
    assert [e.change_type for e in logs[:2]] == [InventoryChangeType.STOCK_IN, InventoryChangeType.STOCK_OUT]


def test_set_stock_missing_product_returns_false(db):
    assert set_stock(db, 999, 5) is False
    assert db.query(InventoryLog).count() == 0


def test_negative_stock_is_rejected_and_rolled_back(db):
    product = add_product(db, stock=3)

    with pytest.raises(InsufficientStock):
        set_stock(db, product.id, -1, InventoryChangeType.STOCK_OUT)

    db.refresh(product)
    assert product.stock == 3
    assert db.query(InventoryLog).count() == 0


def test_stock_cannot_drop_below_live_reservations(db):
    product = add_product(db, stock=10)
    cart = add_cart(db, user_id=1)
    reservations.reserve(db, product.id, cart.id, 8)

    with pytest.raises(InsufficientStock) as e:
        set_stock(db, product.id, 3)
    assert (e.value.available, e.value.requested) == (2, 7)

    db.refresh(product)
    assert product.stock == 10
    assert available_stock(db, product.id) == 2

    assert set_stock(db, product.id, 8) is True
    assert available_stock(db, product.id) == 0
    assert set_stock(db, product.id, 12) is True


def test_sale_may_consume_the_buyers_own_holds(db):
    product = add_product(db, stock=5)
    cart = add_cart(db, user_id=1)
    reservations.reserve(db, product.id, cart.id, 5)

    with pytest.raises(InsufficientStock):
        adjust_stock(db, product.id, -5, InventoryChangeType.SOLD)
    db.rollback()

    adjust_stock(db, product.id, -5, InventoryChangeType.SOLD, exclude_cart_id=cart.id)
    db.commit()
    db.refresh(product)
    assert product.stock == 0


def test_missing_threshold_stays_empty(db):
    product = add_product(db, name="Unwatched", stock=0, threshold=None)
    db.refresh(product)
    assert product.low_stock_threshold is None
    assert low_stock_alerts(db) == []


def test_adjust_stock_raises_for_missing_product(db):
    with pytest.raises(ProductNotFound):
        adjust_stock(db, 999, -1, InventoryChangeType.SOLD)
    db.rollback()


def test_snapshot_and_untracked_products(db):
    product = add_product(db, stock=6)
    cart = add_cart(db, user_id=1)
    reservations.reserve(db, product.id, cart.id, 2)

    snap = stock_snapshot(db, product.id)
    assert (snap.on_hand, snap.reserved, snap.available) == (6, 2, 4)

    service = add_product(db, name="Gift wrapping", stock=0, tracked=False)
    with pytest.raises(ProductNotTracked):
        available_stock(db, service.id)
    with pytest.raises(ProductNotFound):
        stock_snapshot(db, 4242)


def test_low_stock_alerts_ordered_by_available(db):
    plenty = add_product(db, name="Plenty", stock=50, threshold=5)
    low = add_product(db, name="Low", stock=4, threshold=5)
    empty = add_product(db, name="Empty", stock=0, threshold=5)
    add_product(db, name="No threshold", stock=0, threshold=None)
    add_product(db, name="Untracked", stock=0, threshold=5, tracked=False)

    cart = add_cart(db, user_id=1)
    reservations.reserve(db, plenty.id, cart.id, 47)

    alerts = low_stock_alerts(db)
    assert [a.product_id for a in alerts] == [empty.id, plenty.id, low.id]
    assert alerts[0].is_critical is True
    assert alerts[1].is_critical is False
    assert alerts[1].available_stock == 3
    assert alerts[1].current_stock == 50
    assert alerts[2].available_stock == 4


def test_inventory_report_totals(db):
    a = add_product(db, name="A", stock=10, threshold=2)
    add_product(db, name="B", stock=0, threshold=2)
    cart = add_cart(db, user_id=1)
    reservations.reserve(db, a.id, cart.id, 3)

    report = inventory_report(db)
    assert report.total_products == 2
    assert report.total_reserved == 3
    assert report.total_available == 7
    assert report.out_of_stock_products == 1
    assert report.low_stock_products == len(report.alerts) == 1


def test_history_is_newest_first(db):
    product = add_product(db, stock=1)
    set_stock(db, product.id, 2)
    set_stock(db, product.id, 3)

    history = inventory_history(db, product.id)
    assert [h.new_stock for h in history] == [3, 2]
    assert inventory_history(db, product.id, limit=1, offset=1)[0].new_stock == 2
    assert db.query(Product).count() == 1
