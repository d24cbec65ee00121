"""Webhook reconciliation and refunds against the stub gateway."""
import json

import pytest

from conftest import add_cart, add_order, add_product, admin, user
from ecom_core import orders, payments, reservations
from ecom_core.database import transaction
from ecom_core.enums import InventoryChangeType, OrderStatus, PaymentStatus
from ecom_core.errors import Forbidden, InvalidPaymentStatus, InvalidWebhookPayload, PaymentNotFound
from ecom_core.models import InventoryLog, PaymentWebhookEvent


def _event(event_id, event_type, intent_id, **object_fields):
    return json.dumps(
        {"id": event_id, "type": event_type, "data": {"object": {"id": intent_id, **object_fields}}}
    ).encode("utf-8")


@pytest.fixture
def processing_order(db, gateway):
    product = add_product(db, stock=5)
    order = add_order(db, 1, product, 2)
    result = orders.begin_gateway_payment(db, gateway, user(1), order.id, "usd")
    return product, order, result.payment


def test_succeeded_event_applied_once_over_three_deliveries(db, gateway, processing_order):
    product, order, payment = processing_order
    body = _event("evt_1", payments.SUCCEEDED, payment.external_intent_id)

    outcomes = [payments.handle_webhook(db, gateway, body, None) for _ in range(3)]

    assert outcomes[0].processed is True
    assert outcomes[0].duplicate is False
    assert [key for key, _ in outcomes[0].events] == ["payment.succeeded", "order.paid"]
    assert all(o.duplicate and o.events == [] for o in outcomes[1:])

    db.refresh(payment)
    db.refresh(order)
    db.refresh(product)
    assert payment.status == PaymentStatus.SUCCEEDED
    assert order.status == OrderStatus.PAID
    assert product.stock == 3
    assert db.query(InventoryLog).filter(InventoryLog.change_type == InventoryChangeType.SOLD).count() == 1

    (record,) = db.query(PaymentWebhookEvent).all()
    assert record.delivery_count == 3
    assert record.processed is True
    assert record.error_message is None


def test_succeeded_handler_is_idempotent_across_event_ids(db, gateway, processing_order):
    product, order, payment = processing_order

    with transaction(db):
        first = payments.payment_succeeded(db, payment.external_intent_id)
    with transaction(db):
        second = payments.payment_succeeded(db, payment.external_intent_id)

    assert len(first) == 2
    assert second == []
    db.refresh(product)
    assert product.stock == 3


def test_success_releases_buyer_reservations(db, gateway):
    product = add_product(db, stock=5)
    cart = add_cart(db, user_id=1)
    reservations.reserve(db, product.id, cart.id, 2)
    order = add_order(db, 1, product, 2)
    result = orders.begin_gateway_payment(db, gateway, user(1), order.id, "usd")

    payments.handle_webhook(db, gateway, _event("evt_r", payments.SUCCEEDED, result.payment.external_intent_id), None)

    db.refresh(product)
    assert product.stock == 3
    assert db.query(InventoryLog).filter(InventoryLog.change_type == InventoryChangeType.UNRESERVED).count() == 1


def test_failed_event_returns_order_to_pending(db, gateway, processing_order):
    product, order, payment = processing_order
    body = _event(
        "evt_f",
        payments.FAILED,
        payment.external_intent_id,
        last_payment_error={"message": "Your card was declined."},
    )

    outcome = payments.handle_webhook(db, gateway, body, None)

    assert outcome.processed is True
    ((key, payload),) = outcome.events
    assert key == "payment.failed"
    assert payload["reason"] == "Your card was declined."
    db.refresh(payment)
    db.refresh(order)
    assert payment.status == PaymentStatus.FAILED
    assert order.status == OrderStatus.PENDING_PAYMENT

    # the buyer can start over with a fresh intent
    retry = orders.begin_gateway_payment(db, gateway, user(1), order.id, "usd")
    assert retry.payment.id != payment.id


def test_success_on_shipped_order_only_updates_payment(db, gateway, processing_order):
    product, order, payment = processing_order
    orders.update_status(db, order.id, OrderStatus.SHIPPED)

    payments.handle_webhook(db, gateway, _event("evt_s", payments.SUCCEEDED, payment.external_intent_id), None)

    db.refresh(payment)
    db.refresh(order)
    db.refresh(product)
    assert payment.status == PaymentStatus.SUCCEEDED
    assert order.status == OrderStatus.SHIPPED
    assert product.stock == 5


def test_success_without_stock_keeps_the_charge_refundable(db, gateway, processing_order):
    product, order, payment = processing_order
    product.stock = 1
    db.commit()

    outcome = payments.handle_webhook(db, gateway, _event("evt_x", payments.SUCCEEDED, payment.external_intent_id), None)

    assert outcome.processed is True
    assert "Insufficient stock" in outcome.error
    assert [key for key, _ in outcome.events] == ["payment.succeeded"]
    db.refresh(payment)
    db.refresh(order)
    db.refresh(product)
    assert payment.status == PaymentStatus.SUCCEEDED
    assert order.status == OrderStatus.PAYMENT_PROCESSING
    assert order.payment_id == payment.id
    assert product.stock == 1
    assert db.query(InventoryLog).filter(InventoryLog.change_type == InventoryChangeType.SOLD).count() == 0
    record = db.query(PaymentWebhookEvent).one()
    assert record.error_message == outcome.error

    # the captured money goes back through a refund, not an intent cancel
    payments.refund_payment(db, gateway, payment.id)
    assert gateway.refunded == [payment.external_intent_id]
    assert gateway.canceled == []
    db.refresh(order)
    assert order.status == OrderStatus.REFUNDED


def test_retry_after_failure_cancels_the_failed_intent(db, gateway, processing_order):
    _, order, first = processing_order
    payments.handle_webhook(db, gateway, _event("evt_f1", payments.FAILED, first.external_intent_id), None)

    second = orders.begin_gateway_payment(db, gateway, user(1), order.id, "usd").payment

    assert gateway.canceled == [first.external_intent_id]
    db.refresh(first)
    assert first.status == PaymentStatus.CANCELED

    # a late success on the retired intent does not pay the order
    payments.handle_webhook(db, gateway, _event("evt_s1", payments.SUCCEEDED, first.external_intent_id), None)
    db.refresh(first)
    db.refresh(order)
    assert first.status == PaymentStatus.CANCELED
    assert order.status == OrderStatus.PAYMENT_PROCESSING
    assert order.payment_id == second.id


def test_unknown_intent_stays_unprocessed(db, gateway):
    outcome = payments.handle_webhook(db, gateway, _event("evt_u", payments.SUCCEEDED, "pi_missing"), None)

    assert outcome.processed is False
    assert outcome.error is not None
    record = db.query(PaymentWebhookEvent).one()
    assert record.processed is False
    assert record.processed_at is None


def test_unhandled_event_type_is_acknowledged(db, gateway):
    outcome = payments.handle_webhook(db, gateway, _event("evt_c", "charge.refunded", "ch_1"), None)
    assert outcome.processed is True
    assert outcome.error is None


@pytest.mark.parametrize(
    "raw",
    [b"not json", b"[]", json.dumps({"type": "payment_intent.succeeded"}).encode()],
)
def test_malformed_webhook_is_rejected_before_storage(db, gateway, raw):
    with pytest.raises(InvalidWebhookPayload):
        payments.handle_webhook(db, gateway, raw, None)
    assert db.query(PaymentWebhookEvent).count() == 0


# -----------------------------
# Refunds
# -----------------------------


def test_refund_succeeded_payment_keeps_stock(db, gateway, processing_order):
    product, order, payment = processing_order
    payments.handle_webhook(db, gateway, _event("evt_1", payments.SUCCEEDED, payment.external_intent_id), None)

    refunded = payments.refund_payment(db, gateway, payment.id)

    assert gateway.refunded == [payment.external_intent_id]
    assert refunded.status == PaymentStatus.CANCELED
    db.refresh(order)
    db.refresh(product)
    assert order.status == OrderStatus.REFUNDED
    assert product.stock == 3


def test_refund_pending_payment_cancels_intent(db, gateway, processing_order):
    _, order, payment = processing_order

    payments.refund_payment(db, gateway, payment.id)

    assert gateway.canceled == [payment.external_intent_id]
    assert gateway.refunded == []


def test_refund_rejects_failed_or_missing_payment(db, gateway, processing_order):
    _, _, payment = processing_order
    payments.handle_webhook(db, gateway, _event("evt_f", payments.FAILED, payment.external_intent_id), None)

    with pytest.raises(InvalidPaymentStatus):
        payments.refund_payment(db, gateway, payment.id)
    with pytest.raises(PaymentNotFound):
        payments.refund_payment(db, gateway, 999)
    assert gateway.refunded == gateway.canceled == []


def test_get_payment_by_order_checks_access(db, gateway, processing_order):
    _, order, payment = processing_order

    assert payments.get_payment_by_order(db, user(1), order.id).id == payment.id
    assert payments.get_payment_by_order(db, admin(), order.id).id == payment.id
    with pytest.raises(Forbidden):
        payments.get_payment_by_order(db, user(2), order.id)
