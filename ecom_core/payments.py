"""Payment reconciliation: webhook intake, payment state transitions and refunds.

Webhook deliveries are stored before they are acted on, keyed by the
provider's event id, so a redelivered event is counted but never applied
twice. Each handler below locks the payment row first, which makes it safe
to run again for the same intent.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .auth import CurrentUser
from .clock import utcnow
from .database import transaction
from .enums import ACTIVE_PAYMENT_STATUSES, OrderStatus, PaymentStatus
from .errors import (
    InsufficientStock,
    InvalidPaymentStatus,
    InvalidWebhookPayload,
    PaymentNotFound,
    ShopError,
)
from .models import Payment, PaymentWebhookEvent
from .orders import finalize_sale, get_order, lock_order, mark_payment_failed, mark_refunded

logger = logging.getLogger(__name__)

Event = Tuple[str, Dict[str, Any]]

SUCCEEDED = "payment_intent.succeeded"
FAILED = "payment_intent.payment_failed"
PROCESSING = "payment_intent.processing"
CANCELED = "payment_intent.canceled"


@dataclass
class WebhookOutcome:
    event_id: str
    event_type: str
    duplicate: bool = False
    processed: bool = False
    error: Optional[str] = None
    events: List[Event] = field(default_factory=list)


# -----------------------------
# Lookups
# -----------------------------


def _lock_payment_by_intent(db: Session, intent_id: str) -> Payment:
    payment = (
        db.query(Payment)
        .filter(Payment.external_intent_id == intent_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if payment is None:
        raise PaymentNotFound(f"No payment for intent {intent_id}", intent_id=intent_id)
    return payment


def _lock_payment(db: Session, payment_id: int) -> Payment:
    payment = (
        db.query(Payment)
        .filter(Payment.id == payment_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if payment is None:
        raise PaymentNotFound(f"Payment {payment_id} not found", payment_id=payment_id)
    return payment


def get_payment_by_order(db: Session, caller: CurrentUser, order_id: int) -> Payment:
    """Latest payment attempt for an order the caller may see."""
    get_order(db, caller, order_id)
    payment = (
        db.query(Payment)
        .filter(Payment.order_id == order_id)
        .order_by(Payment.id.desc())
        .first()
    )
    if payment is None:
        raise PaymentNotFound(f"No payment for order {order_id}", order_id=order_id)
    return payment


def _payment_event(payment: Payment, order, **extra) -> Dict[str, Any]:
    return {
        "order_id": payment.order_id,
        "user_id": order.user_id,
        "payment_id": payment.id,
        "intent_id": payment.external_intent_id,
        "amount": float(Decimal(str(payment.amount))),
        "currency": payment.currency,
        "provider": "stripe",
        **extra,
    }


# -----------------------------
# Intent state transitions (caller's unit of work)
# -----------------------------


def _settle_success(db: Session, intent_id: str) -> Tuple[List[Event], Optional[InsufficientStock]]:
    payment = _lock_payment_by_intent(db, intent_id)
    if payment.status == PaymentStatus.SUCCEEDED:
        logger.info("payment already succeeded", extra={"intent_id": intent_id})
        return [], None
    if payment.status == PaymentStatus.CANCELED:
        logger.warning("success reported for canceled payment", extra={"intent_id": intent_id})
        return [], None

    payment.status = PaymentStatus.SUCCEEDED
    order = lock_order(db, payment.order_id)
    events: List[Event] = [("payment.succeeded", _payment_event(payment, order))]

    if order.status in (OrderStatus.PAYMENT_PROCESSING, OrderStatus.PENDING_PAYMENT):
        order.payment_id = payment.id
        db.flush()
        # the money is captured either way; only the sale rolls back on a shortage
        try:
            with db.begin_nested():
                finalize_sale(db, order)
        except InsufficientStock as e:
            logger.error(
                "payment captured but sale could not be completed",
                extra={"intent_id": intent_id, "order_id": order.id, "product_id": e.product_id},
            )
            return events, e
        events.append(
            (
                "order.paid",
                {
                    "order_id": order.id,
                    "user_id": order.user_id,
                    "total": float(Decimal(str(order.total))),
                    "items": [{"product_id": i.product_id, "quantity": i.quantity} for i in order.items],
                },
            )
        )
    else:
        logger.warning(
            "payment succeeded for order not awaiting payment",
            extra={"order_id": order.id, "status": order.status.value, "intent_id": intent_id},
        )

    db.flush()
    logger.info("payment succeeded", extra={"intent_id": intent_id, "order_id": order.id})
    return events, None


def payment_succeeded(db: Session, intent_id: str) -> List[Event]:
    """Mark the intent's payment succeeded and complete the sale.

    A second call for the same intent changes nothing. If the order is no
    longer awaiting payment, only the payment row is updated. If the sale
    is short of stock the payment still becomes ``succeeded`` and the order
    keeps waiting, so an admin can refund the charge.
    """
    events, _ = _settle_success(db, intent_id)
    return events


def payment_failed(db: Session, intent_id: str, reason: Optional[str] = None) -> List[Event]:
    """Mark the intent's payment failed and let the buyer try again."""
    payment = _lock_payment_by_intent(db, intent_id)
    if payment.status not in ACTIVE_PAYMENT_STATUSES:
        logger.info(
            "failure ignored for settled payment",
            extra={"intent_id": intent_id, "status": payment.status.value},
        )
        return []

    payment.status = PaymentStatus.FAILED
    order = lock_order(db, payment.order_id)
    mark_payment_failed(db, order)
    db.flush()
    logger.info("payment failed", extra={"intent_id": intent_id, "order_id": order.id, "reason": reason})
    return [("payment.failed", _payment_event(payment, order, reason=reason))]


def payment_processing(db: Session, intent_id: str) -> List[Event]:
    payment = _lock_payment_by_intent(db, intent_id)
    if payment.status == PaymentStatus.PENDING:
        payment.status = PaymentStatus.PROCESSING
        db.flush()
    return []


def payment_canceled(db: Session, intent_id: str) -> List[Event]:
    """The provider canceled the intent; the order goes back to awaiting payment."""
    payment = _lock_payment_by_intent(db, intent_id)
    if payment.status not in ACTIVE_PAYMENT_STATUSES:
        return []
    payment.status = PaymentStatus.CANCELED
    order = lock_order(db, payment.order_id)
    mark_payment_failed(db, order)
    db.flush()
    return []


# -----------------------------
# Webhook intake
# -----------------------------


def parse_event(raw_payload: bytes) -> Tuple[str, str, Dict[str, Any]]:
    try:
        payload = json.loads(raw_payload)
    except (ValueError, UnicodeDecodeError) as e:
        raise InvalidWebhookPayload(f"Invalid webhook payload: {e}") from e

    if not isinstance(payload, dict):
        raise InvalidWebhookPayload("Webhook payload must be a JSON object")
    event_id = payload.get("id")
    event_type = payload.get("type")
    if not isinstance(event_id, str) or not event_id or not isinstance(event_type, str) or not event_type:
        raise InvalidWebhookPayload("Webhook payload needs string 'id' and 'type'")
    return event_id, event_type, payload


def _intent_id(payload: Dict[str, Any]) -> str:
    data_object = (payload.get("data") or {}).get("object") or {}
    intent_id = data_object.get("id") if isinstance(data_object, dict) else None
    if not intent_id:
        raise InvalidWebhookPayload("Webhook payload has no data.object.id")
    return intent_id


def _record_delivery(db: Session, event_id: str, event_type: str, payload: Dict[str, Any]) -> PaymentWebhookEvent:
    """Store a delivery, or count it against the row an earlier delivery created."""
    try:
        with transaction(db):
            record = PaymentWebhookEvent(
                external_event_id=event_id,
                event_type=event_type,
                payload=payload,
                processed=False,
            )
            db.add(record)
            db.flush()
        return record
    except IntegrityError:
        pass

    with transaction(db):
        record = (
            db.query(PaymentWebhookEvent)
            .filter(PaymentWebhookEvent.external_event_id == event_id)
            .with_for_update()
            .populate_existing()
            .one()
        )
        record.delivery_count += 1
        db.flush()
    return record


def _dispatch(db: Session, event_type: str, payload: Dict[str, Any]) -> Tuple[List[Event], Optional[ShopError]]:
    """Apply one event; returns its events and an error that did not roll the event back."""
    if event_type == SUCCEEDED:
        return _settle_success(db, _intent_id(payload))
    if event_type == FAILED:
        data_object = (payload.get("data") or {}).get("object") or {}
        reason = (data_object.get("last_payment_error") or {}).get("message")
        return payment_failed(db, _intent_id(payload), reason=reason), None
    if event_type == PROCESSING:
        return payment_processing(db, _intent_id(payload)), None
    if event_type == CANCELED:
        return payment_canceled(db, _intent_id(payload)), None
    logger.info("unhandled webhook event type", extra={"event_type": event_type})
    return [], None


def handle_webhook(db: Session, gateway, raw_payload: bytes, signature: Optional[str]) -> WebhookOutcome:
    """Authenticate, store and apply one webhook delivery.

    Malformed or unauthenticated payloads raise ``InvalidWebhookPayload``
    before anything is stored. Once stored, processing failures are logged
    and written to the webhook row instead of being raised. A failure that a
    redelivery could fix (unknown intent, unexpected error) leaves the row
    unprocessed.
    """
    gateway.verify_webhook(raw_payload, signature)
    event_id, event_type, payload = parse_event(raw_payload)
    outcome = WebhookOutcome(event_id=event_id, event_type=event_type)

    record = _record_delivery(db, event_id, event_type, payload)
    record_id = record.id
    if record.processed:
        outcome.duplicate = True
        outcome.processed = True
        logger.info(
            "duplicate webhook delivery",
            extra={"event_id": event_id, "delivery_count": record.delivery_count},
        )
        return outcome

    retry = False
    try:
        with transaction(db):
            events, partial_error = _dispatch(db, event_type, payload)
        outcome.events = events
        if partial_error is not None:
            outcome.error = partial_error.message
    except PaymentNotFound as e:
        outcome.error = e.message
        retry = True
        logger.warning("webhook for unknown payment", extra={"event_id": event_id, "error": e.message})
    except ShopError as e:
        outcome.error = e.message
        logger.error(
            "webhook processing failed",
            extra={"event_id": event_id, "event_type": event_type, "error": e.message},
        )
    except Exception as e:
        outcome.error = str(e) or e.__class__.__name__
        retry = True
        logger.exception("webhook processing crashed", extra={"event_id": event_id, "event_type": event_type})

    with transaction(db):
        record = (
            db.query(PaymentWebhookEvent)
            .filter(PaymentWebhookEvent.id == record_id)
            .with_for_update()
            .populate_existing()
            .one()
        )
        record.error_message = outcome.error
        if not retry:
            record.processed = True
            record.processed_at = utcnow()
        db.flush()

    outcome.processed = not retry
    return outcome


# -----------------------------
# Refunds
# -----------------------------


def refund_payment(db: Session, gateway, payment_id: int) -> Payment:
    """Refund a captured payment or cancel one still in flight.

    The order becomes ``refunded``. Sold stock is not put back.
    """
    with transaction(db):
        payment = _lock_payment(db, payment_id)
        status = payment.status
        intent_id = payment.external_intent_id
        if status not in (PaymentStatus.SUCCEEDED, *ACTIVE_PAYMENT_STATUSES):
            raise InvalidPaymentStatus(payment_id, status.value)

    if status == PaymentStatus.SUCCEEDED:
        gateway.refund(intent_id)
    else:
        gateway.cancel(intent_id)

    with transaction(db):
        payment = _lock_payment(db, payment_id)
        payment.status = PaymentStatus.CANCELED
        order = lock_order(db, payment.order_id)
        mark_refunded(db, order)
        db.flush()

    db.refresh(payment)
    logger.info(
        "payment refunded",
        extra={"payment_id": payment_id, "order_id": payment.order_id, "was": status.value},
    )
    return payment
