from decimal import Decimal

from fastapi import APIRouter, Depends, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from .. import orders, payments, schemas
from ..auth import CurrentUser, get_current_admin, get_current_user
from ..config import Settings
from ..database import get_db
from ..deps import get_gateway, get_publisher, get_settings
from ..messaging import EventPublisher

router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post("/create-payment-intent", response_model=schemas.PaymentIntentOut)
def create_payment_intent(
    body: schemas.PaymentIntentCreate,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
    settings: Settings = Depends(get_settings),
):
    """Open a provider payment intent for one of the caller's orders.

    The returned ``client_secret`` is handed to the browser to confirm the
    payment; the final outcome arrives through the webhook.
    """
    currency = (body.currency or settings.stripe_currency).lower()
    result = orders.begin_gateway_payment(db, gateway, current_user, body.order_id, currency)
    return {
        "payment_id": result.payment.id,
        "order_id": result.order.id,
        "payment_intent_id": result.payment.external_intent_id,
        "client_secret": result.client_secret,
        "amount": result.payment.amount,
        "currency": result.payment.currency,
    }


@router.get("/order/{order_id}", response_model=schemas.PaymentOut)
def get_payment_for_order(
    order_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return payments.get_payment_by_order(db, current_user, order_id)


@router.post("/{payment_id}/refund", response_model=schemas.PaymentOut)
def refund_payment(
    payment_id: int,
    current_admin: CurrentUser = Depends(get_current_admin),
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
    publisher: EventPublisher = Depends(get_publisher),
):
    payment = payments.refund_payment(db, gateway, payment_id)
    publisher.publish(
        "order.refunded",
        {
            "order_id": payment.order_id,
            "payment_id": payment.id,
            "amount": float(Decimal(str(payment.amount))),
            "currency": payment.currency,
            "provider": "stripe",
        },
    )
    return payment


@router.post("/webhook", response_model=schemas.WebhookAck, status_code=status.HTTP_200_OK, include_in_schema=False)
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
    publisher: EventPublisher = Depends(get_publisher),
):
    """Stripe webhook endpoint.

    Configure this URL in Stripe (or via stripe-cli) and set STRIPE_WEBHOOK_SECRET.
    Every stored delivery is acknowledged with 200, including ones whose
    processing failed; the failure is kept on the webhook row.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    outcome = await run_in_threadpool(payments.handle_webhook, db, gateway, payload, sig_header)
    for routing_key, event_payload in outcome.events:
        await run_in_threadpool(publisher.publish, routing_key, event_payload)

    return {
        "received": True,
        "event_id": outcome.event_id,
        "duplicate": outcome.duplicate,
        "processed": outcome.processed,
    }
