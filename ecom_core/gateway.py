"""Stripe adapter behind the payment core.

The core only needs three capabilities from the provider: create a payment
intent, undo a charge (refund or cancel) and authenticate inbound webhooks.
Anything the SDK raises is turned into ``GatewayError`` so callers can tell
a provider problem apart from a local validation failure.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Optional

import stripe

from .errors import GatewayError, InvalidAmount, InvalidWebhookPayload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentIntent:
    id: str
    client_secret: str


def to_minor_units(amount: Decimal) -> int:
    """Convert a currency amount to integer minor units (e.g. cents)."""
    dec = Decimal(str(amount))
    if dec <= 0:
        raise InvalidAmount("Amount must be greater than 0")
    if dec != dec.quantize(Decimal("0.01")):
        raise InvalidAmount(f"Amount {dec} has more than two decimal places")
    minor = (dec * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(minor)


class StripeGateway:
    def __init__(self, secret_key: str, webhook_secret: str = "", timeout: float = 10.0):
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        # bounded network time for every SDK call; no retries, callers decide
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)
        stripe.max_network_retries = 0

    def _required(self) -> None:
        if not self._secret_key:
            raise GatewayError("Stripe is not configured. Set STRIPE_SECRET_KEY.")

    def create_payment_intent(self, amount: Decimal, currency: str, metadata: Dict[str, str]) -> PaymentIntent:
        self._required()
        amount_minor = to_minor_units(amount)
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self._secret_key,
                amount=amount_minor,
                currency=currency,
                automatic_payment_methods={"enabled": True},
                metadata=metadata,
                description=f"Order #{metadata.get('order_id', '')}",
            )
        except stripe.APIConnectionError as e:
            raise GatewayError(f"Payment provider unreachable: {e.user_message or e}", retryable=True) from e
        except stripe.StripeError as e:
            raise GatewayError(f"Payment processing error: {e.user_message or e}") from e
        return PaymentIntent(id=intent.id, client_secret=intent.client_secret)

    def refund(self, intent_id: str) -> None:
        self._required()
        try:
            stripe.Refund.create(api_key=self._secret_key, payment_intent=intent_id)
        except stripe.APIConnectionError as e:
            raise GatewayError(f"Payment provider unreachable: {e.user_message or e}", retryable=True) from e
        except stripe.StripeError as e:
            raise GatewayError(f"Refund processing error: {e.user_message or e}") from e

    def cancel(self, intent_id: str) -> None:
        self._required()
        try:
            stripe.PaymentIntent.cancel(intent_id, api_key=self._secret_key)
        except stripe.APIConnectionError as e:
            raise GatewayError(f"Payment provider unreachable: {e.user_message or e}", retryable=True) from e
        except stripe.StripeError as e:
            raise GatewayError(f"Cancel processing error: {e.user_message or e}") from e

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> None:
        """Check the ``Stripe-Signature`` header when a webhook secret is configured."""
        if not self._webhook_secret:
            return
        if not signature:
            raise InvalidWebhookPayload("Missing Stripe-Signature header")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                self._webhook_secret,
                stripe.Webhook.DEFAULT_TOLERANCE,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            raise InvalidWebhookPayload(f"Webhook signature verification failed: {e}") from e
