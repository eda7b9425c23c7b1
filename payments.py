import logging
import os
from typing import Optional

import stripe

from errors import ValidationFailed

logger = logging.getLogger(__name__)

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")


class PaymentGateway:
    """Thin wrapper over Stripe payment intents."""

    def __init__(self, api_key: Optional[str] = STRIPE_SECRET_KEY, currency: str = "usd"):
        self.api_key = api_key
        self.currency = currency

    def create_intent(self, amount: float) -> str:
        if not amount or amount <= 0:
            raise ValidationFailed("Valid amount required")
        intent = stripe.PaymentIntent.create(
            api_key=self.api_key,
            amount=int(round(amount)),
            currency=self.currency,
            payment_method_types=["card"],
        )
        return intent.client_secret

    def intent_succeeded(self, intent_id: str) -> bool:
        intent = stripe.PaymentIntent.retrieve(intent_id, api_key=self.api_key)
        logger.info("Payment intent %s status: %s", intent_id, intent.status)
        return intent.status == "succeeded"


_gateway = PaymentGateway()


def get_payment_gateway() -> PaymentGateway:
    return _gateway
