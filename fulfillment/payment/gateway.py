"""
Payment Service: Stripe gateway

Creates hosted checkout sessions and authenticates webhook notifications.
A notification whose signature does not verify is rejected before anything
looks at its content.
"""

import asyncio
import json
import logging
from dataclasses import dataclass

import stripe

from ..errors import InvalidArgument
from ..order.models import Order

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: str


class StripeGateway:
    def __init__(self, api_key: str, webhook_secret: str, frontend_url: str) -> None:
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.frontend_url = frontend_url.rstrip("/")

    async def create_checkout_session(self, order: Order, user_id: str, currency: str) -> CheckoutSession:
        # Stripe expects the smallest currency unit
        amount_in_cents = round(order.total_amount * 100)
        metadata = {"orderId": order.id, "userId": user_id}

        session = await asyncio.to_thread(
            stripe.checkout.Session.create,
            api_key=self.api_key,
            payment_method_types=["card"],
            mode="payment",
            line_items=[
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": {
                            "name": f"Order {order.id}",
                            "description": "E-commerce order payment",
                        },
                        "unit_amount": amount_in_cents,
                    },
                    "quantity": 1,
                }
            ],
            metadata=metadata,
            payment_intent_data={"metadata": metadata},
            success_url=f"{self.frontend_url}/payment/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self.frontend_url}/payment/cancel?order_id={order.id}",
        )
        return CheckoutSession(id=session.id, url=session.url)

    def verify_notification(self, payload: bytes, signature: str | None) -> dict:
        """Return the event of an authentic notification, raise InvalidArgument otherwise."""
        if not signature:
            raise InvalidArgument("Missing signature")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError as e:
            raise InvalidArgument("Invalid payload") from e
        except stripe.SignatureVerificationError as e:
            logger.warning("Webhook signature verification failed: %s", e)
            raise InvalidArgument("Invalid signature") from e
        return json.loads(payload)
