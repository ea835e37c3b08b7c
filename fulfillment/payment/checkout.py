"""
Payment Service: checkout initiation

Starts a hosted payment for a PENDING order and records the INITIATED
payment attempt the outcome processor later finalizes.
"""

import logging

from ..errors import Conflict, InvalidArgument, NotFound
from ..order.models import PENDING
from .gateway import StripeGateway
from .store import INITIATED, SUCCESS, PaymentAttempt, PaymentAttemptStore

logger = logging.getLogger(__name__)


class CheckoutService:
    def __init__(
        self,
        attempts: PaymentAttemptStore,
        orders,
        gateway: StripeGateway,
        currency: str = "usd",
    ) -> None:
        self.attempts = attempts
        self.orders = orders
        self.gateway = gateway
        self.currency = currency

    async def initiate(self, order_id: str, user_id: str) -> PaymentAttempt:
        order = await self.orders.get(order_id)
        if order.user_id != user_id:
            raise NotFound("Order not found")
        if order.status != PENDING:
            raise InvalidArgument(
                f"Cannot create payment for order with status: {order.status}. Order must be PENDING."
            )

        existing = await self.attempts.find_open(order_id)
        if existing is not None:
            if existing.status == SUCCESS:
                raise Conflict("Payment already completed for this order")
            logger.info("Reusing checkout session %s for order %s", existing.session_id, order_id)
            return existing

        session = await self.gateway.create_checkout_session(order, user_id, self.currency)
        attempt = await self.attempts.create(
            PaymentAttempt(
                session_id=session.id,
                order_id=order.id,
                user_id=user_id,
                amount=order.total_amount,
                currency=self.currency,
                status=INITIATED,
                checkout_url=session.url,
            )
        )
        logger.info("Created checkout session %s for order %s", session.id, order_id)
        return attempt

    async def status(self, order_id: str, user_id: str) -> PaymentAttempt:
        attempt = await self.attempts.latest_for_order(order_id)
        if attempt is None or attempt.user_id != user_id:
            raise NotFound("Payment not found for this order")
        return attempt
