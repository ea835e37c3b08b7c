"""
Payment Service: payment outcome processor

Applies exactly one terminal transition to an order per gateway outcome,
however often and in whatever order the gateway delivers notifications.

  checkout.session.completed (paid)   → SUCCESS → order CONFIRMED
  checkout.session.expired            → FAILED  → order CANCELLED, release stock
  payment_intent.payment_failed       → FAILED  → order CANCELLED, release stock

The payment attempt's conditional update classifies each delivery:
  APPLIED    first delivery of this outcome for the session
  DUPLICATE  repeated delivery; the order status is re-asserted, which is a
             no-op unless an earlier delivery stopped half way
  ANOMALY    the opposite outcome was already recorded; flag the attempt for
             manual reconciliation and leave the order alone

Stock is released by whichever failure delivery wins the conditional
PENDING → CANCELLED update of the order, whatever session it belongs to, so
an order's reservations are given back at most once.
"""

import logging

from ..errors import Conflict
from ..order.models import CANCELLED, CONFIRMED, PENDING
from .store import FAILED, SUCCESS, Outcome, PaymentAttemptStore

logger = logging.getLogger(__name__)

SESSION_COMPLETED = "checkout.session.completed"
FAILURE_EVENTS = ("checkout.session.expired", "payment_intent.payment_failed")


class PaymentOutcomeProcessor:
    """
    Collaborators:
      orders.get(order_id), orders.transition(order_id, status)
      inventory.release(product_id, quantity, actor)
    """

    def __init__(self, attempts: PaymentAttemptStore, orders, inventory) -> None:
        self.attempts = attempts
        self.orders = orders
        self.inventory = inventory

    async def process_event(self, event: dict) -> Outcome | None:
        """
        Handle one authenticated gateway event.

        Never raises: the gateway has already been told the event was
        received, so failures are logged for manual review.
        """
        event_type = event.get("type")
        session = (event.get("data") or {}).get("object") or {}
        logger.info("Received event: %s", event_type)

        try:
            if event_type == SESSION_COMPLETED:
                if session.get("payment_status") != "paid":
                    logger.info("Session %s completed without payment, ignoring", session.get("id"))
                    return None
                return await self.handle_success(session)
            if event_type in FAILURE_EVENTS:
                return await self.handle_failure(session)
            logger.info("Unhandled event type: %s", event_type)
            return None
        except Exception:
            logger.exception("Error processing %s for %s", event_type, session.get("id"))
            return None

    async def handle_success(self, session: dict) -> Outcome | None:
        session_id, order_id = self._identify(session)
        if order_id is None:
            return None

        logger.info("Processing payment success for order %s", order_id)
        outcome = await self._record(session, session_id, order_id, SUCCESS)

        if outcome is Outcome.ANOMALY:
            logger.error(
                "Payment %s succeeded after it was recorded FAILED; order %s is flagged "
                "for manual reconciliation",
                session_id, order_id,
            )
            return outcome
        if outcome is Outcome.DUPLICATE:
            logger.info("Payment %s already processed, re-checking order %s", session_id, order_id)

        try:
            _, changed = await self.orders.transition(order_id, CONFIRMED)
        except Conflict:
            # Cancelled through another session while this one was being paid
            await self.attempts.flag_reconciliation(session_id)
            logger.error(
                "Payment %s succeeded but order %s can no longer be confirmed; "
                "flagged for manual reconciliation",
                session_id, order_id,
            )
            return Outcome.ANOMALY

        if changed:
            logger.info("Order %s confirmed successfully", order_id)
        return outcome

    async def handle_failure(self, session: dict) -> Outcome | None:
        session_id, order_id = self._identify(session)
        if order_id is None:
            return None

        logger.info("Processing payment failure for order %s", order_id)
        # Read before recording: a failed read leaves the attempt INITIATED for the redelivery
        order = await self.orders.get(order_id)
        outcome = await self._record(session, session_id, order_id, FAILED)

        if outcome is Outcome.ANOMALY:
            logger.error(
                "Payment %s failed after it was recorded SUCCESS; order %s left unchanged "
                "and flagged for manual reconciliation",
                session_id, order_id,
            )
            return outcome

        if order.status != PENDING:
            logger.info("Order %s is already %s, not releasing stock", order_id, order.status)
            if order.status == CONFIRMED:
                await self.attempts.flag_reconciliation(session_id)
            return outcome

        # Only the call that moves the order out of PENDING releases its stock
        try:
            _, changed = await self.orders.transition(order_id, CANCELLED)
        except Conflict as e:
            await self.attempts.flag_reconciliation(session_id)
            logger.error(
                "Could not cancel order %s after payment %s failed: %s; flagged for "
                "manual reconciliation",
                order_id, session_id, e,
            )
            return outcome
        if not changed:
            logger.info("Order %s was cancelled by another delivery, skipping inventory", order_id)
            return outcome

        for item in order.items:
            try:
                await self.inventory.release(item.product_id, item.quantity, "system")
                logger.info("Released %d units of product %s", item.quantity, item.product_id)
            except Exception:
                logger.exception("Error releasing inventory for product %s", item.product_id)

        logger.info("Order %s cancelled and inventory released", order_id)
        return outcome

    async def _record(self, session: dict, session_id: str, order_id: str, target: str) -> Outcome:
        metadata = session.get("metadata") or {}
        amount_total = session.get("amount_total") or session.get("amount") or 0
        return await self.attempts.record_outcome(
            session_id,
            target,
            order_id=order_id,
            user_id=metadata.get("userId"),
            amount=amount_total / 100,
            currency=session.get("currency") or "usd",
        )

    @staticmethod
    def _identify(session: dict) -> tuple[str | None, str | None]:
        session_id = session.get("id")
        order_id = (session.get("metadata") or {}).get("orderId")
        if not session_id or not order_id:
            logger.error("Notification without session id or orderId metadata, ignoring")
            return session_id, None
        return session_id, order_id
