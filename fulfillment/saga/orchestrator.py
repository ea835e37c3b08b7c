"""
Saga Orchestrator: order placement saga

Orchestrated saga with synchronous compensation. The orchestrator runs every
compensating action itself before it returns, so a failed run leaves no
order and no net stock change behind.

  Flow:
  ┌──────────────────────────────────────────────────────────────┐
  │  1. Validate the requested items                             │
  │  2. Price every item from the catalog (price snapshot)       │
  │  3. Reserve stock item by item, remembering each success     │
  │     └─ failure → release what was reserved, re-raise         │
  │  4. Store the order as PENDING                               │
  │     └─ failure → release everything, mark FAILED,            │
  │                  raise SagaFailed                            │
  └──────────────────────────────────────────────────────────────┘

There is no lock across items. Two sagas for the same product race at the
ledger's atomic reserve; the loser sees InsufficientStock and undoes only
its own reservations.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import uuid4

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ..errors import FulfillmentError, InvalidArgument, NotFound, SagaFailed, TransportError
from ..order.models import FAILED, LineItem, Order, order_total

logger = logging.getLogger(__name__)

SAGA_EVENTS_CHANNEL = "saga_events"


@dataclass(frozen=True)
class Reservation:
    """A reserve call that succeeded during this saga run."""

    product_id: str
    quantity: int


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def validate_items(items: list[dict]) -> None:
    if not items:
        raise InvalidArgument("Order must contain at least one item")
    for item in items:
        product_id = item.get("product_id")
        quantity = item.get("quantity")
        if not product_id or not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise InvalidArgument("Each item must have product_id and positive quantity")


class OrderSagaOrchestrator:
    """
    Turns a requested item list into a PENDING order with reserved stock.

    Collaborators only need the methods used here, so the HTTP clients and
    the in-process ledger and order store are interchangeable:
      catalog.get_product(product_id) -> {"price": ...}
      inventory.reserve / inventory.release(product_id, quantity, actor)
      orders.create(order), orders.transition(order_id, status)
    """

    def __init__(self, catalog, inventory, orders, redis: aioredis.Redis | None = None):
        self.catalog = catalog
        self.inventory = inventory
        self.orders = orders
        self.redis = redis

    async def create_order(self, user_id: str, items: list[dict]) -> Order:
        validate_items(items)

        order_id = str(uuid4())
        saga_log: list[dict] = []

        # ── Step 1: price every item ────────────────
        step = self._begin_step(saga_log, "PriceItems")
        line_items: list[LineItem] = []
        try:
            for item in items:
                product = await self.catalog.get_product(item["product_id"])
                try:
                    price = float(product["price"])
                except (KeyError, TypeError, ValueError) as e:
                    raise TransportError(
                        f"Catalog returned no usable price for product {item['product_id']}"
                    ) from e
                line_items.append(
                    LineItem(
                        product_id=item["product_id"],
                        quantity=item["quantity"],
                        price_snapshot=price,
                    )
                )
        except Exception as e:
            # No reservation exists yet, nothing to compensate
            self._fail_step(step, e)
            await self._publish_saga_event("SagaFailed", order_id, user_id, saga_log)
            raise
        step["status"] = "COMPLETED"

        # ── Step 2: reserve stock, one item at a time ─
        reservations: list[Reservation] = []
        for item in line_items:
            step = self._begin_step(
                saga_log, "ReserveInventory", product_id=item.product_id, quantity=item.quantity
            )
            try:
                await self.inventory.reserve(item.product_id, item.quantity, user_id)
            except Exception as e:
                self._fail_step(step, e)
                logger.warning(
                    "Reservation of %s x%d failed for order %s: %s",
                    item.product_id, item.quantity, order_id, e,
                )
                await self._compensate(reservations, user_id, saga_log)
                await self._publish_saga_event("SagaCompensated", order_id, user_id, saga_log)
                raise
            step["status"] = "COMPLETED"
            reservations.append(Reservation(item.product_id, item.quantity))

        # ── Step 3: store the order ─────────────────
        order = Order(
            id=order_id,
            user_id=user_id,
            items=line_items,
            total_amount=order_total(line_items),
        )
        step = self._begin_step(saga_log, "CreateOrder")
        try:
            stored = await self.orders.create(order)
        except Exception as e:
            self._fail_step(step, e)
            logger.exception("Storing order %s failed, rolling back inventory", order_id)
            await self._compensate(reservations, user_id, saga_log)
            await self._mark_failed(order_id, saga_log)
            await self._publish_saga_event("SagaFailed", order_id, user_id, saga_log)
            raise SagaFailed() from e
        step["status"] = "COMPLETED"

        await self._publish_saga_event("SagaCompleted", order_id, user_id, saga_log)
        return stored

    async def _compensate(
        self,
        reservations: list[Reservation],
        user_id: str,
        saga_log: list[dict],
    ) -> None:
        """
        Release every recorded reservation exactly once.

        Releases are independent, so they run concurrently. A failed release
        is logged for manual review and never replaces the original error.
        """
        if not reservations:
            return

        steps = [
            self._begin_step(
                saga_log,
                "ReleaseInventory (COMPENSATING)",
                product_id=r.product_id,
                quantity=r.quantity,
            )
            for r in reservations
        ]
        results = await asyncio.gather(
            *(self.inventory.release(r.product_id, r.quantity, user_id) for r in reservations),
            return_exceptions=True,
        )
        for reservation, step, result in zip(reservations, steps, results):
            if isinstance(result, BaseException):
                self._fail_step(step, result)
                logger.error(
                    "Failed to release %d of %s, stock needs manual correction",
                    reservation.quantity, reservation.product_id,
                    exc_info=result,
                )
            else:
                step["status"] = "COMPLETED"

    async def _mark_failed(self, order_id: str, saga_log: list[dict]) -> None:
        """
        Mark the order FAILED in case the store wrote it but the call still failed
        (for example a timeout after the row was committed).
        """
        step = self._begin_step(saga_log, "MarkOrderFailed (COMPENSATING)")
        try:
            await self.orders.transition(order_id, FAILED)
        except NotFound:
            step["status"] = "SKIPPED"
            return
        except Exception as e:
            self._fail_step(step, e)
            logger.error("Could not mark order %s FAILED: %s", order_id, e)
            return
        step["status"] = "COMPLETED"

    @staticmethod
    def _begin_step(saga_log: list[dict], action: str, **extra) -> dict:
        step = {
            "step": len(saga_log) + 1,
            "action": action,
            "status": "EXECUTING",
            "timestamp": _now(),
            **extra,
        }
        saga_log.append(step)
        return step

    @staticmethod
    def _fail_step(step: dict, error: BaseException) -> None:
        step["status"] = "FAILED"
        step["error"] = error.message if isinstance(error, FulfillmentError) else str(error)

    async def _publish_saga_event(
        self,
        event_type: str,
        order_id: str,
        user_id: str,
        saga_log: list[dict],
    ) -> None:
        """Publish the saga outcome to Redis."""
        logger.info("Saga for order %s finished: %s", order_id, event_type)
        if self.redis is None:
            return
        try:
            await self.redis.publish(
                SAGA_EVENTS_CHANNEL,
                json.dumps(
                    {
                        "event_type": event_type,
                        "order_id": order_id,
                        "user_id": user_id,
                        "saga_log": saga_log,
                    },
                    default=str,
                ),
            )
        except RedisError:
            logger.exception("Failed to publish %s for order %s", event_type, order_id)
