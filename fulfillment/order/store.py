"""
Order Service: order persistence

Orders are created once by the saga and afterwards only change status. The
status update is conditional (WHERE status = 'PENDING'), so two concurrent
requests for a terminal status cannot both apply it.
"""

import json
import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from sqlalchemy import Column, Float, MetaData, String, Table, Text, text
from sqlalchemy.orm import sessionmaker

from ..db import utcnow
from ..errors import Conflict, InvalidArgument, NotFound
from . import events
from .models import ORDER_STATUSES, PENDING, TERMINAL_STATUSES, LineItem, Order, order_total

logger = logging.getLogger(__name__)

metadata = MetaData()

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("items", Text, nullable=False),
    Column("total_amount", Float, nullable=False),
    Column("status", String(16), nullable=False, index=True),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
)

_SELECT = "SELECT id, user_id, items, total_amount, status, created_at, updated_at FROM orders"


def _row_to_order(row) -> Order:
    return Order(
        id=row.id,
        user_id=row.user_id,
        items=[LineItem(**item) for item in json.loads(row.items)],
        total_amount=float(row.total_amount),
        status=row.status,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class OrderStore:
    def __init__(self, session_factory: sessionmaker, redis: aioredis.Redis | None = None) -> None:
        self.session_factory = session_factory
        self.redis = redis

    async def create(self, order: Order) -> Order:
        """Store a new PENDING order."""
        if not order.items:
            raise InvalidArgument("Order must contain at least one item")
        if any(item.quantity < 1 for item in order.items):
            raise InvalidArgument("Each item must have a positive quantity")
        if order.total_amount != order_total(order.items):
            raise InvalidArgument("Order total does not match its line items")

        now = utcnow()
        stored = order.model_copy(update={"status": PENDING, "created_at": now, "updated_at": now})

        async with self.session_factory() as session:
            await session.execute(
                text("""
                    INSERT INTO orders
                        (id, user_id, items, total_amount, status, created_at, updated_at)
                    VALUES
                        (:id, :user_id, :items, :total_amount, :status, :now, :now)
                """),
                {
                    "id": stored.id,
                    "user_id": stored.user_id,
                    "items": json.dumps([item.model_dump() for item in stored.items]),
                    "total_amount": stored.total_amount,
                    "status": PENDING,
                    "now": now,
                },
            )
            await session.commit()

        logger.info("Created order %s for user %s (%.2f)", stored.id, stored.user_id, stored.total_amount)
        await events.publish(
            self.redis,
            events.OrderCreated(
                order_id=stored.id,
                user_id=stored.user_id,
                items=stored.items,
                total_amount=stored.total_amount,
                timestamp=datetime.now(timezone.utc),
            ),
        )
        return stored

    async def transition(self, order_id: str, status: str) -> tuple[Order, bool]:
        """
        Move a PENDING order to a terminal status.

        Returns the order and whether this call changed it. Repeating the
        status the order already has changes nothing; any other change out
        of a terminal status raises Conflict.
        """
        if status not in ORDER_STATUSES:
            raise InvalidArgument(f"Invalid status. Must be one of: {', '.join(ORDER_STATUSES)}")
        if status not in TERMINAL_STATUSES:
            raise InvalidArgument(f"Cannot move an order back to {status}")

        async with self.session_factory() as session:
            result = await session.execute(
                text("""
                    UPDATE orders
                    SET status = :status, updated_at = :now
                    WHERE id = :id AND status = :pending
                """),
                {"status": status, "now": utcnow(), "id": order_id, "pending": PENDING},
            )
            await session.commit()
            changed = result.rowcount == 1

        order = await self.get(order_id)
        if not changed:
            if order.status != status:
                raise Conflict(f"Order {order_id} is already {order.status}")
            logger.info("Order %s already %s, nothing to do", order_id, status)
            return order, False

        logger.info("Order %s is now %s", order_id, status)
        await events.publish(
            self.redis,
            events.STATUS_EVENTS[status](order_id=order_id, timestamp=datetime.now(timezone.utc)),
        )
        return order, True

    async def get(self, order_id: str, user_id: str | None = None) -> Order:
        """Fetch an order. When user_id is given, only that user's order is visible."""
        query = f"{_SELECT} WHERE id = :id"
        params = {"id": order_id}
        if user_id is not None:
            query += " AND user_id = :user_id"
            params["user_id"] = user_id

        async with self.session_factory() as session:
            result = await session.execute(text(query), params)
            row = result.fetchone()
        if not row:
            raise NotFound("Order not found")
        return _row_to_order(row)

    async def list_orders(self, user_id: str | None = None, status: str | None = None) -> list[Order]:
        """Orders newest first, optionally filtered by owner and status."""
        clauses = []
        params = {}
        if user_id is not None:
            clauses.append("user_id = :user_id")
            params["user_id"] = user_id
        if status is not None:
            clauses.append("status = :status")
            params["status"] = status

        query = _SELECT
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC"

        async with self.session_factory() as session:
            result = await session.execute(text(query), params)
            return [_row_to_order(row) for row in result.fetchall()]
