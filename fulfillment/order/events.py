"""
Order Service: event definitions

Facts published on the order_events Redis channel whenever an order is
created or reaches a terminal status. Named in the past tense and never
mutated after publication.
"""

import json
import logging
from datetime import datetime

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

from .models import CANCELLED, CONFIRMED, FAILED, LineItem

logger = logging.getLogger(__name__)

ORDER_EVENTS_CHANNEL = "order_events"


class OrderCreated(BaseModel):
    """An order was stored with all of its stock reserved"""
    order_id: str
    user_id: str
    items: list[LineItem]
    total_amount: float
    timestamp: datetime


class OrderConfirmed(BaseModel):
    """Payment succeeded; the reserved stock is now sold"""
    order_id: str
    timestamp: datetime


class OrderCancelled(BaseModel):
    """Payment failed or expired; the reserved stock was released"""
    order_id: str
    timestamp: datetime


class OrderFailed(BaseModel):
    """The saga could not confirm the order was stored"""
    order_id: str
    timestamp: datetime


STATUS_EVENTS = {
    CONFIRMED: OrderConfirmed,
    CANCELLED: OrderCancelled,
    FAILED: OrderFailed,
}


async def publish(redis: aioredis.Redis | None, event: BaseModel) -> None:
    """Publish an event to order_events. Subscribers are advisory, so failures are only logged."""
    if redis is None:
        return
    event_type = type(event).__name__
    try:
        await redis.publish(
            ORDER_EVENTS_CHANNEL,
            json.dumps(
                {"event_type": event_type, "data": event.model_dump(mode="json")},
                default=str,
            ),
        )
    except RedisError:
        logger.exception("Failed to publish %s", event_type)
