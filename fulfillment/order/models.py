"""
Order Service: order model

State transitions:
    PENDING → CONFIRMED  (payment succeeded)
    PENDING → CANCELLED  (payment failed or session expired; stock released)
    PENDING → FAILED     (saga could not confirm the order was stored)

Terminal statuses are entered at most once. Asking for the status an order
already has is a no-op; asking for a different terminal status is a conflict.
"""

from pydantic import BaseModel

PENDING = "PENDING"
CONFIRMED = "CONFIRMED"
CANCELLED = "CANCELLED"
FAILED = "FAILED"

ORDER_STATUSES = (PENDING, CONFIRMED, CANCELLED, FAILED)
TERMINAL_STATUSES = (CONFIRMED, CANCELLED, FAILED)


class LineItem(BaseModel):
    product_id: str
    quantity: int
    # Unit price captured when the order was created
    price_snapshot: float


class Order(BaseModel):
    id: str
    user_id: str
    items: list[LineItem]
    total_amount: float
    status: str = PENDING
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def order_total(items: list[LineItem]) -> float:
    return round(sum(item.price_snapshot * item.quantity for item in items), 2)
