"""
Inventory Service: stock ledger

Single source of truth for per-product stock. Stock lives in Redis as one
integer per product (key inventory:<product_id>); a missing key means the
product was never initialized, which is not the same as zero stock.

Concurrency:
  reserve  Lua script, check-and-decrement runs atomically inside Redis.
           Two concurrent reservations can never both take the last unit.
  release  Lua script, exists-check and increment in one step.
  adjust   optimistic WATCH / MULTI / EXEC loop with bounded retries.

Every successful mutation appends a StockAuditEntry afterwards. The audit
write is best-effort: a failure is logged and the stock change stands.
"""

import logging

import redis.asyncio as aioredis
from redis.exceptions import WatchError
from sqlalchemy.orm import sessionmaker

from ..errors import Conflict, InsufficientStock, InvalidArgument, NotFound
from . import audit

logger = logging.getLogger(__name__)

INVENTORY_PREFIX = "inventory:"
ADJUST_MAX_RETRIES = 5

# Returns {status, value}: {-1, 0} missing, {-2, current} short, {0, remaining} ok
RESERVE_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if not current then
  return {-1, 0}
end
current = tonumber(current)
local requested = tonumber(ARGV[1])
if current < requested then
  return {-2, current}
end
local remaining = redis.call('DECRBY', KEYS[1], requested)
return {0, remaining}
"""

RELEASE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return {-1, 0}
end
local current = redis.call('INCRBY', KEYS[1], tonumber(ARGV[1]))
return {0, current}
"""

_MISSING = -1
_SHORT = -2


def inventory_key(product_id: str) -> str:
    return f"{INVENTORY_PREFIX}{product_id}"


class InventoryLedger:
    """Atomic stock operations for the inventory service."""

    def __init__(self, redis: aioredis.Redis, session_factory: sessionmaker) -> None:
        self.redis = redis
        self.session_factory = session_factory
        self._reserve_script = redis.register_script(RESERVE_SCRIPT)
        self._release_script = redis.register_script(RELEASE_SCRIPT)

    async def initialize(self, product_id: str, quantity: int, actor: str = "system") -> int:
        """Create or reset the stock record of a product."""
        if quantity < 0:
            raise InvalidArgument("Quantity must be non-negative")

        await self.redis.set(inventory_key(product_id), quantity)
        logger.info("Initialized stock of %s to %d", product_id, quantity)

        await self._audit(product_id, quantity, "init", actor)
        return quantity

    async def get_stock(self, product_id: str) -> int:
        stock = await self.redis.get(inventory_key(product_id))
        if stock is None:
            raise NotFound("Product inventory not initialized")
        return int(stock)

    async def reserve(self, product_id: str, quantity: int, actor: str = "system") -> int:
        """
        Atomically take quantity units of a product.

        Returns the remaining stock. Raises NotFound for an uninitialized
        product and InsufficientStock when quantity exceeds the stock.
        """
        if quantity <= 0:
            raise InvalidArgument("Quantity must be positive")

        status, value = await self._reserve_script(
            keys=[inventory_key(product_id)], args=[quantity]
        )
        if status == _MISSING:
            raise NotFound("Product inventory not initialized")
        if status == _SHORT:
            raise InsufficientStock(product_id, int(value), quantity)

        remaining = int(value)
        logger.info("Reserved %d of %s by %s, %d left", quantity, product_id, actor, remaining)

        await self._audit(product_id, -quantity, "reserve", actor)
        return remaining

    async def release(self, product_id: str, quantity: int, actor: str = "system") -> int:
        """
        Give quantity units back to a product. Compensating action for reserve.

        Not idempotent: every call adds quantity, so callers release once per
        reservation they recorded.
        """
        if quantity <= 0:
            raise InvalidArgument("Quantity must be positive")

        status, value = await self._release_script(
            keys=[inventory_key(product_id)], args=[quantity]
        )
        if status == _MISSING:
            raise NotFound("Product inventory not initialized")

        current = int(value)
        logger.info("Released %d of %s by %s, now %d", quantity, product_id, actor, current)

        await self._audit(product_id, quantity, "release", actor)
        return current

    async def adjust(
        self,
        product_id: str,
        change: int,
        actor: str = "system",
        reason: str = "adjust",
    ) -> int:
        """Apply a signed correction. Negative changes may not take stock below zero."""
        if change == 0:
            raise InvalidArgument("Change must be non-zero")

        key = inventory_key(product_id)
        for attempt in range(1, ADJUST_MAX_RETRIES + 1):
            async with self.redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    current = await pipe.get(key)
                    if current is None:
                        raise NotFound("Product inventory not initialized")
                    current = int(current)
                    if current + change < 0:
                        raise Conflict(
                            "Cannot adjust. Would result in negative stock. "
                            f"Current: {current}, Change: {change}",
                            {"product_id": product_id, "current": current, "change": change},
                        )
                    pipe.multi()
                    pipe.incrby(key, change)
                    (new_stock,) = await pipe.execute()
                except WatchError:
                    logger.info("Stock of %s changed during adjust, retry %d", product_id, attempt)
                    continue

            logger.info("Adjusted %s by %d (%s), now %d", product_id, change, reason, new_stock)
            await self._audit(product_id, change, reason, actor)
            return int(new_stock)

        raise Conflict(f"Stock of {product_id} is changing too fast to adjust, try again")

    async def list_audit(self, product_id: str, limit: int = 100) -> list[audit.StockAuditEntry]:
        async with self.session_factory() as session:
            return await audit.load_entries(session, product_id, limit)

    async def _audit(self, product_id: str, change: int, reason: str, actor: str) -> None:
        try:
            async with self.session_factory() as session:
                await audit.append_entry(session, product_id, change, reason, actor)
        except Exception:
            logger.exception(
                "Failed to write audit entry for %s (%s %+d)", product_id, reason, change
            )
