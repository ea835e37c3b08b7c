"""
Shared fixtures

Redis is faked with fakeredis (Lua enabled, so the ledger's scripts run for
real) and every service database is a throwaway SQLite file.
"""

import fakeredis
import pytest
import pytest_asyncio

from fulfillment.db import create_session_factory, create_tables
from fulfillment.errors import NotFound
from fulfillment.inventory import audit
from fulfillment.inventory.ledger import InventoryLedger
from fulfillment.order import store as order_store
from fulfillment.order.store import OrderStore
from fulfillment.payment import store as payment_store
from fulfillment.payment.store import PaymentAttemptStore


class FakeCatalog:
    """Catalog collaborator returning fixed prices."""

    def __init__(self, prices: dict[str, float]) -> None:
        self.prices = prices
        self.lookups: list[str] = []

    async def get_product(self, product_id: str) -> dict:
        self.lookups.append(product_id)
        if product_id not in self.prices:
            raise NotFound(f"Product {product_id} not found")
        return {"name": f"Product {product_id}", "price": self.prices[product_id]}


class SpyInventory:
    """Wraps the ledger and records every reserve and release call."""

    def __init__(self, ledger: InventoryLedger) -> None:
        self.ledger = ledger
        self.reserved: list[tuple[str, int]] = []
        self.released: list[tuple[str, int]] = []

    async def reserve(self, product_id: str, quantity: int, actor: str = "system") -> int:
        remaining = await self.ledger.reserve(product_id, quantity, actor)
        self.reserved.append((product_id, quantity))
        return remaining

    async def release(self, product_id: str, quantity: int, actor: str = "system") -> int:
        self.released.append((product_id, quantity))
        return await self.ledger.release(product_id, quantity, actor)


async def _open_database(path, metadata):
    engine, async_session = create_session_factory(f"sqlite+aiosqlite:///{path}")
    await create_tables(engine, metadata)
    return engine, async_session


@pytest_asyncio.fixture
async def redis():
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def inventory_db(tmp_path):
    engine, async_session = await _open_database(tmp_path / "inventory.db", audit.metadata)
    yield async_session
    await engine.dispose()


@pytest_asyncio.fixture
async def order_db(tmp_path):
    engine, async_session = await _open_database(tmp_path / "orders.db", order_store.metadata)
    yield async_session
    await engine.dispose()


@pytest_asyncio.fixture
async def payment_db(tmp_path):
    engine, async_session = await _open_database(tmp_path / "payments.db", payment_store.metadata)
    yield async_session
    await engine.dispose()


@pytest.fixture
def ledger(redis, inventory_db):
    return InventoryLedger(redis, inventory_db)


@pytest.fixture
def orders(redis, order_db):
    return OrderStore(order_db, redis)


@pytest.fixture
def attempts(payment_db):
    return PaymentAttemptStore(payment_db)


@pytest.fixture
def catalog():
    return FakeCatalog({"P1": 10.0, "P2": 25.5, "A": 3.0, "B": 4.25, "C": 1.1})


@pytest.fixture
def inventory(ledger):
    return SpyInventory(ledger)
