"""
Saga Service: FastAPI entry point

Exposes the order placement saga over HTTP. The saga talks to the catalog,
the inventory service and the order service through the clients in
fulfillment.clients.
"""

import os
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Request
from pydantic import BaseModel

from ..clients import CatalogClient, InventoryClient, OrderClient, create_http_client
from ..config import REDIS_URL, SAGA_SERVICE, configure_logging
from ..errors import install_error_handlers
from ..identity import Caller, require_user
from .orchestrator import OrderSagaOrchestrator

CATALOG_SERVICE_URL = os.environ.get("CATALOG_SERVICE_URL", "http://product-service:5000")
INVENTORY_SERVICE_URL = os.environ.get("INVENTORY_SERVICE_URL", "http://inventory-service:6000")
ORDER_SERVICE_URL = os.environ.get("ORDER_SERVICE_URL", "http://order-service:7000")


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(SAGA_SERVICE)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    http = create_http_client()
    app.state.orchestrator = OrderSagaOrchestrator(
        CatalogClient(CATALOG_SERVICE_URL, http),
        InventoryClient(INVENTORY_SERVICE_URL, http, SAGA_SERVICE),
        OrderClient(ORDER_SERVICE_URL, http, SAGA_SERVICE),
        redis_pool,
    )
    yield
    await http.aclose()
    await redis_pool.aclose()


app = FastAPI(title="Saga Orchestrator Service", lifespan=lifespan)
install_error_handlers(app)


def get_orchestrator(request: Request) -> OrderSagaOrchestrator:
    return request.app.state.orchestrator


class OrderItemRequest(BaseModel):
    product_id: str
    quantity: int


class PlaceOrderRequest(BaseModel):
    items: list[OrderItemRequest]


@app.post("/saga/orders", status_code=201)
async def place_order(
    req: PlaceOrderRequest,
    caller: Caller = Depends(require_user),
    orchestrator: OrderSagaOrchestrator = Depends(get_orchestrator),
):
    """
    Run the order placement saga.

    Either returns a PENDING order whose stock is reserved, or fails with no
    order stored and no stock left reserved.
    """
    order = await orchestrator.create_order(
        caller.user_id, [item.model_dump() for item in req.items]
    )
    return {"order": order}


@app.get("/health")
async def health():
    return {"status": "ok", "service": SAGA_SERVICE}
