"""
HTTP clients for service-to-service calls

Every call is a blocking round trip from the caller's point of view, bounded
by the timeout of the shared httpx.AsyncClient. Timeouts and connection
failures become TransportError; error responses are turned back into the
FulfillmentError the remote service raised, so InsufficientStock stays
InsufficientStock across the hop.
"""

import httpx

from .config import HTTP_TIMEOUT_SECONDS
from .errors import TransportError, from_response_body
from .identity import internal_headers
from .order.models import Order


def create_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)


class ServiceClient:
    def __init__(self, base_url: str, http: httpx.AsyncClient) -> None:
        self.base_url = base_url.rstrip("/")
        self.http = http

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        headers: dict | None = None,
    ) -> dict:
        url = f"{self.base_url}{path}"
        try:
            resp = await self.http.request(method, url, json=json, headers=headers)
        except httpx.TimeoutException as e:
            raise TransportError(f"{method} {url} timed out") from e
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {url} failed: {e}") from e

        if resp.is_success:
            return resp.json()

        try:
            body = resp.json()
        except ValueError:
            body = {}
        raise from_response_body(resp.status_code, body)


class CatalogClient(ServiceClient):
    """Read-only access to product records owned by the catalog."""

    async def get_product(self, product_id: str) -> dict:
        data = await self._request("GET", f"/products/{product_id}")
        return data["product"]


class InventoryClient(ServiceClient):
    def __init__(self, base_url: str, http: httpx.AsyncClient, service: str) -> None:
        super().__init__(base_url, http)
        self.service = service

    def _headers(self, actor: str) -> dict:
        return internal_headers(self.service, None if actor == "system" else actor)

    async def reserve(self, product_id: str, quantity: int, actor: str = "system") -> int:
        data = await self._request(
            "POST",
            "/inventory/reserve",
            json={"product_id": product_id, "quantity": quantity},
            headers=self._headers(actor),
        )
        return data["remaining_stock"]

    async def release(self, product_id: str, quantity: int, actor: str = "system") -> int:
        data = await self._request(
            "POST",
            "/inventory/release",
            json={"product_id": product_id, "quantity": quantity},
            headers=self._headers(actor),
        )
        return data["current_stock"]


class OrderClient(ServiceClient):
    def __init__(self, base_url: str, http: httpx.AsyncClient, service: str) -> None:
        super().__init__(base_url, http)
        self.service = service

    async def create(self, order: Order) -> Order:
        data = await self._request(
            "POST",
            "/orders/internal",
            json=order.model_dump(),
            headers=internal_headers(self.service, order.user_id),
        )
        return Order(**data["order"])

    async def get(self, order_id: str) -> Order:
        data = await self._request(
            "GET",
            f"/orders/{order_id}/internal",
            headers=internal_headers(self.service),
        )
        return Order(**data["order"])

    async def transition(self, order_id: str, status: str) -> tuple[Order, bool]:
        data = await self._request(
            "PATCH",
            f"/orders/{order_id}/status",
            json={"status": status},
            headers=internal_headers(self.service),
        )
        return Order(**data["order"]), data["changed"]
