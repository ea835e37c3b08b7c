"""
Error taxonomy shared by all services

Every domain failure is a FulfillmentError subclass carrying the HTTP status
it maps to. Services render them with install_error_handlers(); the HTTP
clients in fulfillment.clients turn error responses back into the same
classes, so the error kind survives a network hop.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class FulfillmentError(Exception):
    code = "INTERNAL"
    status_code = 500

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class InvalidArgument(FulfillmentError):
    code = "INVALID_ARGUMENT"
    status_code = 400


class Unauthorized(FulfillmentError):
    code = "UNAUTHORIZED"
    status_code = 401


class Forbidden(FulfillmentError):
    code = "FORBIDDEN"
    status_code = 403


class NotFound(FulfillmentError):
    code = "NOT_FOUND"
    status_code = 404


class Conflict(FulfillmentError):
    code = "CONFLICT"
    status_code = 409


class InsufficientStock(FulfillmentError):
    """Requested quantity exceeds the current stock of a product."""

    code = "INSUFFICIENT_STOCK"
    status_code = 409

    def __init__(self, product_id: str, available: int, requested: int) -> None:
        super().__init__(
            f"Insufficient stock for product {product_id}. "
            f"Available: {available}, Requested: {requested}",
            {"product_id": product_id, "available": available, "requested": requested},
        )
        self.product_id = product_id
        self.available = available
        self.requested = requested


class SagaFailed(FulfillmentError):
    """
    A storage fault after every reservation succeeded.

    Always raised after compensation has run, so no stock is left reserved.
    The message is deliberately generic.
    """

    code = "SAGA_FAILED"
    status_code = 500

    def __init__(self, message: str = "Order creation failed, inventory rolled back") -> None:
        super().__init__(message)


class TransportError(FulfillmentError):
    """A downstream service timed out, was unreachable or answered 5xx."""

    code = "TRANSPORT_ERROR"
    status_code = 503


_BY_CODE = {
    cls.code: cls
    for cls in (
        InvalidArgument,
        Unauthorized,
        Forbidden,
        NotFound,
        Conflict,
        SagaFailed,
        TransportError,
    )
}


_BY_STATUS = {
    400: InvalidArgument,
    401: Unauthorized,
    403: Forbidden,
    404: NotFound,
    409: Conflict,
}


def from_response_body(status_code: int, body: dict) -> FulfillmentError:
    """
    Rebuild the exception a remote service rendered with install_error_handlers().

    Services that do not use this taxonomy (the catalog) are mapped by status code.
    """
    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        error = {}

    code = error.get("code")
    message = error.get("message") or f"Downstream service answered {status_code}"
    details = error.get("details") or {}

    if code == InsufficientStock.code:
        return InsufficientStock(
            details.get("product_id", ""),
            int(details.get("available", 0)),
            int(details.get("requested", 0)),
        )
    if code == SagaFailed.code:
        return SagaFailed(message)

    if status_code >= 500:
        return TransportError(message, details)
    cls = _BY_CODE.get(code) or _BY_STATUS.get(status_code, TransportError)
    return cls(message, details)


async def _handle_fulfillment_error(request: Request, exc: FulfillmentError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s -> %s: %s", request.method, request.url.path, exc.status_code, exc.message)
    else:
        logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(FulfillmentError, _handle_fulfillment_error)
