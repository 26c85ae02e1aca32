"""Checkout exception-to-HTTP-response mappings.

Extends Protean's standard handlers (validation 400, not found 404, invalid
state 409, invalid operation 422) with the checkout error taxonomy. Every
body follows ``{"error": ...}``; stock errors add the per-item ``shortfalls``.
"""

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from protean.exceptions import ExpectedVersionError
from protean.integrations.fastapi import register_exception_handlers

from checkout.errors import (
    CouponError,
    ExpiredError,
    GatewayError,
    OwnershipError,
    StockUnavailableError,
)

logger = structlog.get_logger(__name__)

_STATUS_CODES = {
    OwnershipError: 403,
    ExpiredError: 410,
    CouponError: 422,
    GatewayError: 502,
}


def register_checkout_exception_handlers(app: FastAPI) -> None:
    """Register Protean's handlers plus the checkout-specific ones on ``app``."""
    register_exception_handlers(app)

    @app.exception_handler(StockUnavailableError)
    async def stock_unavailable_handler(request: Request, exc: StockUnavailableError) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={"error": exc.message, "shortfalls": exc.shortfalls},
        )

    async def checkout_error_handler(request: Request, exc) -> JSONResponse:
        return JSONResponse(status_code=_STATUS_CODES[type(exc)], content={"error": exc.message})

    for exc_class in _STATUS_CODES:
        app.add_exception_handler(exc_class, checkout_error_handler)

    @app.exception_handler(ExpectedVersionError)
    async def version_conflict_handler(request: Request, exc: ExpectedVersionError) -> JSONResponse:
        logger.warning("Concurrent update conflict", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=409,
            content={"error": "The checkout session was changed by another request; please retry"},
        )
