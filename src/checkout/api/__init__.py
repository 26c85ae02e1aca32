"""Checkout HTTP API."""

from checkout.api.errors import register_checkout_exception_handlers
from checkout.api.routes import router

__all__ = ["register_checkout_exception_handlers", "router"]
