"""Checkout error taxonomy.

Malformed input and missing records reuse Protean's own exceptions
(``ValidationError`` and ``ObjectNotFoundError``) so the standard FastAPI
exception handlers keep working. The remaining failures are specific to
checkout and derive from ``CheckoutError``; ``checkout.api.errors`` maps each
of them to an HTTP status.
"""

from protean.exceptions import ObjectNotFoundError, ProteanException, ValidationError

__all__ = [
    "CheckoutError",
    "CouponError",
    "ExpiredError",
    "FinalizeConflict",
    "GatewayError",
    "NotFoundError",
    "OwnershipError",
    "StockUnavailableError",
    "ValidationError",
]


class NotFoundError(ObjectNotFoundError):
    """A session, product or size does not exist (or a session has lapsed)."""


class CheckoutError(ProteanException):
    """Base class for checkout-specific failures."""

    def __init__(self, message: str, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.message = message

    def __str__(self) -> str:
        return self.message


class StockUnavailableError(CheckoutError):
    """One or more requested items cannot be held.

    ``shortfalls`` carries one dict per failing item with ``product_id``,
    ``size``, ``product_name``, ``requested``, ``available`` and ``error``.
    """

    def __init__(self, shortfalls: list[dict], message: str = "Some items are not available in the requested quantity"):
        super().__init__(message)
        self.shortfalls = shortfalls

    def __reduce__(self):
        return (self.__class__, (self.shortfalls, self.message))


class OwnershipError(CheckoutError):
    """The acting shopper does not own the checkout session."""


class ExpiredError(CheckoutError):
    """A session or its reservations are past their window."""


class CouponError(CheckoutError):
    """A coupon is invalid, ineligible or over its usage limit."""


class GatewayError(CheckoutError):
    """The payment provider call failed; safe to retry from the client."""


class FinalizeConflict(CheckoutError):
    """A second, different terminal outcome was reported for a session."""

    def __init__(self, session_id: str, current: str, attempted: str):
        super().__init__(f"Session {session_id} is already {current}; ignoring {attempted}")
        self.session_id = session_id
        self.current = current
        self.attempted = attempted

    def __reduce__(self):
        return (self.__class__, (self.session_id, self.current, self.attempted))
