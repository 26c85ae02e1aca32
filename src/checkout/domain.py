"""Checkout bounded context — Checkout Sessions and Stock Reservations.

Handles the in-flight purchase attempt (buy-now and cart checkout sessions),
the per-size stock ledger that holds inventory against a session, coupon
validation and the payment handshake that carries a session to a terminal
outcome.
"""

import structlog
from protean.domain import Domain

checkout = Domain(name="checkout")

logger = structlog.get_logger(__name__)
