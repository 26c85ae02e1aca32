"""Payment gateway port (abstract interface).

Defines the contract that all payment gateway adapters must implement.
This enables swapping between FakeGateway (dev/test) and RazorpayGateway
(production) without changing any domain or application code.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class GatewayOrder:
    """A provider-side order created for one payment attempt."""

    gateway_order_id: str
    amount: int  # minor units (paise)
    currency: str
    receipt: str
    status: str = "created"


@dataclass(frozen=True)
class GatewayPayment:
    """A payment the provider holds against an order."""

    payment_id: str
    order_id: str
    amount: int  # minor units (paise)
    currency: str
    status: str  # created, authorized, captured, refunded or failed


class PaymentGateway(ABC):
    """Abstract payment gateway interface."""

    @abstractmethod
    def create_order(self, amount: int, currency: str, reference: str) -> GatewayOrder:
        """Create a provider order for ``amount`` minor units.

        Raises GatewayError when the provider call fails.
        """
        ...

    @abstractmethod
    @abstractmethod
    def fetch_payments(self, order_id: str) -> list[GatewayPayment]:
        """List the payments made against a provider order.

        Raises GatewayError when the provider call fails.
        """
        ...

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        """Verify the signature the checkout widget returns after payment."""
        ...

    @abstractmethod
    def verify_webhook_signature(self, payload: str | bytes, signature: str) -> bool:
        """Verify that a webhook payload is authentically from the gateway."""
        ...
