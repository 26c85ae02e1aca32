"""Configurable fake payment gateway for development and testing.

This adapter simulates the provider without any external calls. It can be
configured at runtime to fail order creation, and it accepts a fixed
signature for both the client verify step and webhooks so tests can drive
the whole payment handshake. Payments the provider would report for an order
are registered with ``record_payment``.
"""

from uuid import uuid4

from checkout.errors import GatewayError
from checkout.gateway.port import GatewayOrder, GatewayPayment, PaymentGateway

VALID_SIGNATURE = "test-signature"


class FakeGateway(PaymentGateway):
    """Configurable fake payment gateway."""

    def __init__(self) -> None:
        self.should_succeed: bool = True
        self.failure_reason: str = "Gateway unavailable"
        self.calls: list[dict] = []
        self.payments: dict[str, list[GatewayPayment]] = {}

    def configure(self, should_succeed: bool, failure_reason: str = "Gateway unavailable") -> None:
        """Configure gateway behavior at runtime."""
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    def create_order(self, amount: int, currency: str, reference: str) -> GatewayOrder:
        self.calls.append(
            {
                "method": "create_order",
                "amount": amount,
                "currency": currency,
                "reference": reference,
            }
        )

        if not self.should_succeed:
            raise GatewayError(self.failure_reason)

        return GatewayOrder(
            gateway_order_id=f"order_fake_{uuid4().hex[:14]}",
            amount=amount,
            currency=currency,
            receipt=reference,
        )

    def record_payment(
        self, order_id: str, payment_id: str, amount: int, status: str = "captured", currency: str = "INR"
    ) -> GatewayPayment:
        """Register a payment the provider reports for ``order_id``."""
        payment = GatewayPayment(
            payment_id=payment_id, order_id=order_id, amount=amount, currency=currency, status=status
        )
        self.payments.setdefault(order_id, []).append(payment)
        return payment

    def fetch_payments(self, order_id: str) -> list[GatewayPayment]:
        self.calls.append({"method": "fetch_payments", "order_id": order_id})

        if not self.should_succeed:
            raise GatewayError(self.failure_reason)

        return list(self.payments.get(order_id, []))

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:  # noqa: ARG002
        return signature == VALID_SIGNATURE

    def verify_webhook_signature(self, payload: str | bytes, signature: str) -> bool:  # noqa: ARG002
        return signature == VALID_SIGNATURE
