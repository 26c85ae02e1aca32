"""Razorpay payment gateway adapter.

Orders are created, and their payments listed, through the Razorpay Orders
REST API using HTTP basic auth with the key id and secret. Signatures are HMAC-SHA256 hex digests:

- checkout widget: ``HMAC(key_secret, "<order_id>|<payment_id>")``
- webhooks: ``HMAC(webhook_secret, <raw request body>)``
"""

import hashlib
import hmac

import requests
import structlog

from checkout.errors import GatewayError
from checkout.gateway.port import GatewayOrder, GatewayPayment, PaymentGateway

logger = structlog.get_logger(__name__)

RAZORPAY_API_URL = "https://api.razorpay.com/v1"


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class RazorpayGateway(PaymentGateway):
    """Production Razorpay gateway adapter."""

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        webhook_secret: str,
        api_url: str = RAZORPAY_API_URL,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def create_order(self, amount: int, currency: str, reference: str) -> GatewayOrder:
        payload = {"amount": amount, "currency": currency, "receipt": reference}
        try:
            response = self.session.post(
                f"{self.api_url}/orders",
                json=payload,
                auth=(self.key_id, self.key_secret),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.error("Razorpay order creation failed", receipt=reference, error=str(exc))
            raise GatewayError(f"Failed to create payment order: {exc}") from exc

        body = response.json()
        return GatewayOrder(
            gateway_order_id=body["id"],
            amount=body.get("amount", amount),
            currency=body.get("currency", currency),
            receipt=body.get("receipt", reference),
            status=body.get("status", "created"),
        )

    def fetch_payments(self, order_id: str) -> list[GatewayPayment]:
        try:
            response = self.session.get(
                f"{self.api_url}/orders/{order_id}/payments",
                auth=(self.key_id, self.key_secret),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.error("Razorpay payment lookup failed", order_id=order_id, error=str(exc))
            raise GatewayError(f"Failed to fetch payments: {exc}") from exc

        return [
            GatewayPayment(
                payment_id=item["id"],
                order_id=item.get("order_id", order_id),
                amount=item.get("amount", 0),
                currency=item.get("currency", "INR"),
                status=item.get("status", "created"),
            )
            for item in response.json().get("items", [])
        ]

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        if not (order_id and payment_id and signature):
            return False
        expected = _hmac_hex(self.key_secret, f"{order_id}|{payment_id}".encode())
        return hmac.compare_digest(expected, signature)

    def verify_webhook_signature(self, payload: str | bytes, signature: str) -> bool:
        if not signature or not self.webhook_secret:
            return False
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        expected = _hmac_hex(self.webhook_secret, payload)
        return hmac.compare_digest(expected, signature)
