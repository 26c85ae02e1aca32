"""Payment gateway factory.

Provides get_gateway() / set_gateway() to swap implementations:
- FakeGateway for development and testing
- RazorpayGateway for production
"""

from checkout.gateway.fake_adapter import FakeGateway
from checkout.gateway.port import PaymentGateway
from checkout.gateway.razorpay_adapter import RazorpayGateway

_current_gateway: PaymentGateway | None = None


def get_gateway() -> PaymentGateway:
    """Return the current payment gateway. Defaults to FakeGateway."""
    global _current_gateway
    if _current_gateway is None:
        _current_gateway = FakeGateway()
    return _current_gateway


def set_gateway(gateway: PaymentGateway) -> None:
    """Override the active payment gateway (useful for tests)."""
    global _current_gateway
    _current_gateway = gateway


def reset_gateway() -> None:
    """Reset to default gateway."""
    global _current_gateway
    _current_gateway = None


def configure_gateway(domain) -> PaymentGateway:
    """Install a RazorpayGateway when the domain carries Razorpay credentials."""
    key_id = getattr(domain, "razorpay_key_id", "")
    key_secret = getattr(domain, "razorpay_key_secret", "")
    if key_id and key_secret:
        set_gateway(
            RazorpayGateway(
                key_id=key_id,
                key_secret=key_secret,
                webhook_secret=getattr(domain, "razorpay_webhook_secret", ""),
            )
        )
    return get_gateway()
