"""Tests for domain tunables, gateway selection and schema helpers."""

from checkout.gateway import configure_gateway, get_gateway, reset_gateway
from checkout.gateway.fake_adapter import FakeGateway
from checkout.gateway.razorpay_adapter import RazorpayGateway
from checkout.utils.db import drop_db, setup_db
from checkout.utils.settings import DEFAULTS, setting
from protean import current_domain


class TestSettings:
    def test_values_come_from_domain_config(self):
        assert setting("session_ttl_minutes") == 15
        assert setting("max_item_quantity") == 10
        assert setting("currency") == "INR"

    def test_unknown_setting_falls_back_to_default(self):
        assert setting("no_such_setting") is None
        assert DEFAULTS["payment_extension_minutes"] == 30


class TestGatewaySelection:
    def test_default_gateway_is_fake(self):
        reset_gateway()
        assert isinstance(get_gateway(), FakeGateway)

    def test_credentials_install_razorpay(self):
        reset_gateway()
        gateway = configure_gateway(current_domain)
        assert isinstance(gateway, RazorpayGateway)


class TestSchemaHelpers:
    def test_memory_provider_needs_no_schema(self, checkout_bed):
        setup_db(checkout_bed.domain)
        drop_db(checkout_bed.domain)
