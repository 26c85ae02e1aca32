import json
from datetime import timedelta

import pytest
from protean import current_domain
from protean.integrations.pytest import DomainFixture


@pytest.fixture(scope="session")
def checkout_bed():
    from checkout.domain import checkout

    bed = DomainFixture(checkout)
    bed.setup()
    yield bed
    bed.teardown()


@pytest.fixture(autouse=True)
def _ctx(checkout_bed):
    with checkout_bed.domain_context():
        yield


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def catalog():
    """Catalog seeded with a few products.

    ``prod-tee`` size M: 5 configured, 2 sold, so 3 can be reserved.
    """
    from checkout.catalog import set_catalog
    from checkout.catalog.memory_adapter import InMemoryCatalog

    catalog = InMemoryCatalog()
    catalog.add_product(
        "prod-tee",
        price=500.0,
        sizes={"M": 5, "L": 3},
        sold={"M": 2},
        name="Classic Tee",
        slug="classic-tee",
        category_id="cat-tops",
    )
    catalog.add_product(
        "prod-jeans",
        price=1000.0,
        sizes={"32": 2},
        name="Slim Jeans",
        slug="slim-jeans",
        category_id="cat-denim",
    )
    catalog.add_product(
        "prod-sale",
        price=400.0,
        list_price=600.0,
        sizes={"S": 4},
        name="Clearance Hoodie",
        slug="clearance-hoodie",
        category_id="cat-tops",
    )
    set_catalog(catalog)
    return catalog


@pytest.fixture(autouse=True)
def gateway():
    from checkout.gateway import set_gateway
    from checkout.gateway.fake_adapter import FakeGateway

    gateway = FakeGateway()
    set_gateway(gateway)
    return gateway


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------
@pytest.fixture()
def open_session():
    """Create a session through the command handler and return its id."""
    from checkout.session.creation import CreateCheckoutSession, open_checkout_session

    def _open(items=None, session_type="buy_now", customer_id="cust-001", guest_tracking_id=None):
        items = items or [{"product_id": "prod-tee", "size": "M", "quantity": 1}]
        return open_checkout_session(
            CreateCheckoutSession(
                session_type=session_type,
                items=json.dumps(items),
                customer_id=customer_id,
                guest_tracking_id=guest_tracking_id,
            )
        )

    return _open


@pytest.fixture()
def define_coupon():
    """Register a coupon valid from yesterday for a month."""
    from checkout.coupon.management import DefineCoupon
    from checkout.utils.clock import utcnow

    def _define(code="SAVE10", coupon_type="percentage", value=10.0, **rules):
        now = utcnow()
        rules.setdefault("max_discount", 80.0 if coupon_type == "percentage" else None)
        return current_domain.process(
            DefineCoupon(
                code=code,
                coupon_type=coupon_type,
                value=value,
                valid_from=now - timedelta(days=1),
                valid_until=now + timedelta(days=30),
                **rules,
            ),
            asynchronous=False,
        )

    return _define


@pytest.fixture()
def lapse():
    """Move a session and its reservations past their expiry in storage."""
    from checkout.session.session import CheckoutSession
    from checkout.stock.ledger import StockLedger
    from checkout.utils.clock import utcnow

    def _lapse(session_id, minutes_ago=1):
        past = utcnow() - timedelta(minutes=minutes_ago)

        session_repo = current_domain.repository_for(CheckoutSession)
        session = session_repo.get(session_id)
        session.expires_at = past
        session_repo.add(session)

        ledger_repo = current_domain.repository_for(StockLedger)
        for product_id, size in session.stock_keys():
            ledger = ledger_repo.get(StockLedger.ledger_id(product_id, size))
            for reservation in ledger.reservations_for_session(session_id):
                reservation.expires_at = past
            ledger.updated_at = utcnow()
            ledger_repo.add(ledger)
        return past

    return _lapse
