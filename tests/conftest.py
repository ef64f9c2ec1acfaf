"""Shared test fixtures."""
import os

# Settings are read once at import; pin them before any app module loads.
os.environ["GATEWAY_KEY_SECRET"] = "test_gateway_secret"
os.environ["GATEWAY_KEY_ID"] = "rzp_test_key"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.pop("RABBITMQ_HOST", None)

import pytest
from fastapi.testclient import TestClient

from checkout_service.app import models  # noqa: F401
from checkout_service.app.addresses import AddressBook
from checkout_service.app.checkout import CheckoutOrchestrator
from checkout_service.app.database import Base, make_engine, make_session_factory
from checkout_service.app.errors import GatewayUnavailableError
from checkout_service.app.gateway import GatewayIntent
from checkout_service.app.order_store import OrderStore
from checkout_service.app.pricing import ShippingPolicy
from checkout_service.app.schemas import AddressFields, CartItem, CartSnapshot
from checkout_service.app.verifier import PaymentVerifier, expected_signature

TEST_SECRET = "test_gateway_secret"


class FakeGateway:
    """Stands in for PaymentGatewayClient; hands out sequential gateway order ids."""

    def __init__(self):
        self.calls = []
        self.error = None

    def create_intent(self, amount_minor_units, currency, receipt_id, notes=None):
        self.calls.append(
            {"amount": amount_minor_units, "currency": currency, "receipt": receipt_id, "notes": notes}
        )
        if self.error is not None:
            raise self.error
        gateway_order_id = f"order_test{len(self.calls):04d}"
        return GatewayIntent(
            gateway_order_id=gateway_order_id,
            amount_minor_units=amount_minor_units,
            currency=currency,
            receipt_id=receipt_id,
            raw={
                "id": gateway_order_id,
                "entity": "order",
                "amount": amount_minor_units,
                "currency": currency,
                "receipt": receipt_id,
                "status": "created",
            },
        )

    def fail_with_unavailable(self):
        self.error = GatewayUnavailableError(2, "gateway returned 503")


class FakeProducer:
    def __init__(self):
        self.events = []

    def publish_event(self, event_data, routing_key):
        self.events.append((routing_key, event_data))


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'checkout.db'}")
    Base.metadata.create_all(bind=engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def address_book(session_factory):
    return AddressBook(session_factory)


@pytest.fixture
def order_store(session_factory):
    return OrderStore(session_factory)


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def fake_producer():
    return FakeProducer()


@pytest.fixture
def verifier():
    return PaymentVerifier(TEST_SECRET)


@pytest.fixture
def sign():
    def _sign(gateway_order_id, gateway_payment_id):
        return expected_signature(TEST_SECRET, gateway_order_id, gateway_payment_id)

    return _sign


@pytest.fixture
def shipping_policy():
    return ShippingPolicy(free_shipping_threshold=20000, flat_fee=5000)


@pytest.fixture
def orchestrator(order_store, address_book, fake_gateway, verifier, shipping_policy, fake_producer):
    return CheckoutOrchestrator(
        orders=order_store,
        addresses=address_book,
        gateway=fake_gateway,
        verifier=verifier,
        shipping_policy=shipping_policy,
        currency="INR",
        events=fake_producer,
    )


@pytest.fixture
def home_fields():
    return AddressFields(
        name="Asha Rao",
        phone="9800000001",
        email="asha@example.com",
        address_line1="12 MG Road",
        city="Bengaluru",
        state="KA",
        postal_code="560001",
    )


@pytest.fixture
def work_fields():
    return AddressFields(
        name="Asha Rao",
        phone="9800000001",
        email="asha@example.com",
        address_line1="4th Floor, Tech Park",
        address_line2="Outer Ring Road",
        city="Bengaluru",
        state="KA",
        postal_code="560103",
        address_type="work",
    )


@pytest.fixture
def small_cart():
    """Subtotal 1000 minor units, below the free-shipping threshold."""
    return CartSnapshot(items=(CartItem(product_id="p1", name="Chew Toy", unit_price=500, quantity=2),))


@pytest.fixture
def large_cart():
    return CartSnapshot(
        items=(
            CartItem(product_id="p2", name="Dog Bed", unit_price=15000, quantity=1),
            CartItem(product_id="p3", name="Leash", unit_price=2500, quantity=2),
        )
    )


@pytest.fixture
def api_client(session_factory, fake_gateway, verifier):
    """Test client wired to the per-test database and the fake gateway."""
    from checkout_service.app import main

    main.app.dependency_overrides[main.get_order_store] = lambda: OrderStore(session_factory)
    main.app.dependency_overrides[main.get_address_book] = lambda: AddressBook(session_factory)
    main.app.dependency_overrides[main.get_gateway_client] = lambda: fake_gateway
    main.app.dependency_overrides[main.get_verifier] = lambda: verifier
    main.app.dependency_overrides[main.get_event_producer] = lambda: None
    try:
        yield TestClient(main.app)
    finally:
        main.app.dependency_overrides.clear()
