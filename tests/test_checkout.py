"""Tests for the checkout orchestrator."""
import re
import threading
from concurrent.futures import ThreadPoolExecutor

import pika
import pytest

from checkout_service.app.checkout import CheckoutOrchestrator, generate_order_id
from checkout_service.app.errors import (
    AddressNotFoundError,
    GatewayRejectedError,
    GatewayUnavailableError,
    OrderConflictError,
    OrderNotFoundError,
    OrderNotRecordedError,
    PaymentConflictError,
    SignatureMismatchError,
    StoreUnavailableError,
    ValidationError,
)
from checkout_service.app.messaging.producer import ORDER_CONFIRMED, ORDER_PLACED
from checkout_service.app.order_store import OrderStore
from checkout_service.app.schemas import (
    DeliveryAddress,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
)


class BrokenOrderStore(OrderStore):
    """Order store whose writes always fail."""

    def put(self, order, idempotency_key=None):
        raise StoreUnavailableError("put_order", "disk I/O error")


class OutageAfterFirstLookup(OrderStore):
    """Order store that answers one lookup, then fails every call, writes included."""

    def __init__(self, session_factory, put_error):
        super().__init__(session_factory)
        self.put_error = put_error
        self.lookups = 0

    def put(self, order, idempotency_key=None):
        raise self.put_error

    def find_by_idempotency_key(self, user_id, idempotency_key):
        self.lookups += 1
        if self.lookups > 1:
            raise StoreUnavailableError("find_order_by_idempotency_key", "database is locked")
        return super().find_by_idempotency_key(user_id, idempotency_key)


class RacingOrderStore(OrderStore):
    """Order store where a concurrent request records its order just before ours."""

    def put(self, order, idempotency_key=None):
        winner = order.model_copy(update={"order_id": "ORD-1-winner0000"})
        super().put(winner, idempotency_key=idempotency_key)
        return super().put(order, idempotency_key=idempotency_key)


class FlakyProducer:
    def publish_event(self, event_data, routing_key):
        raise pika.exceptions.AMQPConnectionError("broker down")


def _with(orchestrator, **changes):
    values = dict(
        orders=orchestrator.orders,
        addresses=orchestrator.addresses,
        gateway=orchestrator.gateway,
        verifier=orchestrator.verifier,
        shipping_policy=orchestrator.shipping_policy,
        currency=orchestrator.currency,
        events=orchestrator.events,
    )
    values.update(changes)
    return CheckoutOrchestrator(**values)


@pytest.fixture
def delivery(home_fields):
    return DeliveryAddress(**home_fields.model_dump())


def test_order_id_format():
    assert re.fullmatch(r"ORD-\d{13}-[0-9a-z]{9}", generate_order_id())
    assert generate_order_id() != generate_order_id()


class TestPlaceOrder:
    def test_cash_on_delivery_is_confirmed(self, orchestrator, fake_gateway, small_cart, delivery):
        result = orchestrator.place_order("u1", small_cart, delivery, PaymentMethod.CASH_ON_DELIVERY)
        order = result.order

        assert order.status is OrderStatus.CONFIRMED
        assert order.payment_status is PaymentStatus.PENDING
        assert order.gateway_order_id is None
        assert (order.subtotal, order.shipping_fee, order.total) == (1000, 5000, 6000)
        assert result.intent is None
        assert fake_gateway.calls == []
        assert orchestrator.orders.get(order.order_id) == order

    def test_gateway_order_is_pending_with_intent(self, orchestrator, fake_gateway, small_cart, delivery):
        result = orchestrator.place_order("u1", small_cart, delivery, PaymentMethod.GATEWAY, "ring twice")
        order = result.order

        assert order.status is OrderStatus.PENDING
        assert order.payment_status is PaymentStatus.PENDING
        assert order.order_notes == "ring twice"
        assert result.intent.gateway_order_id == order.gateway_order_id == "order_test0001"
        assert fake_gateway.calls == [
            {
                "amount": 6000,
                "currency": "INR",
                "receipt": order.order_id,
                "notes": {"orderId": order.order_id, "userId": "u1"},
            }
        ]

    def test_free_shipping_at_threshold(self, orchestrator, large_cart, delivery):
        order = orchestrator.place_order("u1", large_cart, delivery, PaymentMethod.GATEWAY).order
        assert (order.subtotal, order.shipping_fee, order.total) == (20000, 0, 20000)

    def test_payment_method_aliases(self, orchestrator, small_cart, delivery):
        order = orchestrator.place_order("u1", small_cart, delivery, "cash-on-delivery").order
        assert order.payment_method is PaymentMethod.CASH_ON_DELIVERY

    def test_unknown_payment_method(self, orchestrator, small_cart, delivery):
        with pytest.raises(ValidationError):
            orchestrator.place_order("u1", small_cart, delivery, "barter")

    def test_gateway_failure_stores_nothing(self, orchestrator, fake_gateway, small_cart, delivery):
        fake_gateway.fail_with_unavailable()
        with pytest.raises(GatewayUnavailableError):
            orchestrator.place_order("u1", small_cart, delivery, PaymentMethod.GATEWAY)
        assert orchestrator.orders.list_by_user("u1") == []

    def test_gateway_rejection_stores_nothing(self, orchestrator, fake_gateway, small_cart, delivery):
        fake_gateway.error = GatewayRejectedError(400, "amount exceeds maximum")
        with pytest.raises(GatewayRejectedError):
            orchestrator.place_order("u1", small_cart, delivery, PaymentMethod.GATEWAY)
        assert orchestrator.orders.list_all() == []

    def test_unrecorded_gateway_order_is_reported(
        self, orchestrator, fake_gateway, session_factory, small_cart, delivery, caplog
    ):
        broken = _with(orchestrator, orders=BrokenOrderStore(session_factory))
        with pytest.raises(OrderNotRecordedError) as exc_info:
            broken.place_order("u1", small_cart, delivery, PaymentMethod.GATEWAY)

        assert exc_info.value.gateway_order_id == "order_test0001"
        assert "order_test0001" in str(exc_info.value)
        assert "order_test0001" in caplog.text

    def test_store_outage_during_recovery_still_reports_gateway_order(
        self, orchestrator, session_factory, small_cart, delivery, caplog
    ):
        store = OutageAfterFirstLookup(session_factory, StoreUnavailableError("put_order", "disk I/O error"))
        broken = _with(orchestrator, orders=store)
        with pytest.raises(OrderNotRecordedError) as exc_info:
            broken.place_order("u1", small_cart, delivery, PaymentMethod.GATEWAY, idempotency_key="k1")

        assert exc_info.value.gateway_order_id == "order_test0001"
        assert "order_test0001" in caplog.text

    def test_conflict_recovery_lookup_failure_still_reports_gateway_order(
        self, orchestrator, session_factory, small_cart, delivery, caplog
    ):
        store = OutageAfterFirstLookup(session_factory, OrderConflictError("idempotencyKey is already used"))
        broken = _with(orchestrator, orders=store)
        with pytest.raises(OrderNotRecordedError) as exc_info:
            broken.place_order("u1", small_cart, delivery, PaymentMethod.GATEWAY, idempotency_key="k1")

        assert exc_info.value.gateway_order_id == "order_test0001"
        assert store.lookups == 2
        assert "order_test0001" in caplog.text

    def test_unrecorded_cod_order_is_store_failure(self, orchestrator, session_factory, small_cart, delivery):
        broken = _with(orchestrator, orders=BrokenOrderStore(session_factory))
        with pytest.raises(StoreUnavailableError) as exc_info:
            broken.place_order("u1", small_cart, delivery, PaymentMethod.CASH_ON_DELIVERY)
        assert not isinstance(exc_info.value, OrderNotRecordedError)

    def test_adopts_client_gateway_order(self, orchestrator, fake_gateway, small_cart, delivery):
        result = orchestrator.place_order(
            "u1", small_cart, delivery, PaymentMethod.GATEWAY, gateway_order_id="order_client01"
        )
        assert result.order.gateway_order_id == "order_client01"
        assert fake_gateway.calls == []

    def test_gateway_order_id_rejected_for_cod(self, orchestrator, small_cart, delivery):
        with pytest.raises(ValidationError):
            orchestrator.place_order(
                "u1", small_cart, delivery, PaymentMethod.CASH_ON_DELIVERY, gateway_order_id="order_x"
            )

    def test_missing_user(self, orchestrator, small_cart, delivery):
        with pytest.raises(ValidationError):
            orchestrator.place_order("", small_cart, delivery, PaymentMethod.CASH_ON_DELIVERY)


class TestIdempotency:
    def test_repeated_key_replays_first_order(self, orchestrator, fake_gateway, small_cart, delivery):
        first = orchestrator.place_order(
            "u1", small_cart, delivery, PaymentMethod.GATEWAY, idempotency_key="cart-42"
        )
        second = orchestrator.place_order(
            "u1", small_cart, delivery, PaymentMethod.GATEWAY, idempotency_key="cart-42"
        )

        assert second.replayed is True
        assert second.order == first.order
        assert second.intent.gateway_order_id == first.intent.gateway_order_id
        assert len(fake_gateway.calls) == 1
        assert len(orchestrator.orders.list_by_user("u1")) == 1

    def test_key_is_scoped_to_user(self, orchestrator, small_cart, delivery):
        a = orchestrator.place_order(
            "u1", small_cart, delivery, PaymentMethod.CASH_ON_DELIVERY, idempotency_key="k"
        )
        b = orchestrator.place_order(
            "u2", small_cart, delivery, PaymentMethod.CASH_ON_DELIVERY, idempotency_key="k"
        )
        assert b.replayed is False
        assert a.order.order_id != b.order.order_id

    def test_without_key_every_call_is_new(self, orchestrator, small_cart, delivery):
        orchestrator.place_order("u1", small_cart, delivery, PaymentMethod.CASH_ON_DELIVERY)
        orchestrator.place_order("u1", small_cart, delivery, PaymentMethod.CASH_ON_DELIVERY)
        assert len(orchestrator.orders.list_by_user("u1")) == 2


    def test_repeated_adopted_gateway_order_replays(self, orchestrator, order_store, small_cart, delivery):
        first = orchestrator.place_order(
            "u1", small_cart, delivery, PaymentMethod.GATEWAY, gateway_order_id="order_client01"
        )
        second = orchestrator.place_order(
            "u1", small_cart, delivery, PaymentMethod.GATEWAY, gateway_order_id="order_client01"
        )

        assert second.replayed is True
        assert second.order.order_id == first.order.order_id
        assert second.intent.gateway_order_id == "order_client01"
        assert len(order_store.list_by_user("u1")) == 1

    def test_repeated_paid_gateway_order_replays_settled_order(
        self, orchestrator, order_store, small_cart, delivery, sign
    ):
        first = orchestrator.place_order(
            "u1", small_cart, delivery, PaymentMethod.GATEWAY, gateway_order_id="order_client01"
        )
        orchestrator.finalize_gateway_payment("order_client01", "pay_1", sign("order_client01", "pay_1"))

        second = orchestrator.place_order(
            "u1", small_cart, delivery, PaymentMethod.GATEWAY, gateway_order_id="order_client01"
        )
        assert second.replayed is True
        assert second.order.order_id == first.order.order_id
        assert second.order.payment_status is PaymentStatus.COMPLETED

    def test_gateway_order_of_another_user_conflicts(self, orchestrator, order_store, small_cart, delivery):
        orchestrator.place_order("u1", small_cart, delivery, PaymentMethod.GATEWAY, gateway_order_id="order_client01")
        with pytest.raises(OrderConflictError):
            orchestrator.place_order(
                "u2", small_cart, delivery, PaymentMethod.GATEWAY, gateway_order_id="order_client01"
            )
        assert order_store.list_by_user("u2") == []

    def test_lost_race_replays_the_winner(self, orchestrator, session_factory, small_cart, delivery):
        racing = _with(orchestrator, orders=RacingOrderStore(session_factory))
        result = racing.place_order("u1", small_cart, delivery, PaymentMethod.CASH_ON_DELIVERY, idempotency_key="k1")

        assert result.replayed is True
        assert result.order.order_id == "ORD-1-winner0000"
        assert [o.order_id for o in racing.orders.list_by_user("u1")] == ["ORD-1-winner0000"]


class TestAddressResolution:
    def test_uses_default_address(self, orchestrator, address_book, home_fields, work_fields, small_cart):
        address_book.add("u1", home_fields)
        work = address_book.add("u1", work_fields, is_default_requested=True)

        order = orchestrator.place_order("u1", small_cart, None, PaymentMethod.CASH_ON_DELIVERY).order
        assert order.delivery_address.address_id == work.address_id
        assert order.delivery_address.address_line1 == work_fields.address_line1

    def test_uses_address_id(self, orchestrator, address_book, home_fields, work_fields, small_cart):
        home = address_book.add("u1", home_fields)
        address_book.add("u1", work_fields, is_default_requested=True)

        order = orchestrator.place_order(
            "u1", small_cart, None, PaymentMethod.CASH_ON_DELIVERY, address_id=home.address_id
        ).order
        assert order.delivery_address.address_id == home.address_id

    def test_unknown_address_id(self, orchestrator, small_cart):
        with pytest.raises(AddressNotFoundError):
            orchestrator.place_order("u1", small_cart, None, PaymentMethod.CASH_ON_DELIVERY, address_id="nope")

    def test_no_address_at_all(self, orchestrator, fake_gateway, small_cart):
        with pytest.raises(ValidationError):
            orchestrator.place_order("u1", small_cart, None, PaymentMethod.GATEWAY)
        assert fake_gateway.calls == []

    def test_foreign_address_rejected(self, orchestrator, address_book, home_fields, small_cart):
        theirs = address_book.add("u2", home_fields)
        with pytest.raises(ValidationError):
            orchestrator.place_order("u1", small_cart, theirs, PaymentMethod.CASH_ON_DELIVERY)

    def test_order_keeps_its_address_copy(self, orchestrator, address_book, home_fields, small_cart):
        home = address_book.add("u1", home_fields)
        order = orchestrator.place_order("u1", small_cart, None, PaymentMethod.CASH_ON_DELIVERY).order

        address_book.update("u1", home.address_id, {"city": "Chennai"})
        address_book.remove("u1", home.address_id)

        stored = orchestrator.orders.get(order.order_id)
        assert stored.delivery_address.city == home_fields.city


class TestFinalize:
    @pytest.fixture
    def pending(self, orchestrator, small_cart, delivery):
        return orchestrator.place_order("u1", small_cart, delivery, PaymentMethod.GATEWAY).order

    def test_valid_signature_settles(self, orchestrator, pending, sign):
        gid = pending.gateway_order_id
        order = orchestrator.finalize_gateway_payment(gid, "pay_1", sign(gid, "pay_1"))

        assert order.order_id == pending.order_id
        assert order.status is OrderStatus.CONFIRMED
        assert order.payment_status is PaymentStatus.COMPLETED
        assert order.gateway_payment_id == "pay_1"

    def test_repeat_returns_same_order(self, orchestrator, pending, sign, fake_producer):
        gid = pending.gateway_order_id
        first = orchestrator.finalize_gateway_payment(gid, "pay_1", sign(gid, "pay_1"))
        second = orchestrator.finalize_gateway_payment(gid, "pay_1", sign(gid, "pay_1"))

        assert second == first
        confirmed = [e for key, e in fake_producer.events if key == ORDER_CONFIRMED]
        assert len(confirmed) == 1

    def test_invalid_signature_leaves_order_untouched(self, orchestrator, pending, sign, caplog):
        gid = pending.gateway_order_id
        good = sign(gid, "pay_1")
        tampered = ("0" if good[0] != "0" else "1") + good[1:]

        with pytest.raises(SignatureMismatchError):
            orchestrator.finalize_gateway_payment(gid, "pay_1", tampered)

        stored = orchestrator.orders.get(pending.order_id)
        assert stored.status is OrderStatus.PENDING
        assert stored.payment_status is PaymentStatus.PENDING
        assert stored.gateway_payment_id is None
        assert "Signature mismatch" in caplog.text

    def test_signature_for_other_order_rejected(self, orchestrator, pending, sign):
        with pytest.raises(SignatureMismatchError):
            orchestrator.finalize_gateway_payment(
                pending.gateway_order_id, "pay_1", sign("order_other", "pay_1")
            )

    def test_second_payment_conflicts(self, orchestrator, pending, sign):
        gid = pending.gateway_order_id
        orchestrator.finalize_gateway_payment(gid, "pay_1", sign(gid, "pay_1"))
        with pytest.raises(PaymentConflictError):
            orchestrator.finalize_gateway_payment(gid, "pay_2", sign(gid, "pay_2"))

    def test_unknown_gateway_order(self, orchestrator, sign):
        with pytest.raises(OrderNotFoundError):
            orchestrator.finalize_gateway_payment("order_nope", "pay_1", sign("order_nope", "pay_1"))

    def test_concurrent_callbacks_settle_once(self, orchestrator, pending, sign, fake_producer):
        gid = pending.gateway_order_id
        signature = sign(gid, "pay_1")
        start = threading.Barrier(5)

        def settle(_):
            start.wait()
            return orchestrator.finalize_gateway_payment(gid, "pay_1", signature)

        with ThreadPoolExecutor(max_workers=5) as pool:
            results = list(pool.map(settle, range(5)))

        assert all(r.payment_status is PaymentStatus.COMPLETED for r in results)
        assert len({r.updated_at for r in results}) == 1
        confirmed = [e for key, e in fake_producer.events if key == ORDER_CONFIRMED]
        assert len(confirmed) == 1


class TestEvents:
    def test_placed_and_confirmed_events(self, orchestrator, fake_producer, small_cart, delivery, sign):
        order = orchestrator.place_order("u1", small_cart, delivery, PaymentMethod.GATEWAY).order
        orchestrator.finalize_gateway_payment(
            order.gateway_order_id, "pay_1", sign(order.gateway_order_id, "pay_1")
        )

        assert [key for key, _ in fake_producer.events] == [ORDER_PLACED, ORDER_CONFIRMED]
        placed = fake_producer.events[0][1]
        assert placed["orderId"] == order.order_id
        assert placed["status"] == "pending"
        assert placed["total"] == 6000
        confirmed = fake_producer.events[1][1]
        assert confirmed["status"] == "confirmed"
        assert confirmed["paymentStatus"] == "completed"

    def test_publish_failure_does_not_fail_checkout(self, orchestrator, small_cart, delivery):
        quiet = _with(orchestrator, events=FlakyProducer())
        result = quiet.place_order("u1", small_cart, delivery, PaymentMethod.CASH_ON_DELIVERY)
        assert orchestrator.orders.get(result.order.order_id).status is OrderStatus.CONFIRMED

    def test_no_producer_configured(self, orchestrator, small_cart, delivery):
        silent = _with(orchestrator, events=None)
        result = silent.place_order("u1", small_cart, delivery, PaymentMethod.CASH_ON_DELIVERY)
        assert result.order.status is OrderStatus.CONFIRMED
