"""
Checkout orchestration.

A checkout is two phases. ``place_order`` turns a cart snapshot into a
durable order: cash-on-delivery orders start ``confirmed``, gateway orders
start ``pending`` against a freshly created gateway intent.
``finalize_gateway_payment`` later settles a pending gateway order once the
payment callback's signature verifies. Nothing here rolls back a committed
order, and a full checkout is never retried automatically.
"""

import logging
import secrets
import string
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

import pika

from .addresses import AddressBook
from .errors import (
    OrderConflictError,
    OrderNotFoundError,
    OrderNotRecordedError,
    SignatureMismatchError,
    StoreUnavailableError,
    ValidationError,
)
from .gateway import GatewayIntent, PaymentGatewayClient
from .messaging.producer import ORDER_CONFIRMED, ORDER_PLACED
from .order_store import OrderStore
from .pricing import ShippingPolicy, Totals, compute_totals
from .schemas import (
    Address,
    AddressFields,
    CartSnapshot,
    DeliveryAddress,
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
)
from .verifier import PaymentVerifier

logger = logging.getLogger(__name__)

_ORDER_ID_ALPHABET = string.digits + string.ascii_lowercase


def generate_order_id() -> str:
    """``ORD-<epoch ms>-<9 random base36 chars>``."""
    suffix = "".join(secrets.choice(_ORDER_ID_ALPHABET) for _ in range(9))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


@dataclass(frozen=True)
class PlacementResult:
    order: Order
    intent: Optional[GatewayIntent] = None
    replayed: bool = False


class CheckoutOrchestrator:
    def __init__(
        self,
        orders: OrderStore,
        addresses: AddressBook,
        gateway: PaymentGatewayClient,
        verifier: PaymentVerifier,
        shipping_policy: ShippingPolicy,
        currency: str,
        events=None,
    ):
        self.orders = orders
        self.addresses = addresses
        self.gateway = gateway
        self.verifier = verifier
        self.shipping_policy = shipping_policy
        self.currency = currency
        self.events = events

    def quote(self, cart: CartSnapshot) -> Totals:
        return compute_totals(cart.items, self.shipping_policy)

    def resolve_address(
        self,
        user_id: str,
        address: Optional[Union[Address, DeliveryAddress]] = None,
        address_id: Optional[str] = None,
    ) -> DeliveryAddress:
        """
        Pick the delivery address for an order: an explicit address, else the
        stored address ``address_id``, else the user's default address.
        """
        if address is not None:
            owner = getattr(address, "user_id", None)
            if owner is not None and owner != user_id:
                raise ValidationError("delivery address does not belong to the user", "deliveryAddress")
            return _delivery_copy(address)
        if address_id:
            return _delivery_copy(self.addresses.get(user_id, address_id))
        default = self.addresses.get_default(user_id)
        if default is None:
            raise ValidationError("a delivery address is required", "deliveryAddress")
        return _delivery_copy(default)

    def place_order(
        self,
        user_id: str,
        cart: CartSnapshot,
        address: Optional[Union[Address, DeliveryAddress]],
        payment_method: PaymentMethod,
        notes: str = "",
        *,
        address_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        gateway_order_id: Optional[str] = None,
    ) -> PlacementResult:
        """
        Create the order for one checkout attempt.

        For gateway payments a gateway intent for the order total is created
        first (or ``gateway_order_id`` is adopted when the client created the
        intent itself); if that fails nothing is stored. A repeated
        ``idempotency_key``, or an adopted ``gateway_order_id`` the user already
        ordered against, returns the order the first attempt stored.

        Raises:
            ValidationError, AddressNotFoundError: bad input; nothing happened.
            ConfigurationError, GatewayRejectedError, GatewayUnavailableError:
                the gateway intent could not be created; nothing was stored.
            OrderConflictError: the adopted gateway order belongs to another user.
            OrderNotRecordedError: the intent exists but the order was not stored.
            StoreUnavailableError: a cash-on-delivery order was not stored.
        """
        if not user_id:
            raise ValidationError("userId required", "userId")
        if not cart.items:
            raise ValidationError("cart is empty", "items")
        try:
            payment_method = PaymentMethod(payment_method)
        except ValueError:
            raise ValidationError(f"unknown payment method: {payment_method!r}", "paymentMethod")
        if gateway_order_id and payment_method is not PaymentMethod.GATEWAY:
            raise ValidationError("gatewayOrderId is only valid for gateway payments", "gatewayOrderId")

        previous = self._previous_attempt(user_id, idempotency_key, gateway_order_id)
        if previous is not None:
            logger.info("Replaying order %s for user %s", previous.order_id, user_id)
            return self._replay(previous)

        delivery = self.resolve_address(user_id, address, address_id)
        totals = self.quote(cart)
        order_id = generate_order_id()

        intent = None
        if payment_method is PaymentMethod.GATEWAY:
            if gateway_order_id:
                intent = GatewayIntent(
                    gateway_order_id=gateway_order_id,
                    amount_minor_units=totals.total,
                    currency=self.currency,
                    receipt_id=order_id,
                )
            else:
                intent = self.gateway.create_intent(
                    totals.total,
                    self.currency,
                    receipt_id=order_id,
                    notes={"orderId": order_id, "userId": user_id},
                )
            status = OrderStatus.PENDING
        else:
            # Cash changes hands on delivery; the order itself is accepted now.
            status = OrderStatus.CONFIRMED

        now = datetime.now(timezone.utc)
        order = Order(
            order_id=order_id,
            user_id=user_id,
            items=list(cart.items),
            delivery_address=delivery,
            payment_method=payment_method,
            order_notes=notes or "",
            currency=self.currency,
            subtotal=totals.subtotal,
            shipping_fee=totals.shipping_fee,
            total=totals.total,
            status=status,
            payment_status=PaymentStatus.PENDING,
            gateway_order_id=intent.gateway_order_id if intent else None,
            created_at=now,
            updated_at=now,
        )

        try:
            saved = self.orders.put(order, idempotency_key=idempotency_key)
        except OrderConflictError:
            # A concurrent request for the same key or gateway order got there first.
            try:
                previous = self._previous_attempt(user_id, idempotency_key, gateway_order_id)
            except StoreUnavailableError as exc:
                if intent is None:
                    raise
                raise self._not_recorded(intent, user_id, order_id, exc) from exc
            if previous is None:
                raise
            return self._replay(previous)
        except StoreUnavailableError as exc:
            if intent is None:
                raise
            raise self._not_recorded(intent, user_id, order_id, exc) from exc

        logger.info(
            "Placed order %s for user %s: %s, total %d %s",
            saved.order_id,
            user_id,
            payment_method.value,
            saved.total,
            saved.currency,
        )
        self._emit(ORDER_PLACED, saved)
        return PlacementResult(order=saved, intent=intent)

    def finalize_gateway_payment(self, gateway_order_id: str, gateway_payment_id: str, signature: str) -> Order:
        """
        Settle the order behind ``gateway_order_id`` if the callback signature
        verifies. Repeating the call with the same arguments returns the same
        settled order.

        Raises:
            OrderNotFoundError: No order was placed against the gateway order.
            SignatureMismatchError: The signature does not verify; the order is untouched.
            PaymentConflictError: The order was already settled by another payment.
        """
        order = self.orders.get_by_gateway_order_id(gateway_order_id)
        result = self.verifier.verify(gateway_order_id, gateway_payment_id, signature)
        if not result.is_valid:
            logger.warning(
                "Signature mismatch for gateway order %s (order %s, payment %s)",
                gateway_order_id,
                order.order_id,
                gateway_payment_id,
            )
            raise SignatureMismatchError(gateway_order_id, gateway_payment_id)

        settled, settled_now = self.orders.mark_paid(gateway_order_id, gateway_payment_id)
        if settled_now:
            logger.info("Order %s settled by payment %s", settled.order_id, gateway_payment_id)
            self._emit(ORDER_CONFIRMED, settled)
        else:
            logger.info("Duplicate settlement of order %s by payment %s ignored", settled.order_id, gateway_payment_id)
        return settled

    def _previous_attempt(
        self, user_id: str, idempotency_key: Optional[str], gateway_order_id: Optional[str]
    ) -> Optional[Order]:
        """
        The order an earlier call with this idempotency key or adopted gateway
        order already recorded for the user, if any.

        Raises:
            OrderConflictError: The gateway order belongs to another user's order.
        """
        if idempotency_key:
            previous = self.orders.find_by_idempotency_key(user_id, idempotency_key)
            if previous is not None:
                return previous
        if not gateway_order_id:
            return None
        try:
            previous = self.orders.get_by_gateway_order_id(gateway_order_id)
        except OrderNotFoundError:
            return None
        if previous.user_id != user_id:
            logger.warning(
                "User %s presented gateway order %s, which belongs to order %s",
                user_id,
                gateway_order_id,
                previous.order_id,
            )
            raise OrderConflictError("gatewayOrderId already belongs to another order")
        return previous

    def _not_recorded(
        self, intent: GatewayIntent, user_id: str, order_id: str, exc: StoreUnavailableError
    ) -> OrderNotRecordedError:
        logger.error(
            "Gateway order %s created for user %s but order %s was not recorded: %s",
            intent.gateway_order_id,
            user_id,
            order_id,
            exc.reason,
        )
        return OrderNotRecordedError(intent.gateway_order_id, exc.reason)

    def _replay(self, order: Order) -> PlacementResult:
        intent = None
        if order.gateway_order_id:
            intent = GatewayIntent(
                gateway_order_id=order.gateway_order_id,
                amount_minor_units=order.total,
                currency=order.currency,
                receipt_id=order.order_id,
            )
        return PlacementResult(order=order, intent=intent, replayed=True)

    def _emit(self, routing_key: str, order: Order) -> None:
        if self.events is None:
            return
        event = {
            "orderId": order.order_id,
            "userId": order.user_id,
            "status": order.status.value,
            "paymentStatus": order.payment_status.value,
            "paymentMethod": order.payment_method.value,
            "total": order.total,
            "currency": order.currency,
            "gatewayOrderId": order.gateway_order_id,
        }
        try:
            self.events.publish_event(event, routing_key)
        except pika.exceptions.AMQPError:
            # The order is committed either way.
            logger.exception("Failed to publish %s for order %s", routing_key, order.order_id)


def _delivery_copy(address: AddressFields) -> DeliveryAddress:
    values = address.model_dump(include=set(AddressFields.model_fields) | {"address_id"})
    return DeliveryAddress.model_validate(values)
