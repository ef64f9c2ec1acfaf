import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from . import models
from .database import run_in_transaction, run_read
from .errors import OrderConflictError, OrderNotFoundError, PaymentConflictError
from .schemas import Order, OrderStatus, PaymentStatus

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _row_values(order: Order, idempotency_key: Optional[str]) -> Dict[str, Any]:
    return {
        "order_id": order.order_id,
        "user_id": order.user_id,
        "items": [item.model_dump(mode="json", by_alias=True) for item in order.items],
        "delivery_address": order.delivery_address.model_dump(mode="json", by_alias=True),
        "payment_method": order.payment_method.value,
        "order_notes": order.order_notes,
        "currency": order.currency,
        "subtotal": order.subtotal,
        "shipping_fee": order.shipping_fee,
        "total": order.total,
        "status": order.status.value,
        "payment_status": order.payment_status.value,
        "gateway_order_id": order.gateway_order_id,
        "gateway_payment_id": order.gateway_payment_id,
        "idempotency_key": idempotency_key,
        "created_at": order.created_at,
        "updated_at": order.updated_at,
    }


def _one(session: Session, *criteria) -> Optional[models.Order]:
    return session.scalars(select(models.Order).where(*criteria)).first()


class OrderStore:
    """Durable order records keyed by order id, never deleted."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def put(self, order: Order, idempotency_key: Optional[str] = None) -> Order:
        """
        Insert or replace the order with ``order.order_id``. Safe to repeat.

        Raises:
            OrderConflictError: Another order already holds the gateway order
                id or the user's idempotency key. Not retried.
        """
        values = _row_values(order, idempotency_key)

        def op(session: Session) -> Order:
            row = _one(session, models.Order.order_id == order.order_id)
            if row is None:
                row = models.Order(**values)
                session.add(row)
            else:
                for key, value in values.items():
                    if key == "idempotency_key" and value is None:
                        continue
                    setattr(row, key, value)
            try:
                session.flush()
            except IntegrityError as exc:
                logger.warning("Order %s collides with a stored order: %s", order.order_id, exc.orig)
                raise OrderConflictError(
                    "gatewayOrderId or idempotencyKey is already used by another order"
                ) from exc
            return Order.model_validate(row)

        return run_in_transaction(self._session_factory, op, "put_order")

    def get(self, order_id: str) -> Order:
        def op(session: Session) -> Order:
            row = _one(session, models.Order.order_id == order_id)
            if row is None:
                raise OrderNotFoundError(order_id)
            return Order.model_validate(row)

        return run_read(self._session_factory, op, "get_order")

    def get_by_gateway_order_id(self, gateway_order_id: str) -> Order:
        def op(session: Session) -> Order:
            row = _one(session, models.Order.gateway_order_id == gateway_order_id)
            if row is None:
                raise OrderNotFoundError(gateway_order_id)
            return Order.model_validate(row)

        return run_read(self._session_factory, op, "get_order_by_gateway_id")

    def find_by_idempotency_key(self, user_id: str, idempotency_key: str) -> Optional[Order]:
        def op(session: Session) -> Optional[Order]:
            row = _one(
                session,
                models.Order.user_id == user_id,
                models.Order.idempotency_key == idempotency_key,
            )
            return Order.model_validate(row) if row is not None else None

        return run_read(self._session_factory, op, "find_order_by_idempotency_key")

    def list_by_user(self, user_id: str) -> List[Order]:
        """All of the user's orders, newest first."""
        def op(session: Session) -> List[Order]:
            stmt = (
                select(models.Order)
                .where(models.Order.user_id == user_id)
                .order_by(models.Order.created_at.desc(), models.Order.id.desc())
            )
            return [Order.model_validate(row) for row in session.scalars(stmt)]

        return run_read(self._session_factory, op, "list_orders_by_user")

    def list_all(self) -> List[Order]:
        def op(session: Session) -> List[Order]:
            stmt = select(models.Order).order_by(models.Order.created_at.desc(), models.Order.id.desc())
            return [Order.model_validate(row) for row in session.scalars(stmt)]

        return run_read(self._session_factory, op, "list_orders")

    def update_status(self, order_id: str, status: OrderStatus) -> Order:
        return self._update(order_id, "update_order_status", status=OrderStatus(status).value)

    def update_payment_status(self, order_id: str, payment_status: PaymentStatus) -> Order:
        return self._update(
            order_id, "update_payment_status", payment_status=PaymentStatus(payment_status).value
        )

    def _update(self, order_id: str, name: str, **values: Any) -> Order:
        def op(session: Session) -> Order:
            row = _one(session, models.Order.order_id == order_id)
            if row is None:
                raise OrderNotFoundError(order_id)
            for key, value in values.items():
                setattr(row, key, value)
            row.updated_at = _utc_now()
            session.flush()
            return Order.model_validate(row)

        return run_in_transaction(self._session_factory, op, name)

    def mark_paid(self, gateway_order_id: str, gateway_payment_id: str) -> Tuple[Order, bool]:
        """
        Record a verified gateway payment with one conditional update.

        Only an order with no recorded payment id is changed, so concurrent or
        repeated callbacks settle it exactly once.

        Returns:
            The order and whether this call was the one that settled it.

        Raises:
            OrderNotFoundError: No order carries ``gateway_order_id``.
            PaymentConflictError: The order was settled by a different payment.
        """
        def op(session: Session) -> Tuple[Order, bool]:
            result = session.execute(
                update(models.Order)
                .where(
                    models.Order.gateway_order_id == gateway_order_id,
                    models.Order.gateway_payment_id.is_(None),
                )
                .values(
                    gateway_payment_id=gateway_payment_id,
                    payment_status=PaymentStatus.COMPLETED.value,
                    status=case(
                        (models.Order.status == OrderStatus.PENDING.value, OrderStatus.CONFIRMED.value),
                        else_=models.Order.status,
                    ),
                    updated_at=_utc_now(),
                )
                .execution_options(synchronize_session=False)
            )
            row = _one(session, models.Order.gateway_order_id == gateway_order_id)
            if row is None:
                raise OrderNotFoundError(gateway_order_id)
            settled_now = result.rowcount == 1
            if not settled_now and row.gateway_payment_id != gateway_payment_id:
                raise PaymentConflictError(gateway_order_id, row.gateway_payment_id, gateway_payment_id)
            return Order.model_validate(row), settled_now

        return run_in_transaction(self._session_factory, op, "mark_order_paid")
