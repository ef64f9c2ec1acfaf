# Checkout service: orders, payment gateway and address book endpoints.

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .addresses import AddressBook
from .checkout import CheckoutOrchestrator
from .config import settings
from .database import Base, SessionLocal, engine
from .errors import (
    AddressNotFoundError,
    CheckoutError,
    ConfigurationError,
    GatewayRejectedError,
    GatewayUnavailableError,
    OrderNotFoundError,
    OrderConflictError,
    OrderNotRecordedError,
    PaymentConflictError,
    SignatureMismatchError,
    StoreUnavailableError,
    ValidationError,
)
from .gateway import PaymentGatewayClient, RetryPolicy
from .messaging.producer import RabbitMQProducer
from .order_store import OrderStore
from .pricing import ShippingPolicy
from .schemas import (
    Address,
    AddressCreateRequest,
    AddressIdRequest,
    AddressUpdateRequest,
    CartSnapshot,
    FinalizePaymentResponse,
    GatewayIntentSchema,
    GatewayOrderRequest,
    Order,
    OrderCreateRequest,
    OrderCreateResponse,
    OrderStatusUpdateRequest,
    OrderUpdateResponse,
    PaymentCallback,
    PaymentStatusUpdateRequest,
    VerifyPaymentResponse,
)
from .verifier import PaymentVerifier
from . import models  # noqa: F401  (registers the tables on Base)

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create database tables on startup if they don't exist.
Base.metadata.create_all(bind=engine)


# --- Components ---

# Lazy-initialized singletons
_gateway_client: Optional[PaymentGatewayClient] = None
_verifier: Optional[PaymentVerifier] = None
_producer: Optional[RabbitMQProducer] = None


def get_order_store() -> OrderStore:
    return OrderStore(SessionLocal)


def get_address_book() -> AddressBook:
    return AddressBook(SessionLocal)


def get_gateway_client() -> PaymentGatewayClient:
    global _gateway_client
    if _gateway_client is None:
        _gateway_client = PaymentGatewayClient(
            key_id=settings.gateway_key_id,
            key_secret=settings.gateway_key_secret,
            base_url=settings.gateway_base_url,
            timeout_seconds=settings.gateway_timeout_seconds,
            retry_policy=RetryPolicy(max_attempts=settings.gateway_max_attempts),
        )
    return _gateway_client


def get_verifier() -> PaymentVerifier:
    global _verifier
    if _verifier is None:
        _verifier = PaymentVerifier(settings.gateway_key_secret)
    return _verifier


def get_event_producer() -> Optional[RabbitMQProducer]:
    global _producer
    if _producer is None and settings.rabbitmq_host:
        _producer = RabbitMQProducer(settings.rabbitmq_host)
    return _producer


def get_orchestrator(
    orders: OrderStore = Depends(get_order_store),
    addresses: AddressBook = Depends(get_address_book),
    gateway: PaymentGatewayClient = Depends(get_gateway_client),
    verifier: PaymentVerifier = Depends(get_verifier),
    events: Optional[RabbitMQProducer] = Depends(get_event_producer),
) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(
        orders=orders,
        addresses=addresses,
        gateway=gateway,
        verifier=verifier,
        shipping_policy=ShippingPolicy(
            free_shipping_threshold=settings.free_shipping_threshold,
            flat_fee=settings.flat_shipping_fee,
        ),
        currency=settings.currency,
        events=events,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.rabbitmq_host:
        from .consumers import start_consumer_thread

        start_consumer_thread(
            get_orchestrator(
                orders=get_order_store(),
                addresses=get_address_book(),
                gateway=get_gateway_client(),
                verifier=get_verifier(),
                events=get_event_producer(),
            ),
            settings.rabbitmq_host,
        )
    yield


app = FastAPI(title="Checkout Service", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins),
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Api-Key"],
)


# --- Error handling ---

# Map exception types to HTTP status codes
ERROR_STATUS_CODES: dict[type, int] = {
    ValidationError: 400,
    SignatureMismatchError: 400,
    OrderNotFoundError: 404,
    AddressNotFoundError: 404,
    PaymentConflictError: 409,
    OrderConflictError: 409,
    ConfigurationError: 500,
    StoreUnavailableError: 500,
    OrderNotRecordedError: 500,
    GatewayRejectedError: 502,
    GatewayUnavailableError: 502,
}


def _status_for(exc: CheckoutError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 500


@app.exception_handler(CheckoutError)
async def checkout_error_handler(request: Request, exc: CheckoutError) -> JSONResponse:
    """Map CheckoutError subclasses to appropriate HTTP responses."""
    status_code = _status_for(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    content = {"success": False, "detail": str(exc), "error_type": type(exc).__name__}
    if isinstance(exc, GatewayRejectedError):
        content["gatewayStatus"] = exc.status_code
    if isinstance(exc, OrderNotRecordedError):
        content["gatewayOrderId"] = exc.gateway_order_id
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Missing or malformed fields are user-correctable: 400, like ValidationError."""
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "detail": "Invalid request",
            "error_type": ValidationError.__name__,
            "errors": jsonable_encoder(exc.errors()),
        },
    )


# --- Orders ---

@app.get("/orders/health")
def health():
    """Health check endpoint."""
    return {
        "success": True,
        "message": "Order service is healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# Creates an order: cash on delivery, a new gateway order, or a gateway
# order the client already created (and possibly already paid).
@app.post("/orders/create", response_model=OrderCreateResponse, status_code=201)
def create_order(
    req: OrderCreateRequest,
    response: Response,
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    cart = CartSnapshot(items=tuple(req.items))

    # 1. The client's arithmetic must agree with ours.
    totals = orchestrator.quote(cart)
    for field, claimed, actual in (
        ("subtotal", req.subtotal, totals.subtotal),
        ("shipping", req.shipping, totals.shipping_fee),
        ("total", req.total, totals.total),
    ):
        if claimed is not None and claimed != actual:
            raise ValidationError(f"{field} is {claimed} but the cart comes to {actual}", field)

    # 2. A client-reported payment is only accepted with a valid signature.
    if req.payment_id:
        if not req.gateway_order_id or not req.signature:
            raise ValidationError("paymentId requires gatewayOrderId and signature", "signature")
        check = orchestrator.verifier.verify(req.gateway_order_id, req.payment_id, req.signature)
        if not check.is_valid:
            raise SignatureMismatchError(req.gateway_order_id, req.payment_id)

    # 3. Place the order (creates the gateway intent if one is needed).
    result = orchestrator.place_order(
        req.user_id,
        cart,
        req.delivery_address,
        req.payment_method,
        req.order_notes,
        address_id=req.address_id,
        idempotency_key=req.idempotency_key,
        gateway_order_id=req.gateway_order_id,
    )
    order = result.order

    # 4. Settle it straight away when the payment already happened.
    if req.payment_id:
        order = orchestrator.finalize_gateway_payment(req.gateway_order_id, req.payment_id, req.signature)

    if result.replayed:
        response.status_code = 200

    intent = None
    if result.intent is not None:
        intent = GatewayIntentSchema(
            gateway_order_id=result.intent.gateway_order_id,
            amount_minor_units=result.intent.amount_minor_units,
            currency=result.intent.currency,
            receipt_id=result.intent.receipt_id,
        )
    return OrderCreateResponse(order_id=order.order_id, order=order, gateway_intent=intent)


# Settles a pending gateway order from the payment callback.
@app.post("/orders/finalize-payment", response_model=FinalizePaymentResponse)
def finalize_payment(
    req: PaymentCallback,
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    order = orchestrator.finalize_gateway_payment(req.order_id, req.payment_id, req.signature)
    return FinalizePaymentResponse(order=order)


@app.get("/orders/user", response_model=List[Order])
def list_orders_without_user():
    raise ValidationError("userId required", "userId")


# Retrieves a user's orders, newest first.
@app.get("/orders/user/{user_id}", response_model=List[Order])
def list_user_orders(user_id: str, orders: OrderStore = Depends(get_order_store)):
    if not user_id.strip():
        raise ValidationError("userId required", "userId")
    return orders.list_by_user(user_id)


# Retrieves a single order by its ID.
@app.get("/orders/{order_id}", response_model=Order)
def get_order(order_id: str, orders: OrderStore = Depends(get_order_store)):
    return orders.get(order_id)


# --- Admin ---

@app.get("/admin/orders", response_model=List[Order])
def list_all_orders(orders: OrderStore = Depends(get_order_store)):
    return orders.list_all()


@app.put("/admin/orders/{order_id}/status", response_model=OrderUpdateResponse)
def update_order_status(
    order_id: str,
    req: OrderStatusUpdateRequest,
    orders: OrderStore = Depends(get_order_store),
):
    updated = orders.update_status(order_id, req.status)
    logger.info("Order %s status set to %s", order_id, req.status.value)
    return OrderUpdateResponse(order_id=order_id, updated_order=updated)


@app.put("/admin/orders/{order_id}/payment", response_model=OrderUpdateResponse)
def update_payment_status(
    order_id: str,
    req: PaymentStatusUpdateRequest,
    orders: OrderStore = Depends(get_order_store),
):
    updated = orders.update_payment_status(order_id, req.payment_status)
    logger.info("Order %s payment status set to %s", order_id, req.payment_status.value)
    return OrderUpdateResponse(order_id=order_id, updated_order=updated)


# --- Gateway ---

# Creates a gateway order and returns the gateway's own order object.
@app.post("/gateway/create-order")
def create_gateway_order(
    req: GatewayOrderRequest,
    gateway: PaymentGatewayClient = Depends(get_gateway_client),
):
    intent = gateway.create_intent(
        req.amount,
        req.currency or settings.currency,
        receipt_id=req.receipt or f"rcpt_{uuid.uuid4().hex[:12]}",
        notes=req.notes,
    )
    return intent.raw or {
        "id": intent.gateway_order_id,
        "amount": intent.amount_minor_units,
        "currency": intent.currency,
        "receipt": intent.receipt_id,
    }


# Checks a payment signature without touching any order.
@app.post("/gateway/verify-payment", response_model=VerifyPaymentResponse)
def verify_payment(req: PaymentCallback, verifier: PaymentVerifier = Depends(get_verifier)):
    result = verifier.verify(req.order_id, req.payment_id, req.signature)
    if not result.is_valid:
        logger.warning("Signature check failed for gateway order %s", req.order_id)
    return VerifyPaymentResponse(
        is_signature_valid=result.is_valid,
        payment_id=result.gateway_payment_id,
        order_id=result.gateway_order_id,
    )


# --- Address book ---

@app.get("/user/addresses", response_model=List[Address])
def list_addresses(
    user_id: Optional[str] = Query(None, alias="userId"),
    addresses: AddressBook = Depends(get_address_book),
):
    if not user_id:
        raise ValidationError("userId required", "userId")
    return addresses.list(user_id)


@app.post("/user/addresses", response_model=Address)
def add_address(req: AddressCreateRequest, addresses: AddressBook = Depends(get_address_book)):
    return addresses.add(req.user_id, req, is_default_requested=req.is_default)


@app.put("/user/addresses")
def update_address(req: AddressUpdateRequest, addresses: AddressBook = Depends(get_address_book)):
    addresses.update(req.user_id, req.address_id, req.changes())
    return {"success": True}


@app.delete("/user/addresses")
def delete_address(req: AddressIdRequest, addresses: AddressBook = Depends(get_address_book)):
    promoted = addresses.remove(req.user_id, req.address_id)
    return {"success": True, "promotedAddressId": promoted}


@app.put("/user/addresses/default")
def set_default_address(req: AddressIdRequest, addresses: AddressBook = Depends(get_address_book)):
    address = addresses.set_default(req.user_id, req.address_id)
    return {"success": True, "defaultAddressId": address.address_id}


if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
