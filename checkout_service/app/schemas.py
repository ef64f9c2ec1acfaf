"""
Checkout schemas

Pydantic models shared by the HTTP surface and the checkout core. Fields are
snake_case in Python and camelCase on the wire (``userId``, ``addressLine1``),
matching what the storefront sends. Money is always an integer number of
minor units (paise, cents).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


def _as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back without a zone; they are always stored as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# --- Enums ---


class AddressType(str, Enum):
    HOME = "home"
    WORK = "work"
    OTHER = "other"


class PaymentMethod(str, Enum):
    CASH_ON_DELIVERY = "cod"
    GATEWAY = "gateway"

    @classmethod
    def _missing_(cls, value):
        # Names the storefront has used for the same two methods.
        aliases = {
            "cash-on-delivery": cls.CASH_ON_DELIVERY,
            "cash_on_delivery": cls.CASH_ON_DELIVERY,
            "razorpay": cls.GATEWAY,
            "online": cls.GATEWAY,
        }
        if isinstance(value, str):
            return aliases.get(value.lower())
        return None


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


# --- Addresses ---


class AddressFields(CamelModel):
    """Contact and location fields of a delivery address."""
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    email: str = Field(..., min_length=1)
    address_line1: str = Field(..., min_length=1)
    address_line2: str = ""
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=1, alias="pincode")
    address_type: AddressType = AddressType.HOME


class Address(AddressFields):
    """Address stored in a user's address book."""
    user_id: str
    address_id: str
    is_default: bool
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def created_at_in_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)


class DeliveryAddress(AddressFields):
    """Denormalized copy of an address taken at order time."""
    address_id: Optional[str] = None


class AddressCreateRequest(AddressFields):
    user_id: str = Field(..., min_length=1)
    is_default: bool = False


class AddressUpdateRequest(CamelModel):
    user_id: str = Field(..., min_length=1)
    address_id: str = Field(..., min_length=1)
    name: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = Field(None, min_length=1)
    email: Optional[str] = Field(None, min_length=1)
    address_line1: Optional[str] = Field(None, min_length=1)
    address_line2: Optional[str] = None
    city: Optional[str] = Field(None, min_length=1)
    state: Optional[str] = Field(None, min_length=1)
    postal_code: Optional[str] = Field(None, min_length=1, alias="pincode")
    address_type: Optional[AddressType] = None

    def changes(self) -> Dict[str, Any]:
        """Mutable fields that were actually supplied."""
        return self.model_dump(
            mode="json",
            exclude={"user_id", "address_id"},
            exclude_none=True,
        )


class AddressIdRequest(CamelModel):
    user_id: str = Field(..., min_length=1)
    address_id: str = Field(..., min_length=1)


# --- Cart and orders ---


class CartItem(CamelModel):
    model_config = ConfigDict(frozen=True)

    product_id: str = Field(..., min_length=1)
    name: str
    unit_price: int = Field(
        ...,
        ge=0,
        validation_alias=AliasChoices("unitPrice", "price", "unit_price"),
        serialization_alias="unitPrice",
    )
    quantity: int = Field(..., ge=1)

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity


class CartSnapshot(CamelModel):
    """Immutable copy of the cart handed to checkout."""
    model_config = ConfigDict(frozen=True)

    items: tuple[CartItem, ...] = Field(..., min_length=1)


class Order(CamelModel):
    order_id: str
    user_id: str
    items: List[CartItem]
    delivery_address: DeliveryAddress
    payment_method: PaymentMethod
    order_notes: str = ""
    currency: str
    subtotal: int
    shipping_fee: int = Field(..., alias="shipping")
    total: int
    status: OrderStatus
    payment_status: PaymentStatus
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @field_validator("created_at", "updated_at")
    @classmethod
    def timestamps_in_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)


class GatewayIntentSchema(CamelModel):
    gateway_order_id: str
    amount_minor_units: int
    currency: str
    receipt_id: str


class OrderCreateRequest(CamelModel):
    user_id: str = Field(..., min_length=1)
    items: List[CartItem] = Field(..., min_length=1)
    delivery_address: Optional[DeliveryAddress] = None
    address_id: Optional[str] = None
    payment_method: PaymentMethod
    order_notes: str = ""
    # Client-computed totals; checked against the server's own arithmetic.
    subtotal: Optional[int] = None
    shipping: Optional[int] = None
    total: Optional[int] = None
    payment_status: Optional[PaymentStatus] = None
    payment_id: Optional[str] = None
    gateway_order_id: Optional[str] = None
    signature: Optional[str] = None
    idempotency_key: Optional[str] = None


class OrderCreateResponse(CamelModel):
    success: bool = True
    order_id: str
    order: Order
    gateway_intent: Optional[GatewayIntentSchema] = None


class OrderStatusUpdateRequest(CamelModel):
    status: OrderStatus


class PaymentStatusUpdateRequest(CamelModel):
    payment_status: PaymentStatus


class OrderUpdateResponse(CamelModel):
    success: bool = True
    order_id: str
    updated_order: Order


# --- Gateway ---


class GatewayOrderRequest(CamelModel):
    amount: int = Field(..., gt=0, description="Amount in minor units")
    currency: Optional[str] = None
    receipt: Optional[str] = None
    notes: Optional[Dict[str, str]] = None


class PaymentCallback(CamelModel):
    """Values the gateway hands back after the payer completes checkout."""
    payment_id: str = Field(..., min_length=1)
    order_id: str = Field(..., min_length=1, description="Gateway order id")
    signature: str = Field(..., min_length=1)


class VerifyPaymentResponse(CamelModel):
    is_signature_valid: bool
    payment_id: str
    order_id: str


class FinalizePaymentResponse(CamelModel):
    success: bool = True
    order: Order
