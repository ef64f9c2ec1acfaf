"""Exceptions raised by the checkout service."""


class CheckoutError(Exception):
    """Base exception for all checkout errors."""

    pass


class ValidationError(CheckoutError):
    """Raised when a request is missing a required field or is inconsistent."""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class NotFoundError(CheckoutError):
    """Base for unknown order or address ids."""

    pass


class OrderNotFoundError(NotFoundError):
    """Raised when no order matches the given id."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class AddressNotFoundError(NotFoundError):
    """Raised when an address id does not belong to the user."""

    def __init__(self, user_id: str, address_id: str):
        self.user_id = user_id
        self.address_id = address_id
        super().__init__(f"Address {address_id} not found for user {user_id}")


class ConfigurationError(CheckoutError):
    """Raised when required configuration is missing or invalid."""

    def __init__(self, setting: str, reason: str):
        self.setting = setting
        super().__init__(f"Invalid configuration for {setting}: {reason}")


class GatewayRejectedError(CheckoutError):
    """Raised when the payment gateway permanently rejects a request (4xx)."""

    def __init__(self, status_code: int, detail: str):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Payment gateway rejected the request ({status_code}): {detail}")


class GatewayUnavailableError(CheckoutError):
    """Raised when the payment gateway could not be reached after retrying."""

    def __init__(self, attempts: int, reason: str):
        self.attempts = attempts
        self.reason = reason
        super().__init__(
            f"Payment gateway unavailable after {attempts} attempt(s): {reason}. Please try again."
        )


class SignatureMismatchError(CheckoutError):
    """Raised when a payment callback signature does not verify."""

    def __init__(self, gateway_order_id: str, gateway_payment_id: str):
        self.gateway_order_id = gateway_order_id
        self.gateway_payment_id = gateway_payment_id
        super().__init__(
            f"Payment signature mismatch for gateway order {gateway_order_id}; payment not trusted"
        )


class PaymentConflictError(CheckoutError):
    """Raised when a settled gateway order is presented with another payment id."""

    def __init__(self, gateway_order_id: str, recorded_payment_id: str, presented_payment_id: str):
        self.gateway_order_id = gateway_order_id
        self.recorded_payment_id = recorded_payment_id
        self.presented_payment_id = presented_payment_id
        super().__init__(
            f"Gateway order {gateway_order_id} is already settled by payment {recorded_payment_id}"
        )


class OrderConflictError(CheckoutError):
    """Raised when an order would reuse a gateway order id or idempotency key another order holds."""

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)


class StoreUnavailableError(CheckoutError):
    """Raised when the durable store fails. ``reason`` is for the server log only."""

    def __init__(self, operation: str, reason: str, message: str | None = None):
        self.operation = operation
        self.reason = reason
        super().__init__(message or f"The order store is unavailable ({operation}); please try again")


class OrderNotRecordedError(StoreUnavailableError):
    """Raised when a gateway intent exists but the local order could not be saved."""

    def __init__(self, gateway_order_id: str, reason: str):
        self.gateway_order_id = gateway_order_id
        super().__init__(
            "place_order",
            reason,
            f"Payment may have been taken but the order was not recorded "
            f"(gateway order {gateway_order_id})",
        )
