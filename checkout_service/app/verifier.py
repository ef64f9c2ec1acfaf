import hashlib
import hmac
from dataclasses import dataclass

from .errors import ConfigurationError


@dataclass(frozen=True)
class VerificationResult:
    is_valid: bool
    gateway_order_id: str
    gateway_payment_id: str


def expected_signature(secret: str, gateway_order_id: str, gateway_payment_id: str) -> str:
    """Hex HMAC-SHA256 of ``"<order id>|<payment id>"`` under the shared secret."""
    message = f"{gateway_order_id}|{gateway_payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class PaymentVerifier:
    """Checks that a payment callback was signed with the gateway secret. No network."""

    def __init__(self, secret: str):
        if not secret:
            raise ConfigurationError("GATEWAY_KEY_SECRET", "must be set")
        self._secret = secret

    def verify(self, gateway_order_id: str, gateway_payment_id: str, signature: str) -> VerificationResult:
        expected = expected_signature(self._secret, gateway_order_id, gateway_payment_id)
        # Compare as bytes: compare_digest refuses non-ASCII str input.
        is_valid = hmac.compare_digest(
            expected.encode("utf-8"),
            (signature or "").encode("utf-8"),
        )
        return VerificationResult(
            is_valid=is_valid,
            gateway_order_id=gateway_order_id,
            gateway_payment_id=gateway_payment_id,
        )
