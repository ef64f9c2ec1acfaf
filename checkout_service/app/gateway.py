import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, TypeVar

import requests

from .errors import (
    ConfigurationError,
    GatewayRejectedError,
    GatewayUnavailableError,
    ValidationError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TransientFailure(Exception):
    """Raised by an attempt that may succeed if tried again."""

    pass


class RetriesExhausted(Exception):
    def __init__(self, attempts: int, last_error: TransientFailure):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"gave up after {attempts} attempt(s): {last_error}")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry for a single operation.

    Only ``TransientFailure`` is retried; any other exception from the
    operation propagates on the attempt that raised it.
    """
    max_attempts: int = 2
    backoff_seconds: float = 0.5
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    def call(self, operation: Callable[[int], T]) -> T:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return operation(attempt)
            except TransientFailure as exc:
                if attempt == self.max_attempts:
                    raise RetriesExhausted(attempt, exc) from exc
                logger.warning("Attempt %d/%d failed (%s), retrying", attempt, self.max_attempts, exc)
                if self.backoff_seconds:
                    self.sleep(self.backoff_seconds)
        raise AssertionError("max_attempts must be at least 1")


@dataclass(frozen=True)
class GatewayIntent:
    """Provider-side payment order created before the payer sees a payment form."""
    gateway_order_id: str
    amount_minor_units: int
    currency: str
    receipt_id: str
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


def _error_detail(content: bytes) -> str:
    try:
        body = json.loads(content)
    except ValueError:
        return content.decode("utf-8", errors="replace")[:200]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("description") or error.get("code") or str(error)
    return str(body)[:200]


class PaymentGatewayClient:
    """Creates payment orders with the external gateway over HTTP."""

    ORDERS_PATH = "/v1/orders"

    def __init__(
        self,
        key_id: Optional[str],
        key_secret: Optional[str],
        base_url: str,
        timeout_seconds: float = 10.0,
        retry_policy: Optional[RetryPolicy] = None,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.retry_policy = retry_policy or RetryPolicy()
        self.session = session or requests.Session()
        self.clock = clock

    def create_intent(
        self,
        amount_minor_units: int,
        currency: str,
        receipt_id: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> GatewayIntent:
        """
        Create a gateway order for ``amount_minor_units`` of ``currency``.

        Each attempt, body included, must finish within ``timeout_seconds``.
        5xx responses and network failures (timeouts included) are retried
        according to the retry policy; 4xx responses are not.

        Raises:
            ValidationError: amount not a positive integer or bad currency code.
            ConfigurationError: credentials missing or refused by the gateway.
            GatewayRejectedError: the gateway rejected the request (4xx).
            GatewayUnavailableError: 5xx / network failure after retrying.
        """
        if isinstance(amount_minor_units, bool) or not isinstance(amount_minor_units, int) or amount_minor_units <= 0:
            raise ValidationError("amount must be a positive integer in minor units", "amount")
        if not currency or len(currency) != 3 or not currency.isalpha():
            raise ValidationError(f"invalid currency code: {currency!r}", "currency")
        if not self.key_id:
            raise ConfigurationError("GATEWAY_KEY_ID", "must be set to create gateway orders")
        if not self.key_secret:
            raise ConfigurationError("GATEWAY_KEY_SECRET", "must be set to create gateway orders")

        payload: Dict[str, Any] = {
            "amount": amount_minor_units,
            "currency": currency.upper(),
            "receipt": receipt_id,
        }
        if notes:
            payload["notes"] = notes

        try:
            body = self.retry_policy.call(lambda attempt: self._post_order(payload, attempt))
        except RetriesExhausted as exc:
            raise GatewayUnavailableError(exc.attempts, str(exc.last_error)) from exc

        gateway_order_id = body.get("id") if isinstance(body, dict) else None
        if not gateway_order_id:
            raise GatewayUnavailableError(1, "gateway response did not include an order id")

        logger.info("Created gateway order %s for %d %s", gateway_order_id, amount_minor_units, payload["currency"])
        return GatewayIntent(
            gateway_order_id=gateway_order_id,
            amount_minor_units=int(body.get("amount", amount_minor_units)),
            currency=body.get("currency", payload["currency"]),
            receipt_id=body.get("receipt") or receipt_id,
            raw=body,
        )

    def _post_order(self, payload: Dict[str, Any], attempt: int) -> Dict[str, Any]:
        url = f"{self.base_url}{self.ORDERS_PATH}"
        deadline = self.clock() + self.timeout_seconds
        try:
            response = self.session.post(
                url,
                json=payload,
                auth=(self.key_id, self.key_secret),
                timeout=(self.timeout_seconds, self.timeout_seconds),
                stream=True,
            )
        except requests.exceptions.RequestException as exc:
            # Connection errors and timeouts abort the attempt.
            raise TransientFailure(f"{type(exc).__name__}: {exc}") from exc

        try:
            content = self._read_body(response, deadline)
        finally:
            response.close()

        status = response.status_code
        if status >= 500:
            raise TransientFailure(f"gateway returned {status}")
        if status in (401, 403):
            raise ConfigurationError("GATEWAY_KEY_ID", f"gateway refused credentials ({status})")
        if status >= 400:
            raise GatewayRejectedError(status, _error_detail(content))

        try:
            return json.loads(content)
        except ValueError as exc:
            raise GatewayUnavailableError(attempt, "gateway returned a non-JSON body") from exc

    def _read_body(self, response: requests.Response, deadline: float) -> bytes:
        """
        Read the whole response body before ``deadline``.

        The read timeout only bounds the gap between chunks, so a body that
        keeps trickling in is cut off here.
        """
        chunks = []
        try:
            for chunk in response.iter_content(chunk_size=4096):
                if self.clock() > deadline:
                    raise TransientFailure(f"attempt exceeded {self.timeout_seconds}s")
                chunks.append(chunk)
        except requests.exceptions.RequestException as exc:
            raise TransientFailure(f"{type(exc).__name__}: {exc}") from exc
        if self.clock() > deadline:
            raise TransientFailure(f"attempt exceeded {self.timeout_seconds}s")
        return b"".join(chunks)
