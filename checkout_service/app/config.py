import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .errors import ConfigurationError


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, read once from the environment."""
    database_url: str
    orders_table: str
    addresses_table: str
    gateway_key_id: Optional[str]
    gateway_key_secret: str
    gateway_base_url: str
    gateway_timeout_seconds: float
    gateway_max_attempts: int
    currency: str
    free_shipping_threshold: int  # minor units
    flat_shipping_fee: int  # minor units
    rabbitmq_host: Optional[str]
    cors_origins: tuple
    log_level: str


def _int_setting(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(name, f"expected an integer, got {raw!r}")


def _optional(environ: Mapping[str, str], name: str) -> Optional[str]:
    value = environ.get(name, "").strip()
    return value or None


def load_settings(environ: Mapping[str, str] = os.environ) -> Settings:
    """
    Build Settings from environment variables.

    Raises:
        ConfigurationError: If the gateway secret or a table name is missing,
            or a numeric setting is not an integer.
    """
    secret = _optional(environ, "GATEWAY_KEY_SECRET")
    if secret is None:
        raise ConfigurationError("GATEWAY_KEY_SECRET", "must be set")

    orders_table = environ.get("ORDERS_TABLE", "petverse-orders").strip()
    addresses_table = environ.get("ADDRESSES_TABLE", "petverse-user-addresses").strip()
    if not orders_table:
        raise ConfigurationError("ORDERS_TABLE", "must not be blank")
    if not addresses_table:
        raise ConfigurationError("ADDRESSES_TABLE", "must not be blank")

    max_attempts = _int_setting(environ, "GATEWAY_MAX_ATTEMPTS", 2)
    if max_attempts < 1:
        raise ConfigurationError("GATEWAY_MAX_ATTEMPTS", "must be at least 1")

    origins = environ.get("CORS_ORIGINS", "*")

    return Settings(
        database_url=environ.get("DATABASE_URL", "sqlite:///./checkout.db"),
        orders_table=orders_table,
        addresses_table=addresses_table,
        gateway_key_id=_optional(environ, "GATEWAY_KEY_ID"),
        gateway_key_secret=secret,
        gateway_base_url=environ.get("GATEWAY_BASE_URL", "https://api.razorpay.com").rstrip("/"),
        gateway_timeout_seconds=float(_int_setting(environ, "GATEWAY_TIMEOUT_SECONDS", 10)),
        gateway_max_attempts=max_attempts,
        currency=environ.get("CURRENCY", "INR").upper(),
        free_shipping_threshold=_int_setting(environ, "FREE_SHIPPING_THRESHOLD", 20000),
        flat_shipping_fee=_int_setting(environ, "FLAT_SHIPPING_FEE", 5000),
        rabbitmq_host=_optional(environ, "RABBITMQ_HOST"),
        cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
        log_level=environ.get("LOG_LEVEL", "INFO").upper(),
    )


settings = load_settings()
