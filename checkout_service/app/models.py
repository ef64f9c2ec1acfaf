from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from .config import settings
from .database import Base  # Import the Base class from our database setup


# Defines the ORM model for an 'Order' stored in the database.
class Order(Base):
    # The table name is configurable per deployment.
    __tablename__ = settings.orders_table

    id = Column(Integer, primary_key=True, index=True)  # Auto-incrementing primary key.
    order_id = Column(String(64), unique=True, nullable=False)  # Business-level order identifier.
    user_id = Column(String(128), index=True, nullable=False)
    items = Column(JSON, nullable=False)  # Cart snapshot at order time.
    delivery_address = Column(JSON, nullable=False)  # Copy, not a reference.
    payment_method = Column(String(32), nullable=False)
    order_notes = Column(Text, default="")
    currency = Column(String(8), nullable=False)
    subtotal = Column(Integer, nullable=False)  # Minor units.
    shipping_fee = Column(Integer, nullable=False)
    total = Column(Integer, nullable=False)
    status = Column(String(32), nullable=False)
    payment_status = Column(String(32), nullable=False)
    gateway_order_id = Column(String(128), unique=True, nullable=True)
    gateway_payment_id = Column(String(128), nullable=True)
    idempotency_key = Column(String(128), nullable=True)  # Key to prevent duplicate processing.
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_orders_user_idempotency"),
    )


# Defines the ORM model for a user's delivery 'Address'.
class Address(Base):
    __tablename__ = settings.addresses_table

    id = Column(Integer, primary_key=True)  # Creation order within the table.
    user_id = Column(String(128), nullable=False)
    address_id = Column(String(64), nullable=False)
    name = Column(String(255), nullable=False)
    phone = Column(String(32), nullable=False)
    email = Column(String(255), nullable=False)
    address_line1 = Column(String(255), nullable=False)
    address_line2 = Column(String(255), nullable=False, default="")
    city = Column(String(128), nullable=False)
    state = Column(String(128), nullable=False)
    postal_code = Column(String(16), nullable=False)
    address_type = Column(String(16), nullable=False, default="home")
    is_default = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "address_id", name="uq_addresses_user_address"),
        # At most one default per user, enforced by the store itself.
        Index(
            "uq_addresses_one_default",
            "user_id",
            unique=True,
            sqlite_where=is_default.is_(True),
            postgresql_where=is_default.is_(True),
        ),
    )
