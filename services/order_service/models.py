"""Database models for Order Service."""
from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import relationship

from shared.database import Base, JSONType


class OrderStatus(str, Enum):
    """Order lifecycle."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class FulfillmentStatus(str, Enum):
    """Fulfillment state of an order or a single order line."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


class OrderStep(str, Enum):
    """Steps recorded in the order history."""
    ORDER_PLACED = "order_placed"
    PAYMENT_CONFIRMED = "payment_confirmed"
    STATUS_CHANGED = "status_changed"
    FULFILLMENT = "fulfillment"


class ShippingAddress(BaseModel):
    """Immutable shipping address snapshot stored on the order."""

    model_config = ConfigDict(frozen=True)

    full_name: str
    street: str
    city: str
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: str
    phone: Optional[str] = None


class User(Base):
    """Minimal customer account. Guests are unified by email."""

    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid4)
    email = Column(String(255), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default="user")

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Address(Base):
    """Address-book entry saved with a registered user's order."""

    __tablename__ = "addresses"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    full_name = Column(String(255), nullable=False)
    street = Column(String(255), nullable=False)
    city = Column(String(100), nullable=False)
    state = Column(String(100), nullable=True)
    postal_code = Column(String(20), nullable=True)
    country = Column(String(100), nullable=False)
    phone = Column(String(50), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Order(Base):
    """Order aggregate root."""

    __tablename__ = "orders"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=True, index=True)
    guest_email = Column(String(255), nullable=True)
    cart_id = Column(Uuid, nullable=True)

    status = Column(String(20), default=OrderStatus.PENDING.value, nullable=False, index=True)
    fulfillment_status = Column(String(20), default=FulfillmentStatus.PENDING.value, nullable=False)

    # Totals
    subtotal = Column(Numeric(10, 2), nullable=False)
    tax = Column(Numeric(10, 2), nullable=False, default=0)
    shipping_cost = Column(Numeric(10, 2), nullable=False, default=0)
    discount_amount = Column(Numeric(10, 2), nullable=False, default=0)
    total = Column(Numeric(10, 2), nullable=False)
    applied_promotion_id = Column(Uuid, ForeignKey("promotions.id"), nullable=True)

    shipping_address = Column(JSONType, nullable=False)
    shipping_method = Column(String(50), nullable=True)
    payment_method = Column(String(50), nullable=True)
    notes = Column(Text, nullable=True)

    # Fulfillment tracking
    printify_order_id = Column(String(100), nullable=True)
    tracking_number = Column(String(100), nullable=True)
    tracking_url = Column(String(500), nullable=True)
    carrier = Column(String(100), nullable=True)
    shipped_at = Column(DateTime, nullable=True)

    payment_id = Column(Uuid, nullable=True)
    paid_at = Column(DateTime, nullable=True)

    correlation_id = Column(Uuid, nullable=False, default=uuid4)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItem.created_at",
    )

    __table_args__ = (
        CheckConstraint(
            "user_id IS NOT NULL OR guest_email IS NOT NULL",
            name="ck_orders_has_customer",
        ),
        Index("ix_orders_status_created", "status", "created_at"),
    )


class OrderItem(Base):
    """Snapshot of a purchased line plus its fulfillment state."""

    __tablename__ = "order_items"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Uuid, ForeignKey("products.id"), nullable=False)
    inventory_unit_id = Column(Uuid, ForeignKey("inventory_units.id"), nullable=False)

    name = Column(String(255), nullable=False)
    sku = Column(String(100), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    image = Column(String(500), nullable=True)
    quantity = Column(Integer, nullable=False)

    fulfillment_status = Column(String(20), default=FulfillmentStatus.PENDING.value, nullable=False)
    # Reservation handed over from the cart line when the order is paid
    reserved_quantity = Column(Integer, nullable=False, default=0)
    stock_committed = Column(Boolean, nullable=False, default=False)
    printify_order_id = Column(String(100), nullable=True)
    fulfillment_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    order = relationship("Order", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        CheckConstraint("reserved_quantity >= 0", name="ck_order_items_reserved_non_negative"),
    )


class OrderHistory(Base):
    """Audit log of order transitions."""

    __tablename__ = "order_history"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_id = Column(Uuid, nullable=False, index=True)
    correlation_id = Column(Uuid, nullable=False, index=True)

    step = Column(String(50), nullable=False)
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=True)
    event_id = Column(Uuid, nullable=True)
    message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_order_history_order_created", "order_id", "created_at"),
    )
