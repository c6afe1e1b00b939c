"""Database models for Payment Service."""
from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, Index, Numeric, String, Text, Uuid

from shared.database import Base, JSONType


class PaymentStatus(str, Enum):
    """Payment status."""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class Payment(Base):
    """Payment for an order. The order id doubles as the idempotency key."""

    __tablename__ = "payments"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, unique=True)

    provider = Column(String(20), nullable=False, default="paypal")
    external_payment_id = Column(String(100), nullable=True, index=True)

    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), default="USD", nullable=False)
    status = Column(String(20), default=PaymentStatus.PENDING.value, nullable=False, index=True)

    payer_email = Column(String(255), nullable=True)
    gateway_response = Column(JSONType, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_payments_status_created", "status", "created_at"),
    )
