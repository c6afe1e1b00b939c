"""Database models for Promotion Service."""
from datetime import datetime
from enum import Enum
from uuid import uuid4

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
    UniqueConstraint,
    Uuid,
    text,
)

from shared.database import Base, JSONType


class PromotionType(str, Enum):
    """Kinds of discount a promotion grants."""
    PERCENTAGE_DISCOUNT = "PERCENTAGE_DISCOUNT"
    FIXED_AMOUNT_DISCOUNT = "FIXED_AMOUNT_DISCOUNT"
    FREE_ITEM = "FREE_ITEM"
    BUY_ONE_GET_ONE = "BUY_ONE_GET_ONE"


class Promotion(Base):
    """Discount rule, optionally redeemed through a coupon code."""

    __tablename__ = "promotions"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    promotion_type = Column(String(30), nullable=False)
    value = Column(Numeric(10, 2), nullable=False, default=0)
    minimum_order_value = Column(Numeric(10, 2), nullable=True)

    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    coupon_code = Column(String(50), nullable=True)

    usage_limit = Column(Integer, nullable=True)
    per_user_limit = Column(Integer, nullable=True)
    usage_count = Column(Integer, nullable=False, default=0)
    requires_authentication = Column(Boolean, nullable=False, default=False)

    # Scope
    apply_to_all_items = Column(Boolean, nullable=False, default=True)
    category_ids = Column(JSONType, nullable=False, default=list)  # [str(UUID)]
    product_ids = Column(JSONType, nullable=False, default=list)  # [str(UUID)]
    free_item_product_id = Column(Uuid, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("start_date < end_date", name="ck_promotions_date_range"),
        CheckConstraint("usage_count >= 0", name="ck_promotions_usage_count_non_negative"),
        # A coupon code may be reused once the earlier promotion is retired
        Index(
            "uq_promotions_active_coupon_code",
            "coupon_code",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("ix_promotions_active_dates", "is_active", "start_date", "end_date"),
    )


class PromotionUsage(Base):
    """One promotion consumed by one order."""

    __tablename__ = "promotion_usages"

    id = Column(Uuid, primary_key=True, default=uuid4)
    promotion_id = Column(Uuid, ForeignKey("promotions.id", ondelete="CASCADE"), nullable=False)
    order_id = Column(Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=True, index=True)
    user_email = Column(String(255), nullable=True, index=True)

    coupon_code = Column(String(50), nullable=True)
    discount_amount = Column(Numeric(10, 2), nullable=False)
    original_amount = Column(Numeric(10, 2), nullable=False)
    final_amount = Column(Numeric(10, 2), nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("order_id", "promotion_id", name="uq_promotion_usages_order_promotion"),
        Index("ix_promotion_usages_promotion_id", "promotion_id"),
    )
