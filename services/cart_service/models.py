"""Database models for Cart Service."""
from datetime import datetime
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
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship

from shared.database import Base


class Cart(Base):
    """Shopping cart owned by a registered user or an anonymous session."""

    __tablename__ = "carts"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, nullable=True, unique=True)
    session_id = Column(String(100), nullable=True, unique=True)

    # Set once abandoned reservations have been released by the cleanup sweep
    processed = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    items = relationship(
        "CartItem",
        back_populates="cart",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="CartItem.created_at",
    )
    promotions = relationship(
        "CartPromotion",
        back_populates="cart",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_carts_processed_updated", "processed", "updated_at"),
    )


class CartItem(Base):
    """Cart line. ``reserved_quantity`` is what this line currently holds in the ledger."""

    __tablename__ = "cart_items"

    id = Column(Uuid, primary_key=True, default=uuid4)
    cart_id = Column(Uuid, ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Uuid, ForeignKey("products.id"), nullable=False)
    inventory_unit_id = Column(Uuid, ForeignKey("inventory_units.id"), nullable=False)

    quantity = Column(Integer, nullable=False)
    reserved_quantity = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    cart = relationship("Cart", back_populates="items")

    __table_args__ = (
        UniqueConstraint("cart_id", "inventory_unit_id", name="uq_cart_items_cart_unit"),
        CheckConstraint("quantity > 0", name="ck_cart_items_quantity_positive"),
        CheckConstraint(
            "reserved_quantity >= 0 AND reserved_quantity <= quantity",
            name="ck_cart_items_reserved_range",
        ),
    )


class CartPromotion(Base):
    """A promotion applied to a cart (not yet consumed)."""

    __tablename__ = "cart_promotions"

    id = Column(Uuid, primary_key=True, default=uuid4)
    cart_id = Column(Uuid, ForeignKey("carts.id", ondelete="CASCADE"), nullable=False)
    promotion_id = Column(Uuid, ForeignKey("promotions.id", ondelete="CASCADE"), nullable=False)

    coupon_code = Column(String(50), nullable=True)
    name = Column(String(255), nullable=False)
    discount = Column(Numeric(10, 2), nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    cart = relationship("Cart", back_populates="promotions")

    __table_args__ = (
        UniqueConstraint("cart_id", "promotion_id", name="uq_cart_promotions_cart_promotion"),
    )
