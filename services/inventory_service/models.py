"""Database models for Inventory Service."""
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
    Uuid,
)

from shared.database import Base, JSONType


class FulfillmentType(str, Enum):
    """How order lines for a product are fulfilled."""
    LOCAL_INVENTORY = "LOCAL_INVENTORY"
    PRINTIFY_POD = "PRINTIFY_POD"
    HYBRID = "HYBRID"


class Product(Base):
    """Catalogue product (the parts the order core needs)."""

    __tablename__ = "products"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=False, unique=True)
    description = Column(Text)
    category_id = Column(Uuid, nullable=True, index=True)

    fulfillment_type = Column(
        String(20), default=FulfillmentType.LOCAL_INVENTORY.value, nullable=False
    )
    printify_product_id = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class InventoryUnit(Base):
    """A purchasable variant (SKU) and its stock counters."""

    __tablename__ = "inventory_units"

    id = Column(Uuid, primary_key=True, default=uuid4)
    product_id = Column(Uuid, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    sku = Column(String(100), nullable=False, unique=True)

    retail_price = Column(Numeric(10, 2), nullable=False)
    images = Column(JSONType, nullable=False, default=list)
    is_default = Column(Boolean, nullable=False, default=False)

    quantity = Column(Integer, nullable=False, default=0)
    reserved_stock = Column(Integer, nullable=False, default=0)
    low_stock_threshold = Column(Integer, nullable=False, default=5)

    printify_variant_id = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_inventory_quantity_non_negative"),
        CheckConstraint("reserved_stock >= 0", name="ck_inventory_reserved_non_negative"),
        CheckConstraint("reserved_stock <= quantity", name="ck_inventory_reserved_within_quantity"),
        Index("ix_inventory_units_product_id", "product_id"),
    )

    @property
    def available_stock(self) -> int:
        return self.quantity - self.reserved_stock
