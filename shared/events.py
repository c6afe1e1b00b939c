"""Domain event definitions for the storefront."""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Event types exchanged between storefront services."""

    # Order events
    ORDER_PLACED = "order.placed"
    ORDER_PAID = "order.paid"
    ORDER_SHIPPED = "order.shipped"
    ORDER_CANCELLED = "order.cancelled"

    # Payment events
    PAYMENT_CAPTURED = "payment.captured"
    PAYMENT_FAILED = "payment.failed"

    # Fulfillment events
    FULFILLMENT_FAILED = "fulfillment.failed"

    # Inventory events
    STOCK_LOW = "stock.low"

    # Promotion events
    PROMOTION_USAGE_RECORDED = "promotion.usage_recorded"


class BaseEvent(BaseModel):
    """Base event model with common fields."""

    event_id: UUID = Field(default_factory=uuid4)
    event_type: EventType
    aggregate_id: UUID  # order id for order/payment/fulfillment events
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    version: int = Field(default=1)
    correlation_id: UUID = Field(default_factory=uuid4)
    causation_id: Optional[UUID] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


# Order Events
class OrderPlacedEvent(BaseEvent):
    """Emitted when an order is created from a cart (payment still pending)."""
    event_type: EventType = EventType.ORDER_PLACED
    order_id: UUID
    user_id: Optional[UUID] = None
    guest_email: Optional[str] = None
    total: Decimal
    item_count: int


class OrderPaidEvent(BaseEvent):
    """Emitted once when an order's payment is confirmed; triggers fulfillment."""
    event_type: EventType = EventType.ORDER_PAID
    order_id: UUID
    payment_id: Optional[UUID] = None
    recipient: Optional[str] = None
    total: Decimal


class OrderShippedEvent(BaseEvent):
    """Emitted when an order moves to SHIPPED."""
    event_type: EventType = EventType.ORDER_SHIPPED
    order_id: UUID
    recipient: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None


class OrderCancelledEvent(BaseEvent):
    """Emitted when an order is cancelled."""
    event_type: EventType = EventType.ORDER_CANCELLED
    order_id: UUID
    reason: str


# Payment Events
class PaymentCapturedEvent(BaseEvent):
    """Emitted the first time a payment reaches COMPLETED."""
    event_type: EventType = EventType.PAYMENT_CAPTURED
    order_id: UUID
    payment_id: UUID
    external_payment_id: Optional[str] = None
    amount: Decimal
    payer_email: Optional[str] = None


class PaymentFailedEvent(BaseEvent):
    """Emitted when a capture attempt fails."""
    event_type: EventType = EventType.PAYMENT_FAILED
    order_id: UUID
    reason: str
    error_code: Optional[str] = None


# Fulfillment Events
class FulfillmentFailedEvent(BaseEvent):
    """Emitted when at least one order line could not be fulfilled."""
    event_type: EventType = EventType.FULFILLMENT_FAILED
    order_id: UUID
    failed_items: list[Dict[str, Any]]  # [{"order_item_id": UUID, "name": str, "error": str}]


# Inventory Events
class StockLowEvent(BaseEvent):
    """Emitted when a committed sale leaves a unit at or below its threshold."""
    event_type: EventType = EventType.STOCK_LOW
    inventory_unit_id: UUID
    sku: str
    available_stock: int
    low_stock_threshold: int


# Promotion Events
class PromotionUsageRecordedEvent(BaseEvent):
    """Emitted when an order consumes a promotion."""
    event_type: EventType = EventType.PROMOTION_USAGE_RECORDED
    order_id: UUID
    promotion_id: UUID
    coupon_code: Optional[str] = None
    discount_amount: Decimal


# Event Registry for deserialization
EVENT_REGISTRY: Dict[EventType, type[BaseEvent]] = {
    EventType.ORDER_PLACED: OrderPlacedEvent,
    EventType.ORDER_PAID: OrderPaidEvent,
    EventType.ORDER_SHIPPED: OrderShippedEvent,
    EventType.ORDER_CANCELLED: OrderCancelledEvent,

    EventType.PAYMENT_CAPTURED: PaymentCapturedEvent,
    EventType.PAYMENT_FAILED: PaymentFailedEvent,

    EventType.FULFILLMENT_FAILED: FulfillmentFailedEvent,

    EventType.STOCK_LOW: StockLowEvent,

    EventType.PROMOTION_USAGE_RECORDED: PromotionUsageRecordedEvent,
}


def deserialize_event(event_data: Dict[str, Any]) -> BaseEvent:
    """Deserialize event from dictionary."""
    event_type = EventType(event_data["event_type"])
    event_class = EVENT_REGISTRY.get(event_type, BaseEvent)
    return event_class(**event_data)
