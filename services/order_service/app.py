"""Order Service FastAPI application."""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import Settings
from shared.database import Database
from shared.errors import register_error_handlers
from shared.events import EventType, PaymentCapturedEvent, PaymentFailedEvent
from shared.message_broker import MessageBroker
from shared.outbox import OutboxPublisher
from services import schema  # noqa: F401
from services.promotion_service.usage import find_or_create_user

from .models import OrderStatus, ShippingAddress
from .orchestrator import CreateOrderCommand, OrderOrchestrator
from .pricing import estimated_shipping_time, shipping_region

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Settings
settings = Settings(
    service_name="order-service",
    service_port=8001,
)

# Database and message broker
database = Database(settings.database_url, echo=settings.database_echo)
message_broker = MessageBroker(settings.rabbitmq_url)
outbox_publisher: Optional[OutboxPublisher] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    global outbox_publisher

    # Startup
    logger.info("Starting Order Service...")

    await database.create_tables()
    await message_broker.connect()

    outbox_publisher = OutboxPublisher(
        session_factory=database.session_factory,
        message_broker=message_broker,
        poll_interval=1,
        batch_size=100,
    )
    await outbox_publisher.start()

    await subscribe_to_events()

    logger.info("Order Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Order Service...")
    if outbox_publisher:
        await outbox_publisher.stop()
    await message_broker.disconnect()
    await database.close()


app = FastAPI(title="Order Service", lifespan=lifespan)
register_error_handlers(app)


# Dependency to get database session
async def get_session() -> AsyncSession:
    """Get database session."""
    async with database.session_factory() as session:
        yield session


# Request/Response models
class CreateUserRequest(BaseModel):
    email: str
    name: Optional[str] = None


class UserResponse(BaseModel):
    id: UUID
    email: str
    name: str
    role: str

    class Config:
        from_attributes = True


class OrderItemResponse(BaseModel):
    """Order line snapshot."""
    id: UUID
    product_id: UUID
    inventory_unit_id: UUID
    name: str
    sku: str
    price: Decimal
    quantity: int
    fulfillment_status: str
    printify_order_id: Optional[str]
    fulfillment_error: Optional[str]

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    """Order response."""
    id: UUID
    user_id: Optional[UUID]
    guest_email: Optional[str]
    status: str
    fulfillment_status: str
    subtotal: Decimal
    tax: Decimal
    shipping_cost: Decimal
    discount_amount: Decimal
    total: Decimal
    applied_promotion_id: Optional[UUID]
    shipping_address: dict
    shipping_method: Optional[str]
    payment_method: Optional[str]
    tracking_number: Optional[str]
    tracking_url: Optional[str]
    carrier: Optional[str]
    printify_order_id: Optional[str]
    error_message: Optional[str]
    correlation_id: UUID
    created_at: datetime
    items: List[OrderItemResponse]

    class Config:
        from_attributes = True


class UpdateStatusRequest(BaseModel):
    status: OrderStatus
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    carrier: Optional[str] = None
    reason: Optional[str] = None


class OrderHistoryResponse(BaseModel):
    """Order history entry."""
    id: UUID
    order_id: UUID
    step: str
    from_status: Optional[str]
    to_status: Optional[str]
    event_id: Optional[UUID]
    message: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class ShippingQuoteResponse(BaseModel):
    region: str
    estimated_delivery: str


# API Endpoints
@app.post("/users", response_model=UserResponse)
async def register_user(
    request: CreateUserRequest,
    session: AsyncSession = Depends(get_session)
):
    """Find or create a customer account by email."""
    user = await find_or_create_user(session, request.email, request.name)
    await session.commit()
    return UserResponse.model_validate(user)


@app.post("/orders", response_model=OrderResponse, status_code=201)
async def create_order(
    request: CreateOrderCommand,
    session: AsyncSession = Depends(get_session)
):
    """
    Create a PENDING order from a cart.

    Totals are computed here from the cart; the cart keeps its stock
    reservations until the payment is confirmed.
    """
    order = await OrderOrchestrator(session).create_order(request)
    return OrderResponse.model_validate(order)


@app.get("/orders/{order_id}", response_model=OrderResponse)
async def get_order(order_id: UUID, session: AsyncSession = Depends(get_session)):
    """Get order by ID."""
    order = await OrderOrchestrator(session).get_order(order_id)
    return OrderResponse.model_validate(order)


@app.patch("/orders/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    order_id: UUID,
    request: UpdateStatusRequest,
    session: AsyncSession = Depends(get_session)
):
    """Move an order to a new status."""
    order = await OrderOrchestrator(session).update_order_status(
        order_id,
        request.status,
        tracking_number=request.tracking_number,
        tracking_url=request.tracking_url,
        carrier=request.carrier,
        reason=request.reason,
    )
    return OrderResponse.model_validate(order)


@app.get("/orders/{order_id}/history", response_model=List[OrderHistoryResponse])
async def get_order_history(order_id: UUID, session: AsyncSession = Depends(get_session)):
    """Get the recorded steps of an order."""
    orchestrator = OrderOrchestrator(session)
    await orchestrator.get_order(order_id)
    history = await orchestrator.get_history(order_id)
    return [OrderHistoryResponse.model_validate(entry) for entry in history]


@app.post("/shipping/quote", response_model=ShippingQuoteResponse)
async def shipping_quote(address: ShippingAddress):
    """Shipping region and delivery estimate for an address."""
    region = shipping_region(address.state, address.country)
    return ShippingQuoteResponse(
        region=region,
        estimated_delivery=estimated_shipping_time(region),
    )


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "order-service"}


# Event Handlers
async def subscribe_to_events():
    """Subscribe to payment events."""

    async def handle_payment_captured(event: PaymentCapturedEvent):
        """Confirm the order. Redeliveries are no-ops past the first."""
        async with database.session_factory() as session:
            try:
                await OrderOrchestrator(session).confirm_payment(event.order_id, event.payment_id)
            except Exception as e:
                logger.error(f"Error confirming payment for order {event.order_id}: {str(e)}")
                raise

    async def handle_payment_failed(event: PaymentFailedEvent):
        """Record a failed capture on the order."""
        async with database.session_factory() as session:
            try:
                await OrderOrchestrator(session).record_payment_failure(event.order_id, event.reason)
            except Exception as e:
                logger.error(f"Error recording payment failure for order {event.order_id}: {str(e)}")
                raise

    await message_broker.subscribe_to_event(
        EventType.PAYMENT_CAPTURED,
        "order_service_payment_captured",
        handle_payment_captured,
    )

    await message_broker.subscribe_to_event(
        EventType.PAYMENT_FAILED,
        "order_service_payment_failed",
        handle_payment_failed,
    )

    logger.info("Subscribed to payment events")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
