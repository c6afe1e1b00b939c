"""Payment Service FastAPI application."""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import Settings
from shared.database import Database
from shared.errors import register_error_handlers
from shared.message_broker import MessageBroker
from shared.outbox import OutboxPublisher
from services import schema  # noqa: F401

from .gateway import FakeGateway, PaymentGateway, PayPalGateway
from .processing import PaymentProcessor

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Settings
settings = Settings(
    service_name="payment-service",
    service_port=8005,
)

# Database and message broker
database = Database(settings.database_url, echo=settings.database_echo)
message_broker = MessageBroker(settings.rabbitmq_url)
outbox_publisher: Optional[OutboxPublisher] = None


def build_gateway() -> PaymentGateway:
    """PayPal when credentials are configured, otherwise the fake gateway."""
    if settings.paypal_client_id and settings.paypal_app_secret:
        return PayPalGateway(
            client_id=settings.paypal_client_id,
            app_secret=settings.paypal_app_secret,
            api_url=settings.paypal_api_url,
            currency=settings.currency,
            timeout=settings.http_timeout,
        )

    logger.warning("PayPal credentials not set, using the fake payment gateway")
    return FakeGateway()


gateway = build_gateway()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    global outbox_publisher

    # Startup
    logger.info("Starting Payment Service...")

    await database.create_tables()
    await message_broker.connect()

    outbox_publisher = OutboxPublisher(
        session_factory=database.session_factory,
        message_broker=message_broker,
    )
    await outbox_publisher.start()

    logger.info("Payment Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Payment Service...")
    if outbox_publisher:
        await outbox_publisher.stop()
    if isinstance(gateway, PayPalGateway):
        await gateway.close()
    await message_broker.disconnect()
    await database.close()


app = FastAPI(title="Payment Service", lifespan=lifespan)
register_error_handlers(app)


async def get_session() -> AsyncSession:
    """Get database session."""
    async with database.session_factory() as session:
        yield session


def get_gateway() -> PaymentGateway:
    return gateway


# Request/Response models
class PaymentResponse(BaseModel):
    """Payment response."""
    id: UUID
    order_id: UUID
    provider: str
    external_payment_id: Optional[str]
    amount: Decimal
    currency: str
    status: str
    payer_email: Optional[str]
    error_message: Optional[str]
    created_at: datetime
    processed_at: Optional[datetime]

    class Config:
        from_attributes = True


class WebhookResponse(BaseModel):
    received: bool
    payment_status: Optional[str] = None


# API Endpoints
@app.post("/payments/{order_id}", response_model=PaymentResponse, status_code=201)
async def start_payment(
    order_id: UUID,
    session: AsyncSession = Depends(get_session),
    payment_gateway: PaymentGateway = Depends(get_gateway),
):
    """Open a gateway payment for a pending order."""
    processor = PaymentProcessor(session, payment_gateway, currency=settings.currency)
    payment = await processor.start_payment(order_id)
    return PaymentResponse.model_validate(payment)


@app.post("/payments/{order_id}/capture", response_model=PaymentResponse)
async def capture_payment(
    order_id: UUID,
    session: AsyncSession = Depends(get_session),
    payment_gateway: PaymentGateway = Depends(get_gateway),
):
    """Capture the payment after the buyer approved it."""
    processor = PaymentProcessor(session, payment_gateway, currency=settings.currency)
    payment = await processor.capture(order_id)
    return PaymentResponse.model_validate(payment)


@app.get("/payments/{order_id}", response_model=PaymentResponse)
async def get_payment(
    order_id: UUID,
    session: AsyncSession = Depends(get_session),
    payment_gateway: PaymentGateway = Depends(get_gateway),
):
    """Get the payment of an order."""
    payment = await PaymentProcessor(session, payment_gateway).get_payment(order_id)
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")
    return PaymentResponse.model_validate(payment)


@app.post("/webhooks/paypal", response_model=WebhookResponse)
async def paypal_webhook(
    payload: Dict[str, Any],
    session: AsyncSession = Depends(get_session),
    payment_gateway: PaymentGateway = Depends(get_gateway),
):
    """Receive PayPal capture notifications."""
    logger.info(f"PayPal webhook received: {payload.get('event_type')}")

    processor = PaymentProcessor(session, payment_gateway, currency=settings.currency)
    payment = await processor.handle_webhook(payload)
    return WebhookResponse(
        received=True,
        payment_status=payment.status if payment else None,
    )


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "payment-service"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
