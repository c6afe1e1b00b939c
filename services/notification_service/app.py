"""Notification Service FastAPI application."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from shared.config import Settings
from shared.events import (
    EventType,
    FulfillmentFailedEvent,
    OrderPaidEvent,
    OrderShippedEvent,
    StockLowEvent,
)
from shared.message_broker import MessageBroker

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Settings
settings = Settings(
    service_name="notification-service",
    service_port=8007,
)

# Message broker
message_broker = MessageBroker(settings.rabbitmq_url)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""

    # Startup
    logger.info("Starting Notification Service...")

    await message_broker.connect()
    await subscribe_to_events()

    logger.info("Notification Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Notification Service...")
    await message_broker.disconnect()


app = FastAPI(title="Notification Service", lifespan=lifespan)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "notification-service"}


# Notification Logic
async def send_email(recipient: str, subject: str, body: str):
    """
    Send email notification.

    Delivery is logged only; a mail provider would plug in here.
    """
    logger.info(f"[EMAIL] To: {recipient}")
    logger.info(f"[EMAIL] Subject: {subject}")
    logger.info(f"[EMAIL] Body: {body}")
    logger.info("-" * 60)


def order_paid_message(event: OrderPaidEvent) -> tuple[str, str]:
    return (
        "Order Confirmed",
        f"Thank you for your order! Your payment of ${event.total} has been received. "
        f"Order ID: {event.order_id}",
    )


def order_shipped_message(event: OrderShippedEvent) -> tuple[str, str]:
    body = f"Your order {event.order_id} has been shipped!"
    if event.tracking_number:
        body += f" Tracking number: {event.tracking_number}"
    if event.tracking_url:
        body += f" Track it here: {event.tracking_url}"
    return "Your Order Has Shipped", body


def fulfillment_failed_message(event: FulfillmentFailedEvent) -> tuple[str, str]:
    lines = [f"- {item.get('name')}: {item.get('error')}" for item in event.failed_items]
    return (
        f"Fulfillment failed for order {event.order_id}",
        f"{len(event.failed_items)} item(s) could not be fulfilled:\n" + "\n".join(lines),
    )


def stock_low_message(event: StockLowEvent) -> tuple[str, str]:
    return (
        f"Low stock: {event.sku}",
        f"{event.sku} has {event.available_stock} units available "
        f"(threshold {event.low_stock_threshold}).",
    )


# Event Handlers
async def subscribe_to_events():
    """Subscribe to the events customers and admins are told about."""

    async def handle_order_paid(event: OrderPaidEvent):
        """Send the order confirmation."""
        if not event.recipient:
            logger.warning(f"No recipient for paid order {event.order_id}")
            return
        subject, body = order_paid_message(event)
        await send_email(event.recipient, subject, body)

    async def handle_order_shipped(event: OrderShippedEvent):
        """Send tracking details."""
        if not event.recipient:
            logger.warning(f"No recipient for shipped order {event.order_id}")
            return
        subject, body = order_shipped_message(event)
        await send_email(event.recipient, subject, body)

    async def handle_fulfillment_failed(event: FulfillmentFailedEvent):
        """Alert the admin."""
        subject, body = fulfillment_failed_message(event)
        await send_email(settings.admin_email, subject, body)

    async def handle_stock_low(event: StockLowEvent):
        """Alert the admin."""
        subject, body = stock_low_message(event)
        await send_email(settings.admin_email, subject, body)

    await message_broker.subscribe_to_event(
        EventType.ORDER_PAID,
        "notification_service_order_paid",
        handle_order_paid,
    )

    await message_broker.subscribe_to_event(
        EventType.ORDER_SHIPPED,
        "notification_service_order_shipped",
        handle_order_shipped,
    )

    await message_broker.subscribe_to_event(
        EventType.FULFILLMENT_FAILED,
        "notification_service_fulfillment_failed",
        handle_fulfillment_failed,
    )

    await message_broker.subscribe_to_event(
        EventType.STOCK_LOW,
        "notification_service_stock_low",
        handle_stock_low,
    )

    logger.info("Subscribed to notification events")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
