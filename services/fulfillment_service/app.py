"""Fulfillment Service FastAPI application."""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI
from pydantic import BaseModel

from shared.config import Settings
from shared.database import Database
from shared.errors import register_error_handlers
from shared.events import EventType, OrderPaidEvent
from shared.message_broker import MessageBroker
from shared.outbox import OutboxPublisher
from services import schema  # noqa: F401

from .dispatcher import FulfillmentDispatcher, FulfillmentResult
from .printify import PrintifyClient

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Settings
settings = Settings(
    service_name="fulfillment-service",
    service_port=8006,
)

# Database and message broker
database = Database(settings.database_url, echo=settings.database_echo)
message_broker = MessageBroker(settings.rabbitmq_url)
outbox_publisher: Optional[OutboxPublisher] = None


def build_printify_client() -> Optional[PrintifyClient]:
    if not settings.printify_access_token:
        logger.warning("Printify access token not set, print-on-demand lines will fail")
        return None

    return PrintifyClient(
        access_token=settings.printify_access_token,
        shop_id=settings.printify_shop_id,
        base_url=settings.printify_api_url,
        timeout=settings.http_timeout,
        max_requests=settings.printify_max_requests,
        window_seconds=settings.printify_window_seconds,
    )


printify_client = build_printify_client()
dispatcher = FulfillmentDispatcher(
    session_factory=database.session_factory,
    printify=printify_client,
    concurrency=settings.fulfillment_concurrency,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    global outbox_publisher

    # Startup
    logger.info("Starting Fulfillment Service...")

    await database.create_tables()
    await message_broker.connect()

    outbox_publisher = OutboxPublisher(
        session_factory=database.session_factory,
        message_broker=message_broker,
    )
    await outbox_publisher.start()

    await subscribe_to_events()

    logger.info("Fulfillment Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Fulfillment Service...")
    if outbox_publisher:
        await outbox_publisher.stop()
    if printify_client:
        await printify_client.close()
    await message_broker.disconnect()
    await database.close()


app = FastAPI(title="Fulfillment Service", lifespan=lifespan)
register_error_handlers(app)


def get_dispatcher() -> FulfillmentDispatcher:
    return dispatcher


# Request/Response models
class FailedItemResponse(BaseModel):
    order_item_id: UUID
    name: str
    error: str


class FulfillmentResultResponse(BaseModel):
    """Outcome of one fulfillment run."""
    order_id: UUID
    success: bool
    fulfillment_status: str
    fulfilled_items: int
    failed_items: List[FailedItemResponse]
    printify_order_id: Optional[str] = None
    error: Optional[str] = None


class TrackingRequest(BaseModel):
    tracking_number: str
    tracking_url: Optional[str] = None
    carrier: Optional[str] = None


class ProviderStatusResponse(BaseModel):
    printify_order_id: Optional[str] = None
    status: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    carrier: Optional[str] = None


def to_response(result: FulfillmentResult) -> FulfillmentResultResponse:
    return FulfillmentResultResponse(
        order_id=result.order_id,
        success=result.success,
        fulfillment_status=result.fulfillment_status.value,
        fulfilled_items=len(result.fulfilled),
        failed_items=[
            FailedItemResponse(order_item_id=f.order_item_id, name=f.name, error=f.error)
            for f in result.failed_items
        ],
        printify_order_id=result.printify_order_id,
        error=result.error,
    )


# API Endpoints
@app.post("/fulfillment/{order_id}", response_model=FulfillmentResultResponse)
async def process_order(
    order_id: UUID,
    fulfillment: FulfillmentDispatcher = Depends(get_dispatcher),
):
    """Fulfill a paid order."""
    return to_response(await fulfillment.process_order(order_id))


@app.post("/fulfillment/{order_id}/retry", response_model=FulfillmentResultResponse)
async def retry_fulfillment(
    order_id: UUID,
    fulfillment: FulfillmentDispatcher = Depends(get_dispatcher),
):
    """Retry the failed lines of an order."""
    return to_response(await fulfillment.retry_failed_fulfillment(order_id))


@app.get("/fulfillment/{order_id}")
async def get_fulfillment_status(
    order_id: UUID,
    fulfillment: FulfillmentDispatcher = Depends(get_dispatcher),
) -> Dict[str, Any]:
    """Fulfillment state of an order and its lines."""
    return await fulfillment.get_fulfillment_status(order_id)


@app.post("/fulfillment/{order_id}/tracking")
async def update_tracking(
    order_id: UUID,
    request: TrackingRequest,
    fulfillment: FulfillmentDispatcher = Depends(get_dispatcher),
) -> Dict[str, Any]:
    """Record tracking information; a paid order moves to SHIPPED."""
    await fulfillment.update_tracking_info(
        order_id,
        tracking_number=request.tracking_number,
        tracking_url=request.tracking_url,
        carrier=request.carrier,
    )
    return await fulfillment.get_fulfillment_status(order_id)


@app.post("/fulfillment/{order_id}/sync", response_model=ProviderStatusResponse)
async def sync_provider_status(
    order_id: UUID,
    fulfillment: FulfillmentDispatcher = Depends(get_dispatcher),
):
    """Pull the latest status from Printify."""
    status = await fulfillment.sync_provider_status(order_id)
    if status is None:
        return ProviderStatusResponse()
    return ProviderStatusResponse(**status.model_dump())


@app.get("/fulfillment-stats")
async def get_fulfillment_stats(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    fulfillment: FulfillmentDispatcher = Depends(get_dispatcher),
) -> Dict[str, Any]:
    """Counts of paid orders by fulfillment route."""
    return await fulfillment.get_fulfillment_stats(start_date, end_date)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "fulfillment-service"}


# Event Handlers
async def subscribe_to_events():
    """Subscribe to paid orders."""

    async def handle_order_paid(event: OrderPaidEvent):
        """Fulfill the order. Line flags make redelivery safe."""
        try:
            result = await dispatcher.process_order(event.order_id)
        except Exception as e:
            logger.error(f"Error fulfilling order {event.order_id}: {str(e)}")
            raise

        if not result.success:
            logger.warning(f"Order {event.order_id} partially fulfilled: {result.error}")

    await message_broker.subscribe_to_event(
        EventType.ORDER_PAID,
        "fulfillment_service_order_paid",
        handle_order_paid,
    )

    logger.info("Subscribed to order paid events")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
