"""Inventory Service FastAPI application."""
import asyncio
import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import Settings
from shared.database import Database
from shared.errors import register_error_handlers
from shared.message_broker import MessageBroker
from shared.outbox import OutboxPublisher
from services import schema  # noqa: F401

from .ledger import StockLedger
from .models import FulfillmentType, InventoryUnit, Product

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Settings
settings = Settings(
    service_name="inventory-service",
    service_port=8002,
)

# Database and message broker
database = Database(settings.database_url, echo=settings.database_echo)
message_broker = MessageBroker(settings.rabbitmq_url)
outbox_publisher: Optional[OutboxPublisher] = None
cleanup_task: Optional[asyncio.Task] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    global outbox_publisher, cleanup_task

    # Startup
    logger.info("Starting Inventory Service...")

    await database.create_tables()
    await message_broker.connect()

    outbox_publisher = OutboxPublisher(
        session_factory=database.session_factory,
        message_broker=message_broker,
    )
    await outbox_publisher.start()

    cleanup_task = asyncio.create_task(run_reservation_cleanup())

    logger.info("Inventory Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Inventory Service...")
    if cleanup_task:
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass
    if outbox_publisher:
        await outbox_publisher.stop()
    await message_broker.disconnect()
    await database.close()


app = FastAPI(title="Inventory Service", lifespan=lifespan)
register_error_handlers(app)


async def get_session() -> AsyncSession:
    """Get database session."""
    async with database.session_factory() as session:
        yield session


# Request/Response models
class InventoryUnitRequest(BaseModel):
    """A SKU to create with its product."""
    sku: str
    retail_price: Decimal
    quantity: int = Field(default=0, ge=0)
    low_stock_threshold: int = Field(default=5, ge=0)
    is_default: bool = False
    images: List[str] = Field(default_factory=list)
    printify_variant_id: Optional[str] = None


class ProductRequest(BaseModel):
    """Request to create a product and its inventory units."""
    name: str
    slug: str
    description: Optional[str] = None
    category_id: Optional[UUID] = None
    fulfillment_type: FulfillmentType = FulfillmentType.LOCAL_INVENTORY
    printify_product_id: Optional[str] = None
    units: List[InventoryUnitRequest] = Field(min_length=1)


class InventoryUnitResponse(BaseModel):
    """Inventory unit response."""
    id: UUID
    product_id: UUID
    sku: str
    retail_price: Decimal
    quantity: int
    reserved_stock: int
    available_stock: int
    low_stock_threshold: int
    printify_variant_id: Optional[str]

    class Config:
        from_attributes = True


class ProductResponse(BaseModel):
    """Product response."""
    id: UUID
    name: str
    slug: str
    fulfillment_type: str
    units: List[InventoryUnitResponse]


class QuantityRequest(BaseModel):
    quantity: int = Field(gt=0)


class AvailabilityResponse(BaseModel):
    inventory_unit_id: UUID
    sku: str
    available_stock: int
    can_fulfill: bool


class CleanupRequest(BaseModel):
    max_age_hours: Optional[float] = Field(default=None, gt=0)


class CleanupResponse(BaseModel):
    carts_processed: int
    units_released: int


# API Endpoints
@app.post("/products", response_model=ProductResponse, status_code=201)
async def create_product(
    request: ProductRequest,
    session: AsyncSession = Depends(get_session)
):
    """Create a product with its inventory units."""
    product = Product(
        name=request.name,
        slug=request.slug,
        description=request.description,
        category_id=request.category_id,
        fulfillment_type=request.fulfillment_type.value,
        printify_product_id=request.printify_product_id,
    )
    session.add(product)
    await session.flush()

    units = []
    for unit_request in request.units:
        unit = InventoryUnit(product_id=product.id, **unit_request.model_dump())
        session.add(unit)
        units.append(unit)

    await session.commit()

    logger.info(f"Created product {product.slug} with {len(units)} units")

    return ProductResponse(
        id=product.id,
        name=product.name,
        slug=product.slug,
        fulfillment_type=product.fulfillment_type,
        units=[InventoryUnitResponse.model_validate(unit) for unit in units],
    )


@app.get("/inventory/{ref}", response_model=InventoryUnitResponse)
async def get_inventory_unit(ref: str, session: AsyncSession = Depends(get_session)):
    """Get an inventory unit by id or SKU."""
    unit = await StockLedger(session).resolve_unit(ref)
    return InventoryUnitResponse.model_validate(unit)


@app.get("/inventory/{ref}/availability", response_model=AvailabilityResponse)
async def check_availability(
    ref: str,
    quantity: int = 1,
    session: AsyncSession = Depends(get_session)
):
    """Check whether a quantity of a unit can be reserved."""
    availability = await StockLedger(session).check_availability(ref, quantity)
    return AvailabilityResponse(
        inventory_unit_id=availability.inventory_unit_id,
        sku=availability.sku,
        available_stock=availability.available_stock,
        can_fulfill=availability.can_fulfill,
    )


@app.post("/inventory/{ref}/reserve", response_model=InventoryUnitResponse)
async def reserve_stock(
    ref: str,
    request: QuantityRequest,
    session: AsyncSession = Depends(get_session)
):
    """Reserve stock of a unit."""
    unit = await StockLedger(session).reserve(ref, request.quantity)
    await session.commit()
    return InventoryUnitResponse.model_validate(unit)


@app.post("/inventory/{ref}/release", response_model=InventoryUnitResponse)
async def release_stock(
    ref: str,
    request: QuantityRequest,
    session: AsyncSession = Depends(get_session)
):
    """Release reserved stock of a unit."""
    ledger = StockLedger(session)
    await ledger.release(ref, request.quantity)
    await session.commit()
    return InventoryUnitResponse.model_validate(await ledger.resolve_unit(ref))


@app.post("/inventory/cleanup", response_model=CleanupResponse)
async def cleanup_reservations(
    request: CleanupRequest,
    session: AsyncSession = Depends(get_session)
):
    """Release reservations held by abandoned carts."""
    max_age_hours = request.max_age_hours or settings.cart_reservation_ttl_hours
    report = await StockLedger(session).cleanup_expired_reservations(max_age_hours)
    return CleanupResponse(
        carts_processed=report.carts_processed,
        units_released=report.units_released,
    )


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "inventory-service"}


async def run_reservation_cleanup():
    """Periodically release reservations of abandoned carts."""
    while True:
        await asyncio.sleep(settings.reservation_cleanup_interval_seconds)
        try:
            async with database.session_factory() as session:
                await StockLedger(session).cleanup_expired_reservations(
                    settings.cart_reservation_ttl_hours
                )
        except Exception as e:
            logger.error(f"Error in reservation cleanup: {str(e)}", exc_info=True)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
