"""Cart Service FastAPI application."""
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
from shared.money import ZERO, to_money
from services import schema  # noqa: F401

from .carts import CartManager
from .models import Cart

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Settings
settings = Settings(
    service_name="cart-service",
    service_port=8003,
)

database = Database(settings.database_url, echo=settings.database_echo)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""

    # Startup
    logger.info("Starting Cart Service...")
    await database.create_tables()
    logger.info("Cart Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Cart Service...")
    await database.close()


app = FastAPI(title="Cart Service", lifespan=lifespan)
register_error_handlers(app)


async def get_session() -> AsyncSession:
    """Get database session."""
    async with database.session_factory() as session:
        yield session


# Request/Response models
class CreateCartRequest(BaseModel):
    user_id: Optional[UUID] = None
    session_id: Optional[str] = None


class AddItemRequest(BaseModel):
    inventory_unit: str  # id or SKU
    quantity: int = Field(default=1, gt=0)


class UpdateItemRequest(BaseModel):
    quantity: int


class ApplyPromotionRequest(BaseModel):
    code: str
    user_id: Optional[UUID] = None
    user_email: Optional[str] = None


class CartLineResponse(BaseModel):
    id: UUID
    product_id: UUID
    inventory_unit_id: UUID
    sku: str
    name: str
    unit_price: Decimal
    quantity: int
    reserved_quantity: int
    line_total: Decimal


class CartPromotionResponse(BaseModel):
    promotion_id: UUID
    coupon_code: Optional[str]
    name: str
    discount: Decimal

    class Config:
        from_attributes = True


class CartResponse(BaseModel):
    id: UUID
    user_id: Optional[UUID]
    session_id: Optional[str]
    items: List[CartLineResponse]
    promotions: List[CartPromotionResponse]
    subtotal: Decimal
    discount: Decimal
    total: Decimal


class PromotionAppliedResponse(BaseModel):
    promotion_id: UUID
    coupon_code: Optional[str]
    name: str
    promotion_type: str
    discount: Decimal
    applied_to: List[str]
    free_item_product_id: Optional[UUID]
    message: str


async def build_cart_response(manager: CartManager, cart: Cart) -> CartResponse:
    entries = await manager.entries(cart)
    subtotal = to_money(sum((entry.line_total for entry in entries), ZERO))
    discount = min(to_money(sum((p.discount for p in cart.promotions), ZERO)), subtotal)

    return CartResponse(
        id=cart.id,
        user_id=cart.user_id,
        session_id=cart.session_id,
        items=[
            CartLineResponse(
                id=entry.item.id,
                product_id=entry.product.id,
                inventory_unit_id=entry.unit.id,
                sku=entry.unit.sku,
                name=entry.product.name,
                unit_price=to_money(entry.unit.retail_price),
                quantity=entry.item.quantity,
                reserved_quantity=entry.item.reserved_quantity,
                line_total=entry.line_total,
            )
            for entry in entries
        ],
        promotions=[CartPromotionResponse.model_validate(p) for p in cart.promotions],
        subtotal=subtotal,
        discount=discount,
        total=subtotal - discount,
    )


# API Endpoints
@app.post("/carts", response_model=CartResponse)
async def get_or_create_cart(
    request: CreateCartRequest,
    session: AsyncSession = Depends(get_session)
):
    """Get the cart of a user or session, creating it if needed."""
    manager = CartManager(session)
    cart = await manager.get_or_create_cart(user_id=request.user_id, session_id=request.session_id)
    return await build_cart_response(manager, cart)


@app.get("/carts/{cart_id}", response_model=CartResponse)
async def get_cart(cart_id: UUID, session: AsyncSession = Depends(get_session)):
    """Get a cart with its lines and totals."""
    manager = CartManager(session)
    cart = await manager.get_cart(cart_id)
    return await build_cart_response(manager, cart)


@app.post("/carts/{cart_id}/items", response_model=CartResponse, status_code=201)
async def add_item(
    cart_id: UUID,
    request: AddItemRequest,
    session: AsyncSession = Depends(get_session)
):
    """Add an item to the cart, reserving local stock."""
    manager = CartManager(session)
    cart = await manager.get_cart(cart_id)
    await manager.add_item(cart, request.inventory_unit, request.quantity)
    return await build_cart_response(manager, await manager.get_cart(cart_id))


@app.patch("/carts/{cart_id}/items/{item_id}", response_model=CartResponse)
async def update_item(
    cart_id: UUID,
    item_id: UUID,
    request: UpdateItemRequest,
    session: AsyncSession = Depends(get_session)
):
    """Change a line's quantity (0 removes it)."""
    manager = CartManager(session)
    cart = await manager.get_cart(cart_id)
    await manager.update_item_quantity(cart, item_id, request.quantity)
    return await build_cart_response(manager, await manager.get_cart(cart_id))


@app.delete("/carts/{cart_id}/items/{item_id}", response_model=CartResponse)
async def remove_item(
    cart_id: UUID,
    item_id: UUID,
    session: AsyncSession = Depends(get_session)
):
    """Remove a line and release its reservation."""
    manager = CartManager(session)
    cart = await manager.get_cart(cart_id)
    await manager.remove_item(cart, item_id)
    return await build_cart_response(manager, await manager.get_cart(cart_id))


@app.post("/carts/{cart_id}/promotions", response_model=PromotionAppliedResponse)
async def apply_promotion(
    cart_id: UUID,
    request: ApplyPromotionRequest,
    session: AsyncSession = Depends(get_session)
):
    """Apply a coupon code to the cart."""
    manager = CartManager(session)
    cart = await manager.get_cart(cart_id)
    result = await manager.apply_promotion(
        cart,
        request.code,
        user_id=request.user_id,
        user_email=request.user_email,
    )
    return PromotionAppliedResponse(
        promotion_id=result.promotion_id,
        coupon_code=result.coupon_code,
        name=result.name,
        promotion_type=result.promotion_type.value,
        discount=result.discount,
        applied_to=result.applied_to,
        free_item_product_id=result.free_item_product_id,
        message=result.message,
    )


@app.delete("/carts/{cart_id}/promotions/{promotion_id}", response_model=CartResponse)
async def remove_promotion(
    cart_id: UUID,
    promotion_id: UUID,
    session: AsyncSession = Depends(get_session)
):
    """Remove an applied promotion from the cart."""
    manager = CartManager(session)
    cart = await manager.get_cart(cart_id)
    await manager.remove_promotion(cart, promotion_id)
    return await build_cart_response(manager, await manager.get_cart(cart_id))


@app.delete("/carts/{cart_id}", status_code=204)
async def clear_cart(cart_id: UUID, session: AsyncSession = Depends(get_session)):
    """Release every reservation and delete the cart."""
    manager = CartManager(session)
    await manager.clear_cart(await manager.get_cart(cart_id))


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "cart-service"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
