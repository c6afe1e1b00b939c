"""Promotion Service FastAPI application."""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import Settings
from shared.database import Database
from shared.errors import register_error_handlers
from services import schema  # noqa: F401

from .evaluator import CartLine, PromotionEvaluator
from .models import Promotion, PromotionType, PromotionUsage
from .usage import PromotionUsageRecorder

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Settings
settings = Settings(
    service_name="promotion-service",
    service_port=8004,
)

database = Database(settings.database_url, echo=settings.database_echo)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""

    # Startup
    logger.info("Starting Promotion Service...")
    await database.create_tables()
    logger.info("Promotion Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Promotion Service...")
    await database.close()


app = FastAPI(title="Promotion Service", lifespan=lifespan)
register_error_handlers(app)


async def get_session() -> AsyncSession:
    """Get database session."""
    async with database.session_factory() as session:
        yield session


# Request/Response models
class PromotionRequest(BaseModel):
    """Request to create or update a promotion."""
    name: str
    description: Optional[str] = None
    promotion_type: PromotionType
    value: Decimal = Field(default=Decimal("0"), ge=0)
    minimum_order_value: Optional[Decimal] = Field(default=None, ge=0)
    start_date: datetime
    end_date: datetime
    is_active: bool = True
    coupon_code: Optional[str] = None
    usage_limit: Optional[int] = Field(default=None, ge=0)
    per_user_limit: Optional[int] = Field(default=None, ge=0)
    requires_authentication: bool = False
    apply_to_all_items: bool = True
    category_ids: List[UUID] = Field(default_factory=list)
    product_ids: List[UUID] = Field(default_factory=list)
    free_item_product_id: Optional[UUID] = None


class PromotionResponse(BaseModel):
    """Promotion response."""
    id: UUID
    name: str
    promotion_type: str
    value: Decimal
    minimum_order_value: Optional[Decimal]
    start_date: datetime
    end_date: datetime
    is_active: bool
    coupon_code: Optional[str]
    usage_limit: Optional[int]
    per_user_limit: Optional[int]
    usage_count: int
    requires_authentication: bool
    apply_to_all_items: bool

    class Config:
        from_attributes = True


class CartLineRequest(BaseModel):
    product_id: UUID
    category_id: Optional[UUID] = None
    unit_price: Decimal
    quantity: int = Field(gt=0)
    name: str = ""


class ValidatePromotionRequest(BaseModel):
    """Request to validate a coupon against a cart."""
    code: str
    items: List[CartLineRequest]
    subtotal: Optional[Decimal] = None
    user_id: Optional[UUID] = None
    user_email: Optional[str] = None


class ValidatePromotionResponse(BaseModel):
    promotion_id: UUID
    coupon_code: Optional[str]
    name: str
    promotion_type: str
    discount: Decimal
    applied_to: List[str]
    free_item_product_id: Optional[UUID]
    message: str


class DeletePromotionResponse(BaseModel):
    deleted: bool
    message: str


async def ensure_coupon_code_free(
    session: AsyncSession,
    coupon_code: Optional[str],
    exclude_id: Optional[UUID] = None,
):
    """Active promotions may not share a coupon code."""
    if not coupon_code:
        return

    query = select(Promotion.id).where(
        func.upper(Promotion.coupon_code) == coupon_code.upper(),
        Promotion.is_active.is_(True),
    )
    if exclude_id is not None:
        query = query.where(Promotion.id != exclude_id)

    if (await session.execute(query)).first() is not None:
        raise HTTPException(status_code=409, detail="Coupon code already exists")


def apply_request(promotion: Promotion, request: PromotionRequest):
    if request.end_date <= request.start_date:
        raise HTTPException(status_code=400, detail="End date must be after start date")

    data = request.model_dump()
    data["promotion_type"] = request.promotion_type.value
    data["coupon_code"] = request.coupon_code.strip().upper() if request.coupon_code else None
    data["category_ids"] = [str(c) for c in request.category_ids]
    data["product_ids"] = [str(p) for p in request.product_ids]

    for key, value in data.items():
        setattr(promotion, key, value)


async def get_promotion_or_404(session: AsyncSession, promotion_id: UUID) -> Promotion:
    promotion = await session.get(Promotion, promotion_id)
    if not promotion:
        raise HTTPException(status_code=404, detail="Promotion not found")
    return promotion


# API Endpoints
@app.post("/promotions", response_model=PromotionResponse, status_code=201)
async def create_promotion(
    request: PromotionRequest,
    session: AsyncSession = Depends(get_session)
):
    """Create a promotion."""
    promotion = Promotion(usage_count=0)
    apply_request(promotion, request)
    if promotion.is_active:
        await ensure_coupon_code_free(session, promotion.coupon_code)

    session.add(promotion)
    await session.commit()

    logger.info(f"Created promotion {promotion.id} ({promotion.coupon_code})")
    return PromotionResponse.model_validate(promotion)


@app.get("/promotions/{promotion_id}", response_model=PromotionResponse)
async def get_promotion(promotion_id: UUID, session: AsyncSession = Depends(get_session)):
    """Get promotion by ID."""
    return PromotionResponse.model_validate(await get_promotion_or_404(session, promotion_id))


@app.put("/promotions/{promotion_id}", response_model=PromotionResponse)
async def update_promotion(
    promotion_id: UUID,
    request: PromotionRequest,
    session: AsyncSession = Depends(get_session)
):
    """Replace a promotion's settings. Usage history is kept."""
    promotion = await get_promotion_or_404(session, promotion_id)
    apply_request(promotion, request)
    if promotion.is_active:
        await ensure_coupon_code_free(session, promotion.coupon_code, exclude_id=promotion.id)

    await session.commit()
    return PromotionResponse.model_validate(promotion)


@app.post("/promotions/{promotion_id}/toggle", response_model=PromotionResponse)
async def toggle_promotion(promotion_id: UUID, session: AsyncSession = Depends(get_session)):
    """Activate or deactivate a promotion."""
    promotion = await get_promotion_or_404(session, promotion_id)
    if not promotion.is_active:
        await ensure_coupon_code_free(session, promotion.coupon_code, exclude_id=promotion.id)

    promotion.is_active = not promotion.is_active
    await session.commit()

    logger.info(f"Promotion {promotion.id} is now {'active' if promotion.is_active else 'inactive'}")
    return PromotionResponse.model_validate(promotion)


@app.delete("/promotions/{promotion_id}", response_model=DeletePromotionResponse)
async def delete_promotion(promotion_id: UUID, session: AsyncSession = Depends(get_session)):
    """Delete a promotion, or deactivate it when orders already used it."""
    promotion = await get_promotion_or_404(session, promotion_id)

    used = await session.execute(
        select(func.count(PromotionUsage.id)).where(PromotionUsage.promotion_id == promotion.id)
    )
    if used.scalar_one() > 0:
        promotion.is_active = False
        await session.commit()
        return DeletePromotionResponse(
            deleted=False,
            message="Promotion has been deactivated instead of deleted due to existing usage history",
        )

    await session.delete(promotion)
    await session.commit()
    return DeletePromotionResponse(deleted=True, message="Promotion deleted")


@app.post("/promotions/{promotion_id}/recount", response_model=PromotionResponse)
async def recount_usage(promotion_id: UUID, session: AsyncSession = Depends(get_session)):
    """Re-derive a promotion's usage count from its usage rows."""
    await get_promotion_or_404(session, promotion_id)
    await PromotionUsageRecorder(session).recount_usage(promotion_id)
    promotion = await session.get(Promotion, promotion_id, populate_existing=True)
    return PromotionResponse.model_validate(promotion)


@app.post("/promotions/validate", response_model=ValidatePromotionResponse)
async def validate_promotion(
    request: ValidatePromotionRequest,
    session: AsyncSession = Depends(get_session)
):
    """Validate a coupon code against cart contents without consuming it."""
    lines = [
        CartLine(
            product_id=item.product_id,
            category_id=item.category_id,
            unit_price=item.unit_price,
            quantity=item.quantity,
            name=item.name,
        )
        for item in request.items
    ]
    result = await PromotionEvaluator(session).evaluate(
        lines,
        code=request.code,
        subtotal=request.subtotal,
        user_id=request.user_id,
        user_email=request.user_email,
    )
    return ValidatePromotionResponse(
        promotion_id=result.promotion_id,
        coupon_code=result.coupon_code,
        name=result.name,
        promotion_type=result.promotion_type.value,
        discount=result.discount,
        applied_to=result.applied_to,
        free_item_product_id=result.free_item_product_id,
        message=result.message,
    )


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "promotion-service"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
