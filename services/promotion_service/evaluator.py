"""Promotion evaluation: validate a coupon against a cart and price the discount.

Evaluation is read-only. Usage is only consumed once an order is paid,
see ``usage.PromotionUsageRecorder``.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import PromotionErrorReason, PromotionInvalid
from shared.money import ZERO, to_money

from .models import Promotion, PromotionType, PromotionUsage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CartLine:
    """A cart line as seen by the evaluator."""
    product_id: UUID
    unit_price: Decimal
    quantity: int
    name: str = ""
    category_id: Optional[UUID] = None

    @property
    def line_total(self) -> Decimal:
        return to_money(self.unit_price * self.quantity)


@dataclass(frozen=True)
class DiscountCalculation:
    discount: Decimal
    applied_to: List[str] = field(default_factory=list)
    free_item_product_id: Optional[UUID] = None


@dataclass(frozen=True)
class PromotionResult:
    """A promotion that validated against the cart, with its priced discount."""
    promotion_id: UUID
    coupon_code: Optional[str]
    discount: Decimal
    name: str
    promotion_type: PromotionType
    applied_to: List[str]
    free_item_product_id: Optional[UUID]
    message: str


def eligible_lines(promotion: Promotion, lines: Sequence[CartLine]) -> List[CartLine]:
    """Lines the promotion applies to (all of them unless it is scoped)."""
    if promotion.apply_to_all_items:
        return list(lines)

    category_ids = {str(c) for c in (promotion.category_ids or [])}
    product_ids = {str(p) for p in (promotion.product_ids or [])}

    return [
        line for line in lines
        if (line.category_id is not None and str(line.category_id) in category_ids)
        or str(line.product_id) in product_ids
    ]


def calculate_discount(
    promotion: Promotion,
    lines: Sequence[CartLine],
    subtotal: Decimal,
) -> DiscountCalculation:
    """
    Price a promotion against cart lines. Pure: no I/O, no validation.

    PERCENTAGE_DISCOUNT: value percent of the applicable subtotal.
    FIXED_AMOUNT_DISCOUNT: value, capped at the applicable subtotal.
    BUY_ONE_GET_ONE: the cheapest applicable unit price.
    FREE_ITEM: one unit of the designated product if it is in the cart,
    otherwise zero with the product reported so the caller can add it.
    """
    applicable = eligible_lines(promotion, lines)
    if promotion.apply_to_all_items:
        applicable_subtotal = to_money(subtotal)
    else:
        applicable_subtotal = to_money(sum((line.line_total for line in applicable), ZERO))

    value = to_money(promotion.value)
    promotion_type = PromotionType(promotion.promotion_type)

    if promotion_type == PromotionType.PERCENTAGE_DISCOUNT:
        return DiscountCalculation(
            discount=to_money(applicable_subtotal * value / Decimal(100)),
            applied_to=[_label(line) for line in applicable],
        )

    if promotion_type == PromotionType.FIXED_AMOUNT_DISCOUNT:
        return DiscountCalculation(
            discount=min(value, applicable_subtotal),
            applied_to=[_label(line) for line in applicable],
        )

    if promotion_type == PromotionType.BUY_ONE_GET_ONE:
        if not applicable:
            return DiscountCalculation(discount=ZERO)
        cheapest = min(applicable, key=lambda line: line.unit_price)
        return DiscountCalculation(
            discount=to_money(cheapest.unit_price),
            applied_to=[_label(cheapest)],
        )

    if promotion_type == PromotionType.FREE_ITEM:
        free_product_id = promotion.free_item_product_id
        free_line = next(
            (line for line in lines if free_product_id and line.product_id == free_product_id),
            None,
        )
        if free_line is None:
            return DiscountCalculation(discount=ZERO, free_item_product_id=free_product_id)
        return DiscountCalculation(
            discount=to_money(free_line.unit_price),
            applied_to=[f"Free {_label(free_line)}"],
            free_item_product_id=free_product_id,
        )

    return DiscountCalculation(discount=ZERO)


class PromotionEvaluator:
    """Validates promotions against a cart. Never mutates usage state."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def evaluate(
        self,
        lines: Sequence[CartLine],
        code: Optional[str] = None,
        promotion_id: Optional[UUID] = None,
        subtotal: Optional[Decimal] = None,
        user_id: Optional[UUID] = None,
        user_email: Optional[str] = None,
        applied_promotion_ids: Iterable[UUID] = (),
        now: Optional[datetime] = None,
    ) -> PromotionResult:
        """
        Validate and price a promotion given by coupon code or id.

        Raises PromotionInvalid with the first failing check, in order:
        NOT_FOUND, INACTIVE, EXPIRED, ALREADY_APPLIED, REQUIRES_AUTH,
        EXHAUSTED, BELOW_MINIMUM, NO_ELIGIBLE_ITEMS.
        """
        now = now or datetime.utcnow()
        if subtotal is None:
            subtotal = sum((line.line_total for line in lines), ZERO)
        subtotal = to_money(subtotal)

        promotion = await self._find_promotion(code, promotion_id)
        if promotion is None:
            raise PromotionInvalid(
                PromotionErrorReason.NOT_FOUND,
                "Invalid coupon code",
                code=code,
            )

        if not promotion.is_active:
            raise PromotionInvalid(
                PromotionErrorReason.INACTIVE,
                "This coupon is no longer active",
                promotion_id=str(promotion.id),
            )

        if now < promotion.start_date or now > promotion.end_date:
            message = (
                "This coupon is not yet active"
                if now < promotion.start_date
                else "This coupon has expired"
            )
            raise PromotionInvalid(
                PromotionErrorReason.EXPIRED,
                message,
                promotion_id=str(promotion.id),
            )

        if promotion.id in set(applied_promotion_ids):
            raise PromotionInvalid(
                PromotionErrorReason.ALREADY_APPLIED,
                "This coupon has already been applied to your cart",
                promotion_id=str(promotion.id),
            )

        if promotion.requires_authentication and user_id is None:
            raise PromotionInvalid(
                PromotionErrorReason.REQUIRES_AUTH,
                "This coupon requires you to be signed in",
                promotion_id=str(promotion.id),
            )

        if promotion.usage_limit is not None and promotion.usage_count >= promotion.usage_limit:
            raise PromotionInvalid(
                PromotionErrorReason.EXHAUSTED,
                "This coupon has reached its usage limit",
                promotion_id=str(promotion.id),
            )

        if promotion.per_user_limit is not None and (user_id or user_email):
            used = await self.count_user_usage(promotion.id, user_id, user_email)
            if used >= promotion.per_user_limit:
                raise PromotionInvalid(
                    PromotionErrorReason.EXHAUSTED,
                    "You have already used this coupon the maximum number of times",
                    promotion_id=str(promotion.id),
                )

        minimum = promotion.minimum_order_value
        if minimum is not None and subtotal < to_money(minimum):
            raise PromotionInvalid(
                PromotionErrorReason.BELOW_MINIMUM,
                f"Minimum order value of ${to_money(minimum)} not met",
                promotion_id=str(promotion.id),
                minimum_order_value=str(to_money(minimum)),
            )

        if not lines or not eligible_lines(promotion, lines):
            raise PromotionInvalid(
                PromotionErrorReason.NO_ELIGIBLE_ITEMS,
                "No eligible items in cart for this coupon",
                promotion_id=str(promotion.id),
            )

        calculation = calculate_discount(promotion, lines, subtotal)
        promotion_type = PromotionType(promotion.promotion_type)

        logger.info(
            f"Promotion {promotion.id} ({promotion.coupon_code}) validated: "
            f"discount={calculation.discount} on subtotal={subtotal}"
        )

        return PromotionResult(
            promotion_id=promotion.id,
            coupon_code=promotion.coupon_code,
            discount=calculation.discount,
            name=promotion.name,
            promotion_type=promotion_type,
            applied_to=calculation.applied_to,
            free_item_product_id=calculation.free_item_product_id,
            message=_success_message(promotion.name, promotion_type, calculation.discount),
        )

    async def count_user_usage(
        self,
        promotion_id: UUID,
        user_id: Optional[UUID],
        user_email: Optional[str],
    ) -> int:
        """Usage rows of a promotion attributed to a user id or email."""
        conditions = []
        if user_id is not None:
            conditions.append(PromotionUsage.user_id == user_id)
        if user_email:
            conditions.append(func.lower(PromotionUsage.user_email) == user_email.lower())

        result = await self.session.execute(
            select(func.count(PromotionUsage.id)).where(
                PromotionUsage.promotion_id == promotion_id,
                or_(*conditions),
            )
        )
        return result.scalar_one()

    async def _find_promotion(
        self,
        code: Optional[str],
        promotion_id: Optional[UUID],
    ) -> Optional[Promotion]:
        if promotion_id is not None:
            return await self.session.get(Promotion, promotion_id)

        if not code:
            return None

        # Prefer the active promotion when a retired one shares the code
        result = await self.session.execute(
            select(Promotion)
            .where(func.upper(Promotion.coupon_code) == code.strip().upper())
            .order_by(Promotion.is_active.desc(), Promotion.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()


def _label(line: CartLine) -> str:
    return line.name or str(line.product_id)


def _success_message(name: str, promotion_type: PromotionType, discount: Decimal) -> str:
    if promotion_type == PromotionType.FREE_ITEM:
        return f"{name} applied! Free item added to your cart"
    if promotion_type == PromotionType.BUY_ONE_GET_ONE:
        return f"{name} applied! You saved ${discount} on the cheapest item"
    return f"{name} applied! You saved ${discount}"
