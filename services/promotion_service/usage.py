"""Records promotion consumption once an order is paid."""
import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.events import PromotionUsageRecordedEvent
from shared.outbox import save_event_to_outbox
from services.order_service.models import Order, User

from .models import Promotion, PromotionUsage

logger = logging.getLogger(__name__)


class PromotionUsageRecorder:
    """
    Idempotently turns an order's applied promotion into a usage row.

    The usage row and the ``usage_count`` increment are committed together.
    The UNIQUE (order_id, promotion_id) constraint is the guard against
    concurrent duplicate deliveries: the loser gets an IntegrityError, rolls
    back and ends up as a no-op.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record_usage(self, order_id: UUID) -> Optional[PromotionUsage]:
        """Record usage for an order. Returns the new row, or None if nothing was recorded."""
        # Second pass covers a concurrent guest User insert with the same email
        for attempt in range(2):
            try:
                return await self._record_usage(order_id)
            except IntegrityError as e:
                await self.session.rollback()
                logger.info(
                    f"Concurrent write while recording promotion usage for order {order_id} "
                    f"(attempt {attempt + 1}): {str(e.orig)}"
                )
        return None

    async def _record_usage(self, order_id: UUID) -> Optional[PromotionUsage]:
        order = await self.session.get(Order, order_id)
        if order is None:
            logger.error(f"Cannot record promotion usage: order {order_id} not found")
            return None

        if order.applied_promotion_id is None:
            return None

        result = await self.session.execute(
            select(PromotionUsage).where(
                PromotionUsage.order_id == order.id,
                PromotionUsage.promotion_id == order.applied_promotion_id,
            )
        )
        if result.scalar_one_or_none() is not None:
            logger.info(f"Promotion usage for order {order.id} already recorded")
            return None

        user = await self._resolve_user(order)
        if user is None:
            logger.error(
                f"Cannot record promotion usage for order {order.id}: "
                "no user id and no guest email"
            )
            return None

        promotion = await self.session.get(Promotion, order.applied_promotion_id)
        if promotion is None:
            logger.error(f"Promotion {order.applied_promotion_id} for order {order.id} no longer exists")
            return None

        usage = PromotionUsage(
            promotion_id=promotion.id,
            order_id=order.id,
            user_id=user.id,
            user_email=user.email,
            coupon_code=promotion.coupon_code,
            discount_amount=order.discount_amount,
            original_amount=order.subtotal,
            final_amount=order.total,
        )
        self.session.add(usage)
        await self.session.flush()

        await self.session.execute(
            update(Promotion)
            .where(Promotion.id == promotion.id)
            .values(usage_count=Promotion.usage_count + 1)
        )

        await save_event_to_outbox(
            self.session,
            PromotionUsageRecordedEvent(
                aggregate_id=order.id,
                correlation_id=order.correlation_id,
                order_id=order.id,
                promotion_id=promotion.id,
                coupon_code=promotion.coupon_code,
                discount_amount=order.discount_amount,
            ),
        )

        await self.session.commit()

        logger.info(
            f"Recorded usage of promotion {promotion.id} by order {order.id} "
            f"(discount={order.discount_amount})"
        )
        return usage

    async def recount_usage(self, promotion_id: UUID) -> int:
        """Re-derive ``usage_count`` from the usage rows."""
        result = await self.session.execute(
            select(func.count(PromotionUsage.id)).where(PromotionUsage.promotion_id == promotion_id)
        )
        count = result.scalar_one()

        await self.session.execute(
            update(Promotion).where(Promotion.id == promotion_id).values(usage_count=count)
        )
        await self.session.commit()

        logger.info(f"Recounted usage of promotion {promotion_id}: {count}")
        return count

    async def _resolve_user(self, order: Order) -> Optional[User]:
        if order.user_id is not None:
            return await self.session.get(User, order.user_id)

        if not order.guest_email:
            return None

        return await find_or_create_user(self.session, order.guest_email)


async def find_or_create_user(session: AsyncSession, email: str, name: Optional[str] = None) -> User:
    """Find a user by email (case-insensitive) or add a new guest account to the session."""
    email = email.strip().lower()
    result = await session.execute(select(User).where(func.lower(User.email) == email))
    user = result.scalar_one_or_none()
    if user is not None:
        return user

    user = User(email=email, name=name or email.split("@")[0], role="user")
    session.add(user)
    await session.flush()

    logger.info(f"Created user {user.id} for guest {email}")
    return user
