"""Order orchestration: creation, status transitions and payment confirmation."""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Set
from uuid import UUID, uuid4

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import InvalidTransition, NotFound, StorefrontError, Unauthorized
from shared.events import (
    OrderCancelledEvent,
    OrderPaidEvent,
    OrderPlacedEvent,
    OrderShippedEvent,
)
from shared.money import ZERO, to_money
from shared.outbox import save_event_to_outbox
from services.cart_service.carts import CartManager
from services.cart_service.models import Cart
from services.inventory_service.ledger import StockLedger
from services.promotion_service.evaluator import PromotionEvaluator
from services.promotion_service.usage import PromotionUsageRecorder

from .models import (
    Address,
    FulfillmentStatus,
    Order,
    OrderHistory,
    OrderItem,
    OrderStatus,
    OrderStep,
    ShippingAddress,
    User,
)
from .pricing import calculate_shipping, calculate_tax, shipping_region

logger = logging.getLogger(__name__)

# Forward-only; CANCELLED and DELIVERED are terminal
ALLOWED_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}


class CreateOrderCommand(BaseModel):
    """Everything needed to turn a cart into an order."""
    cart_id: UUID
    shipping_address: ShippingAddress
    user_id: Optional[UUID] = None
    guest_email: Optional[str] = None
    shipping_method: Optional[str] = "standard"
    payment_method: str = "paypal"
    notes: Optional[str] = None


class OrderOrchestrator:
    """Drives an order from placement to delivery."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_order(self, command: CreateOrderCommand) -> Order:
        """
        Create a PENDING order from a cart.

        The order, its item snapshots, the history row, the address-book entry
        (registered users) and the ``order.placed`` event are committed in one
        transaction. Stock is left reserved on the cart and the cart is kept
        until payment is confirmed.
        """
        if command.user_id is None and not command.guest_email:
            raise Unauthorized("Sign in or provide an email address to place an order")

        cart = await self.session.get(Cart, command.cart_id)
        if cart is None:
            raise NotFound(f"Cart {command.cart_id} not found", cart_id=str(command.cart_id))

        if command.user_id is not None and await self.session.get(User, command.user_id) is None:
            raise Unauthorized(f"Unknown user {command.user_id}")

        cart_manager = CartManager(self.session)
        entries = await cart_manager.entries(cart)
        if not entries:
            raise StorefrontError("Cannot place an order for an empty cart", cart_id=str(cart.id))

        lines = [entry.line for entry in entries]
        subtotal = to_money(sum((line.line_total for line in lines), ZERO))

        # The cart's discount is a snapshot; re-check it against the cart as it is now
        discount = ZERO
        applied_promotion_id = None
        if cart.promotions:
            result = await PromotionEvaluator(self.session).evaluate(
                lines,
                promotion_id=cart.promotions[0].promotion_id,
                subtotal=subtotal,
                user_id=command.user_id,
                user_email=command.guest_email,
            )
            discount = min(result.discount, subtotal)
            applied_promotion_id = result.promotion_id

        address = command.shipping_address
        region = shipping_region(address.state, address.country)
        tax = calculate_tax(region, subtotal - discount)
        shipping_cost = calculate_shipping(region, subtotal)
        total = to_money(max(subtotal + tax + shipping_cost - discount, ZERO))

        order = Order(
            id=uuid4(),
            user_id=command.user_id,
            guest_email=command.guest_email.strip().lower() if command.guest_email else None,
            cart_id=cart.id,
            status=OrderStatus.PENDING.value,
            fulfillment_status=FulfillmentStatus.PENDING.value,
            subtotal=subtotal,
            tax=tax,
            shipping_cost=shipping_cost,
            discount_amount=discount,
            total=total,
            applied_promotion_id=applied_promotion_id,
            shipping_address=address.model_dump(),
            shipping_method=command.shipping_method,
            payment_method=command.payment_method,
            notes=command.notes,
            correlation_id=uuid4(),
        )

        for entry in entries:
            order.items.append(
                OrderItem(
                    product_id=entry.product.id,
                    inventory_unit_id=entry.unit.id,
                    name=entry.product.name,
                    sku=entry.unit.sku,
                    price=to_money(entry.unit.retail_price),
                    image=(entry.unit.images or [None])[0],
                    quantity=entry.item.quantity,
                )
            )

        self.session.add(order)

        if command.user_id is not None:
            self.session.add(Address(user_id=command.user_id, **address.model_dump()))

        event = OrderPlacedEvent(
            aggregate_id=order.id,
            correlation_id=order.correlation_id,
            order_id=order.id,
            user_id=order.user_id,
            guest_email=order.guest_email,
            total=total,
            item_count=sum(entry.item.quantity for entry in entries),
        )
        await save_event_to_outbox(self.session, event)

        self._log_history(
            order,
            step=OrderStep.ORDER_PLACED,
            from_status=None,
            to_status=OrderStatus.PENDING,
            event_id=event.event_id,
        )

        try:
            await self.session.commit()
        except Exception as e:
            logger.error(f"Error creating order for cart {cart.id}: {str(e)}", exc_info=True)
            await self.session.rollback()
            raise

        logger.info(
            f"Created order {order.id} from cart {cart.id}: subtotal={subtotal} "
            f"discount={discount} tax={tax} shipping={shipping_cost} total={total}"
        )
        return order

    async def update_order_status(
        self,
        order_id: UUID,
        new_status: OrderStatus,
        tracking_number: Optional[str] = None,
        tracking_url: Optional[str] = None,
        carrier: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Order:
        """Move an order forward one step (or cancel it)."""
        order = await self.get_order(order_id)
        current = OrderStatus(order.status)
        new_status = OrderStatus(new_status)

        if new_status not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransition(
                f"Cannot move order {order.id} from {current.value} to {new_status.value}",
                from_status=current.value,
                to_status=new_status.value,
            )

        if new_status == OrderStatus.PROCESSING:
            # Same path as a captured payment so the stock hand-over happens
            return await self.confirm_payment(order.id, order.payment_id)

        event_id = None
        try:
            if new_status == OrderStatus.SHIPPED:
                order.tracking_number = tracking_number or order.tracking_number
                order.tracking_url = tracking_url or order.tracking_url
                order.carrier = carrier or order.carrier
                order.shipped_at = datetime.utcnow()
                order.fulfillment_status = FulfillmentStatus.SHIPPED.value

                event = OrderShippedEvent(
                    aggregate_id=order.id,
                    correlation_id=order.correlation_id,
                    order_id=order.id,
                    recipient=await self.recipient(order),
                    tracking_number=order.tracking_number,
                    tracking_url=order.tracking_url,
                )
                await save_event_to_outbox(self.session, event)
                event_id = event.event_id

            elif new_status == OrderStatus.DELIVERED:
                order.fulfillment_status = FulfillmentStatus.DELIVERED.value

            elif new_status == OrderStatus.CANCELLED:
                await self._release_order_stock(order, current)

                event = OrderCancelledEvent(
                    aggregate_id=order.id,
                    correlation_id=order.correlation_id,
                    order_id=order.id,
                    reason=reason or "cancelled",
                )
                await save_event_to_outbox(self.session, event)
                event_id = event.event_id

            order.status = new_status.value
            self._log_history(
                order,
                step=OrderStep.STATUS_CHANGED,
                from_status=current,
                to_status=new_status,
                event_id=event_id,
                message=reason,
            )
            await self.session.commit()

        except Exception as e:
            logger.error(f"Error updating order {order.id} to {new_status.value}: {str(e)}", exc_info=True)
            await self.session.rollback()
            raise

        logger.info(f"Order {order.id}: {current.value} -> {new_status.value}")
        return order

    async def confirm_payment(self, order_id: UUID, payment_id: Optional[UUID] = None) -> Order:
        """
        Mark an order paid. Safe to call for every delivery of the payment event.

        Only the first call moves PENDING -> PROCESSING, hands the cart's
        reservations over to the order items, deletes the cart and emits
        ``order.paid``. Every call records promotion usage, which is itself
        idempotent.
        """
        order = await self.get_order(order_id)

        # The conditional update is the claim: exactly one delivery wins it
        claimed = await self.session.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == OrderStatus.PENDING.value)
            .values(
                status=OrderStatus.PROCESSING.value,
                payment_id=payment_id,
                paid_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

        if claimed.rowcount == 1:
            try:
                await self.session.refresh(order)
                await self._hand_over_cart(order)

                event = OrderPaidEvent(
                    aggregate_id=order.id,
                    correlation_id=order.correlation_id,
                    order_id=order.id,
                    payment_id=payment_id,
                    recipient=await self.recipient(order),
                    total=to_money(order.total),
                )
                await save_event_to_outbox(self.session, event)

                self._log_history(
                    order,
                    step=OrderStep.PAYMENT_CONFIRMED,
                    from_status=OrderStatus.PENDING,
                    to_status=OrderStatus.PROCESSING,
                    event_id=event.event_id,
                )
                await self.session.commit()

            except Exception as e:
                logger.error(f"Error confirming payment for order {order.id}: {str(e)}", exc_info=True)
                await self.session.rollback()
                raise

            logger.info(f"Payment confirmed for order {order.id}")

        else:
            await self.session.rollback()
            order = await self.get_order(order_id)
            if order.status == OrderStatus.CANCELLED.value:
                logger.error(f"Payment {payment_id} received for cancelled order {order.id}")
                return order
            logger.info(f"Order {order.id} already {order.status}, payment confirmation is a no-op")

        await PromotionUsageRecorder(self.session).record_usage(order_id)
        # record_usage may roll the session back, which expires ``order``
        return await self.get_order(order_id)

    async def record_payment_failure(self, order_id: UUID, reason: str) -> Order:
        """Note a failed capture. The order stays PENDING so the customer can retry."""
        order = await self.get_order(order_id)
        order.error_message = reason
        self._log_history(
            order,
            step=OrderStep.PAYMENT_CONFIRMED,
            from_status=OrderStatus(order.status),
            to_status=OrderStatus(order.status),
            message=f"payment failed: {reason}",
        )
        await self.session.commit()

        logger.warning(f"Payment failed for order {order.id}: {reason}")
        return order

    async def get_order(self, order_id: UUID) -> Order:
        result = await self.session.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFound(f"Order {order_id} not found", order_id=str(order_id))
        return order

    async def get_history(self, order_id: UUID) -> List[OrderHistory]:
        result = await self.session.execute(
            select(OrderHistory)
            .where(OrderHistory.order_id == order_id)
            .order_by(OrderHistory.created_at)
        )
        return list(result.scalars().all())

    async def recipient(self, order: Order) -> Optional[str]:
        """Email address order notifications go to."""
        if order.guest_email:
            return order.guest_email
        if order.user_id is not None:
            user = await self.session.get(User, order.user_id)
            return user.email if user else None
        return None

    async def _hand_over_cart(self, order: Order):
        """Move cart reservations onto the order items, then delete the cart."""
        if order.cart_id is None:
            return

        cart = await self.session.get(Cart, order.cart_id)
        if cart is None:
            logger.warning(f"Cart {order.cart_id} of order {order.id} is gone, nothing to hand over")
            return

        ledger = StockLedger(self.session)
        items_by_unit = {item.inventory_unit_id: item for item in order.items}

        for cart_item in cart.items:
            order_item = items_by_unit.get(cart_item.inventory_unit_id)
            held = cart_item.reserved_quantity
            handed_over = 0
            if order_item is not None:
                handed_over = min(held, order_item.quantity)
                order_item.reserved_quantity = handed_over

            # Lines added after checkout are not part of the order
            if held > handed_over:
                await ledger.release(cart_item.inventory_unit_id, held - handed_over)

        await self.session.delete(cart)
        logger.info(f"Handed cart {cart.id} reservations over to order {order.id}")

    async def _release_order_stock(self, order: Order, current: OrderStatus):
        ledger = StockLedger(self.session)

        for item in order.items:
            if not item.stock_committed and item.reserved_quantity > 0:
                await ledger.release(item.inventory_unit_id, item.reserved_quantity)
                item.reserved_quantity = 0

        if current == OrderStatus.PENDING and order.cart_id is not None:
            cart = await self.session.get(Cart, order.cart_id)
            if cart is not None:
                for cart_item in cart.items:
                    if cart_item.reserved_quantity > 0:
                        await ledger.release(cart_item.inventory_unit_id, cart_item.reserved_quantity)
                        cart_item.reserved_quantity = 0

    def _log_history(
        self,
        order: Order,
        step: OrderStep,
        from_status: Optional[OrderStatus],
        to_status: Optional[OrderStatus],
        event_id: Optional[UUID] = None,
        message: Optional[str] = None,
    ):
        self.session.add(
            OrderHistory(
                order_id=order.id,
                correlation_id=order.correlation_id,
                step=step.value,
                from_status=from_status.value if from_status else None,
                to_status=to_status.value if to_status else None,
                event_id=event_id,
                message=message,
            )
        )
