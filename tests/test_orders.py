"""Tests for the order orchestrator and pricing."""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from shared.errors import InvalidTransition, NotFound, StorefrontError, Unauthorized
from services.cart_service.carts import CartManager
from services.cart_service.models import Cart
from services.inventory_service.models import InventoryUnit
from services.order_service.models import (
    Address,
    FulfillmentStatus,
    OrderStatus,
    ShippingAddress,
    User,
)
from services.order_service.orchestrator import CreateOrderCommand, OrderOrchestrator
from services.order_service.pricing import (
    calculate_shipping,
    calculate_tax,
    estimated_shipping_time,
    shipping_region,
)
from services.promotion_service.models import Promotion, PromotionUsage


@pytest.fixture
def checkout(session, make_product, make_promotion, kingston_address):
    """Fill a cart (two 25.00 shirts, optionally TEST20) and place the order."""

    async def _checkout(user=None, guest_email=None, coupon=None, address=None, quantity=2):
        _, unit = await make_product(quantity=100, price="25.00")
        manager = CartManager(session)
        cart = await manager.get_or_create_cart(
            user_id=user.id if user else None,
            session_id=None if user else "guest-session",
        )
        await manager.add_item(cart, unit.id, quantity)
        if coupon:
            await make_promotion(coupon)
            await manager.apply_promotion(cart, coupon, user_id=user.id if user else None)

        order = await OrderOrchestrator(session).create_order(
            CreateOrderCommand(
                cart_id=cart.id,
                shipping_address=address or kingston_address,
                user_id=user.id if user else None,
                guest_email=guest_email,
            )
        )
        return order, cart, unit

    return _checkout


async def count(session, model, *criteria):
    result = await session.execute(select(func.count()).select_from(model).where(*criteria))
    return result.scalar_one()


class TestPricing:
    """Tests for tax and shipping tables."""

    def test_local_parish(self):
        region = shipping_region("Kingston", "Jamaica")
        assert region == "Kingston"
        assert calculate_shipping(region, Decimal("20.00")) == Decimal("0")
        assert calculate_tax(region, Decimal("40.00")) == Decimal("5.20")
        assert estimated_shipping_time(region) == "1-2 business days"

    def test_usa_flat_rate_until_threshold(self):
        region = shipping_region("NY", "USA")
        assert region == "USA"
        assert calculate_shipping(region, Decimal("50.00")) == Decimal("15.00")
        assert calculate_shipping(region, Decimal("100.00")) == Decimal("0")

    def test_unknown_country_uses_default(self):
        region = shipping_region(None, "France")
        assert calculate_shipping(region, Decimal("10.00")) == Decimal("35.00")
        assert estimated_shipping_time(region) == "5-10 business days"


class TestCreateOrder:
    """Tests for turning a cart into an order."""

    async def test_totals_with_coupon(self, session, user, checkout, outbox_events):
        order, _, _ = await checkout(user=user, coupon="TEST20")

        assert order.status == OrderStatus.PENDING.value
        assert order.subtotal == Decimal("50.00")
        assert order.discount_amount == Decimal("10.00")
        # 13% of the discounted subtotal
        assert order.tax == Decimal("5.20")
        assert order.shipping_cost == Decimal("0")
        assert order.total == Decimal("45.20")
        assert order.applied_promotion_id is not None
        assert len(order.items) == 1
        assert order.items[0].price == Decimal("25.00")
        assert order.items[0].quantity == 2
        assert await outbox_events() == ["order.placed"]
        assert await count(session, Address, Address.user_id == user.id) == 1

    async def test_usa_order_pays_shipping(self, session, user, checkout):
        address = ShippingAddress(
            full_name="Sam Smith",
            street="5 Broadway",
            city="New York",
            state="NY",
            postal_code="10001",
            country="USA",
        )
        order, _, _ = await checkout(user=user, address=address)

        assert order.shipping_cost == Decimal("15.00")
        assert order.total == Decimal("71.50")

    async def test_stock_stays_reserved_until_paid(self, session, user, checkout, fresh):
        order, cart, unit = await checkout(user=user)

        assert (await fresh(InventoryUnit, unit.id)).reserved_stock == 2
        assert await fresh(Cart, cart.id) is not None

    async def test_requires_user_or_email(self, session, make_product, kingston_address):
        _, unit = await make_product()
        manager = CartManager(session)
        cart = await manager.get_or_create_cart(session_id="anon")
        await manager.add_item(cart, unit.id, 1)

        with pytest.raises(Unauthorized):
            await OrderOrchestrator(session).create_order(
                CreateOrderCommand(cart_id=cart.id, shipping_address=kingston_address)
            )

    async def test_empty_cart(self, session, kingston_address):
        cart = await CartManager(session).get_or_create_cart(session_id="empty")

        with pytest.raises(StorefrontError):
            await OrderOrchestrator(session).create_order(
                CreateOrderCommand(
                    cart_id=cart.id,
                    shipping_address=kingston_address,
                    guest_email="a@b.com",
                )
            )

    async def test_missing_cart(self, session, kingston_address):
        with pytest.raises(NotFound):
            await OrderOrchestrator(session).create_order(
                CreateOrderCommand(cart_id=uuid4(), shipping_address=kingston_address, guest_email="a@b.com")
            )


class TestConfirmPayment:
    """Tests for payment confirmation."""

    async def test_confirm_hands_over_cart(self, session, user, checkout, fresh, outbox_events):
        order, cart, unit = await checkout(user=user, coupon="TEST20")

        confirmed = await OrderOrchestrator(session).confirm_payment(order.id)

        assert confirmed.status == OrderStatus.PROCESSING.value
        assert confirmed.paid_at is not None
        assert confirmed.items[0].reserved_quantity == 2
        assert (await fresh(InventoryUnit, unit.id)).reserved_stock == 2
        assert await count(session, Cart, Cart.id == cart.id) == 0
        assert await count(session, PromotionUsage, PromotionUsage.order_id == order.id) == 1
        assert "order.paid" in await outbox_events()

    async def test_confirm_is_idempotent(self, session, user, checkout, fresh, outbox_events):
        order, _, _ = await checkout(user=user, coupon="TEST20")
        orchestrator = OrderOrchestrator(session)

        await orchestrator.confirm_payment(order.id)
        await orchestrator.confirm_payment(order.id)

        events = await outbox_events()
        assert events.count("order.paid") == 1
        assert events.count("promotion.usage_recorded") == 1
        promotion = await fresh(Promotion, order.applied_promotion_id)
        assert promotion.usage_count == 1
        history = await orchestrator.get_history(order.id)
        assert [entry.step for entry in history] == ["order_placed", "payment_confirmed"]

    async def test_guest_order_records_usage_for_new_user(self, session, checkout):
        order, _, _ = await checkout(guest_email="a@b.com", coupon="TEST20")

        await OrderOrchestrator(session).confirm_payment(order.id)

        result = await session.execute(select(User).where(User.email == "a@b.com"))
        guest = result.scalar_one()
        usage = (await session.execute(select(PromotionUsage))).scalars().all()
        assert len(usage) == 1
        assert usage[0].user_id == guest.id

    async def test_payment_for_cancelled_order_is_ignored(self, session, user, checkout):
        order, _, _ = await checkout(user=user)
        orchestrator = OrderOrchestrator(session)
        await orchestrator.update_order_status(order.id, OrderStatus.CANCELLED, reason="changed mind")

        result = await orchestrator.confirm_payment(order.id)

        assert result.status == OrderStatus.CANCELLED.value

    async def test_payment_failure_keeps_order_pending(self, session, user, checkout):
        order, _, _ = await checkout(user=user)

        failed = await OrderOrchestrator(session).record_payment_failure(order.id, "card declined")

        assert failed.status == OrderStatus.PENDING.value
        assert failed.error_message == "card declined"


class TestStatusTransitions:
    """Tests for moving orders through their lifecycle."""

    async def test_cancel_pending_releases_cart_stock(self, session, user, checkout, fresh, outbox_events):
        order, _, unit = await checkout(user=user)

        cancelled = await OrderOrchestrator(session).update_order_status(order.id, OrderStatus.CANCELLED)

        assert cancelled.status == OrderStatus.CANCELLED.value
        assert (await fresh(InventoryUnit, unit.id)).reserved_stock == 0
        assert "order.cancelled" in await outbox_events()

    async def test_cancel_paid_releases_order_stock(self, session, user, checkout, fresh):
        order, _, unit = await checkout(user=user)
        orchestrator = OrderOrchestrator(session)
        await orchestrator.confirm_payment(order.id)

        await orchestrator.update_order_status(order.id, OrderStatus.CANCELLED)

        assert (await fresh(InventoryUnit, unit.id)).reserved_stock == 0

    async def test_ship_then_deliver(self, session, user, checkout, outbox_events):
        order, _, _ = await checkout(user=user)
        orchestrator = OrderOrchestrator(session)
        await orchestrator.confirm_payment(order.id)

        shipped = await orchestrator.update_order_status(
            order.id,
            OrderStatus.SHIPPED,
            tracking_number="1Z999",
            carrier="UPS",
        )
        assert shipped.tracking_number == "1Z999"
        assert shipped.fulfillment_status == FulfillmentStatus.SHIPPED.value
        assert "order.shipped" in await outbox_events()

        delivered = await orchestrator.update_order_status(order.id, OrderStatus.DELIVERED)
        assert delivered.status == OrderStatus.DELIVERED.value
        assert delivered.fulfillment_status == FulfillmentStatus.DELIVERED.value

    async def test_pending_cannot_ship(self, session, user, checkout):
        order, _, _ = await checkout(user=user)

        with pytest.raises(InvalidTransition):
            await OrderOrchestrator(session).update_order_status(order.id, OrderStatus.SHIPPED)

    async def test_cancelled_is_terminal(self, session, user, checkout):
        order, _, _ = await checkout(user=user)
        orchestrator = OrderOrchestrator(session)
        await orchestrator.update_order_status(order.id, OrderStatus.CANCELLED)

        with pytest.raises(InvalidTransition):
            await orchestrator.update_order_status(order.id, OrderStatus.PROCESSING)

    async def test_manual_processing_confirms_payment(self, session, user, checkout):
        order, cart, _ = await checkout(user=user)

        processing = await OrderOrchestrator(session).update_order_status(order.id, OrderStatus.PROCESSING)

        assert processing.status == OrderStatus.PROCESSING.value
        assert await count(session, Cart, Cart.id == cart.id) == 0
