"""Tests for CartManager."""

from decimal import Decimal

import pytest

from shared.errors import InsufficientStock, NotFound, PromotionErrorReason, PromotionInvalid
from services.cart_service.carts import CartManager
from services.inventory_service.models import FulfillmentType, InventoryUnit
from services.promotion_service.models import PromotionType


class TestCartItems:
    """Tests for adding, changing and removing cart lines."""

    async def test_add_local_item_reserves(self, session, make_product, fresh):
        _, unit = await make_product(quantity=10)
        manager = CartManager(session)
        cart = await manager.get_or_create_cart(session_id="s1")

        item = await manager.add_item(cart, unit.sku, 2)
        item = await manager.add_item(cart, unit.id, 3)

        assert item.quantity == 5
        assert item.reserved_quantity == 5
        assert len(cart.items) == 1
        assert (await fresh(InventoryUnit, unit.id)).reserved_stock == 5

    async def test_add_local_item_beyond_stock(self, session, make_product, fresh):
        _, unit = await make_product(quantity=2)
        unit_id = unit.id
        manager = CartManager(session)
        cart = await manager.get_or_create_cart(session_id="s1")
        cart_id = cart.id

        with pytest.raises(InsufficientStock):
            await manager.add_item(cart, unit_id, 3)

        cart = await manager.get_cart(cart_id)
        assert cart.items == []
        assert (await fresh(InventoryUnit, unit_id)).reserved_stock == 0

    async def test_print_on_demand_item_is_not_reserved(self, session, make_product, fresh):
        _, unit = await make_product(
            sku="POSTER",
            quantity=0,
            fulfillment_type=FulfillmentType.PRINTIFY_POD,
            printify_variant_id="12345",
        )
        manager = CartManager(session)
        cart = await manager.get_or_create_cart(session_id="s1")

        item = await manager.add_item(cart, unit.id, 4)

        assert item.reserved_quantity == 0
        assert (await fresh(InventoryUnit, unit.id)).reserved_stock == 0

    async def test_hybrid_item_short_on_stock(self, session, make_product, fresh):
        _, unit = await make_product(
            sku="HOODIE",
            quantity=1,
            fulfillment_type=FulfillmentType.HYBRID,
            printify_variant_id="777",
        )
        manager = CartManager(session)
        cart = await manager.get_or_create_cart(session_id="s1")

        item = await manager.add_item(cart, unit.id, 3)

        assert item.quantity == 3
        assert item.reserved_quantity == 0
        assert (await fresh(InventoryUnit, unit.id)).reserved_stock == 0

    async def test_decrease_quantity_releases(self, session, make_product, fresh):
        _, unit = await make_product(quantity=10)
        manager = CartManager(session)
        cart = await manager.get_or_create_cart(session_id="s1")
        item = await manager.add_item(cart, unit.id, 5)

        item = await manager.update_item_quantity(cart, item.id, 2)

        assert item.quantity == 2
        assert item.reserved_quantity == 2
        assert (await fresh(InventoryUnit, unit.id)).reserved_stock == 2

    async def test_zero_quantity_removes_line(self, session, make_product, fresh):
        _, unit = await make_product(quantity=10)
        manager = CartManager(session)
        cart = await manager.get_or_create_cart(session_id="s1")
        item = await manager.add_item(cart, unit.id, 5)

        assert await manager.update_item_quantity(cart, item.id, 0) is None

        assert cart.items == []
        assert (await fresh(InventoryUnit, unit.id)).reserved_stock == 0

    async def test_clear_cart_releases_everything(self, session, make_product, fresh):
        _, shirt = await make_product(sku="SHIRT", quantity=10)
        _, mug = await make_product(sku="MUG", quantity=10)
        manager = CartManager(session)
        cart = await manager.get_or_create_cart(user_id=None, session_id="s1")
        cart_id = cart.id
        await manager.add_item(cart, shirt.id, 2)
        await manager.add_item(cart, mug.id, 1)

        await manager.clear_cart(cart)

        assert (await fresh(InventoryUnit, shirt.id)).reserved_stock == 0
        assert (await fresh(InventoryUnit, mug.id)).reserved_stock == 0
        with pytest.raises(NotFound):
            await manager.get_cart(cart_id)

    async def test_subtotal(self, session, make_product):
        _, shirt = await make_product(sku="SHIRT", quantity=10, price="25.00")
        _, mug = await make_product(sku="MUG", quantity=10, price="9.99")
        manager = CartManager(session)
        cart = await manager.get_or_create_cart(session_id="s1")
        await manager.add_item(cart, shirt.id, 2)
        await manager.add_item(cart, mug.id, 1)

        assert await manager.subtotal(cart) == Decimal("59.99")

    async def test_same_session_returns_same_cart(self, session):
        manager = CartManager(session)

        first = await manager.get_or_create_cart(session_id="s1")
        second = await manager.get_or_create_cart(session_id="s1")

        assert first.id == second.id


class TestCartPromotions:
    """Tests for applying coupons to a cart."""

    async def test_apply_twice(self, session, make_product, make_promotion):
        _, unit = await make_product(quantity=10)
        await make_promotion("TEST20")
        manager = CartManager(session)
        cart = await manager.get_or_create_cart(session_id="s1")
        await manager.add_item(cart, unit.id, 2)

        result = await manager.apply_promotion(cart, "TEST20")
        assert result.discount == Decimal("10.00")

        with pytest.raises(PromotionInvalid) as exc_info:
            await manager.apply_promotion(cart, "test20")
        assert exc_info.value.reason == PromotionErrorReason.ALREADY_APPLIED

        cart = await manager.get_cart(cart.id)
        assert len(cart.promotions) == 1
        assert cart.promotions[0].coupon_code == "TEST20"

    async def test_new_promotion_replaces_old(self, session, make_product, make_promotion):
        _, unit = await make_product(quantity=10)
        await make_promotion("TEST20")
        five_off = await make_promotion("FIVEOFF", promotion_type=PromotionType.FIXED_AMOUNT_DISCOUNT, value="5")
        manager = CartManager(session)
        cart = await manager.get_or_create_cart(session_id="s1")
        await manager.add_item(cart, unit.id, 2)

        await manager.apply_promotion(cart, "TEST20")
        await manager.apply_promotion(cart, "FIVEOFF")

        cart = await manager.get_cart(cart.id)
        assert [p.promotion_id for p in cart.promotions] == [five_off.id]
        assert cart.promotions[0].discount == Decimal("5.00")

    async def test_invalid_code_leaves_cart_alone(self, session, make_product):
        _, unit = await make_product(quantity=10)
        manager = CartManager(session)
        cart = await manager.get_or_create_cart(session_id="s1")
        await manager.add_item(cart, unit.id, 1)

        with pytest.raises(PromotionInvalid):
            await manager.apply_promotion(cart, "BOGUS")

        assert cart.promotions == []

    async def test_remove_promotion(self, session, make_product, make_promotion):
        _, unit = await make_product(quantity=10)
        promo = await make_promotion("TEST20")
        manager = CartManager(session)
        cart = await manager.get_or_create_cart(session_id="s1")
        await manager.add_item(cart, unit.id, 1)
        await manager.apply_promotion(cart, "TEST20")

        await manager.remove_promotion(cart, promo.id)

        assert cart.promotions == []
        with pytest.raises(NotFound):
            await manager.remove_promotion(cart, promo.id)
