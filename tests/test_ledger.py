"""Tests for the stock ledger."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import update

from shared.errors import InsufficientStock, NotFound
from services.cart_service.carts import CartManager
from services.cart_service.models import Cart, CartItem
from services.inventory_service.ledger import StockLedger
from services.inventory_service.models import InventoryUnit


class TestReserveAndRelease:
    """Tests for reserve/release accounting."""

    async def test_reserve_overreserve_release(self, session, make_product, fresh):
        _, unit = await make_product(quantity=100)
        unit_id = unit.id
        ledger = StockLedger(session)

        await ledger.reserve(unit_id, 10)
        await session.commit()
        assert (await fresh(InventoryUnit, unit_id)).reserved_stock == 10

        with pytest.raises(InsufficientStock) as exc_info:
            await ledger.reserve(unit_id, 95)
        assert exc_info.value.requested == 95
        assert exc_info.value.available == 90
        await session.rollback()

        assert (await fresh(InventoryUnit, unit_id)).reserved_stock == 10

        released = await ledger.release(unit_id, 10)
        await session.commit()

        assert released == 10
        refreshed = await fresh(InventoryUnit, unit_id)
        assert refreshed.reserved_stock == 0
        assert refreshed.quantity == 100

    async def test_reserve_by_sku(self, session, make_product):
        await make_product(sku="MUG-RED", quantity=5)

        unit = await StockLedger(session).reserve("MUG-RED", 5)

        assert unit.reserved_stock == 5
        assert unit.available_stock == 0

    async def test_release_clamps_at_zero(self, session, make_product):
        _, unit = await make_product(quantity=10)
        ledger = StockLedger(session)
        await ledger.reserve(unit.id, 3)

        released = await ledger.release(unit.id, 10)

        assert released == 3
        assert (await ledger.resolve_unit(unit.id)).reserved_stock == 0

    async def test_release_nothing(self, session, make_product):
        _, unit = await make_product(quantity=10)

        assert await StockLedger(session).release(unit.id, 0) == 0

    async def test_reserve_non_positive_quantity(self, session, make_product):
        _, unit = await make_product(quantity=10)

        with pytest.raises(ValueError):
            await StockLedger(session).reserve(unit.id, 0)

    async def test_unknown_unit(self, session):
        with pytest.raises(NotFound):
            await StockLedger(session).reserve("NO-SUCH-SKU", 1)

    async def test_check_availability(self, session, make_product):
        _, unit = await make_product(quantity=4)
        ledger = StockLedger(session)
        await ledger.reserve(unit.id, 3)

        availability = await ledger.check_availability(unit.sku, 2)

        assert availability.available_stock == 1
        assert availability.can_fulfill is False


class TestCommit:
    """Tests for committing sold stock."""

    async def test_commit_moves_reservation_to_sale(self, session, make_product, fresh):
        _, unit = await make_product(quantity=100)
        ledger = StockLedger(session)
        await ledger.reserve(unit.id, 4)

        await ledger.commit(unit.id, 4)
        await session.commit()

        refreshed = await fresh(InventoryUnit, unit.id)
        assert refreshed.quantity == 96
        assert refreshed.reserved_stock == 0

    async def test_commit_with_partial_reservation(self, session, make_product):
        _, unit = await make_product(quantity=20)
        ledger = StockLedger(session)
        await ledger.reserve(unit.id, 5)

        committed = await ledger.commit(unit.id, 3, reserved=0)

        assert committed.quantity == 17
        assert committed.reserved_stock == 5

    async def test_commit_more_than_on_hand(self, session, make_product, fresh):
        _, unit = await make_product(quantity=2, low_stock_threshold=0)
        unit_id = unit.id

        with pytest.raises(InsufficientStock):
            await StockLedger(session).commit(unit_id, 3)
        await session.rollback()

        assert (await fresh(InventoryUnit, unit_id)).quantity == 2

    async def test_commit_cannot_take_stock_held_by_other_carts(self, session, make_product, fresh):
        _, unit = await make_product(quantity=10, low_stock_threshold=0)
        unit_id = unit.id
        await StockLedger(session).reserve(unit_id, 10)
        await session.commit()

        with pytest.raises(InsufficientStock) as exc_info:
            await StockLedger(session).commit(unit_id, 2, reserved=0)
        await session.rollback()

        assert exc_info.value.available == 0
        refreshed = await fresh(InventoryUnit, unit_id)
        assert refreshed.quantity == 10
        assert refreshed.reserved_stock == 10

    async def test_commit_at_threshold_emits_stock_low(self, session, make_product, outbox_events):
        _, unit = await make_product(quantity=6, low_stock_threshold=5)

        await StockLedger(session).commit(unit.id, 1)
        await session.commit()

        assert await outbox_events() == ["stock.low"]

    async def test_commit_above_threshold_is_quiet(self, session, make_product, outbox_events):
        _, unit = await make_product(quantity=50, low_stock_threshold=5)

        await StockLedger(session).commit(unit.id, 1)
        await session.commit()

        assert await outbox_events() == []


class TestReservationCleanup:
    """Tests for releasing reservations of abandoned carts."""

    async def _age_cart(self, session, cart, hours):
        await session.execute(
            update(Cart)
            .where(Cart.id == cart.id)
            .values(updated_at=datetime.utcnow() - timedelta(hours=hours))
        )
        await session.commit()

    async def test_cleanup_releases_once(self, session, make_product, fresh):
        _, unit = await make_product(quantity=100)
        manager = CartManager(session)

        abandoned = await manager.get_or_create_cart(session_id="abandoned")
        item = await manager.add_item(abandoned, unit.id, 5)
        active = await manager.get_or_create_cart(session_id="active")
        await manager.add_item(active, unit.id, 3)
        await self._age_cart(session, abandoned, hours=48)

        ledger = StockLedger(session)
        first = await ledger.cleanup_expired_reservations(max_age_hours=24)
        second = await ledger.cleanup_expired_reservations(max_age_hours=24)

        assert first.carts_processed == 1
        assert first.units_released == 5
        assert second.carts_processed == 0
        assert second.units_released == 0

        assert (await fresh(InventoryUnit, unit.id)).reserved_stock == 3
        assert (await fresh(CartItem, item.id)).reserved_quantity == 0
        assert (await fresh(Cart, abandoned.id)).processed is True

    async def test_touched_cart_is_swept_again(self, session, make_product, fresh):
        _, unit = await make_product(quantity=100)
        manager = CartManager(session)
        cart = await manager.get_or_create_cart(session_id="returning")
        await manager.add_item(cart, unit.id, 2)
        await self._age_cart(session, cart, hours=48)

        ledger = StockLedger(session)
        await ledger.cleanup_expired_reservations(max_age_hours=24)

        # Shopper comes back and adds more; the cart is live again
        cart = await manager.get_cart(cart.id)
        await manager.add_item(cart, unit.id, 1)
        assert (await fresh(Cart, cart.id)).processed is False
        assert (await fresh(InventoryUnit, unit.id)).reserved_stock == 1

        await self._age_cart(session, cart, hours=48)
        report = await ledger.cleanup_expired_reservations(max_age_hours=24)

        assert report.units_released == 1
        assert (await fresh(InventoryUnit, unit.id)).reserved_stock == 0
