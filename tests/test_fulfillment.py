"""Tests for the fulfillment dispatcher."""

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared.errors import InvalidTransition
from services.cart_service.carts import CartManager
from services.fulfillment_service.dispatcher import LOCAL, PRINTIFY, FulfillmentDispatcher
from services.fulfillment_service.printify import PrintifyClient
from services.inventory_service.models import FulfillmentType, InventoryUnit
from services.order_service.models import FulfillmentStatus, Order, OrderItem, OrderStatus
from services.order_service.orchestrator import CreateOrderCommand, OrderOrchestrator


class FakePrintify:
    """Records Printify calls and answers from a mutable script."""

    def __init__(self):
        self.requests = []
        self.submit_status = 200
        self.next_order_id = 1
        self.order_status = {"status": "pending", "shipments": []}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST":
            if self.submit_status != 200:
                return httpx.Response(self.submit_status, json={"error": "boom"})
            order_id = f"pf-{self.next_order_id}"
            self.next_order_id += 1
            return httpx.Response(200, json={"id": order_id, "status": "pending"})
        return httpx.Response(200, json=self.order_status)

    def client(self) -> PrintifyClient:
        async def no_sleep(seconds):
            return None

        return PrintifyClient(
            access_token="test-token",
            shop_id=42,
            client=httpx.AsyncClient(
                base_url="https://printify.test/v1",
                transport=httpx.MockTransport(self.handler),
            ),
            sleep=no_sleep,
        )


class SecondCommitFails(AsyncSession):
    """Session whose second commit raises, as if the database dropped mid-line."""

    async def commit(self):
        self.info["commits"] = self.info.get("commits", 0) + 1
        if self.info["commits"] == 2:
            raise RuntimeError("connection lost")
        await super().commit()


@pytest.fixture
def printify():
    return FakePrintify()


@pytest.fixture
def dispatcher(database, printify):
    return FulfillmentDispatcher(database.session_factory, printify=printify.client(), concurrency=1)


@pytest.fixture
def paid_order(session, user, kingston_address):
    """Place and pay for an order of ``[(unit, quantity), ...]``."""

    async def _paid_order(lines, pay=True):
        manager = CartManager(session)
        cart = await manager.get_or_create_cart(user_id=user.id)
        for unit, quantity in lines:
            await manager.add_item(cart, unit.id, quantity)

        orchestrator = OrderOrchestrator(session)
        order = await orchestrator.create_order(
            CreateOrderCommand(cart_id=cart.id, shipping_address=kingston_address, user_id=user.id)
        )
        if pay:
            order = await orchestrator.confirm_payment(order.id)
        return order.id

    return _paid_order


async def order_items(session, order_id):
    result = await session.execute(
        select(OrderItem)
        .where(OrderItem.order_id == order_id)
        .execution_options(populate_existing=True)
    )
    return {item.sku: item for item in result.scalars().all()}


class TestProcessOrder:
    """Tests for routing order lines."""

    async def test_local_and_failing_print_on_demand(
        self, session, make_product, paid_order, dispatcher, printify, fresh, outbox_events
    ):
        _, shirt = await make_product(sku="SHIRT", quantity=100)
        _, poster = await make_product(
            sku="POSTER",
            quantity=0,
            fulfillment_type=FulfillmentType.PRINTIFY_POD,
            printify_variant_id="12345",
        )
        order_id = await paid_order([(shirt, 2), (poster, 1)])
        printify.submit_status = 500

        result = await dispatcher.process_order(order_id)

        assert result.success is False
        assert result.fulfillment_status == FulfillmentStatus.FAILED
        assert [f.name for f in result.failed_items] == ["Product POSTER"]
        assert result.error == "Failed to fulfill 1 out of 2 items"

        stock = await fresh(InventoryUnit, shirt.id)
        assert stock.quantity == 98
        assert stock.reserved_stock == 0

        items = await order_items(session, order_id)
        assert items["SHIRT"].stock_committed is True
        assert items["SHIRT"].fulfillment_status == FulfillmentStatus.PROCESSING.value
        assert items["POSTER"].fulfillment_status == FulfillmentStatus.FAILED.value
        assert "500" in items["POSTER"].fulfillment_error

        order = await fresh(Order, order_id)
        assert order.fulfillment_status == FulfillmentStatus.FAILED.value
        assert "fulfillment.failed" in await outbox_events()

    async def test_retry_does_not_commit_twice(
        self, session, make_product, paid_order, dispatcher, printify, fresh
    ):
        _, shirt = await make_product(sku="SHIRT", quantity=100)
        _, poster = await make_product(
            sku="POSTER",
            quantity=0,
            fulfillment_type=FulfillmentType.PRINTIFY_POD,
            printify_variant_id="12345",
        )
        order_id = await paid_order([(shirt, 2), (poster, 1)])
        printify.submit_status = 500
        await dispatcher.process_order(order_id)

        printify.submit_status = 200
        result = await dispatcher.retry_failed_fulfillment(order_id)
        again = await dispatcher.process_order(order_id)

        assert result.success is True
        assert result.printify_order_id == "pf-1"
        assert again.success is True
        assert (await fresh(InventoryUnit, shirt.id)).quantity == 98
        assert len([r for r in printify.requests if r.method == "POST"]) == 2

        items = await order_items(session, order_id)
        assert items["POSTER"].printify_order_id == "pf-1"
        order = await fresh(Order, order_id)
        assert order.printify_order_id == "pf-1"
        assert order.fulfillment_status == FulfillmentStatus.PROCESSING.value

    async def test_submitted_order_survives_failed_line_commit(
        self, session, database, make_product, paid_order, printify, fresh
    ):
        _, poster = await make_product(
            sku="POSTER",
            quantity=0,
            fulfillment_type=FulfillmentType.PRINTIFY_POD,
            printify_variant_id="12345",
        )
        order_id = await paid_order([(poster, 1)])
        flaky = FulfillmentDispatcher(
            async_sessionmaker(database.engine, class_=SecondCommitFails, expire_on_commit=False),
            printify=printify.client(),
            concurrency=1,
        )

        result = await flaky.process_order(order_id)

        assert result.success is False
        items = await order_items(session, order_id)
        assert items["POSTER"].printify_order_id == "pf-1"
        assert items["POSTER"].fulfillment_status == FulfillmentStatus.FAILED.value
        assert (await fresh(Order, order_id)).printify_order_id == "pf-1"

        dispatcher = FulfillmentDispatcher(database.session_factory, printify=printify.client(), concurrency=1)
        retried = await dispatcher.retry_failed_fulfillment(order_id)

        assert retried.success is True
        assert retried.printify_order_id == "pf-1"
        assert [r.method for r in printify.requests] == ["POST"]

    async def test_hybrid_falls_back_to_print_on_demand(
        self, session, make_product, paid_order, dispatcher, fresh
    ):
        _, hoodie = await make_product(
            sku="HOODIE",
            quantity=1,
            fulfillment_type=FulfillmentType.HYBRID,
            printify_variant_id="777",
        )
        order_id = await paid_order([(hoodie, 3)])

        result = await dispatcher.process_order(order_id)

        assert result.success is True
        assert [o.route for o in result.fulfilled] == [PRINTIFY]
        assert (await fresh(InventoryUnit, hoodie.id)).quantity == 1

    async def test_hybrid_uses_local_stock_when_it_can(
        self, session, make_product, paid_order, dispatcher, printify, fresh
    ):
        _, hoodie = await make_product(
            sku="HOODIE",
            quantity=10,
            fulfillment_type=FulfillmentType.HYBRID,
            printify_variant_id="777",
        )
        order_id = await paid_order([(hoodie, 3)])

        result = await dispatcher.process_order(order_id)

        assert [o.route for o in result.fulfilled] == [LOCAL]
        stock = await fresh(InventoryUnit, hoodie.id)
        assert stock.quantity == 7
        assert stock.reserved_stock == 0
        assert printify.requests == []

    async def test_print_on_demand_without_variant_fails(self, session, make_product, paid_order, dispatcher):
        _, sticker = await make_product(sku="STICKER", quantity=0, fulfillment_type=FulfillmentType.PRINTIFY_POD)
        order_id = await paid_order([(sticker, 1)])

        result = await dispatcher.process_order(order_id)

        assert result.success is False
        assert "not configured for Printify" in result.failed_items[0].error

    async def test_unpaid_order_is_rejected(self, session, make_product, paid_order, dispatcher):
        _, shirt = await make_product(sku="SHIRT", quantity=100)
        order_id = await paid_order([(shirt, 1)], pay=False)

        with pytest.raises(InvalidTransition):
            await dispatcher.process_order(order_id)


class TestTracking:
    """Tests for tracking updates and provider sync."""

    async def test_tracking_ships_paid_order(self, session, make_product, paid_order, dispatcher, fresh):
        _, shirt = await make_product(sku="SHIRT", quantity=100)
        order_id = await paid_order([(shirt, 1)])

        await dispatcher.update_tracking_info(order_id, "1Z999", carrier="UPS")

        order = await fresh(Order, order_id)
        assert order.status == OrderStatus.SHIPPED.value
        assert order.tracking_number == "1Z999"
        status = await dispatcher.get_fulfillment_status(order_id)
        assert status["status"] == FulfillmentStatus.SHIPPED.value
        assert status["carrier"] == "UPS"

    async def test_sync_picks_up_shipment(
        self, session, make_product, paid_order, dispatcher, printify, fresh
    ):
        _, poster = await make_product(
            sku="POSTER",
            quantity=0,
            fulfillment_type=FulfillmentType.PRINTIFY_POD,
            printify_variant_id="12345",
        )
        order_id = await paid_order([(poster, 1)])
        await dispatcher.process_order(order_id)
        printify.order_status = {
            "status": "shipped",
            "shipments": [{"number": "TRK-1", "url": "https://track.test/TRK-1", "carrier": "USPS"}],
        }

        status = await dispatcher.sync_provider_status(order_id)

        assert status.shipped is True
        order = await fresh(Order, order_id)
        assert order.status == OrderStatus.SHIPPED.value
        assert order.tracking_url == "https://track.test/TRK-1"

    async def test_stats(self, session, make_product, paid_order, dispatcher):
        _, shirt = await make_product(sku="SHIRT", quantity=100)
        order_id = await paid_order([(shirt, 1)])
        await dispatcher.process_order(order_id)

        stats = await dispatcher.get_fulfillment_stats()

        assert stats["total_orders"] == 1
        assert stats["local"] == 1
        assert stats["failed"] == 0
        assert stats["success_rate"] == 100.0
