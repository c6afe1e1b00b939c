"""Pytest fixtures for storefront tests."""

from contextlib import ExitStack
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from shared.database import Database
from shared.outbox import OutboxMessage
from services import schema  # noqa: F401
from services.inventory_service.models import FulfillmentType, InventoryUnit, Product
from services.order_service.models import ShippingAddress, User
from services.promotion_service.models import Promotion, PromotionType


@pytest.fixture
async def database(tmp_path):
    """A throwaway SQLite database with every table created."""
    db = Database(f"sqlite+aiosqlite:///{tmp_path}/storefront.db")
    await db.create_tables()
    yield db
    await db.close()


@pytest.fixture
async def session(database):
    async with database.session_factory() as session:
        yield session


@pytest.fixture
def make_product(session):
    """Create a product with one inventory unit."""

    async def _make(
        sku="TSHIRT-M",
        quantity=100,
        price="25.00",
        fulfillment_type=FulfillmentType.LOCAL_INVENTORY,
        printify_variant_id=None,
        low_stock_threshold=5,
        category_id=None,
    ):
        product = Product(
            name=f"Product {sku}",
            slug=sku.lower(),
            category_id=category_id,
            fulfillment_type=fulfillment_type.value,
            printify_product_id="pf-product-1" if printify_variant_id else None,
        )
        session.add(product)
        await session.flush()

        unit = InventoryUnit(
            product_id=product.id,
            sku=sku,
            retail_price=Decimal(price),
            images=[],
            quantity=quantity,
            reserved_stock=0,
            low_stock_threshold=low_stock_threshold,
            printify_variant_id=printify_variant_id,
        )
        session.add(unit)
        await session.commit()
        return product, unit

    return _make


@pytest.fixture
def make_promotion(session):
    """Create an active promotion valid from yesterday for a month."""

    async def _make(
        coupon_code="TEST20",
        promotion_type=PromotionType.PERCENTAGE_DISCOUNT,
        value="20",
        **overrides,
    ):
        now = datetime.utcnow()
        fields = dict(
            name=f"{coupon_code} promotion",
            promotion_type=promotion_type.value,
            value=Decimal(value),
            start_date=now - timedelta(days=1),
            end_date=now + timedelta(days=30),
            is_active=True,
            coupon_code=coupon_code,
            usage_count=0,
            requires_authentication=False,
            apply_to_all_items=True,
            category_ids=[],
            product_ids=[],
        )
        fields.update(overrides)
        promotion = Promotion(**fields)
        session.add(promotion)
        await session.commit()
        return promotion

    return _make


@pytest.fixture
async def user(session):
    user = User(email="jane@example.com", name="Jane", role="user")
    session.add(user)
    await session.commit()
    return user


@pytest.fixture
def kingston_address():
    return ShippingAddress(
        full_name="Jane Doe",
        street="1 Hope Road",
        city="Kingston",
        state="Kingston",
        postal_code="00000",
        country="Jamaica",
        phone="876-555-0100",
    )


@pytest.fixture
def outbox_events(session):
    """Event types currently in the outbox, oldest first."""

    async def _events():
        result = await session.execute(
            select(OutboxMessage.event_type)
            .order_by(OutboxMessage.created_at)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    return _events


@pytest.fixture
def fresh(session):
    """Re-read a row from the database, bypassing the identity map."""

    async def _fresh(model, id_):
        return await session.get(model, id_, populate_existing=True)

    return _fresh


class FakeBroker:
    """In-memory stand-in for MessageBroker."""

    def __init__(self, fail_with=None):
        self.published = []
        self.handlers = {}
        self.fail_with = fail_with

    async def connect(self):
        pass

    async def disconnect(self):
        pass

    async def publish_event(self, event, routing_key=None):
        if self.fail_with:
            raise self.fail_with
        self.published.append(event)

    async def subscribe_to_event(self, event_type, queue_name, handler, max_retries=3):
        self.handlers[event_type] = handler


@pytest.fixture
def fake_broker():
    return FakeBroker()


@pytest.fixture
def failing_broker():
    return FakeBroker(fail_with=ConnectionError("broker unavailable"))


@pytest.fixture
def service_client(tmp_path, monkeypatch):
    """
    Start a service app against a shared SQLite file and an in-memory broker.

    Every app gets its own engine, used only on its TestClient's event loop.
    """
    with ExitStack() as stack:

        def _start(module, **overrides):
            if hasattr(module, "database"):
                monkeypatch.setattr(module, "database", Database(f"sqlite+aiosqlite:///{tmp_path}/api.db"))
            if hasattr(module, "message_broker"):
                monkeypatch.setattr(module, "message_broker", FakeBroker())
            for name, value in overrides.items():
                monkeypatch.setattr(module, name, value)
            return stack.enter_context(TestClient(module.app))

        yield _start
