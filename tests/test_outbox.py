"""Tests for the outbox publisher."""

from uuid import uuid4

from sqlalchemy import select

from shared.events import EventType, StockLowEvent
from shared.outbox import OutboxMessage, OutboxPublisher, OutboxStatus, save_event_to_outbox


def stock_low():
    return StockLowEvent(
        aggregate_id=uuid4(),
        inventory_unit_id=uuid4(),
        sku="MUG-RED",
        available_stock=2,
        low_stock_threshold=5,
    )


async def outbox_rows(session):
    result = await session.execute(
        select(OutboxMessage).execution_options(populate_existing=True)
    )
    return result.scalars().all()


class TestOutboxPublisher:
    async def test_publishes_pending_events(self, session, database, fake_broker):
        event = stock_low()
        await save_event_to_outbox(session, event)
        await session.commit()

        publisher = OutboxPublisher(database.session_factory, fake_broker)

        assert await publisher.publish_pending_messages() == 1
        assert await publisher.publish_pending_messages() == 0

        assert [e.event_id for e in fake_broker.published] == [event.event_id]
        assert fake_broker.published[0].event_type == EventType.STOCK_LOW
        assert fake_broker.published[0].sku == "MUG-RED"

        [row] = await outbox_rows(session)
        assert row.status == OutboxStatus.PUBLISHED.value
        assert row.published_at is not None

    async def test_failed_publish_is_retried_then_marked_failed(self, session, database, failing_broker):
        await save_event_to_outbox(session, stock_low())
        await session.commit()

        publisher = OutboxPublisher(database.session_factory, failing_broker, max_retries=2)

        assert await publisher.publish_pending_messages() == 0
        [row] = await outbox_rows(session)
        assert row.status == OutboxStatus.PENDING.value
        assert row.retry_count == 1
        assert row.error_message == "broker unavailable"

        await publisher.publish_pending_messages()
        [row] = await outbox_rows(session)
        assert row.status == OutboxStatus.FAILED.value
        assert row.retry_count == 2

    async def test_retry_failed_messages(self, session, database, failing_broker, fake_broker):
        await save_event_to_outbox(session, stock_low())
        await session.commit()
        await OutboxPublisher(database.session_factory, failing_broker, max_retries=1).publish_pending_messages()

        publisher = OutboxPublisher(database.session_factory, fake_broker)
        assert await publisher.publish_pending_messages() == 0

        assert await publisher.retry_failed_messages() == 1
        assert await publisher.publish_pending_messages() == 1

        [row] = await outbox_rows(session)
        assert row.status == OutboxStatus.PUBLISHED.value
        assert row.retry_count == 0
        assert row.error_message is None
