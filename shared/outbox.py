"""
Transactional outbox for domain events.

Services never publish to the broker from inside a business transaction.
Instead they:
1. Save events to the outbox table in the same transaction as the state change
2. Let the OutboxPublisher relay pending rows to the message broker
3. Mark rows as published after successful delivery

A crash between commit and publish therefore delays an event but never loses it.
"""
import asyncio
import json
import logging
from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlalchemy import Column, DateTime, Index, Integer, String, Text, Uuid, select
from sqlalchemy.ext.asyncio import AsyncSession

from .database import Base
from .events import BaseEvent, deserialize_event

logger = logging.getLogger(__name__)


class OutboxStatus(str, Enum):
    """Status of outbox messages."""
    PENDING = "pending"
    PUBLISHED = "published"
    FAILED = "failed"


class OutboxMessage(Base):
    """Outbox table for transactional event publishing."""

    __tablename__ = "outbox"

    id = Column(Uuid, primary_key=True, default=uuid4)
    event_id = Column(Uuid, nullable=False, unique=True)
    event_type = Column(String(100), nullable=False)
    aggregate_id = Column(Uuid, nullable=False)
    event_data = Column(Text, nullable=False)  # JSON serialized event
    status = Column(String(20), default=OutboxStatus.PENDING.value, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    published_at = Column(DateTime, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_outbox_status_created", "status", "created_at"),
        Index("ix_outbox_aggregate_id", "aggregate_id"),
    )


class OutboxPublisher:
    """Relays pending outbox rows to the message broker."""

    def __init__(
        self,
        session_factory,
        message_broker,
        poll_interval: float = 1,
        batch_size: int = 100,
        max_retries: int = 3
    ):
        """
        Initialize outbox publisher.

        Args:
            session_factory: Async session factory for database access
            message_broker: Anything with an async ``publish_event(event)``
            poll_interval: Seconds to wait between polls
            batch_size: Number of messages to process per batch
            max_retries: Publish attempts before a row is marked failed
        """
        self.session_factory = session_factory
        self.message_broker = message_broker
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.max_retries = max_retries
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        """Start the outbox publisher."""
        if self._running:
            logger.warning("Outbox publisher already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._poll_and_publish())
        logger.info("Outbox publisher started")

    async def stop(self):
        """Stop the outbox publisher."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        logger.info("Outbox publisher stopped")

    async def _poll_and_publish(self):
        while self._running:
            try:
                await self.publish_pending_messages()
            except Exception as e:
                logger.error(f"Error in outbox publisher: {str(e)}", exc_info=True)

            await asyncio.sleep(self.poll_interval)

    async def publish_pending_messages(self) -> int:
        """Publish one batch of pending messages. Returns how many were published."""
        published = 0
        async with self.session_factory() as session:
            # Every service polls the same table; locked rows belong to another publisher
            query = (
                select(OutboxMessage)
                .where(OutboxMessage.status == OutboxStatus.PENDING.value)
                .order_by(OutboxMessage.created_at)
                .limit(self.batch_size)
                .with_for_update(skip_locked=True)
            )

            result = await session.execute(query)
            messages = result.scalars().all()

            if not messages:
                return 0

            logger.info(f"Processing {len(messages)} pending outbox messages")

            for message in messages:
                try:
                    event = deserialize_event(json.loads(message.event_data))
                    await self.message_broker.publish_event(event)

                    message.status = OutboxStatus.PUBLISHED.value
                    message.published_at = datetime.utcnow()
                    published += 1

                except Exception as e:
                    logger.error(
                        f"Failed to publish event {message.event_id}: {str(e)}",
                        exc_info=True
                    )

                    message.retry_count += 1
                    message.error_message = str(e)

                    if message.retry_count >= self.max_retries:
                        message.status = OutboxStatus.FAILED.value
                        logger.error(
                            f"Event {message.event_id} exceeded max retries. "
                            "Marked as failed."
                        )

            await session.commit()

        return published

    async def retry_failed_messages(self, limit: int = 100) -> int:
        """Reset failed messages so the next poll retries them."""
        async with self.session_factory() as session:
            query = (
                select(OutboxMessage)
                .where(OutboxMessage.status == OutboxStatus.FAILED.value)
                .order_by(OutboxMessage.created_at)
                .limit(limit)
            )

            result = await session.execute(query)
            messages = result.scalars().all()

            for message in messages:
                message.status = OutboxStatus.PENDING.value
                message.retry_count = 0
                message.error_message = None

            await session.commit()

            logger.info(f"Reset {len(messages)} failed messages for retry")
            return len(messages)


async def save_event_to_outbox(session: AsyncSession, event: BaseEvent):
    """
    Add an event to the outbox.

    Must be called inside the same transaction as the state change it
    describes; the caller commits.
    """
    outbox_message = OutboxMessage(
        event_id=event.event_id,
        event_type=event.event_type.value,
        aggregate_id=event.aggregate_id,
        event_data=event.model_dump_json(),
        status=OutboxStatus.PENDING.value,
        created_at=datetime.utcnow(),
    )

    session.add(outbox_message)

    logger.debug(f"Saved event {event.event_id} ({event.event_type.value}) to outbox")
