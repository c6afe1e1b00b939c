"""RabbitMQ message broker used by the outbox publisher and event consumers."""
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractExchange
from tenacity import retry, stop_after_attempt, wait_exponential

from .events import BaseEvent, EventType, deserialize_event

logger = logging.getLogger(__name__)

EXCHANGE_NAME = "storefront_events"
DEAD_LETTER_EXCHANGE_NAME = "storefront_events_dlx"
DEAD_LETTER_QUEUE_NAME = "storefront_dead_letter"

EventHandler = Callable[[BaseEvent], Awaitable[Any]]


class MessageBroker:
    """Topic-exchange publisher/consumer with retry and dead-lettering."""

    def __init__(self, rabbitmq_url: str):
        self.rabbitmq_url = rabbitmq_url
        self.connection: Optional[AbstractConnection] = None
        self.channel: Optional[AbstractChannel] = None
        self.exchange: Optional[AbstractExchange] = None

    @retry(
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, min=2, max=10)
    )
    async def connect(self):
        """Establish connection to RabbitMQ."""
        logger.info("Connecting to RabbitMQ...")
        self.connection = await aio_pika.connect_robust(self.rabbitmq_url)
        self.channel = await self.connection.channel()

        # One unacked message per consumer: handlers hold DB transactions
        await self.channel.set_qos(prefetch_count=1)

        self.exchange = await self.channel.declare_exchange(
            EXCHANGE_NAME,
            ExchangeType.TOPIC,
            durable=True
        )

        dead_letter_exchange = await self.channel.declare_exchange(
            DEAD_LETTER_EXCHANGE_NAME,
            ExchangeType.TOPIC,
            durable=True
        )
        dead_letter_queue = await self.channel.declare_queue(
            DEAD_LETTER_QUEUE_NAME,
            durable=True,
            arguments={"x-queue-type": "quorum"}
        )
        await dead_letter_queue.bind(dead_letter_exchange, routing_key="#")

        logger.info("Connected to RabbitMQ successfully")

    async def disconnect(self):
        """Close connection to RabbitMQ."""
        if self.connection:
            await self.connection.close()
            logger.info("Disconnected from RabbitMQ")

    async def publish_event(self, event: BaseEvent, routing_key: Optional[str] = None):
        """Publish an event; the routing key defaults to its event type."""
        if not self.exchange:
            raise RuntimeError("Message broker not connected")

        routing_key = routing_key or event.event_type.value

        message = Message(
            body=event.model_dump_json().encode(),
            delivery_mode=DeliveryMode.PERSISTENT,
            content_type="application/json",
            headers={
                "event_type": event.event_type.value,
                "event_id": str(event.event_id),
                "correlation_id": str(event.correlation_id),
                "version": event.version
            }
        )

        await self.exchange.publish(message, routing_key=routing_key)

        logger.info(
            f"Published event: {event.event_type.value} "
            f"(id={event.event_id}, correlation={event.correlation_id})"
        )

    async def subscribe_to_event(
        self,
        event_type: EventType,
        queue_name: str,
        handler: EventHandler,
        max_retries: int = 3
    ):
        """
        Consume events of one type from a durable queue.

        A handler that raises is retried with exponential delay by
        republishing with an ``x-retry-count`` header; after ``max_retries``
        the message is rejected into the dead letter exchange.
        """
        if not self.channel:
            raise RuntimeError("Message broker not connected")

        routing_key = event_type.value
        queue = await self.channel.declare_queue(
            queue_name,
            durable=True,
            arguments={
                "x-dead-letter-exchange": DEAD_LETTER_EXCHANGE_NAME,
                "x-dead-letter-routing-key": f"dlq.{routing_key}",
                "x-queue-type": "quorum"
            }
        )
        await queue.bind(self.exchange, routing_key=routing_key)

        logger.info(f"Subscribed to {routing_key} on queue {queue_name}")

        async def process_message(message: aio_pika.IncomingMessage):
            async with message.process(requeue=False):
                await self._dispatch(message, routing_key, handler, max_retries)

        await queue.consume(process_message)

    async def _dispatch(
        self,
        message: aio_pika.IncomingMessage,
        routing_key: str,
        handler: EventHandler,
        max_retries: int,
    ):
        headers = dict(message.headers) if message.headers else {}
        retry_count = int(headers.get("x-retry-count", 0))

        try:
            event = deserialize_event(json.loads(message.body.decode()))
            logger.info(
                f"Processing event: {event.event_type.value} "
                f"(id={event.event_id}, retry={retry_count})"
            )
            await handler(event)
            logger.info(f"Successfully processed event: {event.event_id}")

        except Exception as e:
            logger.error(f"Error processing event: {str(e)}", exc_info=True)

            retry_count += 1
            if retry_count > max_retries:
                logger.error(
                    f"Max retries exceeded for event {headers.get('event_id')}. "
                    "Sending to dead letter queue."
                )
                raise

            logger.info(f"Retrying event (attempt {retry_count}/{max_retries})")
            headers["x-retry-count"] = retry_count

            await asyncio.sleep(min(2 ** retry_count, 60))
            await self.exchange.publish(
                Message(
                    body=message.body,
                    delivery_mode=DeliveryMode.PERSISTENT,
                    content_type=message.content_type,
                    headers=headers
                ),
                routing_key=routing_key
            )
