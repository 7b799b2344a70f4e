"""RabbitMQ connection shared by the consumer and the status publisher."""

import logging
from typing import Awaitable, Callable, Dict, Optional

import aio_pika
from aio_pika.abc import (
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustChannel,
    AbstractRobustConnection,
)

from config import settings

logger = logging.getLogger(__name__)

MessageCallback = Callable[[AbstractIncomingMessage], Awaitable[None]]


class RabbitMQConnection:
    """Robust AMQP connection with one channel.

    aio-pika's robust connection reconnects and re-declares queues and
    consumers on its own after broker restarts.
    """

    def __init__(self, amqp_url: Optional[str] = None, prefetch_count: Optional[int] = None):
        self.amqp_url = amqp_url if amqp_url is not None else settings.rabbitmq_url
        self.prefetch_count = (
            prefetch_count if prefetch_count is not None
            else settings.consumer_prefetch_count
        )
        self.connection: Optional[AbstractRobustConnection] = None
        self.channel: Optional[AbstractRobustChannel] = None
        self._exchanges: Dict[str, AbstractExchange] = {}

    @property
    def is_connected(self) -> bool:
        return self.connection is not None and not self.connection.is_closed

    async def connect(self):
        if self.is_connected:
            return

        try:
            self.connection = await aio_pika.connect_robust(
                self.amqp_url,
                client_properties={"connection_name": "job-orchestrator"},
            )
            self.channel = await self.connection.channel()
            await self.channel.set_qos(prefetch_count=self.prefetch_count)
            logger.info("Connected to RabbitMQ")
        except Exception as e:
            logger.error(f"Failed to connect to RabbitMQ: {e}")
            raise

    def _require_channel(self) -> AbstractRobustChannel:
        if not self.channel:
            raise RuntimeError("Channel is not established. Call connect() first.")
        return self.channel

    async def declare_exchange(self, name: str) -> AbstractExchange:
        if name not in self._exchanges:
            channel = self._require_channel()
            self._exchanges[name] = await channel.declare_exchange(
                name, aio_pika.ExchangeType.TOPIC, durable=True
            )
            logger.debug(f"Exchange declared: {name}")
        return self._exchanges[name]

    async def declare_queue(self, name: str, durable: bool = True) -> AbstractQueue:
        channel = self._require_channel()
        queue = await channel.declare_queue(name, durable=durable)
        logger.debug(f"Queue declared: {name}")
        return queue

    async def publish(self, exchange_name: str, routing_key: str, body: str, message_id: str = None):
        exchange = await self.declare_exchange(exchange_name)
        await exchange.publish(
            aio_pika.Message(
                body=body.encode(),
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                message_id=message_id,
            ),
            routing_key=routing_key,
        )
        logger.debug(f"Published message to '{exchange_name}' ({routing_key})")

    async def consume(self, queue_name: str, callback: MessageCallback) -> str:
        """Start consuming ``queue_name``. Returns the consumer tag."""
        queue = await self.declare_queue(queue_name)
        consumer_tag = await queue.consume(callback)
        logger.info(f"Consuming from queue '{queue_name}'")
        return consumer_tag

    async def close(self):
        if self.connection and not self.connection.is_closed:
            await self.connection.close()
            logger.info("RabbitMQ connection closed")
        self.connection = None
        self.channel = None
        self._exchanges = {}
