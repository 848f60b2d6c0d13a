"""
RabbitMQ transport for user batches (aio-pika).

One durable queue on the default exchange. The consumer side is an
IngestionSource whose subscription ends when close() is called; the
producer side is a QueuePublisher.
"""

from typing import AsyncIterator, Optional

import aio_pika
import structlog
from aio_pika.abc import (
    AbstractChannel,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractQueueIterator,
    AbstractRobustConnection,
)

from ..config import QueueSettings
from ..core.exceptions import PipelineStateError

logger = structlog.get_logger(__name__)


class _RabbitMQConnection:
    """Shared connect/declare logic for both queue ends."""

    def __init__(self, settings: QueueSettings) -> None:
        self.settings = settings
        self._connection: Optional[AbstractRobustConnection] = None
        self._channel: Optional[AbstractChannel] = None
        self._queue: Optional[AbstractQueue] = None

    async def connect(self) -> None:
        if self._connection is not None:
            return
        self._connection = await aio_pika.connect_robust(self.settings.url)
        self._channel = await self._connection.channel()
        await self._channel.set_qos(prefetch_count=self.settings.prefetch_count)
        # Durable so queued batches survive a broker restart
        self._queue = await self._channel.declare_queue(self.settings.queue_name, durable=True)
        logger.info("Connected to RabbitMQ", queue=self.settings.queue_name)

    async def _close_connection(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            self._channel = None
            self._queue = None


class RabbitMQSource(_RabbitMQConnection):
    """Consumes deliveries in queue order with automatic acknowledgement."""

    def __init__(self, settings: QueueSettings) -> None:
        super().__init__(settings)
        self._iterator: Optional[AbstractQueueIterator] = None

    async def subscribe(self) -> AsyncIterator[AbstractIncomingMessage]:
        await self.connect()
        if self._queue is None:
            raise PipelineStateError("RabbitMQ queue is not declared")

        async with self._queue.iterator(no_ack=True) as queue_iter:
            self._iterator = queue_iter
            async for message in queue_iter:
                yield message

        logger.info("RabbitMQ subscription ended", queue=self.settings.queue_name)

    async def close(self) -> None:
        if self._iterator is not None:
            await self._iterator.close()
            self._iterator = None
        await self._close_connection()


class RabbitMQPublisher(_RabbitMQConnection):
    """Publishes JSON batches to the queue as persistent messages."""

    async def publish(self, data: bytes) -> None:
        await self.connect()
        if self._channel is None:
            raise PipelineStateError("RabbitMQ channel is not open")

        await self._channel.default_exchange.publish(
            aio_pika.Message(
                body=data,
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            ),
            routing_key=self.settings.queue_name,
        )

    async def close(self) -> None:
        await self._close_connection()
