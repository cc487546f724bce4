"""
RabbitMQ Broker Backend

aio-pika implementation of the broker channel and connection contracts:
durable topic exchange, quorum queue per subscribing service with a delivery
limit and dead-letter exchange, persistent messages and manual
acknowledgement.
"""

import logging
from functools import partial
from typing import Any
from urllib.parse import quote

import aio_pika
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
)

from ..resilience import RetryConfig
from .connection import BrokerConnection
from .core import BrokerChannel, IncomingMessage, MessageCallback, OutgoingMessage

logger = logging.getLogger(__name__)


def build_connection_url(
    host: str,
    port: int = 5672,
    username: str | None = None,
    password: str | None = None,
    virtual_host: str = "/",
) -> str:
    """Build an AMQP URL; a host that already is a URL is returned unchanged."""
    if host.startswith(("amqp://", "amqps://")):
        return host

    auth = ""
    if username:
        auth = quote(username, safe="")
        if password:
            auth += ":" + quote(password, safe="")
        auth += "@"

    return f"amqp://{auth}{host}:{port}/{quote(virtual_host, safe='')}"


class RabbitMQIncomingMessage(IncomingMessage):
    """Adapter over an aio-pika incoming message."""

    def __init__(self, message: AbstractIncomingMessage):
        self._message = message
        self.body = message.body
        self.routing_key = message.routing_key or ""
        self.message_id = message.message_id
        self.headers = dict(message.headers or {})
        self.redelivered = bool(message.redelivered)

    async def ack(self) -> None:
        await self._message.ack()

    async def nack(self, requeue: bool = True) -> None:
        await self._message.nack(requeue=requeue)

    async def reject(self) -> None:
        await self._message.reject(requeue=False)


class RabbitMQChannel(BrokerChannel):
    """Channel wrapper holding the exchanges and queues declared on it."""

    def __init__(self, connection: AbstractConnection, channel: AbstractChannel):
        self._connection = connection
        self._channel = channel
        self._exchanges: dict[str, AbstractExchange] = {}
        self._queues: dict[str, AbstractQueue] = {}

    @property
    def is_open(self) -> bool:
        return not self._channel.is_closed and not self._connection.is_closed

    async def declare_exchange(self, name: str, durable: bool = True) -> None:
        self._exchanges[name] = await self._channel.declare_exchange(
            name, aio_pika.ExchangeType.TOPIC, durable=durable
        )
        logger.debug("Declared topic exchange %s", name)

    async def declare_queue(
        self,
        name: str,
        durable: bool = True,
        dead_letter_exchange: str | None = None,
        delivery_limit: int | None = None,
    ) -> None:
        arguments: dict[str, Any] = {}
        if delivery_limit is not None:
            arguments["x-queue-type"] = "quorum"
            arguments["x-delivery-limit"] = delivery_limit
        if dead_letter_exchange:
            arguments["x-dead-letter-exchange"] = dead_letter_exchange

        self._queues[name] = await self._channel.declare_queue(
            name, durable=durable, arguments=arguments or None
        )
        logger.debug("Declared queue %s with arguments %s", name, arguments)

    async def declare_dead_letter(self, exchange: str, queue: str) -> None:
        dlx = await self._channel.declare_exchange(
            exchange, aio_pika.ExchangeType.FANOUT, durable=True
        )
        self._exchanges[exchange] = dlx
        dead_letters = await self._channel.declare_queue(queue, durable=True)
        self._queues[queue] = dead_letters
        await dead_letters.bind(dlx)
        logger.debug("Declared dead-letter exchange %s -> %s", exchange, queue)

    async def _queue(self, name: str) -> AbstractQueue:
        if name not in self._queues:
            self._queues[name] = await self._channel.get_queue(name, ensure=True)
        return self._queues[name]

    async def _exchange(self, name: str) -> AbstractExchange:
        if name not in self._exchanges:
            self._exchanges[name] = await self._channel.get_exchange(name, ensure=True)
        return self._exchanges[name]

    async def bind(self, queue: str, exchange: str, routing_key: str) -> None:
        amqp_queue = await self._queue(queue)
        await amqp_queue.bind(await self._exchange(exchange), routing_key=routing_key)

    async def unbind(self, queue: str, exchange: str, routing_key: str) -> None:
        amqp_queue = await self._queue(queue)
        await amqp_queue.unbind(await self._exchange(exchange), routing_key=routing_key)

    async def publish(self, exchange: str, message: OutgoingMessage) -> None:
        amqp_message = aio_pika.Message(
            body=message.body,
            content_type=message.content_type,
            delivery_mode=(
                aio_pika.DeliveryMode.PERSISTENT
                if message.persistent
                else aio_pika.DeliveryMode.NOT_PERSISTENT
            ),
            message_id=message.message_id,
            timestamp=message.timestamp,
            headers=message.headers,
        )
        target = await self._exchange(exchange)
        await target.publish(amqp_message, routing_key=message.routing_key)

    async def consume(self, queue: str, callback: MessageCallback) -> str:
        amqp_queue = await self._queue(queue)

        async def on_message(message: AbstractIncomingMessage) -> None:
            await callback(RabbitMQIncomingMessage(message))

        return await amqp_queue.consume(on_message, no_ack=False)

    async def cancel(self, queue: str, consumer_tag: str) -> None:
        if not self.is_open:
            return
        amqp_queue = await self._queue(queue)
        await amqp_queue.cancel(consumer_tag)

    async def close(self) -> None:
        if not self._connection.is_closed:
            await self._connection.close()


class RabbitMQConnection(BrokerConnection):
    """Broker connection to RabbitMQ via aio-pika.

    Reconnection is driven by :class:`BrokerConnection`, not by aio-pika's
    robust connection, so that retries stay bounded and topology is
    re-declared through the connected callbacks.
    """

    def __init__(
        self,
        url: str,
        retry_config: RetryConfig | None = None,
        prefetch_count: int = 10,
        connection_timeout: float = 30.0,
        heartbeat: int = 60,
        name: str = "rabbitmq",
    ):
        super().__init__(retry_config=retry_config, name=name)
        self.url = url
        self.prefetch_count = prefetch_count
        self.connection_timeout = connection_timeout
        self.heartbeat = heartbeat

    async def _open(self) -> BrokerChannel:
        connection = await aio_pika.connect(
            self.url, timeout=self.connection_timeout, heartbeat=self.heartbeat
        )
        try:
            channel = await connection.channel(publisher_confirms=True)
            await channel.set_qos(prefetch_count=self.prefetch_count)
        except Exception:
            await connection.close()
            raise

        wrapped = RabbitMQChannel(connection, channel)
        connection.close_callbacks.add(partial(self._on_close, wrapped))
        logger.info("Opened RabbitMQ connection (prefetch=%d)", self.prefetch_count)
        return wrapped

    def _on_close(
        self, channel: BrokerChannel, sender: Any, exc: BaseException | None = None, *args: Any
    ) -> None:
        reason = exc if isinstance(exc, Exception) else ConnectionError("RabbitMQ connection closed")
        self.mark_down(reason, channel)
