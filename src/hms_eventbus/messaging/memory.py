"""
In-Memory Broker

An in-process topic broker with manual acknowledgement, redelivery counting
and dead-lettering. It backs the event bus in tests and local development and
can simulate outages (refused connects, failing publishes, dropped
connections).
"""

import asyncio
import itertools
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

from ..resilience import RetryConfig
from .connection import BrokerConnection
from .core import (
    DELIVERY_COUNT_HEADER,
    BrokerChannel,
    IncomingMessage,
    MessageCallback,
    OutgoingMessage,
)

logger = logging.getLogger(__name__)


def matches_topic(routing_key: str, pattern: str) -> bool:
    """AMQP topic matching: ``*`` is one word, ``#`` is zero or more words."""
    key_words = routing_key.split(".") if routing_key else []
    pattern_words = pattern.split(".") if pattern else []

    def match(k: int, p: int) -> bool:
        if p == len(pattern_words):
            return k == len(key_words)
        word = pattern_words[p]
        if word == "#":
            return any(match(i, p + 1) for i in range(k, len(key_words) + 1))
        if k == len(key_words):
            return False
        if word == "*" or word == key_words[k]:
            return match(k + 1, p + 1)
        return False

    return match(0, 0)


@dataclass
class _Envelope:
    exchange: str
    message: OutgoingMessage
    deliveries: int = 0
    redelivered: bool = False


@dataclass
class _Consumer:
    tag: str
    channel: "InMemoryChannel"
    callback: MessageCallback
    unacked: int = 0


@dataclass
class _Queue:
    name: str
    durable: bool = True
    dead_letter_exchange: str | None = None
    delivery_limit: int | None = None
    ready: deque = field(default_factory=deque)
    consumers: dict[str, _Consumer] = field(default_factory=dict)
    in_flight: dict[int, tuple[_Envelope, _Consumer]] = field(default_factory=dict)


class InMemoryIncomingMessage(IncomingMessage):
    """Delivery handed to consumers of the in-memory broker."""

    def __init__(self, broker: "InMemoryBroker", queue: _Queue, delivery_tag: int, envelope: _Envelope):
        self._broker = broker
        self._queue = queue
        self._delivery_tag = delivery_tag
        self.body = envelope.message.body
        self.routing_key = envelope.message.routing_key
        self.message_id = envelope.message.message_id
        self.redelivered = envelope.redelivered
        self.headers = dict(envelope.message.headers)
        if envelope.deliveries:
            self.headers[DELIVERY_COUNT_HEADER] = envelope.deliveries

    async def ack(self) -> None:
        self._broker._settle(self._queue, self._delivery_tag, "ack")

    async def nack(self, requeue: bool = True) -> None:
        self._broker._settle(self._queue, self._delivery_tag, "requeue" if requeue else "reject")

    async def reject(self) -> None:
        self._broker._settle(self._queue, self._delivery_tag, "reject")


class InMemoryChannel(BrokerChannel):
    """Channel on an :class:`InMemoryBroker`."""

    def __init__(self, broker: "InMemoryBroker", prefetch_count: int, on_close: Callable[[Exception | None], None] | None):
        self._broker = broker
        self._open = True
        self.prefetch_count = prefetch_count
        self._on_close = on_close

    @property
    def is_open(self) -> bool:
        return self._open

    def _check(self) -> None:
        if not self._open:
            raise ConnectionError("Channel is closed")
        if not self._broker.available:
            raise ConnectionError("Broker is unavailable")

    async def declare_exchange(self, name: str, durable: bool = True) -> None:
        self._check()
        self._broker.exchanges.setdefault(name, "topic")

    async def declare_queue(
        self,
        name: str,
        durable: bool = True,
        dead_letter_exchange: str | None = None,
        delivery_limit: int | None = None,
    ) -> None:
        self._check()
        queue = self._broker.queues.get(name)
        if queue is None:
            self._broker.queues[name] = _Queue(
                name=name,
                durable=durable,
                dead_letter_exchange=dead_letter_exchange,
                delivery_limit=delivery_limit,
            )

    async def declare_dead_letter(self, exchange: str, queue: str) -> None:
        self._check()
        self._broker.exchanges.setdefault(exchange, "fanout")
        self._broker.queues.setdefault(queue, _Queue(name=queue))
        await self.bind(queue, exchange, "#")

    async def bind(self, queue: str, exchange: str, routing_key: str) -> None:
        self._check()
        bindings = self._broker.bindings.setdefault(exchange, [])
        if (queue, routing_key) not in bindings:
            bindings.append((queue, routing_key))

    async def unbind(self, queue: str, exchange: str, routing_key: str) -> None:
        self._check()
        bindings = self._broker.bindings.get(exchange, [])
        if (queue, routing_key) in bindings:
            bindings.remove((queue, routing_key))

    async def publish(self, exchange: str, message: OutgoingMessage) -> None:
        self._check()
        if self._broker.publish_failures > 0:
            self._broker.publish_failures -= 1
            raise ConnectionError("Simulated publish failure")
        if exchange not in self._broker.exchanges:
            raise ConnectionError(f"Exchange {exchange} not declared")
        self._broker._route(exchange, message)

    async def consume(self, queue: str, callback: MessageCallback) -> str:
        self._check()
        return self._broker._add_consumer(queue, self, callback)

    async def cancel(self, queue: str, consumer_tag: str) -> None:
        if self._open:
            self._broker._remove_consumer(queue, consumer_tag)

    async def close(self) -> None:
        self._shutdown(None)

    def _shutdown(self, reason: Exception | None) -> None:
        if not self._open:
            return
        self._open = False
        self._broker._release_channel(self)
        if reason is not None and self._on_close is not None:
            self._on_close(reason)


class InMemoryBroker:
    """Process-local message broker."""

    def __init__(self, prefetch_count: int = 10):
        self.prefetch_count = prefetch_count
        self.exchanges: dict[str, str] = {}
        self.queues: dict[str, _Queue] = {}
        self.bindings: dict[str, list[tuple[str, str]]] = {}
        self.published: list[tuple[str, OutgoingMessage]] = []
        self.available = True
        self.connect_failures = 0
        self.publish_failures = 0
        self.connect_attempts = 0
        self._channels: list[InMemoryChannel] = []
        self._tags = itertools.count(1)
        self._tasks: set[asyncio.Task] = set()

    def connect(self, on_close: Callable[[Exception | None], None] | None = None) -> InMemoryChannel:
        """Open a channel, honouring simulated connect failures."""
        self.connect_attempts += 1
        if not self.available:
            raise ConnectionError("Broker is unavailable")
        if self.connect_failures > 0:
            self.connect_failures -= 1
            raise ConnectionError("Simulated connect failure")
        channel = InMemoryChannel(self, self.prefetch_count, on_close)
        self._channels.append(channel)
        return channel

    def drop_connections(self) -> None:
        """Close every open channel as if the network failed."""
        for channel in list(self._channels):
            channel._shutdown(ConnectionError("Connection reset by broker"))

    def go_down(self) -> None:
        """Refuse connections and drop open ones."""
        self.available = False
        self.drop_connections()

    def come_up(self) -> None:
        self.available = True

    def depth(self, queue: str) -> int:
        """Messages in a queue, ready or awaiting acknowledgement."""
        q = self.queues.get(queue)
        return 0 if q is None else len(q.ready) + len(q.in_flight)

    def messages(self, queue: str) -> list[OutgoingMessage]:
        """Ready messages in a queue, oldest first."""
        q = self.queues.get(queue)
        return [] if q is None else [env.message for env in q.ready]

    async def wait_until_idle(self, timeout: float = 2.0) -> None:
        """Wait until every delivery scheduled so far has been settled or parked."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            busy = any(q.in_flight or (q.ready and q.consumers) for q in self.queues.values())
            if not busy and not self._tasks:
                return
            await asyncio.sleep(0.005)
        raise TimeoutError("In-memory broker did not become idle")

    def _route(self, exchange: str, message: OutgoingMessage) -> None:
        self.published.append((exchange, message))
        exchange_type = self.exchanges[exchange]
        targets = []
        for queue_name, pattern in self.bindings.get(exchange, []):
            if exchange_type == "fanout" or matches_topic(message.routing_key, pattern):
                if queue_name not in targets:
                    targets.append(queue_name)
        for queue_name in targets:
            queue = self.queues.get(queue_name)
            if queue is not None:
                queue.ready.append(_Envelope(exchange=exchange, message=message))
                self._deliver(queue)

    def _add_consumer(self, queue_name: str, channel: InMemoryChannel, callback: MessageCallback) -> str:
        queue = self.queues.get(queue_name)
        if queue is None:
            raise ConnectionError(f"Queue {queue_name} not declared")
        tag = f"ctag-{next(self._tags)}"
        queue.consumers[tag] = _Consumer(tag=tag, channel=channel, callback=callback)
        self._deliver(queue)
        return tag

    def _remove_consumer(self, queue_name: str, tag: str) -> None:
        queue = self.queues.get(queue_name)
        if queue is not None:
            queue.consumers.pop(tag, None)

    def _release_channel(self, channel: InMemoryChannel) -> None:
        if channel in self._channels:
            self._channels.remove(channel)
        for queue in self.queues.values():
            for tag, consumer in list(queue.consumers.items()):
                if consumer.channel is channel:
                    del queue.consumers[tag]
            returned = [
                delivery_tag
                for delivery_tag, (_, consumer) in queue.in_flight.items()
                if consumer.channel is channel
            ]
            for delivery_tag in sorted(returned, reverse=True):
                envelope, _ = queue.in_flight.pop(delivery_tag)
                envelope.deliveries += 1
                envelope.redelivered = True
                queue.ready.appendleft(envelope)
            self._deliver(queue)

    def _settle(self, queue: _Queue, delivery_tag: int, outcome: str) -> None:
        entry = queue.in_flight.get(delivery_tag)
        if entry is None:
            raise ConnectionError(f"Unknown delivery tag {delivery_tag}")
        envelope, consumer = entry
        if not consumer.channel.is_open:
            raise ConnectionError("Channel is closed")
        del queue.in_flight[delivery_tag]
        consumer.unacked -= 1

        if outcome == "requeue":
            envelope.deliveries += 1
            envelope.redelivered = True
            if queue.delivery_limit is not None and envelope.deliveries > queue.delivery_limit:
                self._dead_letter(queue, envelope)
            else:
                queue.ready.append(envelope)
        elif outcome == "reject":
            self._dead_letter(queue, envelope)

        self._deliver(queue)

    def _dead_letter(self, queue: _Queue, envelope: _Envelope) -> None:
        if queue.dead_letter_exchange and queue.dead_letter_exchange in self.exchanges:
            logger.debug("Dead-lettering message %s from %s", envelope.message.message_id, queue.name)
            self._route(queue.dead_letter_exchange, envelope.message)
        else:
            logger.debug("Dropping rejected message %s from %s", envelope.message.message_id, queue.name)

    def _deliver(self, queue: _Queue) -> None:
        while queue.ready:
            consumer = next(
                (c for c in queue.consumers.values() if c.unacked < c.channel.prefetch_count),
                None,
            )
            if consumer is None:
                return
            envelope = queue.ready.popleft()
            delivery_tag = next(self._tags)
            queue.in_flight[delivery_tag] = (envelope, consumer)
            consumer.unacked += 1
            incoming = InMemoryIncomingMessage(self, queue, delivery_tag, envelope)
            task = asyncio.get_running_loop().create_task(consumer.callback(incoming))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)


class InMemoryConnection(BrokerConnection):
    """Broker connection backed by an :class:`InMemoryBroker`."""

    def __init__(self, broker: InMemoryBroker, retry_config: RetryConfig | None = None, name: str = "memory"):
        super().__init__(retry_config=retry_config, name=name)
        self.broker = broker

    async def _open(self) -> BrokerChannel:
        channel = self.broker.connect(on_close=lambda reason: self.mark_down(reason, channel))
        return channel
