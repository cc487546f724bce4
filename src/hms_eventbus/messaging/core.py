"""
Core Message Abstractions

Broker-neutral message and channel contracts. The event bus talks only to
these; RabbitMQ and the in-memory broker implement them.
"""

import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

DELIVERY_COUNT_HEADER = "x-delivery-count"
EVENT_TYPE_HEADER = "event_type"


@dataclass(frozen=True)
class OutgoingMessage:
    """A message ready to be handed to the broker."""

    body: bytes
    routing_key: str
    message_id: str
    content_type: str = "application/json"
    persistent: bool = True
    timestamp: float = field(default_factory=time.time)
    headers: dict[str, Any] = field(default_factory=dict)


class IncomingMessage(ABC):
    """A delivered message awaiting settlement.

    Exactly one of ``ack``, ``nack`` or ``reject`` settles a delivery.
    """

    body: bytes
    routing_key: str
    message_id: str | None
    headers: dict[str, Any]
    redelivered: bool

    @property
    def delivery_count(self) -> int:
        """Number of times this message has been delivered, this one included."""
        previous = self.headers.get(DELIVERY_COUNT_HEADER) or 0
        try:
            return int(previous) + 1
        except (TypeError, ValueError):
            return 1

    @property
    def event_type(self) -> str:
        """Routing key, falling back to the event type header."""
        return self.routing_key or str(self.headers.get(EVENT_TYPE_HEADER, ""))

    @abstractmethod
    async def ack(self) -> None:
        """Acknowledge successful processing."""

    @abstractmethod
    async def nack(self, requeue: bool = True) -> None:
        """Negative acknowledge; requeue for redelivery when asked."""

    @abstractmethod
    async def reject(self) -> None:
        """Reject without requeue so the broker dead-letters the message."""


MessageCallback = Callable[[IncomingMessage], Awaitable[None]]


class BrokerChannel(ABC):
    """A usable session on a broker connection."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether the channel can still be used."""

    @abstractmethod
    async def declare_exchange(self, name: str, durable: bool = True) -> None:
        """Declare a topic exchange."""

    @abstractmethod
    async def declare_queue(
        self,
        name: str,
        durable: bool = True,
        dead_letter_exchange: str | None = None,
        delivery_limit: int | None = None,
    ) -> None:
        """Declare a queue, optionally dead-lettering to an exchange."""

    @abstractmethod
    async def declare_dead_letter(self, exchange: str, queue: str) -> None:
        """Declare a fanout dead-letter exchange and its collecting queue."""

    @abstractmethod
    async def bind(self, queue: str, exchange: str, routing_key: str) -> None:
        """Bind a queue to an exchange for a routing key."""

    @abstractmethod
    async def unbind(self, queue: str, exchange: str, routing_key: str) -> None:
        """Remove a queue binding."""

    @abstractmethod
    async def publish(self, exchange: str, message: OutgoingMessage) -> None:
        """Publish a message to an exchange."""

    @abstractmethod
    async def consume(self, queue: str, callback: MessageCallback) -> str:
        """Start consuming a queue with manual acknowledgement; returns a consumer tag."""

    @abstractmethod
    async def cancel(self, queue: str, consumer_tag: str) -> None:
        """Stop a consumer."""

    @abstractmethod
    async def close(self) -> None:
        """Close the channel and its underlying connection."""
