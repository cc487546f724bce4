"""
Integration Event Bus

Publishes integration events to a topic exchange and dispatches inbound
messages to the handlers registered for their type. One bus runs per service
process, on the broker connection handed to it at construction.

Inbound messages are acknowledged only after every handler for the event has
completed. Transient handler failures leave the message to broker redelivery
(bounded, then dead-lettered); non-transient failures acknowledge the message
and record it as poison.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel

from ..exceptions import (
    BrokerUnavailable,
    NonTransientError,
    PublishFailed,
    SerializationError,
)
from ..messaging.connection import BrokerConnection
from ..messaging.core import EVENT_TYPE_HEADER, BrokerChannel, IncomingMessage, OutgoingMessage
from ..resilience import RetryConfig, RetryError, RetryManager
from .registry import EVENT_REGISTRY, EventTypeRegistry
from .serialization import IntegrationEventSerializer
from .subscriptions import SubscriptionRegistry
from .types import IntegrationEvent

logger = logging.getLogger(__name__)
poison_logger = logging.getLogger("hms_eventbus.poison")

DEFAULT_EXCHANGE_NAME = "hms_event_bus"

HandlerCallable = Callable[[IntegrationEvent], Awaitable[None]]


class DispatchOutcome(Enum):
    """How an inbound message was settled."""

    ACKED = "acked"
    REQUEUED = "requeued"
    DEAD_LETTERED = "dead_lettered"
    POISONED = "poisoned"


@dataclass(frozen=True)
class PoisonMessage:
    """A message acknowledged without successful handling."""

    message_id: str | None
    event_type: str
    error_type: str
    error: str
    body: bytes
    handler: str | None = None
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class IntegrationEventHandler(ABC):
    """Base class for integration event handlers.

    ``name`` is the handler identity used by the subscription registry; the
    qualified class name is used when it is not set.
    """

    name: str | None = None

    @abstractmethod
    async def handle(self, event: IntegrationEvent) -> None:
        """Handle an event."""
        ...


def handler_identity(handler: IntegrationEventHandler | HandlerCallable) -> str:
    """Stable identity for a handler object or function.

    Bound methods and nested functions carry the id of their instance or
    closure, so handlers sharing a qualified name stay distinct.
    """
    name = getattr(handler, "name", None)
    if isinstance(handler, IntegrationEventHandler):
        if name:
            return name
        cls = type(handler)
        return f"{cls.__module__}.{cls.__qualname__}"
    qualname = getattr(handler, "__qualname__", None) or type(handler).__qualname__
    module = getattr(handler, "__module__", None) or type(handler).__module__
    identity = f"{module}.{qualname}"
    owner = getattr(handler, "__self__", None)
    if owner is not None and not inspect.ismodule(owner):
        return f"{identity}@{id(owner):x}"
    if "<locals>" in qualname:
        return f"{identity}@{id(handler):x}"
    return identity


class EventBus:
    """Broker-backed integration event bus."""

    def __init__(
        self,
        connection: BrokerConnection,
        subscription_client_name: str,
        exchange_name: str = DEFAULT_EXCHANGE_NAME,
        serializer: IntegrationEventSerializer | None = None,
        event_types: EventTypeRegistry | None = None,
        publish_retry: RetryConfig | None = None,
        max_redelivery_count: int = 5,
        dead_letter_enabled: bool = True,
        reconnect_interval: float | None = None,
        poison_history: int = 1000,
    ):
        if not subscription_client_name:
            raise ValueError("subscription_client_name is required")
        if max_redelivery_count < 1:
            raise ValueError("max_redelivery_count must be at least 1")

        self._connection = connection
        self.subscription_client_name = subscription_client_name
        self.exchange_name = exchange_name
        self.event_types = event_types or EVENT_REGISTRY
        self.serializer = serializer or IntegrationEventSerializer(self.event_types)
        self.max_redelivery_count = max_redelivery_count
        self.dead_letter_enabled = dead_letter_enabled

        self._publish_retry = RetryManager(
            publish_retry
            or RetryConfig(
                max_attempts=connection.retry_config.max_attempts,
                base_delay=connection.retry_config.base_delay,
                max_delay=connection.retry_config.max_delay,
                backoff_multiplier=connection.retry_config.backoff_multiplier,
                retryable_exceptions=(BrokerUnavailable,),
            )
        )
        self._reconnect_interval = (
            reconnect_interval if reconnect_interval is not None else connection.retry_config.max_delay
        )

        self.subscriptions = SubscriptionRegistry()
        self.subscriptions.on_event_removed(self._on_event_removed)
        self._handlers: dict[str, HandlerCallable] = {}
        self._handler_objects: dict[str, Any] = {}

        self.poison_messages: deque[PoisonMessage] = deque(maxlen=poison_history)

        self._running = False
        self._accepting = False
        self._consumer_tag: str | None = None
        self._exchange_channel: BrokerChannel | None = None
        self._queue_channel: BrokerChannel | None = None
        self._inflight: set[asyncio.Task] = set()
        self._topology_tasks: set[asyncio.Task] = set()
        self._reconnect_task: asyncio.Task | None = None

        connection.on_connected(self._on_connected)
        connection.on_connection_lost(self._on_connection_lost)

    @property
    def queue_name(self) -> str:
        return self.subscription_client_name

    @property
    def dead_letter_exchange(self) -> str:
        return f"{self.exchange_name}.dead-letter"

    @property
    def dead_letter_queue(self) -> str:
        return f"{self.subscription_client_name}.dead-letter"

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        return len(self._inflight)

    # Publishing

    async def publish(self, event: IntegrationEvent) -> None:
        """Publish an event as a persistent message routed by its type name.

        Raises:
            SerializationError: If the event cannot be encoded (not retried).
            PublishFailed: If the broker stayed unavailable for every attempt.
        """
        body = self.serializer.serialize(event)
        message = OutgoingMessage(
            body=body,
            routing_key=event.type_name,
            message_id=event.id,
            content_type=self.serializer.content_type,
            persistent=True,
            timestamp=event.occurred_at.timestamp(),
            headers={EVENT_TYPE_HEADER: event.type_name},
        )

        try:
            await self._publish_retry.execute_async(self._publish_once, message)
        except RetryError as e:
            logger.error(
                "Could not publish event %s (%s) after %d attempts: %s",
                event.id,
                event.type_name,
                e.attempts,
                e.last_exception,
            )
            raise PublishFailed(
                f"Publishing event {event.id} failed after {e.attempts} attempts",
                event_id=event.id,
                cause=e.last_exception,
            ) from e.last_exception

        logger.debug("Published event %s (%s)", event.id, event.type_name)

    async def _publish_once(self, message: OutgoingMessage) -> None:
        channel = await self._connection.ensure_connected()
        try:
            await self._ensure_topology(channel)
            await channel.publish(self.exchange_name, message)
        except Exception as e:
            self._connection.mark_down(e)
            raise BrokerUnavailable(
                f"Transport failure while publishing {message.message_id}: {e}",
                event_id=message.message_id,
                cause=e,
            ) from e

    # Subscriptions

    def _resolve_type_name(self, event_type: str | type[BaseModel]) -> str:
        if isinstance(event_type, str):
            return event_type
        return self.event_types.type_name_for(event_type)

    async def subscribe(
        self,
        event_type: str | type[BaseModel],
        handler: IntegrationEventHandler | HandlerCallable,
        name: str | None = None,
    ) -> str:
        """Register a handler for an event type and return its identity.

        The first handler for a type binds the routing key to this service's
        queue. If the broker is down the binding is made on reconnection.
        """
        type_name = self._resolve_type_name(event_type)
        identity = name or handler_identity(handler)

        existing = self._handler_objects.get(identity)
        if existing is not None and existing != handler:
            raise ValueError(f"Handler identity {identity} is bound to another handler")

        self._handler_objects[identity] = handler
        self._handlers[identity] = (
            handler.handle if isinstance(handler, IntegrationEventHandler) else handler
        )

        if self.subscriptions.subscribe(type_name, identity):
            await self._bind(type_name)
        return identity

    async def unsubscribe(
        self,
        event_type: str | type[BaseModel],
        handler: IntegrationEventHandler | HandlerCallable | str,
    ) -> bool:
        """Remove a handler from an event type.

        Removing the last handler stops consuming that routing key.
        """
        type_name = self._resolve_type_name(event_type)
        if isinstance(handler, str):
            identity = handler
        else:
            identity = next(
                (key for key, value in self._handler_objects.items() if value == handler),
                handler_identity(handler),
            )

        removed = self.subscriptions.unsubscribe(type_name, identity)
        if removed and not any(
            identity in self.subscriptions.handlers_for(name)
            for name in self.subscriptions.event_types()
        ):
            self._handlers.pop(identity, None)
            self._handler_objects.pop(identity, None)

        await self._wait_topology()
        return removed

    async def _bind(self, type_name: str) -> None:
        try:
            channel = await self._connection.ensure_connected()
            await self._ensure_topology(channel)
            await channel.bind(self.queue_name, self.exchange_name, type_name)
            logger.info("Bound %s to %s on %s", self.queue_name, type_name, self.exchange_name)
        except BrokerUnavailable as e:
            logger.warning("Deferring binding of %s until the broker is reachable: %s", type_name, e)
        except Exception as e:
            self._connection.mark_down(e)
            logger.warning("Deferring binding of %s after transport failure: %s", type_name, e)

    def _on_event_removed(self, type_name: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: the binding is dropped with the next topology declaration
            return
        task = loop.create_task(self._unbind(type_name))
        self._topology_tasks.add(task)
        task.add_done_callback(self._topology_tasks.discard)

    async def _unbind(self, type_name: str) -> None:
        if not self._connection.is_connected or self._queue_channel is None:
            return
        try:
            await self._queue_channel.unbind(self.queue_name, self.exchange_name, type_name)
            logger.info("Unbound %s from %s", self.queue_name, type_name)
        except Exception as e:
            self._connection.mark_down(e)
            logger.warning("Could not unbind %s: %s", type_name, e)

    async def _wait_topology(self) -> None:
        if self._topology_tasks:
            await asyncio.gather(*list(self._topology_tasks))

    # Topology

    async def _on_connected(self, channel: BrokerChannel, reconnect: bool) -> None:
        await self._ensure_topology(channel)
        if reconnect:
            logger.info(
                "Re-declared topology for %s (%d event types)",
                self.queue_name,
                len(self.subscriptions.event_types()),
            )

    async def _ensure_topology(self, channel: BrokerChannel) -> None:
        if self._exchange_channel is not channel:
            await channel.declare_exchange(self.exchange_name)
            self._exchange_channel = channel

        needs_queue = self._accepting or not self.subscriptions.is_empty
        if needs_queue and self._queue_channel is not channel:
            dead_letter_exchange = None
            if self.dead_letter_enabled:
                dead_letter_exchange = self.dead_letter_exchange
                await channel.declare_dead_letter(dead_letter_exchange, self.dead_letter_queue)
            await channel.declare_queue(
                self.queue_name,
                dead_letter_exchange=dead_letter_exchange,
                delivery_limit=self.max_redelivery_count if self.dead_letter_enabled else None,
            )
            for type_name in self.subscriptions.event_types():
                await channel.bind(self.queue_name, self.exchange_name, type_name)
            self._queue_channel = channel

        if self._accepting and self._consumer_tag is None:
            self._consumer_tag = await channel.consume(self.queue_name, self._on_message)
            logger.info("Consuming %s", self.queue_name)

    def _on_connection_lost(self, reason: Exception | None) -> None:
        self._consumer_tag = None
        self._exchange_channel = None
        self._queue_channel = None
        if not self._accepting:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._reconnect_task = loop.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        while self._accepting and not self._connection.is_connected:
            try:
                await self._connection.ensure_connected()
            except BrokerUnavailable as e:
                logger.error(
                    "Consumer %s still disconnected, retrying in %.1fs: %s",
                    self.queue_name,
                    self._reconnect_interval,
                    e,
                )
                await asyncio.sleep(self._reconnect_interval)

    # Consuming

    async def start(self) -> None:
        """Declare topology and start consuming this service's queue.

        Raises:
            BrokerUnavailable: If the broker cannot be reached.
        """
        if self._running:
            return
        self._running = True
        self._accepting = True
        try:
            channel = await self._connection.ensure_connected()
            await self._ensure_topology(channel)
        except Exception:
            self._running = False
            self._accepting = False
            raise
        logger.info("Event bus %s started on %s", self.queue_name, self.exchange_name)

    async def stop(self, timeout: float | None = None) -> None:
        """Stop consuming and wait for in-flight dispatches to settle."""
        if not self._running:
            return
        self._accepting = False

        tag, self._consumer_tag = self._consumer_tag, None
        channel = self._queue_channel
        if tag is not None and channel is not None and channel.is_open:
            try:
                await channel.cancel(self.queue_name, tag)
            except Exception as e:
                logger.warning("Could not cancel consumer %s: %s", tag, e)

        if self._inflight:
            logger.info("Waiting for %d in-flight messages", len(self._inflight))
            done, pending = await asyncio.wait(set(self._inflight), timeout=timeout)
            if pending:
                logger.warning("%d messages still in flight after %.1fs", len(pending), timeout)

        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
            self._reconnect_task = None

        await self._wait_topology()
        self._running = False
        logger.info("Event bus %s stopped", self.queue_name)

    async def __aenter__(self) -> EventBus:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _on_message(self, message: IncomingMessage) -> None:
        if not self._accepting:
            await self._settle(message, message.nack)
            return
        task = asyncio.create_task(self.dispatch(message))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def dispatch(self, message: IncomingMessage) -> DispatchOutcome:
        """Run every handler for a message, then settle it."""
        type_name = message.event_type
        try:
            event = self.serializer.deserialize(message.body, type_name=type_name or None)
        except SerializationError as e:
            return await self._poison(message, type_name or "unknown", e)

        identities = self.subscriptions.handlers_for(event.type_name)
        if not identities:
            logger.warning("No subscription for integration event %s (%s)", event.type_name, event.id)
            await self._settle(message, message.ack)
            return DispatchOutcome.ACKED

        for identity in identities:
            handler = self._handlers.get(identity)
            if handler is None:
                logger.warning("Handler %s for %s is no longer registered", identity, event.type_name)
                continue
            try:
                await handler(event)
            except NonTransientError as e:
                return await self._poison(message, event.type_name, e, handler=identity)
            except Exception as e:
                return await self._redeliver(message, event, identity, e)

        await self._settle(message, message.ack)
        logger.debug("Handled event %s (%s) with %d handlers", event.id, event.type_name, len(identities))
        return DispatchOutcome.ACKED

    async def _redeliver(
        self, message: IncomingMessage, event: IntegrationEvent, identity: str, error: Exception
    ) -> DispatchOutcome:
        attempt = message.delivery_count
        if attempt >= self.max_redelivery_count:
            logger.error(
                "Handler %s failed on event %s (%s) at delivery %d/%d, dead-lettering: %s",
                identity,
                event.id,
                event.type_name,
                attempt,
                self.max_redelivery_count,
                error,
                exc_info=error,
            )
            await self._settle(message, message.reject)
            return DispatchOutcome.DEAD_LETTERED

        logger.warning(
            "Handler %s failed on event %s (%s) at delivery %d/%d, requeueing: %s",
            identity,
            event.id,
            event.type_name,
            attempt,
            self.max_redelivery_count,
            error,
        )
        await self._settle(message, message.nack)
        return DispatchOutcome.REQUEUED

    async def _poison(
        self,
        message: IncomingMessage,
        type_name: str,
        error: Exception,
        handler: str | None = None,
    ) -> DispatchOutcome:
        record = PoisonMessage(
            message_id=message.message_id,
            event_type=type_name,
            error_type=type(error).__name__,
            error=str(error),
            body=message.body,
            handler=handler,
        )
        self.poison_messages.append(record)
        poison_logger.error(
            "Poison message %s (%s) acknowledged without handling: %s: %s",
            record.message_id,
            type_name,
            record.error_type,
            record.error,
        )
        await self._settle(message, message.ack)
        return DispatchOutcome.POISONED

    async def _settle(self, message: IncomingMessage, action: Callable[[], Awaitable[None]]) -> None:
        try:
            await action()
        except Exception as e:
            # The broker redelivers unsettled messages once the channel is gone
            logger.warning("Could not settle message %s, it will be redelivered: %s", message.message_id, e)
