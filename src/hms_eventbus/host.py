"""
Event Bus Host

Wires the broker connection, event bus, outbox, publisher and idempotency
guard of one service process from :class:`EventBusSettings`, and starts and
stops them in order.
"""

from __future__ import annotations

import logging

from .config import EventBusSettings
from .database import DatabaseManager, TransactionManager
from .events import EventBus, EventTypeRegistry, IntegrationEventSerializer
from .events.registry import EVENT_REGISTRY
from .idempotency import IdempotencyGuard, RequestManager
from .messaging import BrokerConnection, RabbitMQConnection
from .outbox import EventOutbox, IntegrationEventService, OutboxPublisher

logger = logging.getLogger(__name__)


def create_connection(settings: EventBusSettings) -> BrokerConnection:
    """Create the RabbitMQ connection described by ``settings``."""
    return RabbitMQConnection(
        settings.connection_url,
        retry_config=settings.retry_config(),
        prefetch_count=settings.prefetch_count,
        name=settings.service_name,
    )


def create_database_manager(settings: EventBusSettings) -> DatabaseManager:
    return DatabaseManager(
        settings.database_url, echo=settings.database_echo, service_name=settings.service_name
    )


def create_event_bus(
    settings: EventBusSettings,
    connection: BrokerConnection,
    event_types: EventTypeRegistry | None = None,
) -> EventBus:
    registry = event_types or EVENT_REGISTRY
    return EventBus(
        connection,
        settings.subscription_client_name,
        exchange_name=settings.exchange_name,
        serializer=IntegrationEventSerializer(registry),
        event_types=registry,
        max_redelivery_count=settings.max_redelivery_count,
        dead_letter_enabled=settings.dead_letter_enabled,
    )


class EventBusHost:
    """Owns the event bus components of a service process."""

    def __init__(
        self,
        settings: EventBusSettings | None = None,
        connection: BrokerConnection | None = None,
        db_manager: DatabaseManager | None = None,
        event_types: EventTypeRegistry | None = None,
        create_tables: bool = True,
    ):
        self.settings = settings or EventBusSettings()
        self.create_tables = create_tables

        self.connection = connection or create_connection(self.settings)
        self.db_manager = db_manager or create_database_manager(self.settings)
        self.event_bus = create_event_bus(self.settings, self.connection, event_types)

        self.transactions = TransactionManager(self.db_manager)
        self.outbox = EventOutbox(
            self.db_manager,
            serializer=self.event_bus.serializer,
            in_progress_timeout=self.settings.outbox_in_progress_timeout,
        )
        self.publisher = OutboxPublisher(
            self.outbox,
            self.event_bus,
            poll_interval=self.settings.outbox_poll_interval,
            batch_size=self.settings.outbox_batch_size,
        )
        self.events = IntegrationEventService(self.transactions, self.outbox, self.publisher)
        self.guard = IdempotencyGuard(self.transactions, RequestManager(self.db_manager))

        self._started = False

    @property
    def is_started(self) -> bool:
        return self._started

    async def start(self, consume: bool = True) -> None:
        """Prepare storage, start consuming and start the outbox publisher.

        Subscriptions made before ``start`` are bound when consuming starts.
        """
        if self._started:
            return

        await self.db_manager.initialize()
        if self.create_tables:
            await self.db_manager.create_tables()

        if consume:
            await self.event_bus.start()
        await self.publisher.start()

        self._started = True
        logger.info(
            "Event bus host %s started (consuming=%s)", self.settings.service_name, consume
        )

    async def stop(self) -> None:
        """Stop in reverse order, letting in-flight work finish."""
        if not self._started:
            return

        grace = self.settings.shutdown_grace_period
        await self.publisher.stop(timeout=grace)
        await self.event_bus.stop(timeout=grace)
        await self.connection.close()
        await self.db_manager.close()

        self._started = False
        logger.info("Event bus host %s stopped", self.settings.service_name)

    async def __aenter__(self) -> EventBusHost:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
