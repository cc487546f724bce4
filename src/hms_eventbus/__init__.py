"""
HMS integration event bus.

Transactional outbox, broker-backed event bus and idempotent command dispatch
for services that exchange integration events.
"""

from .config import EventBusSettings
from .database import DatabaseManager, TransactionManager, TransactionScope
from .events import (
    DispatchOutcome,
    EventBus,
    EventTypeRegistry,
    IntegrationEvent,
    IntegrationEventHandler,
    IntegrationEventSerializer,
    SubscriptionRegistry,
    register_event,
)
from .exceptions import (
    BrokerUnavailable,
    ConcurrentDuplicateInsert,
    DuplicateRequest,
    EventBusError,
    HandlerFailure,
    InvalidRequestId,
    InvalidStateTransition,
    NonTransientError,
    OutboxEntryNotFound,
    PublishFailed,
    SerializationError,
)
from .host import EventBusHost
from .idempotency import IdempotencyGuard, IdentifiedCommand, IdentifiedCommandHandler
from .messaging import BrokerConnection, InMemoryBroker, InMemoryConnection, RabbitMQConnection
from .outbox import EventOutbox, IntegrationEventService, OutboxPublisher, OutboxState

__version__ = "0.1.0"

__all__ = [
    "BrokerConnection",
    "BrokerUnavailable",
    "ConcurrentDuplicateInsert",
    "DatabaseManager",
    "DispatchOutcome",
    "DuplicateRequest",
    "EventBus",
    "EventBusError",
    "EventBusHost",
    "EventBusSettings",
    "EventOutbox",
    "EventTypeRegistry",
    "HandlerFailure",
    "IdempotencyGuard",
    "IdentifiedCommand",
    "IdentifiedCommandHandler",
    "InMemoryBroker",
    "InMemoryConnection",
    "IntegrationEvent",
    "IntegrationEventHandler",
    "IntegrationEventSerializer",
    "IntegrationEventService",
    "InvalidRequestId",
    "InvalidStateTransition",
    "NonTransientError",
    "OutboxEntryNotFound",
    "OutboxPublisher",
    "OutboxState",
    "PublishFailed",
    "RabbitMQConnection",
    "SerializationError",
    "SubscriptionRegistry",
    "TransactionManager",
    "TransactionScope",
    "register_event",
]
