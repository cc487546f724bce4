"""
Transactional outbox for integration events.

This package provides:
- The durable event log and its publication state machine
- A background publisher draining it through the event bus
- A service facade committing business changes and events together
"""

from .publisher import EventPublisher, OutboxPublisher, PublishOutcome, PublishReport
from .service import IntegrationEventService
from .store import EventOutbox, OutboxEntry, OutboxState

__all__ = [
    "EventOutbox",
    "EventPublisher",
    "IntegrationEventService",
    "OutboxEntry",
    "OutboxPublisher",
    "OutboxState",
    "PublishOutcome",
    "PublishReport",
]
