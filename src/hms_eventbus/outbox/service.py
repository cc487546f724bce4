"""
Integration event service: commit business changes and their events
together, then hand the events to the publisher.
"""

import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from ..database import TransactionManager, TransactionScope
from ..events.types import IntegrationEvent
from .publisher import OutboxPublisher, PublishOutcome, PublishReport
from .store import EventOutbox

logger = logging.getLogger(__name__)


class IntegrationEventService:
    """Facade used by services to save and publish integration events."""

    def __init__(
        self,
        transactions: TransactionManager,
        outbox: EventOutbox,
        publisher: OutboxPublisher | None = None,
    ):
        self.transactions = transactions
        self.outbox = outbox
        self.publisher = publisher

    async def save_event_and_changes(
        self,
        events: IntegrationEvent | Sequence[IntegrationEvent],
        work: Callable[[TransactionScope], Awaitable[Any]] | None = None,
    ) -> Any:
        """Run ``work`` and enqueue ``events`` in one resilient transaction.

        Returns whatever ``work`` returns. The publisher is triggered once the
        transaction has committed.
        """
        batch = [events] if isinstance(events, IntegrationEvent) else list(events)

        async def unit(scope: TransactionScope) -> Any:
            result = await work(scope) if work is not None else None
            for event in batch:
                await self.outbox.enqueue(event, scope)
            if self.publisher is not None:
                scope.after_commit(self.publisher.trigger)
            logger.debug(
                "Saving %d events with transaction %s", len(batch), scope.transaction_id
            )
            return result

        return await self.transactions.execute(unit)

    async def publish_through_event_bus(self, event_id: str) -> PublishOutcome:
        """Publish a single entry now."""
        return await self._publisher().publish_entry(event_id)

    async def publish_transaction(self, transaction_id: str) -> PublishReport:
        """Publish every pending entry written by one local transaction."""
        publisher = self._publisher()
        report = PublishReport()
        for entry in await self.outbox.pending_for_transaction(transaction_id):
            report.record(await publisher.publish_entry(entry))
        return report

    def _publisher(self) -> OutboxPublisher:
        if self.publisher is None:
            raise RuntimeError("IntegrationEventService has no publisher")
        return self.publisher
