"""
Event Outbox

Durable log of integration events awaiting publication. Entries are written
in the same transaction as the business change that produced them and only
committed rows are ever read back, so no event reaches the broker before the
change it describes is durable.

State machine::

    CREATED -> IN_PROGRESS -> PUBLISHED
                    |
                    v
              PUBLISH_FAILED -> IN_PROGRESS -> ...

An IN_PROGRESS entry whose claim is older than ``in_progress_timeout`` is
treated as abandoned and may be claimed again.
"""

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy import and_, delete, func, or_, select, update

from ..database import DatabaseManager, OutboxEntryRecord, TransactionScope, utcnow
from ..events.serialization import IntegrationEventSerializer
from ..events.types import IntegrationEvent
from ..exceptions import InvalidStateTransition, OutboxEntryNotFound

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000


class OutboxState(str, Enum):
    """Publication state of an outbox entry."""

    CREATED = "CREATED"
    IN_PROGRESS = "IN_PROGRESS"
    PUBLISHED = "PUBLISHED"
    PUBLISH_FAILED = "PUBLISH_FAILED"


@dataclass(frozen=True)
class OutboxEntry:
    """Snapshot of an outbox row."""

    sequence: int
    event_id: str
    type_name: str
    serialized_payload: str
    state: OutboxState
    created_at: datetime
    publish_attempts: int
    in_progress_since: datetime | None
    terminal: bool
    last_error: str | None
    published_at: datetime | None
    transaction_id: str | None

    @classmethod
    def from_record(cls, record: OutboxEntryRecord) -> "OutboxEntry":
        return cls(
            sequence=record.id,
            event_id=record.event_id,
            type_name=record.type_name,
            serialized_payload=record.serialized_payload,
            state=OutboxState(record.state),
            created_at=record.created_at,
            publish_attempts=record.publish_attempts or 0,
            in_progress_since=record.in_progress_since,
            terminal=bool(record.terminal),
            last_error=record.last_error,
            published_at=record.published_at,
            transaction_id=record.transaction_id,
        )

    def to_event(self, serializer: IntegrationEventSerializer) -> IntegrationEvent:
        """Rebuild the integration event from the stored document."""
        return serializer.deserialize(self.serialized_payload, type_name=self.type_name)


class EventOutbox:
    """Outbox of integration events backed by the ``integration_event_log`` table."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        serializer: IntegrationEventSerializer | None = None,
        in_progress_timeout: float = 300.0,
    ):
        if in_progress_timeout <= 0:
            raise ValueError("in_progress_timeout must be positive")
        self.db_manager = db_manager
        self.serializer = serializer or IntegrationEventSerializer()
        self.in_progress_timeout = timedelta(seconds=in_progress_timeout)

    def _lease_cutoff(self, now: datetime) -> datetime:
        return now - self.in_progress_timeout

    @staticmethod
    def _claimable(lease_cutoff: datetime):
        return or_(
            OutboxEntryRecord.state == OutboxState.CREATED.value,
            and_(
                OutboxEntryRecord.state == OutboxState.PUBLISH_FAILED.value,
                OutboxEntryRecord.terminal.is_(False),
            ),
            and_(
                OutboxEntryRecord.state == OutboxState.IN_PROGRESS.value,
                OutboxEntryRecord.in_progress_since < lease_cutoff,
            ),
        )

    async def enqueue(self, event: IntegrationEvent, scope: TransactionScope) -> OutboxEntry:
        """Add a CREATED entry for ``event`` to the caller's transaction.

        Nothing is committed here; the entry becomes visible to the publisher
        when the caller's transaction commits.

        Raises:
            SerializationError: If the event cannot be encoded. The caller's
                transaction rolls back and no entry is stored.
        """
        payload = self.serializer.serialize(event).decode("utf-8")
        record = OutboxEntryRecord(
            event_id=event.id,
            type_name=event.type_name,
            serialized_payload=payload,
            state=OutboxState.CREATED.value,
            created_at=utcnow(),
            publish_attempts=0,
            terminal=False,
            transaction_id=scope.transaction_id,
        )
        scope.add(record)
        await scope.flush()
        logger.debug(
            "Enqueued event %s (%s) in transaction %s",
            event.id,
            event.type_name,
            scope.transaction_id,
        )
        return OutboxEntry.from_record(record)

    async def drain_pending(self, batch_size: int = 100) -> AsyncIterator[OutboxEntry]:
        """Yield publishable entries, oldest first.

        Eligible entries are CREATED, non-terminal PUBLISH_FAILED, and
        IN_PROGRESS with an expired claim. Entries committed after the call
        started are left for the next call. No session is held open between
        yields.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        async with self.db_manager.session() as session:
            high_water = await session.scalar(select(func.max(OutboxEntryRecord.id)))
        if high_water is None:
            return

        last_sequence = 0
        while True:
            cutoff = self._lease_cutoff(utcnow())
            async with self.db_manager.session() as session:
                result = await session.execute(
                    select(OutboxEntryRecord)
                    .where(
                        OutboxEntryRecord.id > last_sequence,
                        OutboxEntryRecord.id <= high_water,
                        self._claimable(cutoff),
                    )
                    .order_by(OutboxEntryRecord.id)
                    .limit(batch_size)
                )
                batch = [OutboxEntry.from_record(record) for record in result.scalars()]

            for entry in batch:
                yield entry

            if len(batch) < batch_size:
                return
            last_sequence = batch[-1].sequence

    async def mark_in_progress(self, event_id: str) -> OutboxEntry | None:
        """Claim an entry for publication.

        Returns the claimed entry, or ``None`` when another worker holds a
        live claim on it.

        Raises:
            OutboxEntryNotFound: If no entry has this event id.
            InvalidStateTransition: If the entry is published or terminally
                failed.
        """
        now = utcnow()
        async with self.db_manager.session() as session:
            async with session.begin():
                result = await session.execute(
                    update(OutboxEntryRecord)
                    .where(
                        OutboxEntryRecord.event_id == event_id,
                        self._claimable(self._lease_cutoff(now)),
                    )
                    .values(
                        state=OutboxState.IN_PROGRESS.value,
                        publish_attempts=OutboxEntryRecord.publish_attempts + 1,
                        in_progress_since=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                record = await session.scalar(
                    select(OutboxEntryRecord).where(OutboxEntryRecord.event_id == event_id)
                )
                if record is None:
                    raise OutboxEntryNotFound(f"No outbox entry for event {event_id}", event_id=event_id)
                entry = OutboxEntry.from_record(record)

        if result.rowcount:
            logger.debug("Claimed event %s (attempt %d)", event_id, entry.publish_attempts)
            return entry

        if entry.state == OutboxState.IN_PROGRESS:
            logger.debug("Event %s is claimed by another worker", event_id)
            return None
        raise InvalidStateTransition(
            event_id,
            f"{entry.state.value} (terminal)" if entry.terminal else entry.state.value,
            OutboxState.IN_PROGRESS.value,
        )

    async def _finish(self, event_id: str, target: OutboxState, **values) -> OutboxEntry:
        async with self.db_manager.session() as session:
            async with session.begin():
                result = await session.execute(
                    update(OutboxEntryRecord)
                    .where(
                        OutboxEntryRecord.event_id == event_id,
                        OutboxEntryRecord.state == OutboxState.IN_PROGRESS.value,
                    )
                    .values(state=target.value, in_progress_since=None, **values)
                    .execution_options(synchronize_session=False)
                )
                record = await session.scalar(
                    select(OutboxEntryRecord).where(OutboxEntryRecord.event_id == event_id)
                )
                if record is None:
                    raise OutboxEntryNotFound(f"No outbox entry for event {event_id}", event_id=event_id)
                entry = OutboxEntry.from_record(record)

        if not result.rowcount:
            raise InvalidStateTransition(event_id, entry.state.value, target.value)
        return entry

    async def mark_published(self, event_id: str) -> OutboxEntry:
        """Record a confirmed publish.

        Raises:
            InvalidStateTransition: If the entry is not IN_PROGRESS.
        """
        entry = await self._finish(
            event_id, OutboxState.PUBLISHED, published_at=utcnow(), last_error=None
        )
        logger.debug("Event %s published after %d attempts", event_id, entry.publish_attempts)
        return entry

    async def mark_failed(
        self, event_id: str, error: Exception | str | None = None, terminal: bool = False
    ) -> OutboxEntry:
        """Record a failed publish; non-terminal failures are retried later.

        Raises:
            InvalidStateTransition: If the entry is not IN_PROGRESS.
        """
        message = None
        if error is not None:
            message = (f"{type(error).__name__}: {error}" if isinstance(error, Exception) else error)[
                :MAX_ERROR_LENGTH
            ]
        return await self._finish(
            event_id, OutboxState.PUBLISH_FAILED, last_error=message, terminal=terminal
        )

    async def get(self, event_id: str) -> OutboxEntry | None:
        async with self.db_manager.session() as session:
            record = await session.scalar(
                select(OutboxEntryRecord).where(OutboxEntryRecord.event_id == event_id)
            )
            return OutboxEntry.from_record(record) if record is not None else None

    async def list_pending(self, limit: int = 100) -> list[OutboxEntry]:
        """Publishable entries, oldest first."""
        async with self.db_manager.session() as session:
            result = await session.execute(
                select(OutboxEntryRecord)
                .where(self._claimable(self._lease_cutoff(utcnow())))
                .order_by(OutboxEntryRecord.id)
                .limit(limit)
            )
            return [OutboxEntry.from_record(record) for record in result.scalars()]

    async def list_failed(self, limit: int = 100, terminal_only: bool = False) -> list[OutboxEntry]:
        """Failed entries, oldest first."""
        query = select(OutboxEntryRecord).where(
            OutboxEntryRecord.state == OutboxState.PUBLISH_FAILED.value
        )
        if terminal_only:
            query = query.where(OutboxEntryRecord.terminal.is_(True))
        async with self.db_manager.session() as session:
            result = await session.execute(query.order_by(OutboxEntryRecord.id).limit(limit))
            return [OutboxEntry.from_record(record) for record in result.scalars()]

    async def pending_for_transaction(self, transaction_id: str) -> list[OutboxEntry]:
        """Unpublished entries written by one local transaction."""
        async with self.db_manager.session() as session:
            result = await session.execute(
                select(OutboxEntryRecord)
                .where(
                    OutboxEntryRecord.transaction_id == transaction_id,
                    self._claimable(self._lease_cutoff(utcnow())),
                )
                .order_by(OutboxEntryRecord.id)
            )
            return [OutboxEntry.from_record(record) for record in result.scalars()]

    async def count_by_state(self) -> dict[OutboxState, int]:
        async with self.db_manager.session() as session:
            result = await session.execute(
                select(OutboxEntryRecord.state, func.count()).group_by(OutboxEntryRecord.state)
            )
            counts = {state: 0 for state in OutboxState}
            for state, count in result:
                counts[OutboxState(state)] = count
            return counts

    async def requeue(self, event_id: str) -> OutboxEntry:
        """Make a failed entry eligible again, clearing its terminal flag.

        Raises:
            OutboxEntryNotFound: If no entry has this event id.
            InvalidStateTransition: If the entry is not PUBLISH_FAILED.
        """
        async with self.db_manager.session() as session:
            async with session.begin():
                record = await session.scalar(
                    select(OutboxEntryRecord).where(OutboxEntryRecord.event_id == event_id)
                )
                if record is None:
                    raise OutboxEntryNotFound(f"No outbox entry for event {event_id}", event_id=event_id)
                if record.state != OutboxState.PUBLISH_FAILED.value:
                    raise InvalidStateTransition(event_id, record.state, OutboxState.PUBLISH_FAILED.value)
                record.terminal = False
                await session.flush()
                entry = OutboxEntry.from_record(record)

        logger.info("Requeued event %s", event_id)
        return entry

    async def cleanup_published(self, older_than: timedelta) -> int:
        """Delete entries published before ``now - older_than``."""
        cutoff = utcnow() - older_than
        async with self.db_manager.session() as session:
            async with session.begin():
                result = await session.execute(
                    delete(OutboxEntryRecord)
                    .where(
                        OutboxEntryRecord.state == OutboxState.PUBLISHED.value,
                        OutboxEntryRecord.published_at < cutoff,
                    )
                    .execution_options(synchronize_session=False)
                )
        deleted = result.rowcount or 0
        logger.info("Cleaned up %d published outbox entries", deleted)
        return deleted
