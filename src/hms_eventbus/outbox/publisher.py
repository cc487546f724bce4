"""
Outbox Publisher

Background worker draining the event outbox through the event bus. One runs
per process; it wakes on a timer and whenever a local commit triggers it.
Entries that fail to publish stay PUBLISH_FAILED and are retried on later
passes; entries that cannot be serialized are marked terminal.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from ..events.types import IntegrationEvent
from ..exceptions import InvalidStateTransition, SerializationError
from .store import EventOutbox, OutboxEntry

logger = logging.getLogger(__name__)


class EventPublisher(Protocol):
    """Anything that can put an integration event on the wire."""

    async def publish(self, event: IntegrationEvent) -> None: ...


class PublishOutcome(Enum):
    PUBLISHED = "published"
    FAILED = "failed"
    TERMINAL = "terminal"
    SKIPPED = "skipped"


@dataclass
class PublishReport:
    """Outcome counts of one publisher pass."""

    published: int = 0
    failed: int = 0
    terminal: int = 0
    skipped: int = 0

    @property
    def total(self) -> int:
        return self.published + self.failed + self.terminal + self.skipped

    def record(self, outcome: PublishOutcome) -> None:
        if outcome is PublishOutcome.PUBLISHED:
            self.published += 1
        elif outcome is PublishOutcome.FAILED:
            self.failed += 1
        elif outcome is PublishOutcome.TERMINAL:
            self.terminal += 1
        else:
            self.skipped += 1


class OutboxPublisher:
    """Drains the outbox on a timer and on demand."""

    def __init__(
        self,
        outbox: EventOutbox,
        event_bus: EventPublisher,
        poll_interval: float = 5.0,
        batch_size: int = 100,
    ):
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self.outbox = outbox
        self.event_bus = event_bus
        self.poll_interval = poll_interval
        self.batch_size = batch_size

        self._pass_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._stopping = False
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def publish_entry(self, entry: OutboxEntry | str) -> PublishOutcome:
        """Publish one entry through its state machine."""
        event_id = entry if isinstance(entry, str) else entry.event_id

        try:
            claimed = await self.outbox.mark_in_progress(event_id)
        except InvalidStateTransition as e:
            logger.debug("Skipping event %s: %s", event_id, e)
            return PublishOutcome.SKIPPED
        if claimed is None:
            return PublishOutcome.SKIPPED

        try:
            event = claimed.to_event(self.outbox.serializer)
            await self.event_bus.publish(event)
        except SerializationError as e:
            logger.error("Event %s cannot be serialized and will not be retried: %s", event_id, e)
            await self.outbox.mark_failed(event_id, e, terminal=True)
            return PublishOutcome.TERMINAL
        except Exception as e:
            logger.warning(
                "Publishing event %s failed on attempt %d: %s",
                event_id,
                claimed.publish_attempts,
                e,
            )
            await self.outbox.mark_failed(event_id, e)
            return PublishOutcome.FAILED

        await self.outbox.mark_published(event_id)
        logger.info("Published event %s (%s)", event_id, claimed.type_name)
        return PublishOutcome.PUBLISHED

    async def publish_pending(self) -> PublishReport:
        """Run one pass over the pending entries."""
        report = PublishReport()
        async with self._pass_lock:
            async for entry in self.outbox.drain_pending(self.batch_size):
                report.record(await self.publish_entry(entry))

        if report.total:
            logger.info(
                "Outbox pass: %d published, %d failed, %d terminal, %d skipped",
                report.published,
                report.failed,
                report.terminal,
                report.skipped,
            )
        return report

    def trigger(self) -> None:
        """Wake the worker for an immediate pass."""
        self._wake.set()

    async def start(self) -> None:
        if self.is_running:
            return
        self._stopping = False
        self._task = asyncio.create_task(self._run(), name="outbox-publisher")
        logger.info("Outbox publisher started (poll every %.1fs)", self.poll_interval)

    async def stop(self, timeout: float | None = None) -> None:
        """Finish the current pass and stop."""
        if self._task is None:
            return
        self._stopping = True
        self._wake.set()
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Outbox publisher did not stop within %.1fs, cancelling", timeout)
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Outbox publisher stopped")

    async def _run(self) -> None:
        while not self._stopping:
            try:
                await self.publish_pending()
            except Exception as e:
                logger.error("Outbox publisher pass failed: %s", e, exc_info=True)

            if self._stopping:
                break
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
