"""
Transaction management for business writes and their outbox entries.

A :class:`TransactionScope` is the single unit of work shared by a service's
domain writes, the event outbox and the idempotency guard: whatever is added
through it commits or rolls back together.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from ..resilience import RetryConfig, RetryError, RetryManager
from .manager import DatabaseManager

logger = logging.getLogger(__name__)
T = TypeVar("T")

AfterCommitCallback = Callable[[], Awaitable[None] | None]


@dataclass
class TransactionScope:
    """An open local transaction."""

    session: AsyncSession
    transaction_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    _after_commit: list[AfterCommitCallback] = field(default_factory=list, repr=False)

    def add(self, instance: Any) -> None:
        self.session.add(instance)

    async def flush(self) -> None:
        await self.session.flush()

    async def execute(self, statement: Any) -> Any:
        return await self.session.execute(statement)

    def after_commit(self, callback: AfterCommitCallback) -> None:
        """Run ``callback`` once the transaction has committed."""
        self._after_commit.append(callback)

    async def _run_after_commit(self) -> None:
        callbacks, self._after_commit = self._after_commit, []
        for callback in callbacks:
            try:
                outcome = callback()
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception as e:
                # Committed work stands; callbacks are notifications only
                logger.error(
                    "After-commit callback failed for transaction %s: %s",
                    self.transaction_id,
                    e,
                    exc_info=True,
                )


class TransactionManager:
    """Opens transaction scopes and runs resilient units of work."""

    def __init__(self, db_manager: DatabaseManager, retry_config: RetryConfig | None = None):
        self.db_manager = db_manager
        self.retry_config = retry_config or RetryConfig(
            max_attempts=3,
            base_delay=0.1,
            max_delay=2.0,
            retryable_exceptions=(OperationalError,),
        )

    @asynccontextmanager
    async def transaction(self, scope: TransactionScope | None = None) -> AsyncIterator[TransactionScope]:
        """Create a managed transaction context.

        Passing an open ``scope`` joins it instead of starting a new one.
        """
        if scope is not None:
            yield scope
            return

        async with self.db_manager.session() as session:
            scope = TransactionScope(session=session)
            try:
                async with session.begin():
                    yield scope
            except Exception as e:
                logger.debug("Transaction %s rolled back: %s", scope.transaction_id, e)
                raise
            logger.debug("Transaction %s committed", scope.transaction_id)

        await scope._run_after_commit()

    async def execute(
        self,
        work: Callable[[TransactionScope], Awaitable[T]],
        retry_config: RetryConfig | None = None,
    ) -> T:
        """Run ``work`` in a transaction, retrying the whole unit on transient
        database errors."""

        async def attempt() -> T:
            async with self.transaction() as scope:
                return await work(scope)

        manager = RetryManager(retry_config or self.retry_config)
        try:
            return await manager.execute_async(attempt)
        except RetryError as e:
            logger.error("Transaction failed after %d attempts", e.attempts)
            raise e.last_exception from e
