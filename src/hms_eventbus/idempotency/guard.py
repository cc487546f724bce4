"""
Idempotency Guard

Runs a command tagged with a client-supplied request id at most once in
effect. The command's writes and the processed-request record commit in one
transaction; a repeated request id returns the stored result without running
the command again.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from pydantic import TypeAdapter
from pydantic_core import from_json, to_json

from ..database import TransactionManager, TransactionScope
from ..exceptions import ConcurrentDuplicateInsert, DuplicateRequest, InvalidRequestId
from .store import RequestManager

logger = logging.getLogger(__name__)

T = TypeVar("T")
C = TypeVar("C")

Operation = Callable[[TransactionScope], Awaitable[Any]]

_USE_STORED = object()


@dataclass(frozen=True)
class GuardResult:
    """Result of a guarded execution."""

    value: Any
    duplicate: bool


@dataclass
class _KeyedLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    waiters: int = 0


class IdempotencyGuard:
    """Executes commands at most once per request id."""

    def __init__(
        self,
        transactions: TransactionManager,
        requests: RequestManager | None = None,
        max_race_retries: int = 3,
    ):
        self.transactions = transactions
        self.requests = requests or RequestManager(transactions.db_manager)
        self.max_race_retries = max_race_retries
        self._locks: dict[str, _KeyedLock] = {}

    @asynccontextmanager
    async def _lock_for(self, request_id: str) -> AsyncIterator[None]:
        entry = self._locks.get(request_id)
        if entry is None:
            entry = self._locks[request_id] = _KeyedLock()
        entry.waiters += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.waiters -= 1
            if entry.waiters == 0:
                self._locks.pop(request_id, None)

    async def execute(
        self,
        request_id: str,
        command_name: str,
        operation: Operation,
        result_type: Any = None,
    ) -> Any:
        """Run ``operation`` unless ``request_id`` was already processed.

        ``operation`` receives the transaction scope its writes must go
        through. Results are stored as JSON; with ``result_type`` a stored
        result is validated back into that type, otherwise plain JSON values
        are returned for duplicates.

        Raises:
            InvalidRequestId: If ``request_id`` is empty.
            ConcurrentDuplicateInsert: If concurrent writers kept winning the
                insert but their record could not be read back.
        """
        outcome = await self.execute_with_outcome(request_id, command_name, operation, result_type)
        return outcome.value

    async def execute_with_outcome(
        self,
        request_id: str,
        command_name: str,
        operation: Operation,
        result_type: Any = None,
    ) -> GuardResult:
        """Like :meth:`execute`, also reporting whether the request was a duplicate."""
        if not isinstance(request_id, str) or not request_id.strip():
            raise InvalidRequestId("Request id must be a non-empty string")

        adapter = TypeAdapter(result_type) if result_type is not None else None

        async with self._lock_for(request_id):
            for attempt in range(1, self.max_race_retries + 1):
                try:
                    await self._ensure_new(request_id, adapter)
                    value = await self._run(request_id, command_name, operation, adapter)
                except DuplicateRequest as duplicate:
                    return GuardResult(duplicate.result, duplicate=True)
                except ConcurrentDuplicateInsert:
                    logger.warning(
                        "Request %s recorded concurrently (attempt %d/%d), re-reading",
                        request_id,
                        attempt,
                        self.max_race_retries,
                    )
                    continue
                return GuardResult(value, duplicate=False)

        raise ConcurrentDuplicateInsert(request_id)

    async def _ensure_new(self, request_id: str, adapter: TypeAdapter | None) -> None:
        existing = await self.requests.find(request_id)
        if existing is not None:
            logger.info(
                "Request %s (%s) already processed at %s, returning stored result",
                request_id,
                existing.command_name,
                existing.processed_at.isoformat(),
            )
            raise DuplicateRequest(request_id, self._load(existing.result, adapter))

    async def _run(
        self,
        request_id: str,
        command_name: str,
        operation: Operation,
        adapter: TypeAdapter | None,
    ) -> Any:
        async with self.transactions.transaction() as scope:
            value = await operation(scope)
            await scope.flush()
            await self.requests.add(request_id, command_name, self._dump(value, adapter), scope)
        logger.debug("Processed request %s (%s)", request_id, command_name)
        return value

    @staticmethod
    def _dump(value: Any, adapter: TypeAdapter | None) -> str | None:
        if value is None:
            return None
        if adapter is not None:
            return adapter.dump_json(value).decode("utf-8")
        return to_json(value).decode("utf-8")

    @staticmethod
    def _load(stored: str | None, adapter: TypeAdapter | None) -> Any:
        if stored is None:
            return None
        if adapter is not None:
            return adapter.validate_json(stored)
        return from_json(stored)


@dataclass(frozen=True)
class IdentifiedCommand(Generic[C]):
    """A command tagged with the client's request id."""

    request_id: str
    command: C
    command_name: str | None = None

    @property
    def name(self) -> str:
        return self.command_name or type(self.command).__name__


class IdentifiedCommandHandler(Generic[C, T]):
    """Dispatches identified commands through an :class:`IdempotencyGuard`.

    ``handler(command, scope)`` does the work. Duplicates return the stored
    result, or ``duplicate_result`` when one is given.
    """

    def __init__(
        self,
        guard: IdempotencyGuard,
        handler: Callable[[C, TransactionScope], Awaitable[T]],
        result_type: Any = None,
        duplicate_result: Any = _USE_STORED,
    ):
        self.guard = guard
        self.handler = handler
        self.result_type = result_type
        self.duplicate_result = duplicate_result

    async def handle(self, identified: IdentifiedCommand[C]) -> T:
        async def operation(scope: TransactionScope) -> T:
            return await self.handler(identified.command, scope)

        outcome = await self.guard.execute_with_outcome(
            identified.request_id, identified.name, operation, self.result_type
        )
        if outcome.duplicate and self.duplicate_result is not _USE_STORED:
            return self.duplicate_result
        return outcome.value
