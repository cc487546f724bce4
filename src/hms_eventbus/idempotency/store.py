"""
Request manager: the ``client_requests`` table of processed request ids.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from ..database import DatabaseManager, ProcessedRequestRecord, TransactionScope, utcnow
from ..exceptions import ConcurrentDuplicateInsert

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessedRequest:
    request_id: str
    command_name: str
    processed_at: datetime
    result: str | None


class RequestManager:
    """Reads and records processed client requests."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    async def find(self, request_id: str) -> ProcessedRequest | None:
        """Look up a committed record."""
        async with self.db_manager.session() as session:
            record = await session.get(ProcessedRequestRecord, request_id)
            if record is None:
                return None
            return ProcessedRequest(
                request_id=record.request_id,
                command_name=record.command_name,
                processed_at=record.processed_at,
                result=record.result,
            )

    async def exists(self, request_id: str) -> bool:
        return await self.find(request_id) is not None

    async def add(
        self,
        request_id: str,
        command_name: str,
        result: str | None,
        scope: TransactionScope,
    ) -> None:
        """Insert a record inside the caller's transaction.

        Raises:
            ConcurrentDuplicateInsert: If another writer recorded the same id
                first; the caller's transaction must be rolled back.
        """
        scope.add(
            ProcessedRequestRecord(
                request_id=request_id,
                command_name=command_name,
                processed_at=utcnow(),
                result=result,
            )
        )
        try:
            await scope.flush()
        except IntegrityError as e:
            logger.debug("Request %s was recorded concurrently: %s", request_id, e)
            raise ConcurrentDuplicateInsert(request_id) from e
