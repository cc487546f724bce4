"""
Storage for the integration event log and processed client requests.
"""

from .manager import DatabaseError, DatabaseManager
from .models import Base, OutboxEntryRecord, ProcessedRequestRecord, UTCDateTime, utcnow
from .transaction import TransactionManager, TransactionScope

__all__ = [
    "Base",
    "DatabaseError",
    "DatabaseManager",
    "OutboxEntryRecord",
    "ProcessedRequestRecord",
    "TransactionManager",
    "TransactionScope",
    "UTCDateTime",
    "utcnow",
]
