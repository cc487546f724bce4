"""
Idempotent command execution keyed by client request ids.
"""

from .guard import GuardResult, IdempotencyGuard, IdentifiedCommand, IdentifiedCommandHandler
from .store import ProcessedRequest, RequestManager

__all__ = [
    "GuardResult",
    "IdempotencyGuard",
    "IdentifiedCommand",
    "IdentifiedCommandHandler",
    "ProcessedRequest",
    "RequestManager",
]
