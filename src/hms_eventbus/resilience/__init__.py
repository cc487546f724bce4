"""
Resilience primitives for the integration event bus.
"""

from .retry import ExponentialBackoff, RetryConfig, RetryError, RetryManager, retry_async

__all__ = [
    "ExponentialBackoff",
    "RetryConfig",
    "RetryError",
    "RetryManager",
    "retry_async",
]
