"""
Integration events for the event bus.

This package provides:
- The immutable integration event envelope and its JSON codec
- An explicit registry from event type names to payload models
- The per-process subscription registry
- The broker-backed event bus
"""

from .event_bus import (
    DEFAULT_EXCHANGE_NAME,
    DispatchOutcome,
    EventBus,
    IntegrationEventHandler,
    PoisonMessage,
    handler_identity,
)
from .registry import EVENT_REGISTRY, EventTypeRegistry, register_event
from .serialization import IntegrationEventSerializer
from .subscriptions import Subscription, SubscriptionRegistry
from .types import IntegrationEvent

__all__ = [
    "DEFAULT_EXCHANGE_NAME",
    "DispatchOutcome",
    "EVENT_REGISTRY",
    "EventBus",
    "EventTypeRegistry",
    "IntegrationEvent",
    "IntegrationEventHandler",
    "IntegrationEventSerializer",
    "PoisonMessage",
    "Subscription",
    "SubscriptionRegistry",
    "handler_identity",
    "register_event",
]
