"""
Subscription registry.

Process-local map from event type name to the identities of the handlers
consuming it. The registry never owns handlers; the event bus resolves
identities to callables at dispatch time.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

EventRemovedCallback = Callable[[str], None]


@dataclass(frozen=True)
class Subscription:
    """A handler identity registered for an event type."""

    event_type_name: str
    handler_identity: str


class SubscriptionRegistry:
    """Thread-safe in-memory subscription table."""

    def __init__(self):
        # dict values keep registration order
        self._handlers: dict[str, dict[str, None]] = {}
        self._lock = threading.RLock()
        self._removed_callbacks: list[EventRemovedCallback] = []

    def subscribe(self, event_type_name: str, handler_identity: str) -> bool:
        """Register a handler identity; returns True if the type was new."""
        if not event_type_name or not handler_identity:
            raise ValueError("event type name and handler identity are required")

        with self._lock:
            first = event_type_name not in self._handlers
            handlers = self._handlers.setdefault(event_type_name, {})
            if handler_identity in handlers:
                logger.debug(
                    "Handler %s already subscribed to %s", handler_identity, event_type_name
                )
            handlers[handler_identity] = None

        logger.info("Subscribed handler %s to %s", handler_identity, event_type_name)
        return first

    def unsubscribe(self, event_type_name: str, handler_identity: str) -> bool:
        """Remove a handler identity; returns True if it was registered.

        Removing the last handler of a type notifies the event-removed
        callbacks.
        """
        with self._lock:
            handlers = self._handlers.get(event_type_name)
            if handlers is None or handler_identity not in handlers:
                return False
            del handlers[handler_identity]
            emptied = not handlers
            if emptied:
                del self._handlers[event_type_name]

        logger.info("Unsubscribed handler %s from %s", handler_identity, event_type_name)
        if emptied:
            self._notify_removed(event_type_name)
        return True

    def handlers_for(self, event_type_name: str) -> list[str]:
        """Snapshot of handler identities for a type, in registration order."""
        with self._lock:
            return list(self._handlers.get(event_type_name, ()))

    def is_subscribed(self, event_type_name: str) -> bool:
        with self._lock:
            return event_type_name in self._handlers

    def event_types(self) -> list[str]:
        with self._lock:
            return list(self._handlers)

    def subscriptions(self) -> list[Subscription]:
        with self._lock:
            return [
                Subscription(event_type_name, identity)
                for event_type_name, handlers in self._handlers.items()
                for identity in handlers
            ]

    @property
    def is_empty(self) -> bool:
        with self._lock:
            return not self._handlers

    def clear(self) -> None:
        """Drop every subscription, notifying once per removed type."""
        with self._lock:
            removed = list(self._handlers)
            self._handlers.clear()
        for event_type_name in removed:
            self._notify_removed(event_type_name)

    def on_event_removed(self, callback: EventRemovedCallback) -> None:
        """Register a callback for when a type loses its last handler."""
        self._removed_callbacks.append(callback)

    def _notify_removed(self, event_type_name: str) -> None:
        for callback in list(self._removed_callbacks):
            try:
                callback(event_type_name)
            except Exception:
                logger.exception("Event-removed callback failed for %s", event_type_name)
