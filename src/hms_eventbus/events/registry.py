"""
Event type registry.

Explicit table from event type name to the pydantic model describing its
payload, built once at process startup.
"""

import logging
import threading
from collections.abc import Callable
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from ..exceptions import SerializationError
from .types import IntegrationEvent

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=type[BaseModel])


class EventTypeRegistry:
    """Registry for event types."""

    def __init__(self):
        self._models: dict[str, type[BaseModel] | None] = {}
        self._names: dict[type[BaseModel], str] = {}
        self._lock = threading.Lock()

    def register(self, type_name: str, payload_model: type[BaseModel] | None = None) -> None:
        """Register an event type, optionally with its payload model."""
        with self._lock:
            existing = self._models.get(type_name)
            if existing is not None and payload_model is not None and existing is not payload_model:
                raise ValueError(
                    f"Event type {type_name} already registered with {existing.__name__}"
                )
            if payload_model is not None or type_name not in self._models:
                self._models[type_name] = payload_model
            if payload_model is not None:
                self._names[payload_model] = type_name
        logger.debug("Registered event type: %s", type_name)

    def get(self, type_name: str) -> type[BaseModel] | None:
        """Get the payload model for a type name."""
        return self._models.get(type_name)

    def type_name_for(self, payload_model: type[BaseModel]) -> str:
        """Reverse lookup from payload model to type name."""
        try:
            return self._names[payload_model]
        except KeyError:
            raise KeyError(f"{payload_model.__name__} is not a registered event payload") from None

    def is_registered(self, type_name: str) -> bool:
        return type_name in self._models

    def list_types(self) -> list[str]:
        """List all registered event types."""
        return list(self._models)

    def validate(self, event: IntegrationEvent) -> None:
        """Check an event's payload against its registered model.

        Raises:
            SerializationError: If the payload does not fit the model.
        """
        model = self._models.get(event.type_name)
        if model is None:
            return
        try:
            model.model_validate(event.payload)
        except ValidationError as e:
            raise SerializationError(
                f"Payload of {event.type_name} does not match {model.__name__}: {e}",
                event_id=event.id,
                cause=e,
            ) from e


# Global event registry
EVENT_REGISTRY = EventTypeRegistry()


def register_event(
    type_name: str | None = None, registry: EventTypeRegistry | None = None
) -> Callable[[ModelT], ModelT]:
    """Decorator registering a payload model under an event type name.

    The class name is used when no name is given.
    """

    def decorator(payload_model: ModelT) -> ModelT:
        (registry or EVENT_REGISTRY).register(type_name or payload_model.__name__, payload_model)
        return payload_model

    return decorator
