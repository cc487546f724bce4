"""
Integration event serialization.

Events travel as UTF-8 JSON documents holding the whole envelope: id,
occurrence time, type name and payload.
"""

import logging

from pydantic import ValidationError
from pydantic_core import PydanticSerializationError

from ..exceptions import SerializationError
from .registry import EVENT_REGISTRY, EventTypeRegistry
from .types import IntegrationEvent

logger = logging.getLogger(__name__)

CONTENT_TYPE = "application/json"


class IntegrationEventSerializer:
    """JSON codec for :class:`IntegrationEvent`."""

    content_type = CONTENT_TYPE

    def __init__(self, registry: EventTypeRegistry | None = None):
        self.registry = registry or EVENT_REGISTRY

    def serialize(self, event: IntegrationEvent) -> bytes:
        """Encode an event.

        Raises:
            SerializationError: If the payload is not JSON-compatible or does
                not match its registered model.
        """
        self.registry.validate(event)
        try:
            return event.model_dump_json().encode("utf-8")
        except (PydanticSerializationError, TypeError, ValueError) as e:
            raise SerializationError(
                f"Cannot serialize event {event.id} ({event.type_name}): {e}",
                event_id=event.id,
                cause=e,
            ) from e

    def deserialize(self, data: bytes | str, type_name: str | None = None) -> IntegrationEvent:
        """Decode an event, optionally checking it carries the expected type.

        Raises:
            SerializationError: If the document is malformed, carries another
                type name, or fails payload validation.
        """
        try:
            event = IntegrationEvent.model_validate_json(data)
        except (ValidationError, UnicodeDecodeError) as e:
            raise SerializationError(f"Malformed integration event: {e}", cause=e) from e

        if type_name and event.type_name != type_name:
            raise SerializationError(
                f"Event {event.id} declares type {event.type_name} but arrived as {type_name}",
                event_id=event.id,
            )

        self.registry.validate(event)
        return event
