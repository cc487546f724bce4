"""
Integration Event Types

Defines the immutable integration event envelope exchanged between services.
"""

import uuid
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field

PayloadModel = TypeVar("PayloadModel", bound=BaseModel)


class IntegrationEvent(BaseModel):
    """A fact about a completed local change that other services react to.

    ``type_name`` is the routing key on the wire. ``payload`` must be
    JSON-compatible and is treated as read-only.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    type_name: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def create(
        cls,
        type_name: str,
        payload: BaseModel | Mapping[str, Any] | None = None,
        **kwargs: Any,
    ) -> "IntegrationEvent":
        """Build an event from a payload model or mapping."""
        if isinstance(payload, BaseModel):
            data = payload.model_dump(mode="json")
        else:
            data = dict(payload or {})
        return cls(type_name=type_name, payload=data, **kwargs)

    def payload_as(self, model: type[PayloadModel]) -> PayloadModel:
        """Validate the payload into a typed model."""
        return model.model_validate(self.payload)

    def __repr__(self) -> str:
        return f"<IntegrationEvent(id={self.id}, type_name={self.type_name})>"
