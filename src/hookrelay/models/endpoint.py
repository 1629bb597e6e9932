"""Subscriber endpoint model.

An endpoint is a registered URL plus its signing secret and the set of
event types it wants to receive.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from .base import generate_id, utcnow

# Subscribing to this pseudo event type delivers every event
WILDCARD_EVENT = "*"

_HTTP_URL: TypeAdapter[HttpUrl] = TypeAdapter(HttpUrl)


def is_valid_url(url: str) -> bool:
    """Check that a string is an absolute http(s) URL."""
    try:
        _HTTP_URL.validate_python(url)
    except PydanticValidationError:
        return False
    return True


class Endpoint(BaseModel):
    """A registered webhook subscriber.

    Attributes:
        id: Unique identifier for this endpoint.
        url: Absolute http(s) URL that receives deliveries.
        secret: Shared secret for HMAC-SHA256 signatures (server generated).
        events: Subscribed event types; "*" subscribes to all.
        enabled: Disabled endpoints receive nothing.
        description: Optional human-readable description.
        headers: Extra headers merged into every outbound request.
        metadata: Opaque caller-defined key/value data.
        created_at: When the endpoint was registered.
        updated_at: When the endpoint was last modified.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("whe"))
    url: str = Field(description="Absolute URL receiving deliveries")
    secret: str = Field(repr=False, description="Shared secret for HMAC-SHA256 signatures")
    events: list[str] = Field(default_factory=list, description="Subscribed event types")
    enabled: bool = Field(default=True, description="Whether endpoint is active")
    description: str | None = Field(default=None, description="Human-readable description")
    headers: dict[str, str] = Field(
        default_factory=dict, description="Custom headers sent with every delivery"
    )
    metadata: dict[str, Any] = Field(default_factory=dict, description="Opaque metadata")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("url")
    @classmethod
    def _validate_url(cls, value: str) -> str:
        if not is_valid_url(value):
            raise ValueError(f"invalid webhook URL: {value!r}")
        return value

    def subscribes_to(self, event_type: str) -> bool:
        """Check if this endpoint should receive the given event type."""
        if not self.enabled:
            return False
        return event_type in self.events or WILDCARD_EVENT in self.events

    def public_dict(self) -> dict[str, Any]:
        """Serialize for API consumers, without the secret."""
        return self.model_dump(mode="json", exclude={"secret"})


__all__ = [
    "WILDCARD_EVENT",
    "Endpoint",
    "is_valid_url",
]
