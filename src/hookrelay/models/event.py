"""Published event model."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .base import generate_id, utcnow


class Event(BaseModel):
    """An internally published occurrence fanned out to subscribers.

    Attributes:
        id: Unique identifier for this event.
        type: Free-form event type, e.g. "order.created".
        payload: Event-specific data delivered as the envelope's ``data``.
        occurred_at: When the event was published.
        endpoint_ids: Explicit target endpoints; None targets all subscribers.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("evt"))
    type: str = Field(min_length=1, description="Event type")
    payload: dict[str, Any] = Field(default_factory=dict, description="Event payload")
    occurred_at: datetime = Field(default_factory=utcnow)
    endpoint_ids: list[str] | None = Field(
        default=None, description="Restrict delivery to these endpoint ids"
    )

    def targets(self, endpoint_id: str) -> bool:
        """Check whether the explicit target list (if any) includes an endpoint."""
        return self.endpoint_ids is None or endpoint_id in self.endpoint_ids


__all__ = ["Event"]
