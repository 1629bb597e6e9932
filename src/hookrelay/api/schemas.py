"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from hookrelay.models import Delivery, DeliveryAttempt, DeliveryStatus, Endpoint


class EndpointCreateRequest(BaseModel):
    """Request body for registering an endpoint.

    Attributes:
        url: Absolute http(s) URL receiving deliveries.
        events: Subscribed event types; "*" subscribes to all.
        description: Optional human-readable description.
        headers: Extra headers sent with every delivery.
        metadata: Opaque caller-defined data.
        enabled: Whether the endpoint starts enabled.
    """

    model_config = ConfigDict(extra="forbid")

    url: str = Field(min_length=1, description="Webhook URL")
    events: list[str] = Field(default_factory=list, description="Subscribed event types")
    description: str | None = Field(default=None, max_length=1000)
    headers: dict[str, str] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True


class EndpointUpdateRequest(BaseModel):
    """Partial update of an endpoint. Omitted fields are left unchanged."""

    model_config = ConfigDict(extra="forbid")

    url: str | None = Field(default=None, min_length=1)
    events: list[str] | None = None
    description: str | None = Field(default=None, max_length=1000)
    headers: dict[str, str] | None = None
    metadata: dict[str, Any] | None = None
    enabled: bool | None = None


class EndpointResponse(BaseModel):
    """An endpoint as returned by list/get/update (no secret)."""

    model_config = ConfigDict(extra="forbid")

    id: str
    url: str
    events: list[str]
    enabled: bool
    description: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_endpoint(cls, endpoint: Endpoint) -> EndpointResponse:
        return cls.model_validate(endpoint.public_dict())


class EndpointSecretResponse(EndpointResponse):
    """An endpoint including its signing secret (create and rotate only)."""

    secret: str

    @classmethod
    def from_endpoint(cls, endpoint: Endpoint) -> EndpointSecretResponse:
        return cls.model_validate(endpoint.model_dump(mode="json"))


class EventPublishRequest(BaseModel):
    """Request body for publishing an event."""

    model_config = ConfigDict(extra="forbid")

    type: str = Field(min_length=1, description="Event type, e.g. 'order.created'")
    payload: dict[str, Any] = Field(default_factory=dict)
    endpoint_ids: list[str] | None = Field(
        default=None, description="Deliver only to these endpoints"
    )


class EventPublishResponse(BaseModel):
    """Acknowledgement that an event was accepted for delivery."""

    model_config = ConfigDict(extra="forbid")

    id: str
    type: str
    occurred_at: datetime


class DeliveryResponse(BaseModel):
    """A delivery record (lease columns omitted)."""

    model_config = ConfigDict(extra="forbid")

    id: str
    endpoint_id: str
    event_id: str
    event_type: str
    status: DeliveryStatus
    attempts: int
    max_attempts: int
    next_retry_at: datetime | None = None
    response_status: int | None = None
    response_body: str | None = None
    error: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    last_attempt_at: datetime | None = None
    delivered_at: datetime | None = None

    @classmethod
    def from_delivery(cls, delivery: Delivery) -> DeliveryResponse:
        return cls.model_validate(delivery.model_dump(exclude={"locked_by", "locked_until"}))


class DeliveryListResponse(BaseModel):
    """A page of deliveries."""

    model_config = ConfigDict(extra="forbid")

    deliveries: list[DeliveryResponse]
    count: int
    limit: int
    offset: int


class AttemptResponse(BaseModel):
    """One network try of a delivery."""

    model_config = ConfigDict(extra="forbid")

    id: str
    attempt: int
    status_code: int | None = None
    response_body: str | None = None
    error: str | None = None
    timestamp: datetime
    duration_ms: float

    @classmethod
    def from_attempt(cls, attempt: DeliveryAttempt) -> AttemptResponse:
        return cls.model_validate(attempt.model_dump(exclude={"delivery_id"}))


class AttemptListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    delivery_id: str
    attempts: list[AttemptResponse]


class StatsResponse(BaseModel):
    """Delivery statistics."""

    model_config = ConfigDict(extra="forbid")

    endpoint_id: str | None = None
    total: int
    pending: int
    retrying: int
    success: int
    failed: int
    in_progress: int
    success_rate: float = Field(ge=0.0, le=1.0)
    average_delivery_time_ms: float


class CleanupRequest(BaseModel):
    """Request body for retention cleanup."""

    model_config = ConfigDict(extra="forbid")

    older_than_days: int | None = Field(
        default=None, description="Retention in days (server default if omitted)"
    )


class CleanupResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    deliveries_deleted: int
    events_deleted: int
    cutoff: datetime


class HealthResponse(BaseModel):
    """Response for health check endpoint.

    Attributes:
        status: Service status (healthy, unhealthy).
        version: API version.
        storage_connected: Whether storage is initialized.
    """

    model_config = ConfigDict(extra="forbid")

    status: Literal["healthy", "unhealthy"]
    version: str
    storage_connected: bool


__all__ = [
    "AttemptListResponse",
    "AttemptResponse",
    "CleanupRequest",
    "CleanupResponse",
    "DeliveryListResponse",
    "DeliveryResponse",
    "EndpointCreateRequest",
    "EndpointResponse",
    "EndpointSecretResponse",
    "EndpointUpdateRequest",
    "EventPublishRequest",
    "EventPublishResponse",
    "HealthResponse",
    "StatsResponse",
]
