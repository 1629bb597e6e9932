"""Delivery tracking models.

A Delivery is one endpoint's record for one event and owns its own
retry/backoff state. Each network try is logged as a DeliveryAttempt.

Lifecycle:
    pending -> retrying -> success | failed

``success`` and ``failed`` are terminal; only a manual retry moves a
``failed`` delivery back to ``pending``.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .base import generate_id, utcnow

# Response bodies are kept for debugging only
RESPONSE_BODY_LIMIT = 1000


class DeliveryStatus(str, Enum):
    """Delivery lifecycle states."""

    PENDING = "pending"
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({DeliveryStatus.SUCCESS, DeliveryStatus.FAILED})
ACTIVE_STATUSES = frozenset({DeliveryStatus.PENDING, DeliveryStatus.RETRYING})

# Fields written back to the store after an attempt completes
OUTCOME_FIELDS = frozenset(
    {
        "status",
        "next_retry_at",
        "response_status",
        "response_body",
        "error",
        "delivered_at",
    }
)


def _truncate(body: str | None, limit: int) -> str | None:
    if body is None:
        return None
    return body[:limit]


class Delivery(BaseModel):
    """Record of delivering one event to one endpoint.

    Attributes:
        id: Unique identifier for this delivery.
        endpoint_id: Endpoint receiving the event.
        event_id: Event being delivered.
        event_type: Type of the event (copied for filtering).
        status: Lifecycle state.
        attempts: Network tries made so far (never exceeds max_attempts).
        max_attempts: Attempt budget fixed at creation.
        next_retry_at: When the poller should try again (active states only).
        response_status: HTTP status of the latest response.
        response_body: Latest response body (truncated).
        error: Latest error message.
        payload: Frozen copy of the event payload taken at creation.
        created_at: When the delivery was created.
        last_attempt_at: When the latest try started.
        delivered_at: When the subscriber acknowledged with a 2xx.
        locked_by: Worker currently holding the delivery lease.
        locked_until: Lease expiry; expired leases can be reclaimed.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("dlv"))
    endpoint_id: str = Field(description="Endpoint receiving the event")
    event_id: str = Field(description="Event being delivered")
    event_type: str = Field(description="Event type")
    status: DeliveryStatus = Field(default=DeliveryStatus.PENDING)
    attempts: int = Field(default=0, ge=0, description="Attempts made so far")
    max_attempts: int = Field(default=5, ge=1, description="Attempt budget")
    next_retry_at: datetime | None = Field(default=None)
    response_status: int | None = Field(default=None)
    response_body: str | None = Field(default=None)
    error: str | None = Field(default=None)
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    last_attempt_at: datetime | None = Field(default=None)
    delivered_at: datetime | None = Field(default=None)
    locked_by: str | None = Field(default=None)
    locked_until: datetime | None = Field(default=None)

    @property
    def is_terminal(self) -> bool:
        """Whether the delivery reached success or failed."""
        return self.status in TERMINAL_STATUSES

    def is_due(self, now: datetime) -> bool:
        """Whether the poller should pick this delivery up at ``now``."""
        return (
            self.status in ACTIVE_STATUSES
            and self.next_retry_at is not None
            and self.next_retry_at <= now
        )

    def is_locked(self, now: datetime) -> bool:
        """Whether a worker holds an unexpired lease."""
        return self.locked_until is not None and self.locked_until > now

    def mark_success(
        self,
        response_status: int,
        response_body: str | None = None,
        limit: int = RESPONSE_BODY_LIMIT,
    ) -> Delivery:
        """Mark delivery as successful."""
        self.status = DeliveryStatus.SUCCESS
        self.delivered_at = utcnow()
        self.next_retry_at = None
        self.error = None
        self.response_status = response_status
        self.response_body = _truncate(response_body, limit)
        return self

    def mark_failed(
        self,
        error: str,
        response_status: int | None = None,
        response_body: str | None = None,
        limit: int = RESPONSE_BODY_LIMIT,
    ) -> Delivery:
        """Mark delivery as failed (no more retries)."""
        self.status = DeliveryStatus.FAILED
        self.next_retry_at = None
        self.error = error
        self.response_status = response_status
        self.response_body = _truncate(response_body, limit)
        return self

    def mark_retrying(
        self,
        next_retry_at: datetime,
        error: str,
        response_status: int | None = None,
        response_body: str | None = None,
        limit: int = RESPONSE_BODY_LIMIT,
    ) -> Delivery:
        """Schedule another attempt."""
        self.status = DeliveryStatus.RETRYING
        self.next_retry_at = next_retry_at
        self.error = error
        self.response_status = response_status
        self.response_body = _truncate(response_body, limit)
        return self

    def outcome(self) -> dict[str, Any]:
        """Fields produced by an attempt, for a partial store update."""
        return {name: getattr(self, name) for name in OUTCOME_FIELDS}


class DeliveryAttempt(BaseModel):
    """Log entry for a single network try of a delivery."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("att"))
    delivery_id: str
    attempt: int = Field(ge=1, description="1-based attempt number")
    status_code: int | None = None
    response_body: str | None = None
    error: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)
    duration_ms: float = Field(default=0.0, ge=0.0)


class DeliveryFilter(BaseModel):
    """Query parameters for listing deliveries."""

    model_config = ConfigDict(extra="forbid")

    endpoint_id: str | None = None
    event_type: str | None = None
    status: DeliveryStatus | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)

    def matches(self, delivery: Delivery) -> bool:
        """Check a delivery against every set criterion."""
        if self.endpoint_id is not None and delivery.endpoint_id != self.endpoint_id:
            return False
        if self.event_type is not None and delivery.event_type != self.event_type:
            return False
        if self.status is not None and delivery.status != self.status:
            return False
        if self.start_date is not None and delivery.created_at < self.start_date:
            return False
        if self.end_date is not None and delivery.created_at > self.end_date:
            return False
        return True


class DeliveryStats(BaseModel):
    """Aggregate delivery counts, optionally scoped to one endpoint.

    ``success_rate`` is a fraction in [0, 1]. ``average_delivery_time_ms``
    is the mean of ``delivered_at - created_at`` over successful deliveries.
    """

    model_config = ConfigDict(extra="forbid")

    endpoint_id: str | None = None
    total: int = Field(default=0, ge=0)
    pending: int = Field(default=0, ge=0)
    retrying: int = Field(default=0, ge=0)
    success: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    success_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    average_delivery_time_ms: float = Field(default=0.0, ge=0.0)

    @property
    def in_progress(self) -> int:
        """Deliveries that may still be attempted."""
        return self.pending + self.retrying

    @classmethod
    def from_counts(
        cls,
        counts: dict[DeliveryStatus, int],
        delivery_times: list[timedelta],
        endpoint_id: str | None = None,
    ) -> DeliveryStats:
        """Build stats from per-status counts and successful delivery durations."""
        total = sum(counts.values())
        success = counts.get(DeliveryStatus.SUCCESS, 0)
        average_ms = 0.0
        if delivery_times:
            total_ms = sum(d.total_seconds() * 1000 for d in delivery_times)
            average_ms = max(0.0, total_ms / len(delivery_times))
        return cls(
            endpoint_id=endpoint_id,
            total=total,
            pending=counts.get(DeliveryStatus.PENDING, 0),
            retrying=counts.get(DeliveryStatus.RETRYING, 0),
            success=success,
            failed=counts.get(DeliveryStatus.FAILED, 0),
            success_rate=success / total if total else 0.0,
            average_delivery_time_ms=average_ms,
        )


__all__ = [
    "ACTIVE_STATUSES",
    "OUTCOME_FIELDS",
    "RESPONSE_BODY_LIMIT",
    "TERMINAL_STATUSES",
    "Delivery",
    "DeliveryAttempt",
    "DeliveryFilter",
    "DeliveryStats",
    "DeliveryStatus",
]
