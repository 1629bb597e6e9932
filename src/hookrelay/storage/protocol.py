"""Store contract shared by every HookRelay storage backend.

Beyond plain CRUD, stores own four pieces of logic the dispatcher relies on:

- ``get_endpoints_for_event``: enabled endpoints subscribed to a type or "*"
- ``get_retriable_deliveries``: active deliveries due at ``now``, oldest first
- ``cleanup_older_than``: removes terminal deliveries only
- ``claim_delivery``: conditional lease so one worker attempts a delivery
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from hookrelay.models import (
    Delivery,
    DeliveryAttempt,
    DeliveryFilter,
    DeliveryStatus,
    Endpoint,
    Event,
)

ENDPOINT_UPDATABLE_FIELDS = frozenset(
    {"url", "secret", "events", "enabled", "description", "headers", "metadata"}
)
DELIVERY_UPDATABLE_FIELDS = frozenset(Delivery.model_fields) - {"id", "created_at"}


def check_fields(fields: dict[str, Any], allowed: frozenset[str], kind: str) -> None:
    """Reject partial updates naming fields a store may not change."""
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown {kind} fields: {sorted(unknown)}")


@runtime_checkable
class WebhookStore(Protocol):
    """Persistence for endpoints, events, deliveries, and attempts."""

    async def initialize(self) -> None: ...

    async def close(self) -> None: ...

    # Endpoints

    async def create_endpoint(self, endpoint: Endpoint) -> Endpoint: ...

    async def get_endpoint(self, endpoint_id: str) -> Endpoint | None: ...

    async def list_endpoints(self, enabled_only: bool = False) -> list[Endpoint]: ...

    async def update_endpoint(self, endpoint_id: str, **fields: Any) -> Endpoint | None: ...

    async def delete_endpoint(self, endpoint_id: str) -> bool: ...

    async def get_endpoints_for_event(self, event_type: str) -> list[Endpoint]: ...

    # Events

    async def save_event(self, event: Event) -> Event: ...

    async def delete_events_older_than(self, cutoff: datetime) -> int: ...

    # Deliveries

    async def create_delivery(self, delivery: Delivery) -> Delivery: ...

    async def get_delivery(self, delivery_id: str) -> Delivery | None: ...

    async def list_deliveries(self, filter: DeliveryFilter | None = None) -> list[Delivery]: ...

    async def update_delivery(self, delivery_id: str, **fields: Any) -> Delivery | None: ...

    async def increment_attempts(self, delivery_id: str) -> Delivery | None: ...

    async def get_retriable_deliveries(
        self, now: datetime, limit: int | None = None
    ) -> list[Delivery]: ...

    async def delete_delivery(self, delivery_id: str) -> bool: ...

    async def cleanup_older_than(self, days: int, now: datetime | None = None) -> int: ...

    async def count_by_status(
        self, endpoint_id: str | None = None
    ) -> dict[DeliveryStatus, int]: ...

    async def list_successful(self, endpoint_id: str | None = None) -> list[Delivery]: ...

    # Leases

    async def claim_delivery(
        self,
        delivery_id: str,
        owner: str,
        lease_seconds: float,
        now: datetime | None = None,
    ) -> Delivery | None: ...

    async def release_delivery(self, delivery_id: str, owner: str) -> None: ...

    # Attempt history

    async def add_attempt(self, attempt: DeliveryAttempt) -> DeliveryAttempt: ...

    async def list_attempts(self, delivery_id: str) -> list[DeliveryAttempt]: ...


__all__ = [
    "DELIVERY_UPDATABLE_FIELDS",
    "ENDPOINT_UPDATABLE_FIELDS",
    "WebhookStore",
    "check_fields",
]
