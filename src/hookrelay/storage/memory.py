"""In-process storage backend.

Keeps every row in dictionaries owned by the store. Callers always receive
deep copies, so mutating a returned model never changes stored state.

All methods run to completion without suspending, so on a single event
loop each operation (including ``claim_delivery``) is atomic.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any

from hookrelay.models import (
    TERMINAL_STATUSES,
    Delivery,
    DeliveryAttempt,
    DeliveryFilter,
    DeliveryStatus,
    Endpoint,
    Event,
    utcnow,
)

from .protocol import DELIVERY_UPDATABLE_FIELDS, ENDPOINT_UPDATABLE_FIELDS, check_fields

logger = logging.getLogger(__name__)


class InMemoryWebhookStore:
    """Dictionary-backed WebhookStore.

    Suitable for tests and single-process deployments where delivery
    history does not need to survive a restart.
    """

    def __init__(self) -> None:
        self._endpoints: dict[str, Endpoint] = {}
        self._events: dict[str, Event] = {}
        self._deliveries: dict[str, Delivery] = {}
        self._attempts: dict[str, list[DeliveryAttempt]] = {}

    async def initialize(self) -> None:
        """Nothing to set up."""

    async def close(self) -> None:
        """Nothing to tear down; data is kept until the store is discarded."""

    async def __aenter__(self) -> InMemoryWebhookStore:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # Endpoints

    async def create_endpoint(self, endpoint: Endpoint) -> Endpoint:
        self._endpoints[endpoint.id] = endpoint.model_copy(deep=True)
        return endpoint.model_copy(deep=True)

    async def get_endpoint(self, endpoint_id: str) -> Endpoint | None:
        endpoint = self._endpoints.get(endpoint_id)
        return endpoint.model_copy(deep=True) if endpoint else None

    async def list_endpoints(self, enabled_only: bool = False) -> list[Endpoint]:
        endpoints = [
            e.model_copy(deep=True)
            for e in self._endpoints.values()
            if e.enabled or not enabled_only
        ]
        endpoints.sort(key=lambda e: e.created_at, reverse=True)
        return endpoints

    async def update_endpoint(self, endpoint_id: str, **fields: Any) -> Endpoint | None:
        check_fields(fields, ENDPOINT_UPDATABLE_FIELDS, "endpoint")
        current = self._endpoints.get(endpoint_id)
        if current is None:
            return None
        # Re-validate so an invalid URL can never be stored
        updated = Endpoint.model_validate(
            {**current.model_dump(), **fields, "updated_at": utcnow()}
        )
        self._endpoints[endpoint_id] = updated
        return updated.model_copy(deep=True)

    async def delete_endpoint(self, endpoint_id: str) -> bool:
        return self._endpoints.pop(endpoint_id, None) is not None

    async def get_endpoints_for_event(self, event_type: str) -> list[Endpoint]:
        return [
            e.model_copy(deep=True)
            for e in self._endpoints.values()
            if e.subscribes_to(event_type)
        ]

    # Events

    async def save_event(self, event: Event) -> Event:
        self._events[event.id] = event.model_copy(deep=True)
        return event

    async def delete_events_older_than(self, cutoff: datetime) -> int:
        stale = [eid for eid, e in self._events.items() if e.occurred_at < cutoff]
        for event_id in stale:
            del self._events[event_id]
        return len(stale)

    # Deliveries

    async def create_delivery(self, delivery: Delivery) -> Delivery:
        self._deliveries[delivery.id] = delivery.model_copy(deep=True)
        self._attempts.setdefault(delivery.id, [])
        return delivery.model_copy(deep=True)

    async def get_delivery(self, delivery_id: str) -> Delivery | None:
        delivery = self._deliveries.get(delivery_id)
        return delivery.model_copy(deep=True) if delivery else None

    async def list_deliveries(self, filter: DeliveryFilter | None = None) -> list[Delivery]:
        filter = filter or DeliveryFilter()
        results = [d for d in self._deliveries.values() if filter.matches(d)]
        results.sort(key=lambda d: d.created_at, reverse=True)
        page = results[filter.offset : filter.offset + filter.limit]
        return [d.model_copy(deep=True) for d in page]

    async def update_delivery(self, delivery_id: str, **fields: Any) -> Delivery | None:
        check_fields(fields, DELIVERY_UPDATABLE_FIELDS, "delivery")
        current = self._deliveries.get(delivery_id)
        if current is None:
            return None
        updated = current.model_copy(update=fields, deep=True)
        self._deliveries[delivery_id] = updated
        return updated.model_copy(deep=True)

    async def increment_attempts(self, delivery_id: str) -> Delivery | None:
        current = self._deliveries.get(delivery_id)
        if current is None:
            return None
        current.attempts += 1
        return current.model_copy(deep=True)

    async def get_retriable_deliveries(
        self, now: datetime, limit: int | None = None
    ) -> list[Delivery]:
        due = [d for d in self._deliveries.values() if d.is_due(now)]
        due.sort(key=lambda d: d.next_retry_at or d.created_at)
        if limit is not None:
            due = due[:limit]
        return [d.model_copy(deep=True) for d in due]

    async def delete_delivery(self, delivery_id: str) -> bool:
        self._attempts.pop(delivery_id, None)
        return self._deliveries.pop(delivery_id, None) is not None

    async def cleanup_older_than(self, days: int, now: datetime | None = None) -> int:
        cutoff = (now or utcnow()) - timedelta(days=days)
        stale = [
            d.id
            for d in self._deliveries.values()
            if d.status in TERMINAL_STATUSES and d.created_at < cutoff
        ]
        for delivery_id in stale:
            del self._deliveries[delivery_id]
            self._attempts.pop(delivery_id, None)
        logger.debug("Removed %d terminal deliveries older than %s", len(stale), cutoff)
        return len(stale)

    async def count_by_status(self, endpoint_id: str | None = None) -> dict[DeliveryStatus, int]:
        counts = Counter(
            d.status
            for d in self._deliveries.values()
            if endpoint_id is None or d.endpoint_id == endpoint_id
        )
        return {status: counts.get(status, 0) for status in DeliveryStatus}

    async def list_successful(self, endpoint_id: str | None = None) -> list[Delivery]:
        return [
            d.model_copy(deep=True)
            for d in self._deliveries.values()
            if d.status == DeliveryStatus.SUCCESS
            and (endpoint_id is None or d.endpoint_id == endpoint_id)
        ]

    # Leases

    async def claim_delivery(
        self,
        delivery_id: str,
        owner: str,
        lease_seconds: float,
        now: datetime | None = None,
    ) -> Delivery | None:
        current = self._deliveries.get(delivery_id)
        if current is None:
            return None
        now = now or utcnow()
        if current.is_locked(now) and current.locked_by != owner:
            return None
        current.locked_by = owner
        current.locked_until = now + timedelta(seconds=lease_seconds)
        return current.model_copy(deep=True)

    async def release_delivery(self, delivery_id: str, owner: str) -> None:
        current = self._deliveries.get(delivery_id)
        if current is not None and current.locked_by == owner:
            current.locked_by = None
            current.locked_until = None

    # Attempt history

    async def add_attempt(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        self._attempts.setdefault(attempt.delivery_id, []).append(attempt.model_copy(deep=True))
        return attempt

    async def list_attempts(self, delivery_id: str) -> list[DeliveryAttempt]:
        attempts = sorted(self._attempts.get(delivery_id, []), key=lambda a: a.attempt)
        return [a.model_copy(deep=True) for a in attempts]


__all__ = ["InMemoryWebhookStore"]
