"""Event, delivery, lease, and attempt storage operations for the Qdrant store."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from qdrant_client import models

from hookrelay.models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Delivery,
    DeliveryAttempt,
    DeliveryFilter,
    DeliveryStatus,
    Event,
    utcnow,
)

from .base import match, match_any, time_range
from .protocol import DELIVERY_UPDATABLE_FIELDS, check_fields

logger = logging.getLogger(__name__)


def _status_values(statuses: frozenset[DeliveryStatus]) -> list[str]:
    return sorted(s.value for s in statuses)


class DeliveryMixin:
    """Mixin providing event and delivery operations for QdrantWebhookStore.

    This mixin expects the same primitives as EndpointMixin, plus
    ``_count(kind, filter) -> int``.
    """

    _upsert: Any
    _retrieve: Any
    _scroll: Any
    _delete: Any
    _count: Any
    _payload_to_row: Any

    # Events

    async def save_event(self, event: Event) -> Event:
        """Store a published event."""
        await self._upsert("events", event.id, event)
        return event

    async def delete_events_older_than(self, cutoff: datetime) -> int:
        """Delete events that occurred before ``cutoff``."""
        payloads = await self._scroll(
            "events", models.Filter(must=[time_range("occurred_at", lt=cutoff)])
        )
        event_ids = [p["id"] for p in payloads]
        await self._delete("events", event_ids)
        return len(event_ids)

    # Deliveries

    async def create_delivery(self, delivery: Delivery) -> Delivery:
        """Store a new delivery."""
        await self._upsert("deliveries", delivery.id, delivery)
        return delivery.model_copy(deep=True)

    async def get_delivery(self, delivery_id: str) -> Delivery | None:
        """Get a delivery by ID."""
        payload = await self._retrieve("deliveries", delivery_id)
        if payload is None:
            return None
        delivery: Delivery = self._payload_to_row("deliveries", payload, Delivery)
        return delivery

    async def list_deliveries(self, filter: DeliveryFilter | None = None) -> list[Delivery]:
        """List deliveries matching a filter, newest first."""
        filter = filter or DeliveryFilter()

        conditions: list[models.Condition] = []
        if filter.endpoint_id is not None:
            conditions.append(match("endpoint_id", filter.endpoint_id))
        if filter.event_type is not None:
            conditions.append(match("event_type", filter.event_type))
        if filter.status is not None:
            conditions.append(match("status", filter.status.value))
        if filter.start_date is not None or filter.end_date is not None:
            conditions.append(
                time_range("created_at", gte=filter.start_date, lte=filter.end_date)
            )

        payloads = await self._scroll(
            "deliveries", models.Filter(must=conditions) if conditions else None
        )
        deliveries: list[Delivery] = [
            self._payload_to_row("deliveries", p, Delivery) for p in payloads
        ]
        deliveries.sort(key=lambda d: d.created_at, reverse=True)
        return deliveries[filter.offset : filter.offset + filter.limit]

    async def update_delivery(self, delivery_id: str, **fields: Any) -> Delivery | None:
        """Apply a partial update; a None value clears the field."""
        check_fields(fields, DELIVERY_UPDATABLE_FIELDS, "delivery")
        current = await self.get_delivery(delivery_id)
        if current is None:
            return None
        updated = current.model_copy(update=fields, deep=True)
        await self._upsert("deliveries", delivery_id, updated)
        return updated

    async def increment_attempts(self, delivery_id: str) -> Delivery | None:
        current = await self.get_delivery(delivery_id)
        if current is None:
            return None
        return await self.update_delivery(delivery_id, attempts=current.attempts + 1)

    async def get_retriable_deliveries(
        self, now: datetime, limit: int | None = None
    ) -> list[Delivery]:
        """Active deliveries whose ``next_retry_at`` has passed, oldest first."""
        payloads = await self._scroll(
            "deliveries",
            models.Filter(
                must=[
                    match_any("status", _status_values(ACTIVE_STATUSES)),
                    time_range("next_retry_at", lte=now),
                ]
            ),
        )
        due: list[Delivery] = [self._payload_to_row("deliveries", p, Delivery) for p in payloads]
        due.sort(key=lambda d: d.next_retry_at or d.created_at)
        return due[:limit] if limit is not None else due

    async def delete_delivery(self, delivery_id: str) -> bool:
        if await self._retrieve("deliveries", delivery_id) is None:
            return False
        await self._delete_attempts([delivery_id])
        await self._delete("deliveries", [delivery_id])
        return True

    async def cleanup_older_than(self, days: int, now: datetime | None = None) -> int:
        """Delete success/failed deliveries created more than ``days`` ago.

        Pending and retrying deliveries are never removed. Attempt rows of
        removed deliveries go with them.
        """
        cutoff = (now or utcnow()) - timedelta(days=days)
        payloads = await self._scroll(
            "deliveries",
            models.Filter(
                must=[
                    match_any("status", _status_values(TERMINAL_STATUSES)),
                    time_range("created_at", lt=cutoff),
                ]
            ),
        )
        delivery_ids = [p["id"] for p in payloads]
        await self._delete_attempts(delivery_ids)
        await self._delete("deliveries", delivery_ids)
        logger.debug("Removed %d terminal deliveries older than %s", len(delivery_ids), cutoff)
        return len(delivery_ids)

    async def count_by_status(self, endpoint_id: str | None = None) -> dict[DeliveryStatus, int]:
        counts: dict[DeliveryStatus, int] = {}
        for status in DeliveryStatus:
            conditions = [match("status", status.value)]
            if endpoint_id is not None:
                conditions.append(match("endpoint_id", endpoint_id))
            counts[status] = await self._count("deliveries", models.Filter(must=conditions))
        return counts

    async def list_successful(self, endpoint_id: str | None = None) -> list[Delivery]:
        conditions = [match("status", DeliveryStatus.SUCCESS.value)]
        if endpoint_id is not None:
            conditions.append(match("endpoint_id", endpoint_id))
        payloads = await self._scroll("deliveries", models.Filter(must=conditions))
        return [self._payload_to_row("deliveries", p, Delivery) for p in payloads]

    # Leases

    async def claim_delivery(
        self,
        delivery_id: str,
        owner: str,
        lease_seconds: float,
        now: datetime | None = None,
    ) -> Delivery | None:
        """Take the delivery lease unless another owner holds an unexpired one.

        Qdrant has no compare-and-set, so this is a read-check-write: two
        processes racing on the same row can both succeed.
        """
        current = await self.get_delivery(delivery_id)
        if current is None:
            return None
        now = now or utcnow()
        if current.is_locked(now) and current.locked_by != owner:
            return None
        return await self.update_delivery(
            delivery_id,
            locked_by=owner,
            locked_until=now + timedelta(seconds=lease_seconds),
        )

    async def release_delivery(self, delivery_id: str, owner: str) -> None:
        current = await self.get_delivery(delivery_id)
        if current is not None and current.locked_by == owner:
            await self.update_delivery(delivery_id, locked_by=None, locked_until=None)

    # Attempt history

    async def add_attempt(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        await self._upsert("attempts", attempt.id, attempt)
        return attempt

    async def list_attempts(self, delivery_id: str) -> list[DeliveryAttempt]:
        payloads = await self._scroll(
            "attempts", models.Filter(must=[match("delivery_id", delivery_id)])
        )
        attempts: list[DeliveryAttempt] = [
            self._payload_to_row("attempts", p, DeliveryAttempt) for p in payloads
        ]
        attempts.sort(key=lambda a: a.attempt)
        return attempts

    async def _delete_attempts(self, delivery_ids: list[str]) -> None:
        if not delivery_ids:
            return
        payloads = await self._scroll(
            "attempts", models.Filter(must=[match_any("delivery_id", delivery_ids)])
        )
        await self._delete("attempts", [p["id"] for p in payloads])


__all__ = ["DeliveryMixin"]
