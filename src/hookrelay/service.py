"""Management service layer for HookRelay.

Validates management input, turns missing rows into NotFoundError, and
delegates to the store and dispatcher. The HTTP API is a thin shell over
this class.

Example:
    ```python
    from hookrelay.service import WebhookService

    async with WebhookService.create() as service:
        endpoint = await service.create_endpoint(
            url="https://example.com/hooks",
            events=["order.created"],
        )
        await service.publish_event("order.created", {"order_id": 42})
    ```
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from hookrelay.config import Settings
from hookrelay.exceptions import NotFoundError, ValidationError
from hookrelay.models import (
    Delivery,
    DeliveryAttempt,
    DeliveryFilter,
    DeliveryStats,
    Endpoint,
    Event,
    is_valid_url,
    utcnow,
)
from hookrelay.storage import WebhookStore, create_store
from hookrelay.webhooks import WebhookDispatcher, generate_secret

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CleanupResult:
    """Outcome of a retention cleanup."""

    deliveries_deleted: int
    events_deleted: int
    cutoff: datetime


def _validate_url(url: str) -> str:
    if not isinstance(url, str) or not is_valid_url(url):
        raise ValidationError("url", f"Invalid webhook URL: {url!r}")
    return url


def _validate_events(events: list[str] | None) -> list[str]:
    if events is None:
        return []
    for event_type in events:
        if not isinstance(event_type, str) or not event_type.strip():
            raise ValidationError("events", "Event types must be non-empty strings")
    # Preserve order, drop duplicates
    return list(dict.fromkeys(events))


def _validate_headers(headers: dict[str, str] | None) -> dict[str, str]:
    if headers is None:
        return {}
    for name, value in headers.items():
        if not name or not isinstance(value, str):
            raise ValidationError("headers", "Header names and values must be strings")
    return dict(headers)


@dataclass
class WebhookService:
    """High-level webhook management.

    This service provides:
    - Endpoint registration, update, secret rotation, and removal
    - Event publishing (delegated to the dispatcher)
    - Delivery inspection, attempt history, and manual retry
    - Delivery statistics and retention cleanup

    Attributes:
        store: Endpoint and delivery persistence.
        dispatcher: Delivery engine sharing the same store.
        settings: Configuration settings.
    """

    store: WebhookStore
    dispatcher: WebhookDispatcher
    settings: Settings
    _initialized: bool = field(default=False, init=False, repr=False)

    @classmethod
    def create(cls, settings: Settings | None = None) -> WebhookService:
        """Create a WebhookService with default dependencies."""
        if settings is None:
            settings = Settings()
        store = create_store(settings)
        return cls(
            store=store,
            dispatcher=WebhookDispatcher(store, settings=settings),
            settings=settings,
        )

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self, start_poller: bool = True) -> None:
        """Initialize storage and optionally start the retry poller."""
        await self.store.initialize()
        if start_poller:
            self.dispatcher.start()
        self._initialized = True

    async def close(self) -> None:
        """Stop the dispatcher and close storage."""
        await self.dispatcher.close()
        await self.store.close()
        self._initialized = False

    async def __aenter__(self) -> WebhookService:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # Endpoints

    async def create_endpoint(
        self,
        url: str,
        events: list[str] | None = None,
        description: str | None = None,
        headers: dict[str, str] | None = None,
        metadata: dict[str, Any] | None = None,
        enabled: bool = True,
    ) -> Endpoint:
        """Register an endpoint with a freshly generated secret.

        The returned endpoint carries the secret; this and
        ``rotate_secret`` are the only places it is handed out.
        """
        endpoint = Endpoint(
            url=_validate_url(url),
            secret=generate_secret(),
            events=_validate_events(events),
            enabled=enabled,
            description=description,
            headers=_validate_headers(headers),
            metadata=metadata or {},
        )
        created = await self.store.create_endpoint(endpoint)
        logger.info("Endpoint %s registered for %s", created.id, created.events)
        return created

    async def list_endpoints(self, enabled_only: bool = False) -> list[Endpoint]:
        return await self.store.list_endpoints(enabled_only=enabled_only)

    async def get_endpoint(self, endpoint_id: str) -> Endpoint:
        endpoint = await self.store.get_endpoint(endpoint_id)
        if endpoint is None:
            raise NotFoundError("endpoint", endpoint_id)
        return endpoint

    async def update_endpoint(self, endpoint_id: str, **fields: Any) -> Endpoint:
        """Apply a partial update.

        Only url, events, enabled, description, headers, and metadata may
        change; the secret changes through ``rotate_secret``.

        Raises:
            ValidationError: On an unknown field or invalid value.
            NotFoundError: If the endpoint does not exist.
        """
        allowed = {"url", "events", "enabled", "description", "headers", "metadata"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValidationError(sorted(unknown)[0], "Field cannot be updated")

        if "url" in fields:
            fields["url"] = _validate_url(fields["url"])
        if "events" in fields:
            fields["events"] = _validate_events(fields["events"])
        if "headers" in fields:
            fields["headers"] = _validate_headers(fields["headers"])
        if "metadata" in fields and fields["metadata"] is None:
            fields["metadata"] = {}

        updated = await self.store.update_endpoint(endpoint_id, **fields)
        if updated is None:
            raise NotFoundError("endpoint", endpoint_id)
        return updated

    async def delete_endpoint(self, endpoint_id: str) -> None:
        """Remove an endpoint. Its delivery history is kept."""
        if not await self.store.delete_endpoint(endpoint_id):
            raise NotFoundError("endpoint", endpoint_id)
        logger.info("Endpoint %s deleted", endpoint_id)

    async def rotate_secret(self, endpoint_id: str) -> Endpoint:
        """Replace an endpoint's signing secret."""
        updated = await self.store.update_endpoint(endpoint_id, secret=generate_secret())
        if updated is None:
            raise NotFoundError("endpoint", endpoint_id)
        logger.info("Secret rotated for endpoint %s", endpoint_id)
        return updated

    # Events

    async def publish_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        endpoint_ids: list[str] | None = None,
    ) -> Event:
        """Publish an event; delivery happens in the background."""
        if not isinstance(event_type, str) or not event_type.strip():
            raise ValidationError("type", "Event type must be a non-empty string")
        if not isinstance(payload, dict):
            raise ValidationError("payload", "Payload must be a JSON object")
        return await self.dispatcher.publish_event(event_type, payload, endpoint_ids)

    # Deliveries

    async def list_deliveries(self, filter: DeliveryFilter | None = None) -> list[Delivery]:
        filter = filter or DeliveryFilter()
        if (
            filter.start_date is not None
            and filter.end_date is not None
            and filter.start_date > filter.end_date
        ):
            raise ValidationError("start_date", "start_date must not be after end_date")
        return await self.store.list_deliveries(filter)

    async def get_delivery(self, delivery_id: str) -> Delivery:
        delivery = await self.store.get_delivery(delivery_id)
        if delivery is None:
            raise NotFoundError("delivery", delivery_id)
        return delivery

    async def list_attempts(self, delivery_id: str) -> list[DeliveryAttempt]:
        """Attempt history of a delivery, oldest first."""
        await self.get_delivery(delivery_id)
        return await self.store.list_attempts(delivery_id)

    async def retry_delivery(self, delivery_id: str) -> Delivery:
        return await self.dispatcher.retry_delivery(delivery_id)

    async def get_stats(self, endpoint_id: str | None = None) -> DeliveryStats:
        return await self.dispatcher.get_stats(endpoint_id)

    async def cleanup(self, older_than_days: int | None = None) -> CleanupResult:
        """Delete terminal deliveries and events older than the retention window.

        Args:
            older_than_days: Retention in days. Defaults to
                ``settings.cleanup_default_days``.
        """
        days = self.settings.cleanup_default_days if older_than_days is None else older_than_days
        if days < 0:
            raise ValidationError("older_than_days", "Must be zero or positive")

        now = utcnow()
        cutoff = now - timedelta(days=days)
        deliveries_deleted = await self.store.cleanup_older_than(days, now=now)
        events_deleted = await self.store.delete_events_older_than(cutoff)
        logger.info(
            "Cleanup removed %d deliveries and %d events older than %s",
            deliveries_deleted,
            events_deleted,
            cutoff.isoformat(),
        )
        return CleanupResult(
            deliveries_deleted=deliveries_deleted,
            events_deleted=events_deleted,
            cutoff=cutoff,
        )


__all__ = ["CleanupResult", "WebhookService"]
