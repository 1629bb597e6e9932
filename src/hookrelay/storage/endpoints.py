"""Endpoint storage operations for the Qdrant store."""

from __future__ import annotations

from typing import Any

from qdrant_client import models

from hookrelay.models import Endpoint, utcnow

from .base import match
from .protocol import ENDPOINT_UPDATABLE_FIELDS, check_fields


class EndpointMixin:
    """Mixin providing endpoint operations for QdrantWebhookStore.

    This mixin expects the following from the base class:
    - _upsert(kind, row_id, row)
    - _retrieve(kind, row_id) -> payload | None
    - _scroll(kind, filter) -> list[payload]
    - _delete(kind, row_ids)
    - _payload_to_row(kind, payload, row_class)
    """

    _upsert: Any
    _retrieve: Any
    _scroll: Any
    _delete: Any
    _payload_to_row: Any

    async def create_endpoint(self, endpoint: Endpoint) -> Endpoint:
        """Store a new endpoint."""
        await self._upsert("endpoints", endpoint.id, endpoint)
        return endpoint.model_copy(deep=True)

    async def get_endpoint(self, endpoint_id: str) -> Endpoint | None:
        """Get an endpoint by ID."""
        payload = await self._retrieve("endpoints", endpoint_id)
        if payload is None:
            return None
        endpoint: Endpoint = self._payload_to_row("endpoints", payload, Endpoint)
        return endpoint

    async def list_endpoints(self, enabled_only: bool = False) -> list[Endpoint]:
        """List endpoints, newest first."""
        scroll_filter = models.Filter(must=[match("enabled", True)]) if enabled_only else None
        payloads = await self._scroll("endpoints", scroll_filter)
        endpoints: list[Endpoint] = [
            self._payload_to_row("endpoints", p, Endpoint) for p in payloads
        ]
        endpoints.sort(key=lambda e: e.created_at, reverse=True)
        return endpoints

    async def update_endpoint(self, endpoint_id: str, **fields: Any) -> Endpoint | None:
        """Apply a partial update and bump ``updated_at``.

        Returns:
            Updated Endpoint or None if not found.
        """
        check_fields(fields, ENDPOINT_UPDATABLE_FIELDS, "endpoint")
        current = await self.get_endpoint(endpoint_id)
        if current is None:
            return None
        updated = Endpoint.model_validate(
            {**current.model_dump(), **fields, "updated_at": utcnow()}
        )
        await self._upsert("endpoints", endpoint_id, updated)
        return updated

    async def delete_endpoint(self, endpoint_id: str) -> bool:
        """Delete an endpoint.

        Returns:
            True if deleted, False if not found.
        """
        if await self._retrieve("endpoints", endpoint_id) is None:
            return False
        await self._delete("endpoints", [endpoint_id])
        return True

    async def get_endpoints_for_event(self, event_type: str) -> list[Endpoint]:
        """Get all enabled endpoints that subscribe to an event type."""
        endpoints = await self.list_endpoints(enabled_only=True)
        return [e for e in endpoints if e.subscribes_to(event_type)]


__all__ = ["EndpointMixin"]
