"""Qdrant-backed WebhookStore.

Example:
    ```python
    from hookrelay.storage import QdrantWebhookStore

    async with QdrantWebhookStore(url="http://localhost:6333") as store:
        await store.create_endpoint(endpoint)
        due = await store.get_retriable_deliveries(utcnow())
    ```
"""

from __future__ import annotations

from .base import StorageBase
from .deliveries import DeliveryMixin
from .endpoints import EndpointMixin


class QdrantWebhookStore(EndpointMixin, DeliveryMixin, StorageBase):
    """Async Qdrant storage for endpoints, events, deliveries, and attempts.

    This class combines functionality from multiple mixins:
    - EndpointMixin: create_endpoint, get_endpoint, list_endpoints, etc.
    - DeliveryMixin: events, deliveries, leases, and attempt history

    Every client call goes through ``qdrant_retry``. The lease claim is
    not atomic across processes; see ``DeliveryMixin.claim_delivery``.
    """


__all__ = ["QdrantWebhookStore"]
