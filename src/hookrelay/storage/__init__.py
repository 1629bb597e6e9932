"""Storage backends for HookRelay.

Two implementations of the ``WebhookStore`` protocol:

- ``InMemoryWebhookStore``: dictionaries, for tests and single processes
- ``QdrantWebhookStore``: persistent rows in Qdrant collections

Example:
    ```python
    from hookrelay.storage import create_store

    store = create_store()
    await store.initialize()
    ```
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .base import COLLECTION_NAMES
from .client import QdrantWebhookStore
from .memory import InMemoryWebhookStore
from .protocol import WebhookStore
from .retry import is_transient_storage_error, qdrant_retry, storage_retry

if TYPE_CHECKING:
    from hookrelay.config import Settings


def create_store(settings: Settings | None = None) -> WebhookStore:
    """Build the store selected by ``settings.storage_backend``."""
    if settings is None:
        from hookrelay.config import settings as default_settings

        settings = default_settings

    if settings.storage_backend == "qdrant":
        return QdrantWebhookStore(
            url=settings.qdrant_url,
            api_key=settings.qdrant_api_key,
            prefix=settings.collection_prefix,
        )
    return InMemoryWebhookStore()


__all__ = [
    "COLLECTION_NAMES",
    "InMemoryWebhookStore",
    "QdrantWebhookStore",
    "WebhookStore",
    "create_store",
    "is_transient_storage_error",
    "qdrant_retry",
    "storage_retry",
]
