"""Base Qdrant storage class and helpers.

Contains client lifecycle, collection management, and the row <-> point
conversion shared by the endpoint and delivery mixins.

Rows are stored as points with a 1-dimensional placeholder vector; the
store never performs similarity search. Datetime fields used in range
filters are mirrored into numeric ``<field>_ts`` payload keys (Unix
seconds), since Qdrant ranges only compare numbers.
"""

from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Any, TypeVar

from pydantic import BaseModel
from qdrant_client import AsyncQdrantClient, models

from hookrelay.config import settings

from .retry import qdrant_retry

RowT = TypeVar("RowT", bound=BaseModel)

# Collection names by row kind
COLLECTION_NAMES = {
    "endpoints": "endpoints",
    "events": "events",
    "deliveries": "deliveries",
    "attempts": "attempts",
}

# Datetime fields mirrored as numeric timestamps, per row kind
TIMESTAMP_FIELDS = {
    "endpoints": ("created_at",),
    "events": ("occurred_at",),
    "deliveries": ("created_at", "next_retry_at"),
    "attempts": ("timestamp",),
}

# Keyword fields indexed for filtering, per row kind
KEYWORD_INDEXES = {
    "endpoints": ("id",),
    "events": ("id", "type"),
    "deliveries": ("id", "endpoint_id", "event_id", "event_type", "status"),
    "attempts": ("delivery_id",),
}

PLACEHOLDER_VECTOR = [1.0]
SCROLL_PAGE_SIZE = 256


def to_timestamp(value: datetime | None) -> float | None:
    """Unix seconds for a datetime, or None."""
    return value.timestamp() if value is not None else None


class StorageBase:
    """Base class for the Qdrant store with initialization and helpers.

    Provides:
    - Client initialization and lifecycle management
    - Collection creation and indexing
    - Point ID conversion
    - Retried upsert/retrieve/scroll/delete/count primitives
    """

    def __init__(
        self,
        url: str | None = None,
        api_key: str | None = None,
        prefix: str | None = None,
        client: AsyncQdrantClient | None = None,
    ) -> None:
        """Initialize storage client.

        Args:
            url: Qdrant server URL. Defaults to settings.qdrant_url.
            api_key: Qdrant API key. Defaults to settings.qdrant_api_key.
            prefix: Collection name prefix. Defaults to settings.collection_prefix.
            client: Pre-built client, e.g. ``AsyncQdrantClient(location=":memory:")``.
        """
        self._url = url or settings.qdrant_url
        self._api_key = api_key or settings.qdrant_api_key
        self._prefix = prefix or settings.collection_prefix
        self._client: AsyncQdrantClient | None = client
        self._collections_initialized = False

    @property
    def client(self) -> AsyncQdrantClient:
        """Get the Qdrant client, raising if not initialized."""
        if self._client is None:
            raise RuntimeError("Storage not initialized. Call initialize() first.")
        return self._client

    async def initialize(self) -> None:
        """Create the client if needed and ensure collections exist."""
        if self._client is None:
            self._client = AsyncQdrantClient(url=self._url, api_key=self._api_key)
        await self._ensure_collections()
        self._collections_initialized = True

    async def close(self) -> None:
        """Close the storage client connection."""
        if self._client is not None:
            await self._client.close()
            self._client = None
            self._collections_initialized = False

    async def __aenter__(self) -> StorageBase:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _collection_name(self, kind: str) -> str:
        """Get full collection name with prefix."""
        return f"{self._prefix}_{COLLECTION_NAMES[kind]}"

    @staticmethod
    def _key_to_point_id(key: str) -> str:
        """Convert a row key to a valid Qdrant point ID.

        Qdrant requires point IDs to be UUIDs or unsigned integers.
        We hash the key to create a deterministic UUID-format string.
        """
        h = hashlib.sha256(key.encode()).hexdigest()[:32]
        return f"{h[:8]}-{h[8:12]}-{h[12:16]}-{h[16:20]}-{h[20:32]}"

    def _point_id(self, kind: str, row_id: str) -> str:
        return self._key_to_point_id(f"{kind}/{row_id}")

    @qdrant_retry
    async def _ensure_collections(self) -> None:
        """Ensure all required collections exist with payload indexes."""
        collections = await self.client.get_collections()
        existing = {c.name for c in collections.collections}

        for kind in COLLECTION_NAMES:
            collection_name = self._collection_name(kind)
            if collection_name in existing:
                continue
            await self.client.create_collection(
                collection_name=collection_name,
                vectors_config=models.VectorParams(
                    size=len(PLACEHOLDER_VECTOR),
                    distance=models.Distance.DOT,
                ),
            )
            await self._create_indexes(kind, collection_name)

    async def _create_indexes(self, kind: str, collection_name: str) -> None:
        """Create payload indexes for efficient filtering."""
        for field_name in KEYWORD_INDEXES[kind]:
            await self.client.create_payload_index(
                collection_name=collection_name,
                field_name=field_name,
                field_schema=models.PayloadSchemaType.KEYWORD,
            )
        for field_name in TIMESTAMP_FIELDS[kind]:
            await self.client.create_payload_index(
                collection_name=collection_name,
                field_name=f"{field_name}_ts",
                field_schema=models.PayloadSchemaType.FLOAT,
            )

    def _row_to_payload(self, kind: str, row: BaseModel) -> dict[str, Any]:
        """Convert a row model to a Qdrant payload."""
        data = row.model_dump(mode="json")
        for field_name in TIMESTAMP_FIELDS[kind]:
            data[f"{field_name}_ts"] = to_timestamp(getattr(row, field_name))
        return data

    def _payload_to_row(self, kind: str, payload: dict[str, Any], row_class: type[RowT]) -> RowT:
        """Convert a Qdrant payload back to a row model."""
        data = dict(payload)
        for field_name in TIMESTAMP_FIELDS[kind]:
            data.pop(f"{field_name}_ts", None)
        return row_class.model_validate(data)

    @qdrant_retry
    async def _upsert(self, kind: str, row_id: str, row: BaseModel) -> None:
        await self.client.upsert(
            collection_name=self._collection_name(kind),
            points=[
                models.PointStruct(
                    id=self._point_id(kind, row_id),
                    vector=PLACEHOLDER_VECTOR,
                    payload=self._row_to_payload(kind, row),
                )
            ],
        )

    @qdrant_retry
    async def _retrieve(self, kind: str, row_id: str) -> dict[str, Any] | None:
        results = await self.client.retrieve(
            collection_name=self._collection_name(kind),
            ids=[self._point_id(kind, row_id)],
            with_payload=True,
        )
        if not results:
            return None
        return results[0].payload

    @qdrant_retry
    async def _scroll(self, kind: str, scroll_filter: models.Filter | None = None) -> list[dict[str, Any]]:
        """Fetch every payload matching a filter, following scroll pages."""
        payloads: list[dict[str, Any]] = []
        offset: Any = None
        while True:
            points, offset = await self.client.scroll(
                collection_name=self._collection_name(kind),
                scroll_filter=scroll_filter,
                limit=SCROLL_PAGE_SIZE,
                offset=offset,
                with_payload=True,
            )
            payloads.extend(p.payload for p in points if p.payload is not None)
            if offset is None:
                return payloads

    @qdrant_retry
    async def _delete(self, kind: str, row_ids: list[str]) -> None:
        if not row_ids:
            return
        await self.client.delete(
            collection_name=self._collection_name(kind),
            points_selector=models.PointIdsList(
                points=[self._point_id(kind, row_id) for row_id in row_ids],
            ),
        )

    @qdrant_retry
    async def _count(self, kind: str, count_filter: models.Filter | None = None) -> int:
        result = await self.client.count(
            collection_name=self._collection_name(kind),
            count_filter=count_filter,
            exact=True,
        )
        return result.count


def match(key: str, value: Any) -> models.FieldCondition:
    """Exact-match condition on a payload key."""
    return models.FieldCondition(key=key, match=models.MatchValue(value=value))


def match_any(key: str, values: list[Any]) -> models.FieldCondition:
    """Condition matching any of several keyword values."""
    return models.FieldCondition(key=key, match=models.MatchAny(any=values))


def time_range(
    field_name: str,
    gte: datetime | None = None,
    lte: datetime | None = None,
    lt: datetime | None = None,
) -> models.FieldCondition:
    """Range condition on a mirrored ``<field>_ts`` key."""
    return models.FieldCondition(
        key=f"{field_name}_ts",
        range=models.Range(gte=to_timestamp(gte), lte=to_timestamp(lte), lt=to_timestamp(lt)),
    )


__all__ = [
    "COLLECTION_NAMES",
    "PLACEHOLDER_VECTOR",
    "StorageBase",
    "match",
    "match_any",
    "time_range",
    "to_timestamp",
]
