"""FastAPI router for HookRelay management endpoints."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from hookrelay import __version__
from hookrelay.models import DeliveryFilter, DeliveryStatus
from hookrelay.service import WebhookService

from .schemas import (
    AttemptListResponse,
    AttemptResponse,
    CleanupRequest,
    CleanupResponse,
    DeliveryListResponse,
    DeliveryResponse,
    EndpointCreateRequest,
    EndpointResponse,
    EndpointSecretResponse,
    EndpointUpdateRequest,
    EventPublishRequest,
    EventPublishResponse,
    HealthResponse,
    StatsResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks")

# Service instance (set by app lifespan)
_service: WebhookService | None = None


def set_service(service: WebhookService | None) -> None:
    """Set the global service instance."""
    global _service
    _service = service


async def get_service() -> WebhookService:
    """Dependency to get the WebhookService instance."""
    if _service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return _service


ServiceDep = Annotated[WebhookService, Depends(get_service)]


@router.get("/health", response_model=HealthResponse, tags=["system"])
async def health_check() -> HealthResponse:
    """Check service health."""
    connected = bool(_service is not None and _service.is_initialized)
    return HealthResponse(
        status="healthy" if connected else "unhealthy",
        version=__version__,
        storage_connected=connected,
    )


# Endpoints


@router.post(
    "/endpoints",
    response_model=EndpointSecretResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["endpoints"],
)
async def create_endpoint(
    request: EndpointCreateRequest,
    service: ServiceDep,
) -> EndpointSecretResponse:
    """Register an endpoint.

    The response is the only place besides rotate-secret where the
    signing secret is returned.
    """
    endpoint = await service.create_endpoint(
        url=request.url,
        events=request.events,
        description=request.description,
        headers=request.headers,
        metadata=request.metadata,
        enabled=request.enabled,
    )
    return EndpointSecretResponse.from_endpoint(endpoint)


@router.get("/endpoints", response_model=list[EndpointResponse], tags=["endpoints"])
async def list_endpoints(
    service: ServiceDep,
    enabled_only: bool = False,
) -> list[EndpointResponse]:
    endpoints = await service.list_endpoints(enabled_only=enabled_only)
    return [EndpointResponse.from_endpoint(e) for e in endpoints]


@router.get("/endpoints/{endpoint_id}", response_model=EndpointResponse, tags=["endpoints"])
async def get_endpoint(endpoint_id: str, service: ServiceDep) -> EndpointResponse:
    endpoint = await service.get_endpoint(endpoint_id)
    return EndpointResponse.from_endpoint(endpoint)


@router.patch("/endpoints/{endpoint_id}", response_model=EndpointResponse, tags=["endpoints"])
async def update_endpoint(
    endpoint_id: str,
    request: EndpointUpdateRequest,
    service: ServiceDep,
) -> EndpointResponse:
    """Update an endpoint. Only fields present in the body change."""
    endpoint = await service.update_endpoint(endpoint_id, **request.model_dump(exclude_unset=True))
    return EndpointResponse.from_endpoint(endpoint)


@router.delete(
    "/endpoints/{endpoint_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    tags=["endpoints"],
)
async def delete_endpoint(endpoint_id: str, service: ServiceDep) -> Response:
    await service.delete_endpoint(endpoint_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/endpoints/{endpoint_id}/rotate-secret",
    response_model=EndpointSecretResponse,
    tags=["endpoints"],
)
async def rotate_secret(endpoint_id: str, service: ServiceDep) -> EndpointSecretResponse:
    endpoint = await service.rotate_secret(endpoint_id)
    return EndpointSecretResponse.from_endpoint(endpoint)


# Events


@router.post(
    "/events",
    response_model=EventPublishResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["events"],
)
async def publish_event(
    request: EventPublishRequest,
    service: ServiceDep,
) -> EventPublishResponse:
    """Publish an event. Delivery happens asynchronously."""
    event = await service.publish_event(request.type, request.payload, request.endpoint_ids)
    return EventPublishResponse(id=event.id, type=event.type, occurred_at=event.occurred_at)


# Deliveries


@router.get("/deliveries", response_model=DeliveryListResponse, tags=["deliveries"])
async def list_deliveries(
    service: ServiceDep,
    endpoint_id: str | None = None,
    event_type: str | None = None,
    delivery_status: Annotated[DeliveryStatus | None, Query(alias="status")] = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    limit: Annotated[int, Query(ge=1, le=1000)] = 100,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> DeliveryListResponse:
    """List deliveries, newest first."""
    filter = DeliveryFilter(
        endpoint_id=endpoint_id,
        event_type=event_type,
        status=delivery_status,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
    )
    deliveries = await service.list_deliveries(filter)
    return DeliveryListResponse(
        deliveries=[DeliveryResponse.from_delivery(d) for d in deliveries],
        count=len(deliveries),
        limit=limit,
        offset=offset,
    )


@router.get("/deliveries/{delivery_id}", response_model=DeliveryResponse, tags=["deliveries"])
async def get_delivery(delivery_id: str, service: ServiceDep) -> DeliveryResponse:
    delivery = await service.get_delivery(delivery_id)
    return DeliveryResponse.from_delivery(delivery)


@router.get(
    "/deliveries/{delivery_id}/attempts",
    response_model=AttemptListResponse,
    tags=["deliveries"],
)
async def list_attempts(delivery_id: str, service: ServiceDep) -> AttemptListResponse:
    attempts = await service.list_attempts(delivery_id)
    return AttemptListResponse(
        delivery_id=delivery_id,
        attempts=[AttemptResponse.from_attempt(a) for a in attempts],
    )


@router.post(
    "/deliveries/{delivery_id}/retry",
    response_model=DeliveryResponse,
    tags=["deliveries"],
)
async def retry_delivery(delivery_id: str, service: ServiceDep) -> DeliveryResponse:
    """Manually retry a delivery that has not succeeded."""
    delivery = await service.retry_delivery(delivery_id)
    return DeliveryResponse.from_delivery(delivery)


# Maintenance


@router.get("/stats", response_model=StatsResponse, tags=["maintenance"])
async def get_stats(service: ServiceDep, endpoint_id: str | None = None) -> StatsResponse:
    stats = await service.get_stats(endpoint_id)
    return StatsResponse(**stats.model_dump(), in_progress=stats.in_progress)


@router.post("/cleanup", response_model=CleanupResponse, tags=["maintenance"])
async def cleanup(request: CleanupRequest, service: ServiceDep) -> CleanupResponse:
    """Delete terminal deliveries and events older than the retention window."""
    result = await service.cleanup(request.older_than_days)
    return CleanupResponse(
        deliveries_deleted=result.deliveries_deleted,
        events_deleted=result.events_deleted,
        cutoff=result.cutoff,
    )


__all__ = ["ServiceDep", "get_service", "router", "set_service"]
