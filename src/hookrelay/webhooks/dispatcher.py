"""Webhook dispatch with HMAC signatures and pluggable retry strategies.

The dispatcher fans a published event out to every subscribed endpoint,
creates one Delivery per endpoint, and drives each delivery through its
lifecycle:

    pending -> retrying -> success | failed

Two triggers can attempt the same delivery: the immediate attempt made
after dispatch and the background poller. At most one attempt per
delivery runs at a time; in-process this is a ``ProcessingGuard``, across
processes a lease on the delivery row.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import httpx

from hookrelay.exceptions import DeliveryError, NotFoundError, ValidationError
from hookrelay.logging import delivery_context, get_logger
from hookrelay.models import (
    Delivery,
    DeliveryAttempt,
    DeliveryStats,
    DeliveryStatus,
    Endpoint,
    Event,
    generate_id,
    utcnow,
)

from .poller import RetryPoller
from .retry import RetryStrategy, create_retry_strategy, parse_retry_after
from .signature import canonical_json, format_signature_header, sign

if TYPE_CHECKING:
    from hookrelay.config import Settings
    from hookrelay.storage import WebhookStore

logger = get_logger(__name__)


class ProcessingGuard:
    """Set of delivery ids with an attempt in flight in this process.

    ``try_acquire`` is a test-and-set with no await inside, so it is
    atomic on the event loop thread.
    """

    def __init__(self) -> None:
        self._held: set[str] = set()

    def __contains__(self, key: str) -> bool:
        return key in self._held

    def __len__(self) -> int:
        return len(self._held)

    def try_acquire(self, key: str) -> bool:
        if key in self._held:
            return False
        self._held.add(key)
        return True

    def release(self, key: str) -> None:
        self._held.discard(key)

    @contextmanager
    def hold(self, key: str) -> Iterator[bool]:
        """Acquire ``key`` for the block; yields whether it was acquired."""
        acquired = self.try_acquire(key)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(key)


def build_event_body(delivery: Delivery) -> bytes:
    """Serialize the outbound envelope ``{id, type, created, data}``."""
    envelope = {
        "id": delivery.id,
        "type": delivery.event_type,
        "created": delivery.created_at.isoformat(),
        "data": delivery.payload,
    }
    return canonical_json(envelope).encode("utf-8")


class WebhookDispatcher:
    """Dispatches events to registered endpoints and retries failures.

    Handles:
    - Resolving endpoints subscribed to an event type
    - Creating one delivery record per endpoint
    - Signing bodies with HMAC-SHA256
    - Scheduling retries with the configured RetryStrategy
    - Recording every network try as a DeliveryAttempt

    Example:
        ```python
        async with WebhookDispatcher(store) as dispatcher:
            dispatcher.start()
            event = await dispatcher.publish_event("order.created", {"id": 1})
        ```
    """

    def __init__(
        self,
        store: WebhookStore,
        settings: Settings | None = None,
        retry_strategy: RetryStrategy | None = None,
        http_client: httpx.AsyncClient | None = None,
        worker_id: str | None = None,
    ) -> None:
        """Initialize the webhook dispatcher.

        Args:
            store: Endpoint and delivery persistence.
            settings: Settings to use. Defaults to the global settings.
            retry_strategy: Backoff policy. Defaults to the one selected by settings.
            http_client: Shared client. When omitted the dispatcher owns one.
            worker_id: Lease owner name. Defaults to a random id.
        """
        if settings is None:
            from hookrelay.config import settings as default_settings

            settings = default_settings

        self._store = store
        self._settings = settings
        self._strategy = retry_strategy or create_retry_strategy(settings)
        self._timeout = settings.request_timeout_seconds
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=self._timeout)
        self._semaphore = asyncio.Semaphore(settings.max_concurrent_deliveries)
        self._guard = ProcessingGuard()
        self._worker_id = worker_id or generate_id("worker")
        self._tasks: set[asyncio.Task[Any]] = set()
        self._poller: RetryPoller | None = None

    @property
    def store(self) -> WebhookStore:
        return self._store

    @property
    def retry_strategy(self) -> RetryStrategy:
        return self._strategy

    @property
    def worker_id(self) -> str:
        return self._worker_id

    @property
    def in_flight(self) -> ProcessingGuard:
        """Delivery ids currently being attempted by this dispatcher."""
        return self._guard

    # Lifecycle

    def start(self) -> None:
        """Start the background retry poller."""
        if self._poller is None:
            self._poller = RetryPoller(
                self.process_retries,
                interval=self._settings.poll_interval_seconds,
            )
        self._poller.start()

    async def stop(self) -> None:
        """Stop the background retry poller."""
        if self._poller is not None:
            await self._poller.stop()

    async def wait_for_pending(self) -> None:
        """Wait for every dispatch started by ``publish_event`` to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Stop polling, drain pending dispatches, and close the owned client."""
        await self.stop()
        await self.wait_for_pending()
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> WebhookDispatcher:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # Publishing

    async def publish_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        target_endpoint_ids: list[str] | None = None,
    ) -> Event:
        """Record an event and dispatch it in the background.

        Returns as soon as the event is saved; delivery failures are logged
        and never raised to the publisher.
        """
        event = Event(type=event_type, payload=payload, endpoint_ids=target_endpoint_ids)
        await self._store.save_event(event)

        task = asyncio.create_task(self.dispatch(event), name=f"dispatch-{event.id}")
        self._tasks.add(task)
        task.add_done_callback(self._on_dispatch_done)

        logger.info("Event published", event_id=event.id, event_type=event.type)
        return event

    def _on_dispatch_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Event dispatch failed", task=task.get_name(), error=str(exc))

    async def dispatch(self, event: Event) -> list[str]:
        """Create and attempt a delivery for every endpoint targeted by an event.

        Args:
            event: Event to fan out.

        Returns:
            IDs of the deliveries created.
        """
        endpoints = await self._store.get_endpoints_for_event(event.type)
        endpoints = [e for e in endpoints if event.targets(e.id)]

        if not endpoints:
            logger.debug("No endpoints subscribed", event_id=event.id, event_type=event.type)
            return []

        results = await asyncio.gather(
            *(self._deliver_to_endpoint(endpoint, event) for endpoint in endpoints),
            return_exceptions=True,
        )

        delivery_ids: list[str] = []
        for endpoint, result in zip(endpoints, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    "Delivery creation failed",
                    event_id=event.id,
                    endpoint_id=endpoint.id,
                    error=str(result),
                )
            else:
                delivery_ids.append(result)
        return delivery_ids

    async def _deliver_to_endpoint(self, endpoint: Endpoint, event: Event) -> str:
        delivery = Delivery(
            endpoint_id=endpoint.id,
            event_id=event.id,
            event_type=event.type,
            status=DeliveryStatus.PENDING,
            max_attempts=self._strategy.max_attempts,
            payload=event.payload,
        )
        # Frozen copy; later changes to the event payload must not leak in
        delivery = await self._store.create_delivery(delivery.model_copy(deep=True))
        await self.attempt(delivery.id)
        return delivery.id

    # Attempts

    async def attempt(self, delivery_id: str) -> Delivery | None:
        """Make one delivery attempt.

        Returns:
            The delivery after the attempt, or None when the delivery is
            missing or another attempt already holds it.
        """
        with self._guard.hold(delivery_id) as acquired:
            if not acquired:
                logger.debug("Delivery already in flight", delivery_id=delivery_id)
                return None

            claimed = await self._store.claim_delivery(
                delivery_id, self._worker_id, self._settings.lease_seconds
            )
            if claimed is None:
                logger.debug("Delivery missing or leased elsewhere", delivery_id=delivery_id)
                return None

            try:
                with delivery_context(delivery_id=delivery_id, endpoint_id=claimed.endpoint_id):
                    await self._attempt_claimed(claimed)
            finally:
                await self._store.release_delivery(delivery_id, self._worker_id)

        return await self._store.get_delivery(delivery_id)

    async def _attempt_claimed(self, delivery: Delivery) -> None:
        if delivery.is_terminal:
            logger.debug("Delivery already terminal", status=delivery.status.value)
            return

        endpoint = await self._store.get_endpoint(delivery.endpoint_id)
        if endpoint is None:
            delivery.mark_failed(
                f"Endpoint {delivery.endpoint_id} not found",
                limit=self._settings.response_body_limit,
            )
            await self._store.update_delivery(delivery.id, **delivery.outcome())
            logger.warning("Endpoint vanished, delivery failed")
            return

        if delivery.attempts >= delivery.max_attempts:
            delivery.mark_failed(
                f"Attempt budget of {delivery.max_attempts} exhausted",
                limit=self._settings.response_body_limit,
            )
            await self._store.update_delivery(delivery.id, **delivery.outcome())
            return

        incremented = await self._store.increment_attempts(delivery.id)
        if incremented is None:
            return
        delivery = incremented
        started_at = utcnow()
        delivery.status = DeliveryStatus.PENDING if delivery.attempts == 1 else DeliveryStatus.RETRYING
        delivery.last_attempt_at = started_at
        await self._store.update_delivery(
            delivery.id, status=delivery.status, last_attempt_at=started_at
        )

        status_code: int | None = None
        body: str | None = None
        error: str | None = None
        start = time.perf_counter()
        try:
            response = await self._send(endpoint, delivery)
            status_code, body = response.status_code, response.text
            delivery.mark_success(status_code, body, limit=self._settings.response_body_limit)
            logger.info(
                "Webhook delivered",
                event_type=delivery.event_type,
                status_code=status_code,
                attempt=delivery.attempts,
            )
        except DeliveryError as exc:
            status_code, error = exc.status_code, exc.message
            body = exc.response_body
            try:
                self._handle_failure(delivery, exc, body)
            except Exception as handling_error:
                error = f"{exc.message} (failure handling error: {handling_error})"
                delivery.mark_failed(
                    error, status_code, body, limit=self._settings.response_body_limit
                )
                logger.exception("Webhook failure handling error")
        except asyncio.CancelledError:
            error = "Delivery attempt cancelled"
            self._handle_failure(delivery, DeliveryError(error), None)
            await self._record(delivery, started_at, start, status_code, body, error)
            raise
        except Exception as exc:
            error = f"Unexpected error: {exc}"
            delivery.mark_failed(error, limit=self._settings.response_body_limit)
            logger.exception("Webhook delivery error")

        await self._record(delivery, started_at, start, status_code, body, error)

    async def _record(
        self,
        delivery: Delivery,
        started_at: datetime,
        start: float,
        status_code: int | None,
        body: str | None,
        error: str | None,
    ) -> None:
        """Persist the attempt outcome and append the attempt log row."""
        limit = self._settings.response_body_limit
        await self._store.update_delivery(delivery.id, **delivery.outcome())
        await self._store.add_attempt(
            DeliveryAttempt(
                delivery_id=delivery.id,
                attempt=delivery.attempts,
                status_code=status_code,
                response_body=body[:limit] if body is not None else None,
                error=error,
                timestamp=started_at,
                duration_ms=max(0.0, (time.perf_counter() - start) * 1000),
            )
        )

    def _handle_failure(self, delivery: Delivery, error: DeliveryError, body: str | None) -> None:
        """Schedule a retry or mark the delivery failed."""
        limit = self._settings.response_body_limit
        can_retry = (
            self._strategy.should_retry(delivery.attempts, error)
            and delivery.attempts < delivery.max_attempts
        )
        delay = self._strategy.next_delay(delivery.attempts) if can_retry else None

        if delay is None:
            delivery.mark_failed(error.message, error.status_code, body, limit=limit)
            logger.warning(
                "Webhook delivery failed permanently",
                status_code=error.status_code,
                attempt=delivery.attempts,
                error=error.message,
            )
            return

        retry_after = min(error.retry_after or 0.0, self._settings.max_retry_after_seconds)
        delay = max(delay, retry_after)
        try:
            next_retry_at = utcnow() + timedelta(seconds=delay)
        except OverflowError:
            delivery.mark_failed(
                f"{error.message} (retry delay of {delay}s out of range)",
                error.status_code,
                body,
                limit=limit,
            )
            logger.warning("Retry delay out of range", delay_seconds=delay)
            return
        delivery.mark_retrying(next_retry_at, error.message, error.status_code, body, limit=limit)
        logger.info(
            "Webhook retry scheduled",
            attempt=delivery.attempts,
            delay_seconds=round(delay, 3),
            next_retry_at=next_retry_at.isoformat(),
        )

    def _build_headers(self, endpoint: Endpoint, delivery: Delivery, body: bytes) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._settings.user_agent,
            "X-Webhook-Event": delivery.event_type,
            "X-Webhook-Delivery-Id": delivery.id,
        }
        headers.update(endpoint.headers)
        if self._settings.enable_signature:
            signature = sign(body, endpoint.secret)
            headers[self._settings.signature_header] = format_signature_header(signature)
            headers[self._settings.timestamp_header] = str(signature.timestamp)
        return headers

    async def _send(self, endpoint: Endpoint, delivery: Delivery) -> httpx.Response:
        """POST the delivery body; non-2xx and transport errors raise DeliveryError."""
        body = build_event_body(delivery)
        headers = self._build_headers(endpoint, delivery, body)

        try:
            async with self._semaphore:
                response = await self._client.post(
                    endpoint.url,
                    content=body,
                    headers=headers,
                    timeout=self._timeout,
                )
        except httpx.TimeoutException as exc:
            raise DeliveryError(f"Request timeout after {self._timeout}s") from exc
        except httpx.RequestError as exc:
            raise DeliveryError(f"Request failed: {exc}") from exc

        if response.is_success:
            return response

        raise DeliveryError(
            f"HTTP {response.status_code}: {response.text[:200]}",
            status_code=response.status_code,
            retry_after=parse_retry_after(response.headers.get("Retry-After")) or None,
            response_body=response.text,
        )

    # Retries

    async def process_retries(self, now: datetime | None = None) -> int:
        """Attempt every delivery whose retry time has come.

        One failing delivery never stops the others.

        Returns:
            Number of deliveries attempted.
        """
        now = now or utcnow()
        due = await self._store.get_retriable_deliveries(now, limit=self._settings.poll_batch_size)
        delivery_ids = [d.id for d in due if d.id not in self._guard]
        if not delivery_ids:
            return 0

        results = await asyncio.gather(
            *(self.attempt(delivery_id) for delivery_id in delivery_ids),
            return_exceptions=True,
        )
        for delivery_id, result in zip(delivery_ids, results, strict=True):
            if isinstance(result, BaseException):
                logger.error("Retry attempt failed", delivery_id=delivery_id, error=str(result))
        return len(delivery_ids)

    async def retry_delivery(self, delivery_id: str) -> Delivery:
        """Manually retry a delivery that has not succeeded.

        An exhausted attempt budget is raised by one so the retry can run.

        Raises:
            NotFoundError: If the delivery does not exist.
            ValidationError: If the delivery already succeeded.
        """
        delivery = await self._store.get_delivery(delivery_id)
        if delivery is None:
            raise NotFoundError("delivery", delivery_id)
        if delivery.status == DeliveryStatus.SUCCESS:
            raise ValidationError("status", "Cannot retry a successful delivery")

        fields: dict[str, Any] = {
            "status": DeliveryStatus.PENDING,
            "next_retry_at": utcnow(),
        }
        if delivery.attempts >= delivery.max_attempts:
            fields["max_attempts"] = delivery.attempts + 1
        await self._store.update_delivery(delivery_id, **fields)
        logger.info("Manual retry requested", delivery_id=delivery_id)

        result = await self.attempt(delivery_id)
        if result is None:
            # Already in flight elsewhere; report the current row
            current = await self._store.get_delivery(delivery_id)
            if current is None:
                raise NotFoundError("delivery", delivery_id)
            return current
        return result

    # Stats

    async def get_stats(self, endpoint_id: str | None = None) -> DeliveryStats:
        """Aggregate delivery counts and mean time-to-delivery."""
        counts = await self._store.count_by_status(endpoint_id)
        successful = await self._store.list_successful(endpoint_id)
        delivery_times = [
            d.delivered_at - d.created_at for d in successful if d.delivered_at is not None
        ]
        return DeliveryStats.from_counts(counts, delivery_times, endpoint_id=endpoint_id)


__all__ = ["ProcessingGuard", "WebhookDispatcher", "build_event_body"]
