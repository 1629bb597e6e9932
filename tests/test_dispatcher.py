"""Tests for the webhook dispatcher.

HTTP traffic goes through httpx.MockTransport; no network is used.
"""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import httpx
import pytest

from hookrelay.exceptions import NotFoundError, ValidationError
from hookrelay.models import Delivery, DeliveryStatus, Event, utcnow
from hookrelay.webhooks import (
    ProcessingGuard,
    WebhookDispatcher,
    build_event_body,
    verify_header,
)
from conftest import SECRET, RecordingHandler


def later(seconds: float = 1.0):
    """A poll time safely after any immediate retry."""
    return utcnow() + timedelta(seconds=seconds)


async def make_delivery(store, endpoint, **fields) -> Delivery:
    defaults = {
        "endpoint_id": endpoint.id,
        "event_id": "evt_test",
        "event_type": "order.created",
        "payload": {"order_id": 1},
    }
    return await store.create_delivery(Delivery(**{**defaults, **fields}))


class TestProcessingGuard:
    """Tests for the in-process attempt guard."""

    def test_try_acquire_is_exclusive(self):
        guard = ProcessingGuard()
        assert guard.try_acquire("dlv_1")
        assert not guard.try_acquire("dlv_1")
        assert "dlv_1" in guard
        guard.release("dlv_1")
        assert guard.try_acquire("dlv_1")

    def test_hold_releases_on_error(self):
        guard = ProcessingGuard()
        with pytest.raises(RuntimeError):
            with guard.hold("dlv_1") as acquired:
                assert acquired
                raise RuntimeError("boom")
        assert len(guard) == 0

    def test_nested_hold_not_acquired(self):
        guard = ProcessingGuard()
        with guard.hold("dlv_1"):
            with guard.hold("dlv_1") as second:
                assert not second
            assert "dlv_1" in guard


class TestDispatch:
    """Tests for fan-out and the immediate attempt."""

    async def test_success_first_try(self, store, make_endpoint, make_dispatcher):
        endpoint = await make_endpoint()
        handler = RecordingHandler(httpx.Response(200, text="ok"))
        dispatcher = make_dispatcher(handler)

        event = Event(type="order.created", payload={"order_id": 42})
        delivery_ids = await dispatcher.dispatch(event)

        assert len(delivery_ids) == 1
        delivery = await store.get_delivery(delivery_ids[0])
        assert delivery.status == DeliveryStatus.SUCCESS
        assert delivery.attempts == 1
        assert delivery.endpoint_id == endpoint.id
        assert delivery.response_status == 200
        assert delivery.delivered_at is not None
        assert delivery.next_retry_at is None
        assert handler.calls == 1

    async def test_fans_out_to_subscribers_only(self, store, make_endpoint, make_dispatcher):
        listed = await make_endpoint(url="https://a.example/hook")
        wildcard = await make_endpoint(url="https://b.example/hook", events=["*"])
        await make_endpoint(url="https://c.example/hook", events=["user.created"])
        await make_endpoint(url="https://d.example/hook", enabled=False)
        handler = RecordingHandler()
        dispatcher = make_dispatcher(handler)

        delivery_ids = await dispatcher.dispatch(Event(type="order.created"))

        deliveries = [await store.get_delivery(d) for d in delivery_ids]
        assert {d.endpoint_id for d in deliveries} == {listed.id, wildcard.id}
        assert {str(r.url) for r in handler.requests} == {
            "https://a.example/hook",
            "https://b.example/hook",
        }

    async def test_explicit_targets(self, store, make_endpoint, make_dispatcher):
        first = await make_endpoint()
        await make_endpoint()
        dispatcher = make_dispatcher(RecordingHandler())

        delivery_ids = await dispatcher.dispatch(
            Event(type="order.created", endpoint_ids=[first.id])
        )

        assert len(delivery_ids) == 1
        assert (await store.get_delivery(delivery_ids[0])).endpoint_id == first.id

    async def test_no_subscribers(self, make_dispatcher):
        handler = RecordingHandler()
        dispatcher = make_dispatcher(handler)
        assert await dispatcher.dispatch(Event(type="nobody.cares")) == []
        assert handler.calls == 0

    async def test_payload_is_frozen_at_creation(self, store, make_endpoint, make_dispatcher):
        await make_endpoint()
        dispatcher = make_dispatcher(RecordingHandler())
        event = Event(type="order.created", payload={"items": [1]})

        delivery_ids = await dispatcher.dispatch(event)
        event.payload["items"].append(2)

        assert (await store.get_delivery(delivery_ids[0])).payload == {"items": [1]}

    async def test_max_attempts_taken_from_strategy(self, store, make_endpoint, make_dispatcher):
        await make_endpoint()
        dispatcher = make_dispatcher(RecordingHandler())
        delivery_ids = await dispatcher.dispatch(Event(type="order.created"))
        delivery = await store.get_delivery(delivery_ids[0])
        assert delivery.max_attempts == dispatcher.retry_strategy.max_attempts


class TestRequest:
    """Tests for the outbound request shape."""

    async def test_headers_and_signature(self, store, make_endpoint, make_dispatcher):
        await make_endpoint(headers={"X-Tenant": "acme"})
        handler = RecordingHandler()
        dispatcher = make_dispatcher(handler)

        delivery_ids = await dispatcher.dispatch(
            Event(type="order.created", payload={"order_id": 7})
        )

        request = handler.requests[0]
        assert request.method == "POST"
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["User-Agent"] == "HookRelay-Webhooks/1.0"
        assert request.headers["X-Webhook-Event"] == "order.created"
        assert request.headers["X-Webhook-Delivery-Id"] == delivery_ids[0]
        assert request.headers["X-Tenant"] == "acme"

        signature_header = request.headers["X-Webhook-Signature"]
        assert verify_header(request.content, signature_header, SECRET)
        assert signature_header.startswith(f"t={request.headers['X-Webhook-Timestamp']},")

    async def test_body_envelope(self, store, make_endpoint, make_dispatcher):
        await make_endpoint()
        handler = RecordingHandler()
        dispatcher = make_dispatcher(handler)

        delivery_ids = await dispatcher.dispatch(
            Event(type="order.created", payload={"order_id": 7})
        )

        body = json.loads(handler.requests[0].content)
        assert body["id"] == delivery_ids[0]
        assert body["type"] == "order.created"
        assert body["data"] == {"order_id": 7}
        assert "created" in body

        delivery = await store.get_delivery(delivery_ids[0])
        assert handler.requests[0].content == build_event_body(delivery)

    async def test_signing_disabled(self, settings, make_endpoint, make_dispatcher):
        await make_endpoint()
        handler = RecordingHandler()
        dispatcher = make_dispatcher(
            handler, settings=settings.model_copy(update={"enable_signature": False})
        )

        await dispatcher.dispatch(Event(type="order.created"))

        assert "X-Webhook-Signature" not in handler.requests[0].headers
        assert "X-Webhook-Timestamp" not in handler.requests[0].headers


class TestRetries:
    """Tests for failure handling and the retry path."""

    async def test_retry_until_success(self, store, make_endpoint, make_dispatcher):
        """Three 500s then a 200 should succeed on the fourth attempt."""
        await make_endpoint()
        handler = RecordingHandler(
            httpx.Response(500),
            httpx.Response(500),
            httpx.Response(500),
            httpx.Response(200, text="ok"),
        )
        dispatcher = make_dispatcher(handler)

        delivery_ids = await dispatcher.dispatch(Event(type="order.created"))
        delivery = await store.get_delivery(delivery_ids[0])
        assert delivery.status == DeliveryStatus.RETRYING
        assert delivery.next_retry_at is not None

        for _ in range(3):
            assert await dispatcher.process_retries(now=later()) == 1

        delivery = await store.get_delivery(delivery_ids[0])
        assert delivery.status == DeliveryStatus.SUCCESS
        assert delivery.attempts == 4
        assert delivery.error is None

        attempts = await store.list_attempts(delivery.id)
        assert [a.attempt for a in attempts] == [1, 2, 3, 4]
        assert [a.status_code for a in attempts] == [500, 500, 500, 200]
        assert all(a.duration_ms >= 0 for a in attempts)

        assert await dispatcher.process_retries(now=later()) == 0

    async def test_budget_exhaustion(self, store, make_endpoint, make_dispatcher):
        await make_endpoint()
        handler = RecordingHandler(httpx.Response(503, text="down"))
        dispatcher = make_dispatcher(handler)

        delivery_ids = await dispatcher.dispatch(Event(type="order.created"))
        for _ in range(10):
            await dispatcher.process_retries(now=later())

        delivery = await store.get_delivery(delivery_ids[0])
        assert delivery.status == DeliveryStatus.FAILED
        assert delivery.attempts == delivery.max_attempts == 5
        assert delivery.next_retry_at is None
        assert delivery.response_status == 503
        assert handler.calls == 5

    async def test_permanent_client_error(self, store, make_endpoint, make_dispatcher):
        await make_endpoint()
        handler = RecordingHandler(httpx.Response(404, text="no such hook"))
        dispatcher = make_dispatcher(handler)

        delivery_ids = await dispatcher.dispatch(Event(type="order.created"))

        delivery = await store.get_delivery(delivery_ids[0])
        assert delivery.status == DeliveryStatus.FAILED
        assert delivery.attempts == 1
        assert delivery.error.startswith("HTTP 404")
        assert delivery.response_body == "no such hook"
        assert await dispatcher.process_retries(now=later()) == 0

    async def test_retry_after_is_honoured(self, store, make_endpoint, make_dispatcher):
        await make_endpoint()
        handler = RecordingHandler(httpx.Response(429, headers={"Retry-After": "120"}))
        dispatcher = make_dispatcher(handler)

        before = utcnow()
        delivery_ids = await dispatcher.dispatch(Event(type="order.created"))

        delivery = await store.get_delivery(delivery_ids[0])
        assert delivery.status == DeliveryStatus.RETRYING
        assert delivery.next_retry_at >= before + timedelta(seconds=120)
        assert await dispatcher.process_retries(now=later(60)) == 0

    @pytest.mark.parametrize(
        "retry_after", ["999999999999", "Fri, 31 Dec 9999 23:59:59 GMT"]
    )
    async def test_oversized_retry_after_is_capped(
        self, store, make_endpoint, make_dispatcher, settings, retry_after
    ):
        """A huge Retry-After is clamped and the delivery stays schedulable."""
        await make_endpoint()
        handler = RecordingHandler(httpx.Response(503, headers={"Retry-After": retry_after}))
        dispatcher = make_dispatcher(handler)

        before = utcnow()
        delivery_ids = await dispatcher.dispatch(Event(type="order.created"))
        assert len(delivery_ids) == 1

        delivery = await store.get_delivery(delivery_ids[0])
        assert delivery.status == DeliveryStatus.RETRYING
        assert delivery.attempts == 1
        cap = timedelta(seconds=settings.max_retry_after_seconds)
        assert before + cap <= delivery.next_retry_at <= utcnow() + cap

        attempts = await store.list_attempts(delivery.id)
        assert [a.status_code for a in attempts] == [503]

    async def test_cancelled_attempt_is_rescheduled(
        self, store, make_endpoint, make_dispatcher
    ):
        """Cancelling an in-flight attempt leaves the delivery retryable."""
        endpoint = await make_endpoint()
        started = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            started.set()
            await asyncio.sleep(10)
            return httpx.Response(200)

        dispatcher = make_dispatcher(handler)
        delivery = await make_delivery(store, endpoint)

        task = asyncio.create_task(dispatcher.attempt(delivery.id))
        await asyncio.wait_for(started.wait(), timeout=5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        delivery = await store.get_delivery(delivery.id)
        assert delivery.status == DeliveryStatus.RETRYING
        assert delivery.attempts == 1
        assert delivery.next_retry_at is not None
        assert delivery.error == "Delivery attempt cancelled"
        assert delivery.locked_by is None

        attempts = await store.list_attempts(delivery.id)
        assert [a.error for a in attempts] == ["Delivery attempt cancelled"]

    async def test_cancelled_final_attempt_fails(self, store, make_endpoint, make_dispatcher):
        endpoint = await make_endpoint()
        started = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            started.set()
            await asyncio.sleep(10)
            return httpx.Response(200)

        dispatcher = make_dispatcher(handler)
        delivery = await make_delivery(store, endpoint, attempts=4, max_attempts=5)

        task = asyncio.create_task(dispatcher.attempt(delivery.id))
        await asyncio.wait_for(started.wait(), timeout=5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        delivery = await store.get_delivery(delivery.id)
        assert delivery.status == DeliveryStatus.FAILED
        assert delivery.next_retry_at is None

    async def test_timeout_is_retried(self, store, make_endpoint, make_dispatcher):
        await make_endpoint()
        handler = RecordingHandler(httpx.ReadTimeout("slow"), httpx.Response(200))
        dispatcher = make_dispatcher(handler)

        delivery_ids = await dispatcher.dispatch(Event(type="order.created"))
        delivery = await store.get_delivery(delivery_ids[0])
        assert delivery.status == DeliveryStatus.RETRYING
        assert delivery.error.startswith("Request timeout")
        assert delivery.response_status is None

        await dispatcher.process_retries(now=later())
        assert (await store.get_delivery(delivery_ids[0])).status == DeliveryStatus.SUCCESS

    async def test_connection_error_is_retried(self, store, make_endpoint, make_dispatcher):
        await make_endpoint()
        handler = RecordingHandler(httpx.ConnectError("refused"))
        dispatcher = make_dispatcher(handler)

        delivery_ids = await dispatcher.dispatch(Event(type="order.created"))

        delivery = await store.get_delivery(delivery_ids[0])
        assert delivery.status == DeliveryStatus.RETRYING
        assert delivery.error.startswith("Request failed")

    async def test_unexpected_error_fails(self, store, make_endpoint, make_dispatcher):
        await make_endpoint()
        handler = RecordingHandler(RuntimeError("kaboom"))
        dispatcher = make_dispatcher(handler)

        delivery_ids = await dispatcher.dispatch(Event(type="order.created"))

        delivery = await store.get_delivery(delivery_ids[0])
        assert delivery.status == DeliveryStatus.FAILED
        assert delivery.error == "Unexpected error: kaboom"
        assert len(await store.list_attempts(delivery.id)) == 1

    async def test_vanished_endpoint(self, store, make_endpoint, make_dispatcher):
        endpoint = await make_endpoint()
        handler = RecordingHandler()
        dispatcher = make_dispatcher(handler)
        delivery = await make_delivery(store, endpoint, next_retry_at=utcnow())
        await store.delete_endpoint(endpoint.id)

        result = await dispatcher.attempt(delivery.id)

        assert result.status == DeliveryStatus.FAILED
        assert result.error == f"Endpoint {endpoint.id} not found"
        assert result.attempts == 0
        assert handler.calls == 0

    async def test_terminal_delivery_not_resent(self, store, make_endpoint, make_dispatcher):
        endpoint = await make_endpoint()
        handler = RecordingHandler()
        dispatcher = make_dispatcher(handler)
        delivery = await make_delivery(store, endpoint, status=DeliveryStatus.SUCCESS)

        result = await dispatcher.attempt(delivery.id)

        assert result.status == DeliveryStatus.SUCCESS
        assert handler.calls == 0

    async def test_missing_delivery(self, make_dispatcher):
        dispatcher = make_dispatcher(RecordingHandler())
        assert await dispatcher.attempt("dlv_missing") is None

    async def test_one_bad_delivery_does_not_block_others(
        self, store, make_endpoint, make_dispatcher
    ):
        good = await make_endpoint(url="https://good.example/hook")
        bad = await make_endpoint(url="https://bad.example/hook")

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "bad.example":
                raise RuntimeError("kaboom")
            return httpx.Response(200)

        dispatcher = make_dispatcher(handler)
        now = utcnow()
        first = await make_delivery(store, bad, next_retry_at=now)
        second = await make_delivery(store, good, next_retry_at=now)

        assert await dispatcher.process_retries(now=later()) == 2
        assert (await store.get_delivery(first.id)).status == DeliveryStatus.FAILED
        assert (await store.get_delivery(second.id)).status == DeliveryStatus.SUCCESS


class TestConcurrency:
    """Tests for at-most-one attempt per delivery."""

    async def test_second_attempt_skipped_while_in_flight(
        self, store, make_endpoint, make_dispatcher
    ):
        endpoint = await make_endpoint()
        started = asyncio.Event()
        release = asyncio.Event()
        calls = 0

        async def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            started.set()
            await release.wait()
            return httpx.Response(200)

        dispatcher = make_dispatcher(handler)
        delivery = await make_delivery(store, endpoint, next_retry_at=utcnow())

        first = asyncio.create_task(dispatcher.attempt(delivery.id))
        await started.wait()

        assert await dispatcher.attempt(delivery.id) is None
        assert await dispatcher.process_retries(now=later()) == 0
        assert delivery.id in dispatcher.in_flight

        release.set()
        result = await first

        assert result.status == DeliveryStatus.SUCCESS
        assert result.attempts == 1
        assert calls == 1
        assert delivery.id not in dispatcher.in_flight

    async def test_lease_held_by_other_worker(self, store, make_endpoint, make_dispatcher):
        endpoint = await make_endpoint()
        handler = RecordingHandler()
        dispatcher = make_dispatcher(handler, worker_id="worker-a")
        delivery = await make_delivery(store, endpoint, next_retry_at=utcnow())
        await store.claim_delivery(delivery.id, "worker-b", 60)

        assert await dispatcher.attempt(delivery.id) is None
        assert handler.calls == 0

    async def test_lease_released_after_attempt(self, store, make_endpoint, make_dispatcher):
        endpoint = await make_endpoint()
        dispatcher = make_dispatcher(RecordingHandler())
        delivery = await make_delivery(store, endpoint)

        result = await dispatcher.attempt(delivery.id)

        assert result.locked_by is None
        assert result.locked_until is None


class TestManualRetry:
    """Tests for retry_delivery."""

    async def test_retry_failed_delivery(self, store, make_endpoint, make_dispatcher):
        endpoint = await make_endpoint()
        handler = RecordingHandler()
        dispatcher = make_dispatcher(handler)
        delivery = await make_delivery(
            store, endpoint, status=DeliveryStatus.FAILED, attempts=2, error="HTTP 404"
        )

        result = await dispatcher.retry_delivery(delivery.id)

        assert result.status == DeliveryStatus.SUCCESS
        assert result.attempts == 3
        assert handler.calls == 1

    async def test_exhausted_budget_is_raised_by_one(self, store, make_endpoint, make_dispatcher):
        endpoint = await make_endpoint()
        dispatcher = make_dispatcher(RecordingHandler(httpx.Response(500)))
        delivery = await make_delivery(
            store, endpoint, status=DeliveryStatus.FAILED, attempts=5, max_attempts=5
        )

        result = await dispatcher.retry_delivery(delivery.id)

        assert result.max_attempts == 6
        assert result.attempts == 6
        assert result.status == DeliveryStatus.FAILED

    async def test_successful_delivery_rejected(self, store, make_endpoint, make_dispatcher):
        endpoint = await make_endpoint()
        dispatcher = make_dispatcher(RecordingHandler())
        delivery = await make_delivery(store, endpoint, status=DeliveryStatus.SUCCESS)

        with pytest.raises(ValidationError):
            await dispatcher.retry_delivery(delivery.id)

    async def test_missing_delivery(self, make_dispatcher):
        dispatcher = make_dispatcher(RecordingHandler())
        with pytest.raises(NotFoundError):
            await dispatcher.retry_delivery("dlv_missing")


class TestPublishing:
    """Tests for fire-and-forget publishing and the poller."""

    async def test_publish_returns_before_delivery(self, store, make_endpoint, make_dispatcher):
        await make_endpoint()
        handler = RecordingHandler()
        dispatcher = make_dispatcher(handler)

        event = await dispatcher.publish_event("order.created", {"order_id": 1})
        assert event.type == "order.created"

        await dispatcher.wait_for_pending()

        deliveries = await store.list_deliveries()
        assert len(deliveries) == 1
        assert deliveries[0].event_id == event.id
        assert deliveries[0].status == DeliveryStatus.SUCCESS

    async def test_publish_with_targets(self, store, make_endpoint, make_dispatcher):
        target = await make_endpoint()
        await make_endpoint()
        dispatcher = make_dispatcher(RecordingHandler())

        await dispatcher.publish_event("order.created", {}, target_endpoint_ids=[target.id])
        await dispatcher.wait_for_pending()

        deliveries = await store.list_deliveries()
        assert [d.endpoint_id for d in deliveries] == [target.id]

    async def test_publish_failure_not_raised(self, store, make_endpoint, make_dispatcher):
        await make_endpoint()
        dispatcher = make_dispatcher(RecordingHandler(httpx.Response(400)))

        await dispatcher.publish_event("order.created", {})
        await dispatcher.wait_for_pending()

        deliveries = await store.list_deliveries()
        assert deliveries[0].status == DeliveryStatus.FAILED

    async def test_poller_drives_retries(self, store, make_endpoint, make_dispatcher):
        await make_endpoint()
        handler = RecordingHandler(httpx.Response(502), httpx.Response(200))
        dispatcher = make_dispatcher(handler)
        dispatcher.start()

        await dispatcher.publish_event("order.created", {})
        await dispatcher.wait_for_pending()

        for _ in range(200):
            deliveries = await store.list_deliveries()
            if deliveries and deliveries[0].status == DeliveryStatus.SUCCESS:
                break
            await asyncio.sleep(0.01)

        await dispatcher.stop()
        assert deliveries[0].status == DeliveryStatus.SUCCESS
        assert deliveries[0].attempts == 2


class TestStats:
    """Tests for get_stats."""

    async def test_stats(self, store, make_endpoint, make_dispatcher):
        ok = await make_endpoint(url="https://ok.example/hook")
        await make_endpoint(url="https://bad.example/hook")

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(410 if request.url.host == "bad.example" else 200)

        dispatcher = make_dispatcher(handler)
        await dispatcher.dispatch(Event(type="order.created"))

        stats = await dispatcher.get_stats()
        assert stats.total == 2
        assert stats.success == 1
        assert stats.failed == 1
        assert stats.success_rate == pytest.approx(0.5)
        assert stats.average_delivery_time_ms >= 0

        scoped = await dispatcher.get_stats(ok.id)
        assert scoped.total == 1
        assert scoped.success_rate == 1.0


class TestLifecycle:
    """Tests for dispatcher shutdown."""

    async def test_close_owned_client(self, store, settings):
        dispatcher = WebhookDispatcher(store, settings=settings)
        await dispatcher.close()
        assert dispatcher._client.is_closed

    async def test_shared_client_left_open(self, store, settings):
        client = httpx.AsyncClient(transport=httpx.MockTransport(RecordingHandler()))
        async with WebhookDispatcher(store, settings=settings, http_client=client):
            pass
        assert not client.is_closed
        await client.aclose()

    async def test_default_worker_id(self, store, settings):
        dispatcher = WebhookDispatcher(store, settings=settings)
        assert dispatcher.worker_id.startswith("worker_")
        await dispatcher.close()
