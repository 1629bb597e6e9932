"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable

import httpx
import pytest

from hookrelay.config import Settings
from hookrelay.models import Endpoint
from hookrelay.storage import InMemoryWebhookStore
from hookrelay.webhooks import ExponentialBackoffStrategy, WebhookDispatcher

SECRET = "a" * 64


class RecordingHandler:
    """httpx.MockTransport handler that replays canned responses.

    The last response repeats once the queue is down to one entry.
    Every request is kept for assertions.
    """

    def __init__(self, *responses: httpx.Response | Exception) -> None:
        self.responses = list(responses) or [httpx.Response(200, text="ok")]
        self.requests: list[httpx.Request] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def settings() -> Settings:
    """Test settings with immediate retries."""
    return Settings(
        env="test",
        max_attempts=5,
        initial_retry_delay=0.001,
        max_retry_delay=0.001,
        retry_jitter=0.0,
        poll_interval_seconds=0.01,
        lease_seconds=30,
    )


@pytest.fixture
def store() -> InMemoryWebhookStore:
    return InMemoryWebhookStore()


@pytest.fixture
def immediate_strategy() -> ExponentialBackoffStrategy:
    """Five attempts, no waiting between them."""
    return ExponentialBackoffStrategy(
        initial_delay=0.0, max_delay=0.0, multiplier=1.0, max_attempts=5, jitter=0.0
    )


@pytest.fixture
def make_endpoint(store: InMemoryWebhookStore) -> Callable:
    """Factory storing an endpoint in the in-memory store."""

    async def _make(
        url: str = "https://example.com/hooks",
        events: list[str] | None = None,
        **fields,
    ) -> Endpoint:
        endpoint = Endpoint(
            url=url,
            secret=SECRET,
            events=["order.created"] if events is None else events,
            **fields,
        )
        return await store.create_endpoint(endpoint)

    return _make


@pytest.fixture
async def make_dispatcher(
    store: InMemoryWebhookStore,
    settings: Settings,
    immediate_strategy: ExponentialBackoffStrategy,
) -> AsyncIterator[Callable]:
    """Factory building a dispatcher whose HTTP calls go to a RecordingHandler."""
    created: list[tuple[WebhookDispatcher, httpx.AsyncClient]] = []

    def _make(handler: Callable, **kwargs) -> WebhookDispatcher:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        kwargs.setdefault("settings", settings)
        kwargs.setdefault("retry_strategy", immediate_strategy)
        dispatcher = WebhookDispatcher(store, http_client=client, **kwargs)
        created.append((dispatcher, client))
        return dispatcher

    yield _make

    for dispatcher, client in created:
        await dispatcher.close()
        await client.aclose()
