"""Webhook delivery engine for HookRelay.

Provides HMAC-signed webhook delivery with pluggable retry strategies
and a background retry poller.

Example:
    ```python
    from hookrelay.storage import InMemoryWebhookStore
    from hookrelay.webhooks import WebhookDispatcher, verify_header

    async with WebhookDispatcher(InMemoryWebhookStore()) as dispatcher:
        dispatcher.start()
        await dispatcher.publish_event("order.created", {"order_id": 42})

    # Receiver side
    ok = verify_header(raw_body, request.headers["X-Webhook-Signature"], secret)
    ```
"""

from .dispatcher import ProcessingGuard, WebhookDispatcher, build_event_body
from .poller import RetryPoller
from .retry import (
    CustomDelayStrategy,
    ExponentialBackoffStrategy,
    FixedDelayStrategy,
    LinearBackoffStrategy,
    RetryStrategy,
    calculate_next_retry_time,
    create_default_retry_strategy,
    create_retry_strategy,
    is_retryable_status,
    parse_retry_after,
)
from .signature import (
    Signature,
    canonical_json,
    format_signature_header,
    generate_secret,
    parse_signature_header,
    sign,
    verify,
    verify_header,
)

__all__ = [
    # Dispatcher
    "ProcessingGuard",
    "RetryPoller",
    "WebhookDispatcher",
    "build_event_body",
    # Retry
    "CustomDelayStrategy",
    "ExponentialBackoffStrategy",
    "FixedDelayStrategy",
    "LinearBackoffStrategy",
    "RetryStrategy",
    "calculate_next_retry_time",
    "create_default_retry_strategy",
    "create_retry_strategy",
    "is_retryable_status",
    "parse_retry_after",
    # Signature
    "Signature",
    "canonical_json",
    "format_signature_header",
    "generate_secret",
    "parse_signature_header",
    "sign",
    "verify",
    "verify_header",
]
