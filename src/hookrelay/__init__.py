"""HookRelay: outbound webhooks that arrive.

Registers subscriber endpoints, publishes events, and delivers signed HTTP
notifications with bounded, backoff-scheduled retries.

Quick Start:
    from hookrelay.service import WebhookService

    async with WebhookService.create() as service:
        endpoint = await service.create_endpoint(
            url="https://example.com/hooks",
            events=["order.created"],
        )
        # Store endpoint.secret on the receiving side

        await service.publish_event("order.created", {"order_id": 42})

Delivery lifecycle:
    - pending: created, first attempt not finished
    - retrying: failed transiently, next attempt scheduled
    - success: subscriber answered 2xx (terminal)
    - failed: permanent rejection or retry budget spent (terminal)
"""

__version__ = "0.1.0"

# Configuration
from .config import Settings, settings

# Exceptions
from .exceptions import (
    ConfigurationError,
    DeliveryError,
    HookRelayError,
    NotFoundError,
    StorageError,
    ValidationError,
)

# Logging
from .logging import (
    bind_context,
    clear_context,
    configure_from_settings,
    configure_logging,
    delivery_context,
    get_logger,
    logger,
    unbind_context,
)

# Models
from .models import (
    Delivery,
    DeliveryAttempt,
    DeliveryFilter,
    DeliveryStats,
    DeliveryStatus,
    Endpoint,
    Event,
)

# Engine
from .service import CleanupResult, WebhookService
from .storage import InMemoryWebhookStore, QdrantWebhookStore, WebhookStore, create_store
from .webhooks import WebhookDispatcher, sign, verify, verify_header

__all__ = [
    # Version
    "__version__",
    # Configuration
    "Settings",
    "settings",
    # Exceptions
    "HookRelayError",
    "ValidationError",
    "NotFoundError",
    "StorageError",
    "ConfigurationError",
    "DeliveryError",
    # Logging
    "configure_from_settings",
    "configure_logging",
    "delivery_context",
    "get_logger",
    "logger",
    "bind_context",
    "clear_context",
    "unbind_context",
    # Models
    "Delivery",
    "DeliveryAttempt",
    "DeliveryFilter",
    "DeliveryStats",
    "DeliveryStatus",
    "Endpoint",
    "Event",
    # Engine
    "CleanupResult",
    "InMemoryWebhookStore",
    "QdrantWebhookStore",
    "WebhookDispatcher",
    "WebhookService",
    "WebhookStore",
    "create_store",
    "sign",
    "verify",
    "verify_header",
]
