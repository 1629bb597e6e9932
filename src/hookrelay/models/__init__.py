"""Data models for HookRelay.

- Endpoint: a registered subscriber URL, secret, and event subscriptions
- Event: an internally published occurrence
- Delivery: one endpoint's delivery record for one event
- DeliveryAttempt: one network try of a delivery
"""

from .base import generate_id, utcnow
from .delivery import (
    ACTIVE_STATUSES,
    OUTCOME_FIELDS,
    RESPONSE_BODY_LIMIT,
    TERMINAL_STATUSES,
    Delivery,
    DeliveryAttempt,
    DeliveryFilter,
    DeliveryStats,
    DeliveryStatus,
)
from .endpoint import WILDCARD_EVENT, Endpoint, is_valid_url
from .event import Event

__all__ = [
    # Base
    "generate_id",
    "utcnow",
    # Endpoint
    "WILDCARD_EVENT",
    "Endpoint",
    "is_valid_url",
    # Event
    "Event",
    # Delivery
    "ACTIVE_STATUSES",
    "OUTCOME_FIELDS",
    "RESPONSE_BODY_LIMIT",
    "TERMINAL_STATUSES",
    "Delivery",
    "DeliveryAttempt",
    "DeliveryFilter",
    "DeliveryStats",
    "DeliveryStatus",
]
