"""Structured logging for HookRelay.

structlog renders every record, both from ``get_logger`` loggers and from
plain ``logging.getLogger(__name__)`` loggers in library modules. Two
output modes are supported:

- ``json``: one JSON object per line, for production log shipping
- ``text``: colored console output for local development

Delivery attempts run concurrently on one event loop, so per-attempt
fields (``delivery_id``, ``endpoint_id``) live in contextvars and are
scoped with ``delivery_context``.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from structlog.typing import Processor

    from hookrelay.config import Settings

# HTTP client libraries log every request at INFO
_NOISY_LOGGERS = ("httpx", "httpcore")

_configured = False
_handler: logging.Handler | None = None


def _shared_processors() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def _renderer(format: str) -> list[Processor]:
    if format.lower() == "json":
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]


def configure_logging(level: str = "INFO", format: str = "json") -> None:
    """Configure structlog and the standard library root logger.

    Safe to call more than once; the last call wins.

    Args:
        level: Log level name. Unknown names fall back to INFO.
        format: "json" or "text".
    """
    global _configured, _handler

    log_level = getattr(logging, level.upper(), logging.INFO)
    if not isinstance(log_level, int):
        log_level = logging.INFO

    shared = _shared_processors()
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *_renderer(format),
        ],
    )
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    if _handler is not None:
        root.removeHandler(_handler)
    root.addHandler(handler)
    root.setLevel(log_level)
    _handler = handler

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True


def configure_from_settings(settings: Settings) -> None:
    """Apply ``log_level`` and ``log_format`` from settings."""
    configure_logging(level=settings.log_level, format=settings.log_format)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger, configuring defaults on first use."""
    if not _configured:
        configure_logging()
    return structlog.get_logger(name)  # type: ignore[no-any-return]


def bind_context(**kwargs: object) -> None:
    """Attach key/value pairs to every later record in this task."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Drop the named keys from the logging context."""
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Drop every bound key."""
    structlog.contextvars.clear_contextvars()


@contextmanager
def delivery_context(**kwargs: object) -> Iterator[None]:
    """Bind fields for the duration of a block, then restore the previous values.

    Example:
        ```python
        with delivery_context(delivery_id="dlv_abc", endpoint_id="whe_123"):
            logger.info("Webhook delivered", status_code=200)
        ```
    """
    with structlog.contextvars.bound_contextvars(**kwargs):
        yield


logger = get_logger("hookrelay")
