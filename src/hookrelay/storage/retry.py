"""Tenacity policy for Qdrant calls made by the webhook store.

Connection failures, timeouts and 5xx responses are retried with
exponential backoff. A 4xx ``UnexpectedResponse`` (bad filter, missing
collection) is a caller error and propagates on the first try.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, TypeVar

import httpx
from qdrant_client.http.exceptions import UnexpectedResponse
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def is_transient_storage_error(exc: BaseException) -> bool:
    """True for errors worth another try against Qdrant."""
    if isinstance(exc, httpx.ConnectError | httpx.TimeoutException):
        return True
    if isinstance(exc, UnexpectedResponse):
        return exc.status_code is None or exc.status_code >= 500
    return False


def _log_retry(retry_state: RetryCallState) -> None:
    fn_name = retry_state.fn.__name__ if retry_state.fn else "unknown"
    exception = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Store call %s failed on attempt %d, retrying: %s",
        fn_name,
        retry_state.attempt_number,
        exception,
    )


def storage_retry(
    attempts: int = 3, min_wait: float = 1.0, max_wait: float = 10.0
) -> Callable[[F], F]:
    """Build a retry decorator for store primitives.

    Args:
        attempts: Total tries, including the first.
        min_wait: Floor on the backoff between tries, in seconds.
        max_wait: Cap on the backoff between tries, in seconds.
    """
    return retry(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=retry_if_exception(is_transient_storage_error),
        before_sleep=_log_retry,
        reraise=True,
    )


qdrant_retry = storage_retry()

__all__ = ["is_transient_storage_error", "qdrant_retry", "storage_retry"]
