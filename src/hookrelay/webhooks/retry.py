"""Retry strategies for failed webhook deliveries.

Every strategy answers two questions for a delivery that has made
``attempt`` tries so far:

- ``should_retry(attempt, error)``: is another try allowed?
- ``next_delay(attempt)``: how many seconds to wait, or None for no retry.

Status-code policy shared by all strategies: when the error carries an
HTTP status, only 5xx, 408 (Request Timeout) and 429 (Too Many Requests)
are retried. Any other 4xx is a permanent rejection by the receiver.
Errors without a status (timeouts, connection failures) are transient.
"""

from __future__ import annotations

import random
from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from hookrelay.config import Settings

RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})


def is_retryable_status(status_code: int) -> bool:
    """Check whether an HTTP status indicates a transient failure."""
    if status_code >= 500:
        return True
    if status_code in RETRYABLE_CLIENT_STATUSES:
        return True
    return not 400 <= status_code < 500


class RetryStrategy(ABC):
    """Policy deciding whether and when to retry a failed delivery."""

    max_attempts: int

    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        """Decide whether another attempt is allowed.

        Args:
            attempt: Number of attempts already made.
            error: The error from the latest attempt, if any.

        Returns:
            False once the budget is spent or the error is permanent.
        """
        if attempt >= self.max_attempts:
            return False
        status_code = getattr(error, "status_code", None)
        if isinstance(status_code, int):
            return is_retryable_status(status_code)
        return True

    def next_delay(self, attempt: int) -> float | None:
        """Seconds to wait before the next attempt, or None if exhausted."""
        if attempt >= self.max_attempts:
            return None
        return max(0.0, self._delay(attempt))

    @abstractmethod
    def _delay(self, attempt: int) -> float:
        """Raw delay for a retry after ``attempt`` tries."""


class ExponentialBackoffStrategy(RetryStrategy):
    """Exponential backoff with jitter.

    ``delay = min(max_delay, initial_delay * multiplier ** attempt)``,
    then perturbed by uniform +/- ``jitter`` so deliveries that failed at
    the same instant do not retry in lockstep.
    """

    def __init__(
        self,
        initial_delay: float = 1.0,
        max_delay: float = 60.0,
        multiplier: float = 2.0,
        max_attempts: int = 5,
        jitter: float = 0.25,
    ) -> None:
        if initial_delay < 0 or max_delay < 0:
            raise ValueError("delays must be non-negative")
        if multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if not 0 <= jitter <= 1:
            raise ValueError("jitter must be between 0 and 1")
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.max_attempts = max_attempts
        self.jitter = jitter

    def base_delay(self, attempt: int) -> float:
        """Un-jittered delay, non-decreasing in ``attempt`` and capped."""
        try:
            raw = self.initial_delay * self.multiplier**attempt
        except OverflowError:
            return self.max_delay
        return min(self.max_delay, raw)

    def _delay(self, attempt: int) -> float:
        delay = self.base_delay(attempt)
        if self.jitter:
            delay += delay * self.jitter * random.uniform(-1.0, 1.0)
        return delay


class LinearBackoffStrategy(RetryStrategy):
    """Linear backoff: ``delay * (attempt + 1)``."""

    def __init__(self, delay: float = 5.0, max_attempts: int = 3) -> None:
        if delay < 0:
            raise ValueError("delay must be non-negative")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.delay = delay
        self.max_attempts = max_attempts

    def _delay(self, attempt: int) -> float:
        return self.delay * (attempt + 1)


class FixedDelayStrategy(RetryStrategy):
    """Constant delay between attempts."""

    def __init__(self, delay: float = 10.0, max_attempts: int = 3) -> None:
        if delay < 0:
            raise ValueError("delay must be non-negative")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.delay = delay
        self.max_attempts = max_attempts

    def _delay(self, attempt: int) -> float:
        return self.delay


class CustomDelayStrategy(RetryStrategy):
    """Explicit delay sequence.

    The wait before retry number ``n`` is ``delays[n - 1]``, so a list of
    N delays allows N retries (N + 1 attempts in total).
    """

    def __init__(self, delays: Sequence[float]) -> None:
        if not delays:
            raise ValueError("delays must not be empty")
        if any(d < 0 for d in delays):
            raise ValueError("delays must be non-negative")
        self.delays = list(delays)
        self.max_attempts = len(self.delays) + 1

    def _delay(self, attempt: int) -> float:
        index = min(max(attempt - 1, 0), len(self.delays) - 1)
        return self.delays[index]


def calculate_next_retry_time(
    attempt: int,
    strategy: RetryStrategy,
    now: datetime | None = None,
) -> datetime | None:
    """Absolute time of the next attempt, or None if no retry is allowed."""
    delay = strategy.next_delay(attempt)
    if delay is None:
        return None
    return (now or datetime.now(UTC)) + timedelta(seconds=delay)


def parse_retry_after(value: str | float | int | None, now: datetime | None = None) -> float:
    """Parse a Retry-After header into seconds.

    Accepts delta-seconds or an HTTP-date. Unparseable values yield 0.
    """
    if value is None:
        return 0.0
    if isinstance(value, int | float):
        return max(0.0, float(value))

    text = value.strip()
    try:
        return max(0.0, float(int(text)))
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return 0.0
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    current = now or datetime.now(UTC)
    return max(0.0, (when - current).total_seconds())


def create_default_retry_strategy() -> RetryStrategy:
    """Exponential backoff: 1s initial, 60s cap, x2, 5 attempts."""
    return ExponentialBackoffStrategy(
        initial_delay=1.0,
        max_delay=60.0,
        multiplier=2.0,
        max_attempts=5,
    )


def create_retry_strategy(settings: Settings) -> RetryStrategy:
    """Build the strategy selected by ``settings.retry_strategy``."""
    if settings.retry_strategy == "linear":
        return LinearBackoffStrategy(
            delay=settings.linear_retry_delay,
            max_attempts=settings.max_attempts,
        )
    if settings.retry_strategy == "fixed":
        return FixedDelayStrategy(
            delay=settings.fixed_retry_delay,
            max_attempts=settings.max_attempts,
        )
    if settings.retry_strategy == "custom":
        return CustomDelayStrategy(settings.custom_retry_delays)
    return ExponentialBackoffStrategy(
        initial_delay=settings.initial_retry_delay,
        max_delay=settings.max_retry_delay,
        multiplier=settings.backoff_multiplier,
        max_attempts=settings.max_attempts,
        jitter=settings.retry_jitter,
    )


__all__ = [
    "RETRYABLE_CLIENT_STATUSES",
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
]
