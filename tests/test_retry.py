"""Unit tests for retry strategies."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from hookrelay.config import Settings
from hookrelay.exceptions import DeliveryError
from hookrelay.webhooks.retry import (
    CustomDelayStrategy,
    ExponentialBackoffStrategy,
    FixedDelayStrategy,
    LinearBackoffStrategy,
    calculate_next_retry_time,
    create_default_retry_strategy,
    create_retry_strategy,
    is_retryable_status,
    parse_retry_after,
)


class TestStatusPolicy:
    """Tests for the shared status-code policy."""

    @pytest.mark.parametrize("status", [500, 502, 503, 504, 408, 429])
    def test_transient_statuses_retry(self, status):
        assert is_retryable_status(status) is True

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 410, 422])
    def test_client_errors_are_permanent(self, status):
        assert is_retryable_status(status) is False

    def test_permanent_status_stops_retry_with_budget_left(self):
        """A 404 should not be retried even on the first attempt."""
        strategy = ExponentialBackoffStrategy(max_attempts=5)
        assert not strategy.should_retry(1, DeliveryError("HTTP 404", status_code=404))

    def test_transient_status_retries(self):
        strategy = FixedDelayStrategy(max_attempts=3)
        assert strategy.should_retry(1, DeliveryError("HTTP 503", status_code=503))

    def test_error_without_status_is_transient(self):
        """Timeouts and connection errors carry no status."""
        strategy = LinearBackoffStrategy(max_attempts=3)
        assert strategy.should_retry(1, DeliveryError("Request timeout"))
        assert strategy.should_retry(1, TimeoutError("boom"))

    def test_policy_applies_to_every_strategy(self):
        error = DeliveryError("HTTP 400", status_code=400)
        strategies = [
            ExponentialBackoffStrategy(),
            LinearBackoffStrategy(),
            FixedDelayStrategy(),
            CustomDelayStrategy([1, 2]),
        ]
        assert not any(s.should_retry(1, error) for s in strategies)


class TestExponentialBackoff:
    """Tests for ExponentialBackoffStrategy."""

    def test_base_delay_grows_and_caps(self):
        strategy = ExponentialBackoffStrategy(initial_delay=1.0, max_delay=10.0, multiplier=2.0)
        assert [strategy.base_delay(n) for n in range(6)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]

    def test_base_delay_monotonic(self):
        """Un-jittered delays should never decrease."""
        strategy = ExponentialBackoffStrategy(initial_delay=0.5, max_delay=60.0, multiplier=3.0)
        delays = [strategy.base_delay(n) for n in range(50)]
        assert delays == sorted(delays)
        assert max(delays) == 60.0

    def test_huge_attempt_does_not_overflow(self):
        strategy = ExponentialBackoffStrategy(max_delay=60.0, max_attempts=50)
        assert strategy.base_delay(10_000) == 60.0

    def test_jitter_stays_within_bounds(self):
        strategy = ExponentialBackoffStrategy(
            initial_delay=10.0, max_delay=10.0, jitter=0.25, max_attempts=10
        )
        for _ in range(200):
            delay = strategy.next_delay(1)
            assert delay is not None
            assert 7.5 <= delay <= 12.5

    def test_delay_never_negative(self):
        strategy = ExponentialBackoffStrategy(initial_delay=0.0, max_delay=0.0, jitter=1.0)
        assert strategy.next_delay(0) == 0.0

    def test_budget_terminates(self):
        """should_retry and next_delay should stop at max_attempts."""
        strategy = ExponentialBackoffStrategy(max_attempts=3, jitter=0.0)
        assert strategy.should_retry(2)
        assert not strategy.should_retry(3)
        assert not strategy.should_retry(4)
        assert strategy.next_delay(3) is None

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"initial_delay": -1},
            {"multiplier": 0.5},
            {"max_attempts": 0},
            {"jitter": 1.5},
        ],
    )
    def test_invalid_arguments(self, kwargs):
        with pytest.raises(ValueError):
            ExponentialBackoffStrategy(**kwargs)

    def test_default_strategy(self):
        strategy = create_default_retry_strategy()
        assert isinstance(strategy, ExponentialBackoffStrategy)
        assert strategy.max_attempts == 5
        assert strategy.initial_delay == 1.0
        assert strategy.max_delay == 60.0


class TestLinearAndFixed:
    """Tests for LinearBackoffStrategy and FixedDelayStrategy."""

    def test_linear_delays(self):
        strategy = LinearBackoffStrategy(delay=5.0, max_attempts=4)
        assert [strategy.next_delay(n) for n in range(5)] == [5.0, 10.0, 15.0, 20.0, None]

    def test_fixed_delays(self):
        strategy = FixedDelayStrategy(delay=10.0, max_attempts=3)
        assert [strategy.next_delay(n) for n in range(4)] == [10.0, 10.0, 10.0, None]

    def test_defaults(self):
        assert LinearBackoffStrategy().max_attempts == 3
        assert FixedDelayStrategy().delay == 10.0


class TestCustomDelay:
    """Tests for CustomDelayStrategy."""

    def test_delay_before_retry_n_is_delays_n_minus_one(self):
        strategy = CustomDelayStrategy([1, 5, 30])
        assert strategy.next_delay(1) == 1
        assert strategy.next_delay(2) == 5
        assert strategy.next_delay(3) == 30

    def test_attempt_budget_is_len_plus_one(self):
        strategy = CustomDelayStrategy([1, 5, 30])
        assert strategy.max_attempts == 4
        assert strategy.should_retry(3)
        assert not strategy.should_retry(4)
        assert strategy.next_delay(4) is None

    def test_empty_delays_rejected(self):
        with pytest.raises(ValueError):
            CustomDelayStrategy([])

    def test_negative_delay_rejected(self):
        with pytest.raises(ValueError):
            CustomDelayStrategy([1, -1])


class TestHelpers:
    """Tests for retry helpers."""

    def test_calculate_next_retry_time(self):
        now = datetime(2024, 1, 1, tzinfo=UTC)
        strategy = FixedDelayStrategy(delay=10.0, max_attempts=3)
        assert calculate_next_retry_time(1, strategy, now=now) == now + timedelta(seconds=10)
        assert calculate_next_retry_time(3, strategy, now=now) is None

    @pytest.mark.parametrize(
        ("value", "expected"),
        [(None, 0.0), ("120", 120.0), (" 5 ", 5.0), (30, 30.0), ("-4", 0.0), ("soon", 0.0)],
    )
    def test_parse_retry_after_seconds(self, value, expected):
        assert parse_retry_after(value) == expected

    def test_parse_retry_after_http_date(self):
        now = datetime(2015, 10, 21, 7, 28, 0, tzinfo=UTC)
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:30 GMT", now=now) == 30.0

    def test_parse_retry_after_past_date(self):
        now = datetime(2015, 10, 21, 8, 0, 0, tzinfo=UTC)
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT", now=now) == 0.0


class TestCreateRetryStrategy:
    """Tests for building a strategy from settings."""

    def test_exponential_from_settings(self):
        settings = Settings(max_attempts=7, initial_retry_delay=2.0, max_retry_delay=30.0)
        strategy = create_retry_strategy(settings)
        assert isinstance(strategy, ExponentialBackoffStrategy)
        assert strategy.max_attempts == 7
        assert strategy.initial_delay == 2.0
        assert strategy.max_delay == 30.0

    def test_linear_from_settings(self):
        settings = Settings(retry_strategy="linear", linear_retry_delay=3.0, max_attempts=2)
        strategy = create_retry_strategy(settings)
        assert isinstance(strategy, LinearBackoffStrategy)
        assert strategy.delay == 3.0
        assert strategy.max_attempts == 2

    def test_fixed_from_settings(self):
        strategy = create_retry_strategy(Settings(retry_strategy="fixed"))
        assert isinstance(strategy, FixedDelayStrategy)

    def test_custom_from_settings(self):
        settings = Settings(retry_strategy="custom", custom_retry_delays=[1, 2, 3])
        strategy = create_retry_strategy(settings)
        assert isinstance(strategy, CustomDelayStrategy)
        assert strategy.max_attempts == 4
