"""Tests for retry backoff and the daily quota."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from codelore.enrichment.rate_limiter import DailyQuota
from codelore.enrichment.retry_policy import BackoffPolicy


class TestBackoffPolicy:
    def test_defaults(self) -> None:
        policy = BackoffPolicy()
        assert policy.calculate_delay(1) == 120
        assert policy.calculate_delay(2) == 240
        assert policy.calculate_delay(3) == 480

    def test_delay_is_monotonic_and_capped(self) -> None:
        policy = BackoffPolicy()
        delays = [policy.calculate_delay(n) for n in range(0, 200)]
        assert delays == sorted(delays)
        assert max(delays) == policy.max_delay_seconds
        assert all(delay <= 3600 for delay in delays)

    def test_huge_attempt_counts_do_not_overflow(self) -> None:
        policy = BackoffPolicy(backoff_multiplier=10.0)
        assert policy.calculate_delay(10_000) == policy.max_delay_seconds

    def test_next_retry_at(self) -> None:
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert BackoffPolicy().next_retry_at(1, now) == now + timedelta(seconds=120)

    def test_schedule_lists_delays_before_exhaustion(self) -> None:
        assert BackoffPolicy().schedule(3) == [120, 240]

    def test_rejects_out_of_range_values(self) -> None:
        with pytest.raises(ValidationError):
            BackoffPolicy(base_delay_seconds=0)
        with pytest.raises(ValidationError):
            BackoffPolicy(backoff_multiplier=0.5)


class DayClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 23, 59)

    def __call__(self) -> datetime:
        return self.now


class TestDailyQuota:
    def test_consume_and_remaining(self) -> None:
        quota = DailyQuota(3, clock=DayClock())
        quota.consume()
        quota.consume()
        assert quota.used == 2
        assert quota.remaining == 1
        assert not quota.exhausted()
        quota.consume()
        assert quota.exhausted()

    def test_remaining_never_negative(self) -> None:
        quota = DailyQuota(1, clock=DayClock())
        quota.consume(5)
        assert quota.remaining == 0

    def test_resets_on_new_day(self) -> None:
        clock = DayClock()
        quota = DailyQuota(2, clock=clock)
        quota.consume(2)
        assert quota.exhausted()

        clock.now = clock.now + timedelta(minutes=2)
        assert quota.remaining == 2
        assert quota.used == 0

    def test_zero_limit_is_always_exhausted(self) -> None:
        assert DailyQuota(0, clock=DayClock()).exhausted()

    def test_negative_limit_rejected(self) -> None:
        with pytest.raises(ValueError):
            DailyQuota(-1)
