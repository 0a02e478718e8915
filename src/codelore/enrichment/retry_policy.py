"""Exponential backoff policy for failed enrichment attempts."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import List

from pydantic import BaseModel, Field


class BackoffPolicy(BaseModel):
    """Retry timing for queue items that failed research.

    The delay after the n-th failure is ``base_delay_seconds * multiplier**n``
    capped at ``max_delay_seconds``.

    Attributes:
        base_delay_seconds: Base delay in seconds (1-3600)
        max_delay_seconds: Maximum delay cap in seconds (1-86400)
        backoff_multiplier: Multiplier for exponential backoff (1.0-10.0)
    """

    base_delay_seconds: int = Field(default=60, ge=1, le=3600)
    max_delay_seconds: int = Field(default=3600, ge=1, le=86400)
    backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0)

    def calculate_delay(self, attempts: int) -> int:
        """Calculate the retry delay after ``attempts`` failures.

        Args:
            attempts: Number of failed attempts so far (already incremented)

        Returns:
            Delay in seconds, never above ``max_delay_seconds``
        """
        attempts = max(0, attempts)
        # Cap before exponentiating overflows float range.
        exponent = min(attempts, 64)
        delay = self.base_delay_seconds * (self.backoff_multiplier**exponent)
        return int(min(delay, self.max_delay_seconds))

    def next_retry_at(self, attempts: int, now: datetime) -> datetime:
        return now + timedelta(seconds=self.calculate_delay(attempts))

    def schedule(self, max_retries: int) -> List[int]:
        """Delays a chunk would see before reaching ``max_retries`` failures."""
        return [self.calculate_delay(attempt) for attempt in range(1, max_retries)]
