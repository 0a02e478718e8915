"""Per-day admission control for model-backed enrichment."""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class DailyQuota:
    """Counts units consumed on the current calendar day.

    The counter resets the first time it is accessed on a new day
    (according to ``clock``), so a process that stays up across midnight
    gets a fresh allowance without a timer.
    """

    def __init__(self, limit: int, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        if limit < 0:
            raise ValueError("limit must be non-negative")
        self._limit = limit
        self._clock = clock or datetime.now
        self._day: date = self._clock().date()
        self._used = 0

    def _roll_over(self) -> None:
        today = self._clock().date()
        if today != self._day:
            logger.info(
                "Daily enrichment quota reset",
                extra={"previous_day": self._day.isoformat(), "used": self._used},
            )
            self._day = today
            self._used = 0

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def used(self) -> int:
        self._roll_over()
        return self._used

    @property
    def remaining(self) -> int:
        self._roll_over()
        return max(0, self._limit - self._used)

    def exhausted(self) -> bool:
        return self.remaining == 0

    def consume(self, units: int = 1) -> None:
        self._roll_over()
        self._used += units
