"""Daily and per-hour addition quotas.

The tracker reads and mutates the shared ``SafetyState``; it owns no counters
of its own. Day rollover is applied lazily by ``admit_daily`` so the first
check after midnight zeroes yesterday's totals exactly once.
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable

import structlog

from .bootstrap import ADDED_TODAY
from .state import HOURS_PER_DAY, SafetyState
from .store import SessionStateStore

logger = structlog.get_logger(__name__)


class QuotaTracker:
    def __init__(
        self,
        state: SafetyState,
        store: SessionStateStore,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.state = state
        self.store = store
        self._clock = clock

    def _persist(self) -> None:
        try:
            self.store.save_stats(self.state.to_stats_record())
        except OSError as exc:
            logger.error("stats_persist_failed", error=str(exc))

    def rollover(self) -> bool:
        """Zero the counters once when the local date changes. Returns True on reset."""
        today = self._clock().date()
        if self.state.last_reset_date == today:
            return False
        previous = self.state.last_reset_date
        self.state.added_today = 0
        self.state.hourly_addition_counts = [0] * HOURS_PER_DAY
        self.state.last_reset_date = today
        ADDED_TODAY.set(0)
        logger.info("daily_quota_reset", previous_date=str(previous) if previous else None, date=str(today))
        self._persist()
        return True

    def admit_daily(self) -> bool:
        """Apply date rollover, then report whether today's quota has room."""
        self.rollover()
        return self.state.added_today < self.state.config.daily_limit

    def admit_hourly(self) -> bool:
        hour = self._clock().hour
        return self.state.hourly_addition_counts[hour] < self.state.config.hourly_limit

    def record_addition(self) -> None:
        hour = self._clock().hour
        self.state.added_today += 1
        self.state.hourly_addition_counts[hour] += 1
        ADDED_TODAY.set(self.state.added_today)
        self._persist()

    def reset_hour(self, hour: int) -> None:
        self.state.hourly_addition_counts[hour % HOURS_PER_DAY] = 0
        self._persist()

    @property
    def remaining_today(self) -> int:
        return max(0, self.state.config.daily_limit - self.state.added_today)

    @property
    def added_this_hour(self) -> int:
        return self.state.hourly_addition_counts[self._clock().hour]

    @property
    def remaining_this_hour(self) -> int:
        return max(0, self.state.config.hourly_limit - self.added_this_hour)


__all__ = ["QuotaTracker"]
