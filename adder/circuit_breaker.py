"""Protection mode driven by consecutive failures.

Two states only: armed and tripped. The breaker trips once
``consecutive_failures`` reaches ``failure_threshold`` (or when forced by the
ban-risk path) and re-arms lazily on the first check after ``reset_at``.
Quotas are tracked elsewhere; the breaker never looks at them.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

import structlog

from .bootstrap import CIRCUIT_BREAKER_TRIPS_TOTAL, PROTECTION_ACTIVE
from .state import SafetyState
from .store import SessionStateStore

logger = structlog.get_logger(__name__)


class CircuitBreaker:
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

    @property
    def tripped(self) -> bool:
        return self.state.circuit_breaker_tripped

    def trip(self, reason: str = "consecutive_failures") -> None:
        """Enter protection mode for ``circuit_breaker_timeout_seconds``."""
        timeout = self.state.config.circuit_breaker_timeout_seconds
        self.state.circuit_breaker_tripped = True
        self.state.circuit_breaker_reset_at = self._clock() + timedelta(seconds=timeout)
        CIRCUIT_BREAKER_TRIPS_TOTAL.labels(reason=reason).inc()
        PROTECTION_ACTIVE.set(1)
        logger.warning(
            "circuit_breaker_tripped",
            reason=reason,
            consecutive_failures=self.state.consecutive_failures,
            reset_at=self.state.circuit_breaker_reset_at.isoformat(),
        )
        self._persist()

    def reset(self) -> None:
        """Operator override: re-arm immediately and forget the failure streak."""
        was_tripped = self.state.circuit_breaker_tripped
        self.state.circuit_breaker_tripped = False
        self.state.circuit_breaker_reset_at = None
        self.state.consecutive_failures = 0
        PROTECTION_ACTIVE.set(0)
        logger.info("circuit_breaker_reset", manual=True, was_tripped=was_tripped)
        self._persist()

    def refresh(self) -> bool:
        """Re-arm when the timeout has passed. Returns the tripped flag."""
        state = self.state
        if state.circuit_breaker_tripped and state.circuit_breaker_reset_at is not None:
            if self._clock() > state.circuit_breaker_reset_at:
                state.circuit_breaker_tripped = False
                state.circuit_breaker_reset_at = None
                state.consecutive_failures = 0
                PROTECTION_ACTIVE.set(0)
                logger.info("circuit_breaker_rearmed")
                self._persist()
        return state.circuit_breaker_tripped

    def is_blocking(self) -> bool:
        """Apply lazy transitions in both directions, then answer."""
        if self.refresh():
            return True
        if self.state.consecutive_failures >= self.state.config.failure_threshold:
            self.trip()
            return True
        return False

    def remaining(self) -> timedelta:
        if not self.state.circuit_breaker_tripped or self.state.circuit_breaker_reset_at is None:
            return timedelta(0)
        return max(timedelta(0), self.state.circuit_breaker_reset_at - self._clock())

    def remaining_minutes(self) -> int:
        """Whole minutes left, rounded up (what operators are shown)."""
        seconds = self.remaining().total_seconds()
        return int(-(-seconds // 60))


__all__ = ["CircuitBreaker"]
