"""Pacing between additions.

``DelayScheduler.compute_delay`` turns the current safety state into a wait in
whole seconds: a uniform base inside the configured window, stretched at night,
near the daily quota and after failures, with occasional pattern breaks so the
cadence never settles into a detectable rhythm.

The remaining helpers cover the fixed waits of the add loop.

Usage:
    scheduler = DelayScheduler(rng=random.Random(7))
    await sleep(scheduler.compute_delay(state))
"""
from __future__ import annotations

import math
import random
from datetime import datetime, timedelta
from typing import Callable, Optional

from .state import SafetyConfig, SafetyState


# =============================================================================
# DELAY CONFIGURATION (seconds)
# =============================================================================

# Local hours treated as night-time (inclusive)
NIGHT_HOURS = range(1, 5)
NIGHT_MULTIPLIER = 1.5

# Above this share of the daily quota the delay grows linearly
QUOTA_PRESSURE_THRESHOLD = 0.7

# Each consecutive failure adds 10%
FAILURE_STEP = 0.1

# Pattern breaks
PATTERN_BREAK_PROBABILITY = 0.15
PATTERN_BREAK_LONG_SHARE = 0.7
PATTERN_BREAK_SHORT_MULTIPLIER = 0.7

HUMAN_PAUSE_MIN = 0.5
HUMAN_PAUSE_MAX = 2.0

BAN_COOLDOWN_MIN = 300
BAN_COOLDOWN_MAX = 600

FAILURE_BACKOFF_BASE = 60
FAILURE_BACKOFF_STEP = 30
FAILURE_BACKOFF_CAP = 300

NEXT_HOUR_BUFFER_SECONDS = 5

# Safety margin applied to the mean delay when estimating completion
ESTIMATE_MARGIN = 1.2


# =============================================================================
# DELAY SCHEDULER
# =============================================================================

class DelayScheduler:
    """Computes inter-item delays. Deterministic given ``rng`` and ``clock``."""

    def __init__(
        self,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.rng = rng or random.Random()
        self._clock = clock

    def multiplier(self, state: SafetyState) -> float:
        """Context multiplier before pattern variation."""
        config = state.config
        value = 1.0
        if self._clock().hour in NIGHT_HOURS:
            value *= NIGHT_MULTIPLIER
        progress = state.added_today / config.daily_limit
        if progress > QUOTA_PRESSURE_THRESHOLD:
            value *= 1 + (progress - QUOTA_PRESSURE_THRESHOLD)
        value *= 1 + FAILURE_STEP * state.consecutive_failures
        return value

    def compute_delay(self, state: SafetyState) -> int:
        config = state.config
        base = self.rng.randint(config.min_delay_seconds, config.max_delay_seconds)
        value = self.multiplier(state)
        if config.pattern_variation_enabled and self.rng.random() < PATTERN_BREAK_PROBABILITY:
            if self.rng.random() < PATTERN_BREAK_LONG_SHARE:
                value *= 1.5 + self.rng.random()
            else:
                value *= PATTERN_BREAK_SHORT_MULTIPLIER
        return math.floor(base * value)

    def human_pause(self) -> float:
        return self.rng.uniform(HUMAN_PAUSE_MIN, HUMAN_PAUSE_MAX)

    def ban_cooldown(self) -> float:
        return self.rng.uniform(BAN_COOLDOWN_MIN, BAN_COOLDOWN_MAX)


# =============================================================================
# FIXED WAITS
# =============================================================================

def failure_backoff(consecutive_failures: int) -> int:
    """Wait after an ordinary item failure: 60s plus 30s per streak step, capped."""
    return min(FAILURE_BACKOFF_BASE + FAILURE_BACKOFF_STEP * consecutive_failures, FAILURE_BACKOFF_CAP)


def seconds_until_next_hour(now: datetime, buffer_seconds: int = NEXT_HOUR_BUFFER_SECONDS) -> float:
    """Seconds from ``now`` to the top of the next hour plus a small buffer."""
    next_hour = now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
    return (next_hour - now).total_seconds() + buffer_seconds


def mean_delay(config: SafetyConfig) -> float:
    return (config.min_delay_seconds + config.max_delay_seconds) / 2


def estimate_completion_seconds(config: SafetyConfig, remaining_items: int) -> float:
    """Rough time to finish ``remaining_items`` at the mean pace plus a margin."""
    return remaining_items * mean_delay(config) * ESTIMATE_MARGIN


__all__ = [
    "DelayScheduler",
    "failure_backoff",
    "seconds_until_next_hour",
    "mean_delay",
    "estimate_completion_seconds",
]
