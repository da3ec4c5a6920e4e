"""In-memory state shared by the safety components.

``SafetyState`` is owned by a single ``BatchProcessor`` and handed by reference
to the quota tracker, circuit breaker and delay scheduler. Nothing here is a
module-level singleton: construct it from settings (``SafetyConfig.from_settings``)
or directly in tests.

The ``to_*_record`` / ``from_*_record`` helpers define the persisted JSON shape
(camelCase keys, ISO timestamps) used by ``adder.store``.
"""
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from typing import Any, Dict, List, Optional

HOURS_PER_DAY = 24


def _empty_hours() -> List[int]:
    return [0] * HOURS_PER_DAY


def _parse_dt(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    # Stored values are local wall-clock; drop any offset written by older files.
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def _parse_date(value: Any) -> Optional[date]:
    if not value:
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class SafetyConfig:
    """Limits and pacing knobs. Frozen: use ``dataclasses.replace`` to update."""
    daily_limit: int = 20000
    hourly_limit: int = 1000
    min_delay_seconds: int = 30
    max_delay_seconds: int = 90
    max_batch_size: int = 1000
    batch_cooldown_seconds: int = 300
    failure_threshold: int = 10
    circuit_breaker_timeout_seconds: int = 1800
    pattern_variation_enabled: bool = True

    def __post_init__(self):
        if self.min_delay_seconds > self.max_delay_seconds:
            raise ValueError("min_delay_seconds must not exceed max_delay_seconds")
        for name in ("daily_limit", "hourly_limit", "max_batch_size", "failure_threshold"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")

    @classmethod
    def from_settings(cls, settings: Any) -> "SafetyConfig":
        return cls(
            daily_limit=settings.daily_limit,
            hourly_limit=settings.hourly_limit,
            min_delay_seconds=settings.min_delay_seconds,
            max_delay_seconds=settings.max_delay_seconds,
            max_batch_size=settings.max_batch_size,
            batch_cooldown_seconds=settings.batch_cooldown_seconds,
            failure_threshold=settings.failure_threshold,
            circuit_breaker_timeout_seconds=settings.circuit_breaker_timeout_seconds,
            pattern_variation_enabled=settings.pattern_variation_enabled,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# SAFETY STATE
# =============================================================================

@dataclass
class SafetyState:
    config: SafetyConfig = field(default_factory=SafetyConfig)
    added_today: int = 0
    last_reset_date: Optional[date] = None
    hourly_addition_counts: List[int] = field(default_factory=_empty_hours)
    consecutive_failures: int = 0
    circuit_breaker_tripped: bool = False
    circuit_breaker_reset_at: Optional[datetime] = None
    is_processing: bool = False

    def to_stats_record(self) -> Dict[str, Any]:
        return {
            "addedToday": self.added_today,
            "lastResetDate": self.last_reset_date.isoformat() if self.last_reset_date else None,
            "hourlyAdditionCounts": list(self.hourly_addition_counts),
            "circuitBreakerTripped": self.circuit_breaker_tripped,
            "circuitBreakerResetAt": (
                self.circuit_breaker_reset_at.isoformat() if self.circuit_breaker_reset_at else None
            ),
        }

    def apply_stats_record(self, record: Optional[Dict[str, Any]]) -> None:
        """Merge a persisted stats record into this state (unknown keys ignored)."""
        if not record:
            return
        self.added_today = int(record.get("addedToday") or 0)
        self.last_reset_date = _parse_date(record.get("lastResetDate"))
        hours = record.get("hourlyAdditionCounts") or []
        if len(hours) != HOURS_PER_DAY:
            hours = _empty_hours()
        self.hourly_addition_counts = [int(h or 0) for h in hours]
        self.circuit_breaker_tripped = bool(record.get("circuitBreakerTripped"))
        self.circuit_breaker_reset_at = _parse_dt(record.get("circuitBreakerResetAt"))
        if self.circuit_breaker_tripped and self.circuit_breaker_reset_at is None:
            # A trip without a deadline can never clear on its own.
            self.circuit_breaker_tripped = False


# =============================================================================
# BATCH
# =============================================================================

@dataclass
class Batch:
    group_id: str
    items: List[str]
    cursor: int = 0
    message: Optional[str] = None

    def __post_init__(self):
        self.items = list(self.items)
        self.cursor = max(0, min(int(self.cursor), len(self.items)))

    @property
    def remaining(self) -> int:
        return len(self.items) - self.cursor

    @property
    def is_complete(self) -> bool:
        return self.cursor >= len(self.items)

    def to_record(self) -> Dict[str, Any]:
        return {
            "items": list(self.items),
            "cursor": self.cursor,
            "groupIdentifier": self.group_id,
            "message": self.message,
        }

    @classmethod
    def from_record(cls, record: Optional[Dict[str, Any]]) -> Optional["Batch"]:
        if not record:
            return None
        items = record.get("items") or []
        group_id = record.get("groupIdentifier")
        if not items or not group_id:
            return None
        return cls(
            group_id=str(group_id),
            items=[str(i) for i in items],
            cursor=int(record.get("cursor") or 0),
            message=record.get("message") or None,
        )


# =============================================================================
# FAILURES
# =============================================================================

@dataclass
class FailureRecord:
    count: int
    first_failure_at: datetime
    last_failure_at: datetime
    reason: str

    def to_record(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "firstFailureAt": self.first_failure_at.isoformat(),
            "lastFailureAt": self.last_failure_at.isoformat(),
            "reason": self.reason,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any], now: Optional[datetime] = None) -> "FailureRecord":
        """Rebuild from JSON; missing timestamps fall back to ``now``."""
        now = now or datetime.now()
        first = _parse_dt(record.get("firstFailureAt")) or now
        return cls(
            count=max(1, int(record.get("count") or 1)),
            first_failure_at=first,
            last_failure_at=_parse_dt(record.get("lastFailureAt")) or first,
            reason=str(record.get("reason") or ""),
        )


__all__ = [
    "HOURS_PER_DAY",
    "SafetyConfig",
    "SafetyState",
    "Batch",
    "FailureRecord",
]
