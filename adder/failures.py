"""Bookkeeping of identifiers that failed to add.

Reporting only: nothing in the engine consults this map before attempting an
item. Records are keyed by the normalized ``<digits>@c.us`` identifier.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List

import structlog

from .state import FailureRecord
from .store import SessionStateStore
from .targets import display_identifier, normalize_identifier

logger = structlog.get_logger(__name__)


class FailureTracker:
    def __init__(self, store: SessionStateStore, clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self._clock = clock
        self._records: Dict[str, FailureRecord] = {}
        self._load()

    def _load(self) -> None:
        for identifier, record in self.store.load_failures():
            if isinstance(record, dict):
                self._records[str(identifier)] = FailureRecord.from_record(record, self._clock())

    def _persist(self) -> None:
        pairs = [[key, rec.to_record()] for key, rec in self._records.items()]
        try:
            self.store.save_failures(pairs)
        except OSError as exc:
            logger.error("failures_persist_failed", error=str(exc))

    def __len__(self) -> int:
        return len(self._records)

    def get(self, identifier: str) -> FailureRecord | None:
        return self._records.get(normalize_identifier(identifier))

    def record(self, identifier: str, reason: str) -> FailureRecord:
        key = normalize_identifier(identifier)
        now = self._clock()
        existing = self._records.get(key)
        if existing:
            existing.count += 1
            existing.last_failure_at = now
            existing.reason = reason
        else:
            existing = FailureRecord(count=1, first_failure_at=now, last_failure_at=now, reason=reason)
            self._records[key] = existing
        self._persist()
        return existing

    def list(self) -> List[Dict[str, Any]]:
        return [
            {
                "number": display_identifier(key),
                "count": rec.count,
                "first_failure_at": rec.first_failure_at.isoformat(),
                "last_failure_at": rec.last_failure_at.isoformat(),
                "reason": rec.reason,
            }
            for key, rec in self._records.items()
        ]

    def clear(self) -> None:
        self._records.clear()
        self.store.clear_failures()
        logger.info("failed_numbers_cleared")


__all__ = ["FailureTracker"]
