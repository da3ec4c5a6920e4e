"""Durable persistence for the three state records (stats, failures, batch).

The engine talks to a ``SessionStateStore``: a synchronous load/save interface
with no opinions about the data it holds. ``JsonStateStore`` keeps one JSON
document per record in the data directory; ``MemoryStateStore`` backs tests and
throwaway runs.

Writes go to a temporary sibling first and are moved into place with
``os.replace`` so a crash never leaves a half-written record behind.
"""
from __future__ import annotations

import copy
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import structlog

logger = structlog.get_logger(__name__)

STATS_FILE = "session-stats.json"
FAILURES_FILE = "failed-numbers.json"
BATCH_FILE = "batches.json"


class SessionStateStore(Protocol):
    def load_stats(self) -> Optional[Dict[str, Any]]: ...

    def save_stats(self, record: Dict[str, Any]) -> None: ...

    def load_failures(self) -> List[List[Any]]: ...

    def save_failures(self, pairs: List[List[Any]]) -> None: ...

    def clear_failures(self) -> None: ...

    def load_batch(self) -> Optional[Dict[str, Any]]: ...

    def save_batch(self, record: Dict[str, Any]) -> None: ...

    def clear_batch(self) -> None: ...


# =============================================================================
# JSON FILES
# =============================================================================

class JsonStateStore:
    """One JSON file per record under ``data_dir``."""

    def __init__(self, data_dir: str | Path):
        self._dir = Path(data_dir)
        self._dir.mkdir(parents=True, exist_ok=True)

    @property
    def data_dir(self) -> Path:
        return self._dir

    def _path(self, name: str) -> Path:
        return self._dir / name

    def _read(self, name: str) -> Any:
        path = self._path(name)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("state_record_unreadable", path=str(path), error=str(exc))
            return None

    def _write(self, name: str, data: Any) -> None:
        path = self._path(name)
        tmp = path.with_suffix(path.suffix + ".tmp")
        try:
            tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            logger.error("state_record_write_failed", path=str(path), error=str(exc))
            raise

    def _delete(self, name: str) -> None:
        path = self._path(name)
        try:
            path.unlink()
        except FileNotFoundError:
            pass

    def load_stats(self) -> Optional[Dict[str, Any]]:
        data = self._read(STATS_FILE)
        return data if isinstance(data, dict) else None

    def save_stats(self, record: Dict[str, Any]) -> None:
        self._write(STATS_FILE, record)

    def load_failures(self) -> List[List[Any]]:
        data = self._read(FAILURES_FILE)
        if not isinstance(data, list):
            return []
        return [pair for pair in data if isinstance(pair, list) and len(pair) == 2]

    def save_failures(self, pairs: List[List[Any]]) -> None:
        self._write(FAILURES_FILE, pairs)

    def clear_failures(self) -> None:
        self._delete(FAILURES_FILE)

    def load_batch(self) -> Optional[Dict[str, Any]]:
        data = self._read(BATCH_FILE)
        return data if isinstance(data, dict) else None

    def save_batch(self, record: Dict[str, Any]) -> None:
        self._write(BATCH_FILE, record)

    def clear_batch(self) -> None:
        self._delete(BATCH_FILE)


# =============================================================================
# IN MEMORY
# =============================================================================

class MemoryStateStore:
    """Dict-backed store. Records are deep-copied in and out like a real sink."""

    def __init__(self):
        self.stats: Optional[Dict[str, Any]] = None
        self.failures: Optional[List[List[Any]]] = None
        self.batch: Optional[Dict[str, Any]] = None
        self.writes = 0

    def load_stats(self) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self.stats)

    def save_stats(self, record: Dict[str, Any]) -> None:
        self.writes += 1
        self.stats = copy.deepcopy(record)

    def load_failures(self) -> List[List[Any]]:
        return copy.deepcopy(self.failures) or []

    def save_failures(self, pairs: List[List[Any]]) -> None:
        self.writes += 1
        self.failures = copy.deepcopy(pairs)

    def clear_failures(self) -> None:
        self.failures = None

    def load_batch(self) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self.batch)

    def save_batch(self, record: Dict[str, Any]) -> None:
        self.writes += 1
        self.batch = copy.deepcopy(record)

    def clear_batch(self) -> None:
        self.batch = None


__all__ = [
    "SessionStateStore",
    "JsonStateStore",
    "MemoryStateStore",
    "STATS_FILE",
    "FAILURES_FILE",
    "BATCH_FILE",
]
