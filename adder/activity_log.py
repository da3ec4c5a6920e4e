"""Per-day activity log files.

Every log line emitted through the root logger is also appended to
``<log_dir>/YYYY-MM-DD.log``. The HTTP layer reads these back for the
operator dashboard (``/api/logs`` and ``/api/log-dates``).
"""
from __future__ import annotations

import logging
import re
import threading
from datetime import date, datetime
from pathlib import Path
from typing import Callable, List, Optional

_DATE_FILE_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})\.log$")


class DailyActivityHandler(logging.Handler):
    """Appends records to a file named after the current local date.

    The file is reopened when the date changes, so a long-running process
    rolls over at midnight without a restart.
    """

    def __init__(self, log_dir: str | Path, clock: Callable[[], datetime] = datetime.now):
        super().__init__()
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._current: Optional[date] = None
        self._stream = None
        self._io_lock = threading.Lock()

    def _stream_for(self, day: date):
        if self._current != day or self._stream is None:
            if self._stream is not None:
                self._stream.close()
            path = self.log_dir / f"{day.isoformat()}.log"
            self._stream = path.open("a", encoding="utf-8")
            self._current = day
        return self._stream

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
            with self._io_lock:
                stream = self._stream_for(self._clock().date())
                stream.write(line + "\n")
                stream.flush()
        except Exception:  # pragma: no cover
            self.handleError(record)

    def close(self) -> None:
        with self._io_lock:
            if self._stream is not None:
                self._stream.close()
                self._stream = None
        super().close()


def parse_log_date(value: str | None) -> date:
    """Parse ``YYYY-MM-DD``; ``None`` means today. Raises ValueError otherwise."""
    if not value:
        return date.today()
    return date.fromisoformat(value)


def read_log(log_dir: str | Path, day: date) -> List[str]:
    path = Path(log_dir) / f"{day.isoformat()}.log"
    if not path.exists():
        return []
    with path.open("r", encoding="utf-8") as fh:
        return [line.rstrip("\n") for line in fh if line.strip()]


def list_log_dates(log_dir: str | Path) -> List[str]:
    """Dates with an activity file, newest first."""
    root = Path(log_dir)
    if not root.is_dir():
        return []
    dates = []
    for entry in root.iterdir():
        m = _DATE_FILE_RE.match(entry.name)
        if m:
            dates.append(m.group(1))
    return sorted(dates, reverse=True)


__all__ = ["DailyActivityHandler", "parse_log_date", "read_log", "list_log_dates"]
