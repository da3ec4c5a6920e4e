"""Phone numbers from uploaded CSV files."""
from __future__ import annotations

import csv
import io
from typing import List, Optional, Sequence

from .targets import digits_only

# Header names tried in order (case-insensitive); otherwise the first column is used.
PHONE_COLUMNS = ("number", "phone", "phoneNumber", "contact", "mobile")


class CsvImportError(ValueError):
    pass


def _pick_column(headers: Sequence[str]) -> Optional[str]:
    lowered = {h.strip().lower(): h for h in headers if h}
    for name in PHONE_COLUMNS:
        if name.lower() in lowered:
            return lowered[name.lower()]
    return headers[0] if headers else None


def parse_phone_csv(data: bytes | str) -> List[str]:
    """Return the digit-only numbers of the phone column, skipping blanks.

    The first row is treated as a header. Raises CsvImportError for an empty
    or undecodable file.
    """
    if isinstance(data, bytes):
        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise CsvImportError("CSV file must be UTF-8 encoded") from exc
    else:
        text = data
    reader = csv.DictReader(io.StringIO(text))
    headers = reader.fieldnames or []
    column = _pick_column(headers)
    if column is None:
        raise CsvImportError("CSV file has no header row")
    numbers: List[str] = []
    for row in reader:
        digits = digits_only(row.get(column) or "")
        if digits:
            numbers.append(digits)
    return numbers


__all__ = ["PHONE_COLUMNS", "CsvImportError", "parse_phone_csv"]
