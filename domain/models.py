from __future__ import annotations

import re
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

_DIGITS_RE = re.compile(r"^\d+$")


class AddMembersRequest(BaseModel):
    """Body of POST /api/add-members.

    Accepts the camelCase ``groupId`` used by the dashboard as well as
    ``group_id``. Numbers are digit strings; formatting is stripped client-side
    or by the CSV import.
    """

    model_config = ConfigDict(populate_by_name=True)

    group_id: str = Field(..., alias="groupId", description="Group id (…@g.us) or invite link")
    numbers: List[str] = Field(default_factory=list)
    message: Optional[str] = Field(None, description="Sent to the group once at least one member was added")

    def invalid_numbers(self) -> List[str]:
        return [n for n in self.numbers if not _DIGITS_RE.match(str(n))]


class ConfigUpdateRequest(BaseModel):
    """Partial update of the safety configuration; omitted fields are unchanged."""

    daily_limit: Optional[int] = Field(None, gt=0)
    hourly_limit: Optional[int] = Field(None, gt=0)
    min_delay_seconds: Optional[int] = Field(None, ge=0)
    max_delay_seconds: Optional[int] = Field(None, ge=0)
    max_batch_size: Optional[int] = Field(None, gt=0)
    batch_cooldown_seconds: Optional[int] = Field(None, ge=0)
    failure_threshold: Optional[int] = Field(None, gt=0)
    circuit_breaker_timeout_seconds: Optional[int] = Field(None, gt=0)
    pattern_variation_enabled: Optional[bool] = None

    def changes(self) -> dict:
        return self.model_dump(exclude_none=True)


class StatusModel(BaseModel):
    added_today: int
    daily_limit: int
    remaining: int
    hourly_added: int
    hourly_limit: int
    hourly_remaining: int
    protection_tripped: bool
    reset_eta: Optional[str] = None
    consecutive_failures: int
    batch_progress: int
    batch_size: int
    has_pending_batch: bool = False
    status: str
    client_ready: bool


class FailedNumberModel(BaseModel):
    number: str
    count: int
    first_failure_at: str
    last_failure_at: str
    reason: str


class FailedNumbersResponse(BaseModel):
    count: int
    numbers: List[FailedNumberModel]


class CsvUploadResponse(BaseModel):
    count: int
    numbers: List[str]


class LogResponse(BaseModel):
    date: str
    lines: List[str]
