"""Group targets and participant identifiers.

A caller may name the destination group either by id or by an invite link.
``parse_group_target`` resolves that string once, at the boundary, into
``DirectGroup`` or ``InviteLink``; the processor never re-inspects raw strings.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from .errors import InvalidNumberError, InvalidTargetError

CONTACT_SUFFIX = "@c.us"

MIN_PHONE_DIGITS = 10
MAX_PHONE_DIGITS = 15

_MODERN_GROUP_RE = re.compile(r"^\d+@g\.us$")
_LEGACY_GROUP_RE = re.compile(r"^\d+-\d+@g\.us$")
_INVITE_RE = re.compile(r"chat\.whatsapp\.com/([A-Za-z0-9_-]+)")
_NON_DIGIT_RE = re.compile(r"\D")


class GroupIdFormat(str, Enum):
    MODERN = "modern"
    LEGACY = "legacy"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


# =============================================================================
# GROUP TARGETS
# =============================================================================

@dataclass(frozen=True)
class DirectGroup:
    group_id: str

    @property
    def id_format(self) -> GroupIdFormat:
        return GroupIdFormat.LEGACY if is_legacy_group_id(self.group_id) else GroupIdFormat.MODERN


@dataclass(frozen=True)
class InviteLink:
    code: str

    @property
    def url(self) -> str:
        return f"https://chat.whatsapp.com/{self.code}"


GroupTarget = Union[DirectGroup, InviteLink]


def is_modern_group_id(value: str) -> bool:
    return bool(_MODERN_GROUP_RE.match(value))


def is_legacy_group_id(value: str) -> bool:
    return bool(_LEGACY_GROUP_RE.match(value))


def is_group_id(value: str) -> bool:
    return is_modern_group_id(value) or is_legacy_group_id(value)


def extract_invite_code(value: str) -> Optional[str]:
    m = _INVITE_RE.search(value)
    return m.group(1) if m else None


def parse_group_target(raw: str) -> GroupTarget:
    """Classify a caller-supplied group reference.

    Raises InvalidTargetError when the string is neither a group id nor an
    invite link.
    """
    value = (raw or "").strip()
    if not value:
        raise InvalidTargetError("Group identifier is required")
    if is_group_id(value):
        return DirectGroup(value)
    code = extract_invite_code(value)
    if code:
        return InviteLink(code)
    raise InvalidTargetError(
        "Invalid group identifier. Provide a group ID (123456789@g.us) "
        "or an invite link (https://chat.whatsapp.com/...)"
    )


# =============================================================================
# PHONE NUMBERS
# =============================================================================

def digits_only(value: str) -> str:
    return _NON_DIGIT_RE.sub("", str(value))


def normalize_phone(raw: str) -> str:
    """Return ``<digits>@c.us`` for a plausible phone number.

    Accepts 10 to 15 digits after stripping everything else; an all-zero
    number is rejected.
    """
    digits = digits_only(raw)
    if not MIN_PHONE_DIGITS <= len(digits) <= MAX_PHONE_DIGITS:
        raise InvalidNumberError(
            f"Invalid phone number length: {len(digits)} digits (expected {MIN_PHONE_DIGITS}-{MAX_PHONE_DIGITS})"
        )
    if set(digits) == {"0"}:
        raise InvalidNumberError("Invalid phone number: all zeros")
    return f"{digits}{CONTACT_SUFFIX}"


def normalize_identifier(raw: str) -> str:
    """Best-effort canonical key for bookkeeping; never raises."""
    value = str(raw).strip()
    if value.endswith(CONTACT_SUFFIX):
        return value
    try:
        return normalize_phone(value)
    except InvalidNumberError:
        return f"{value}{CONTACT_SUFFIX}"


def display_identifier(jid: str) -> str:
    return jid[: -len(CONTACT_SUFFIX)] if jid.endswith(CONTACT_SUFFIX) else jid


__all__ = [
    "CONTACT_SUFFIX",
    "GroupIdFormat",
    "DirectGroup",
    "InviteLink",
    "GroupTarget",
    "is_modern_group_id",
    "is_legacy_group_id",
    "is_group_id",
    "extract_invite_code",
    "parse_group_target",
    "digits_only",
    "normalize_phone",
    "normalize_identifier",
    "display_identifier",
]
