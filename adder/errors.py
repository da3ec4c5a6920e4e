"""Error taxonomy for the member-adding engine.

Admission errors are returned to callers as structured results and never retried.
Provider errors come from the messaging client; transient ones go through the
retry policy, permanent ones fail the item immediately.
"""
from __future__ import annotations

from typing import Optional

# Substrings that suggest the provider's anti-abuse layer reacted to us.
BAN_INDICATIVE_KEYWORDS = (
    "not-authorized",
    "forbidden",
    "denied",
    "blocked",
    "spam",
    "limit",
    "banned",
)

EXECUTION_CONTEXT_MARKER = "execution context was destroyed"


class AdderError(Exception):
    """Base class for every error raised by the engine."""


# =============================================================================
# ADMISSION
# =============================================================================

class AdmissionError(AdderError):
    """A batch was refused before any item was attempted."""

    code = "admission_rejected"

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        if code:
            self.code = code


class AlreadyRunningError(AdmissionError):
    code = "already_running"


class ProtectionActiveError(AdmissionError):
    code = "protection_active"


class QuotaExceededError(AdmissionError):
    code = "quota_exceeded"


class ClientNotReadyError(AdmissionError):
    code = "client_not_ready"


class InvalidTargetError(AdmissionError):
    code = "invalid_target"


class NoBatchToResumeError(AdmissionError):
    code = "no_batch"


# =============================================================================
# PROVIDER
# =============================================================================

class ProviderError(AdderError):
    """Failure reported by the messaging client."""


class TransientProviderError(ProviderError):
    """Timeouts, dropped sessions and other errors worth retrying."""


class ExecutionContextError(TransientProviderError):
    """The client's page/runtime context went away mid-call."""


class PermanentProviderError(ProviderError):
    """Errors that will not improve on retry."""


class NotRegisteredError(PermanentProviderError):
    pass


class InvalidNumberError(PermanentProviderError):
    pass


# =============================================================================
# CLASSIFICATION
# =============================================================================

def error_text(exc: BaseException | str) -> str:
    if isinstance(exc, str):
        return exc
    return str(exc) or type(exc).__name__


def is_ban_indicative(exc: BaseException | str) -> bool:
    """True when the error text matches known abuse-detection phrasing."""
    text = error_text(exc).lower()
    return any(keyword in text for keyword in BAN_INDICATIVE_KEYWORDS)


def is_execution_context_error(exc: BaseException) -> bool:
    if isinstance(exc, ExecutionContextError):
        return True
    return EXECUTION_CONTEXT_MARKER in error_text(exc).lower()


__all__ = [
    "AdderError",
    "AdmissionError",
    "AlreadyRunningError",
    "ProtectionActiveError",
    "QuotaExceededError",
    "ClientNotReadyError",
    "InvalidTargetError",
    "NoBatchToResumeError",
    "ProviderError",
    "TransientProviderError",
    "ExecutionContextError",
    "PermanentProviderError",
    "NotRegisteredError",
    "InvalidNumberError",
    "BAN_INDICATIVE_KEYWORDS",
    "error_text",
    "is_ban_indicative",
    "is_execution_context_error",
]
