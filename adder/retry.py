"""Retry policy shared by every messaging-client call.

One abstraction for the registration check, contact lookup, participant add
and group verification: a fixed attempt budget plus a classifier that maps the
failure to a wait. Permanent provider errors are never retried.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
)

from .bootstrap import PROVIDER_RETRIES_TOTAL
from .errors import PermanentProviderError, error_text, is_execution_context_error

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3
EXECUTION_CONTEXT_WAIT = 5.0
DEFAULT_WAIT = 2.0


def classify_wait(exc: BaseException | None) -> float:
    """Seconds to wait before the next attempt after ``exc``."""
    if exc is not None and is_execution_context_error(exc):
        return EXECUTION_CONTEXT_WAIT
    return DEFAULT_WAIT


class RetryPolicy:
    def __init__(
        self,
        attempts: int = DEFAULT_ATTEMPTS,
        classifier: Callable[[BaseException | None], float] = classify_wait,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.attempts = attempts
        self.classifier = classifier
        self.sleep = sleep

    def _wait(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        return self.classifier(exc)

    def _before_sleep(self, operation: str):
        def _log(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            PROVIDER_RETRIES_TOTAL.labels(operation=operation).inc()
            logger.warning(
                "provider_call_retry",
                operation=operation,
                attempt=retry_state.attempt_number,
                max_attempts=self.attempts,
                error=error_text(exc) if exc else None,
            )

        return _log

    async def run(self, operation: str, fn: Callable[..., Awaitable[T]], *args: Any) -> T:
        """Await ``fn(*args)`` under the policy; the last error propagates."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=self._wait,
            retry=retry_if_exception_type(Exception) & retry_if_not_exception_type(PermanentProviderError),
            sleep=self.sleep,
            before_sleep=self._before_sleep(operation),
            reraise=True,
        ):
            with attempt:
                return await fn(*args)
        raise AssertionError("unreachable")  # pragma: no cover


__all__ = ["RetryPolicy", "classify_wait", "DEFAULT_ATTEMPTS"]
