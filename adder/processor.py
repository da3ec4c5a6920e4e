"""Batch processor: the orchestrating state machine of the engine.

A batch moves through ``Idle -> Admitting -> Running`` and ends ``Completed``,
``Paused`` (protection or ban risk) or ``Failed`` (unexpected error). Callers
always get a ``BatchResult`` back; admission refusals are results too, never
exceptions.

Items are processed strictly in order. The cursor is written to the store
before each item, so after a crash the in-flight item is attempted again on
resume (at-least-once).

Every wait goes through the injected ``sleep`` coroutine function, which is
the only place the processor yields besides client calls.
"""
from __future__ import annotations

import asyncio
import dataclasses
import random
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import structlog

from .bootstrap import INTER_ITEM_DELAY_SECONDS, MEMBER_ADDITIONS_TOTAL, MEMBER_BATCHES_TOTAL
from .circuit_breaker import CircuitBreaker
from .client import ConnectionMonitor, ConnectionState, MessagingClient
from .errors import (
    AdmissionError,
    AlreadyRunningError,
    ClientNotReadyError,
    InvalidTargetError,
    NoBatchToResumeError,
    NotRegisteredError,
    PermanentProviderError,
    ProtectionActiveError,
    QuotaExceededError,
    TransientProviderError,
    error_text,
    is_ban_indicative,
)
from .failures import FailureTracker
from .quota import QuotaTracker
from .retry import RetryPolicy
from .state import Batch, SafetyConfig, SafetyState
from .store import SessionStateStore
from .targets import DirectGroup, GroupIdFormat, GroupTarget, InviteLink, normalize_phone, parse_group_target
from .timing import DelayScheduler, estimate_completion_seconds, failure_backoff, seconds_until_next_hour

logger = structlog.get_logger(__name__)

# Consecutive failures at which a ban-indicative error trips protection
BAN_TRIP_STREAK = 3

EventSink = Callable[[str, Dict[str, Any]], Awaitable[None]]


class BatchStatus(str, Enum):
    COMPLETED = "completed"
    PAUSED = "paused"
    FAILED = "failed"
    REJECTED = "rejected"

    def __str__(self) -> str:
        return self.value


class ItemStatus(str, Enum):
    ADDED = "added"
    FAILED = "failed"
    SKIPPED = "skipped"

    def __str__(self) -> str:
        return self.value


class ProcessorEvent(str, Enum):
    STATS = "stats"
    BATCH_PROGRESS = "batch_progress"
    BATCH_COMPLETE = "batch_complete"
    PROTECTION = "protection"

    def __str__(self) -> str:
        return self.value


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class ItemDetail:
    number: str
    status: ItemStatus
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"number": self.number, "status": str(self.status)}
        if self.reason:
            out["reason"] = self.reason
        return out


@dataclass
class BatchProgress:
    total: int
    processed: int
    remaining: int
    estimated_completion_seconds: float

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class BatchResult:
    success: bool
    status: BatchStatus
    message: str = ""
    code: Optional[str] = None
    group_id: Optional[str] = None
    added: int = 0
    failed: int = 0
    skipped: int = 0
    details: List[ItemDetail] = field(default_factory=list)
    batch: Optional[BatchProgress] = None

    @classmethod
    def rejected(cls, exc: AdmissionError) -> "BatchResult":
        return cls(success=False, status=BatchStatus.REJECTED, message=str(exc), code=exc.code)

    def record(self, number: str, status: ItemStatus, reason: Optional[str] = None) -> None:
        self.details.append(ItemDetail(number, status, reason))
        if status is ItemStatus.ADDED:
            self.added += 1
        elif status is ItemStatus.FAILED:
            self.failed += 1
        else:
            self.skipped += 1
        MEMBER_ADDITIONS_TOTAL.labels(outcome=str(status)).inc()

    def pause(self, message: str) -> None:
        self.success = False
        self.status = BatchStatus.PAUSED
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "status": str(self.status),
            "message": self.message,
            "code": self.code,
            "group_id": self.group_id,
            "added": self.added,
            "failed": self.failed,
            "skipped": self.skipped,
            "details": [d.to_dict() for d in self.details],
            "batch": self.batch.to_dict() if self.batch else None,
        }


# =============================================================================
# PROCESSOR
# =============================================================================

class BatchProcessor:
    """Runs one batch at a time against a messaging client.

    ``clock``, ``sleep`` and ``rng`` are injectable so tests can drive the
    engine without waiting in real time.
    """

    def __init__(
        self,
        config: SafetyConfig,
        store: SessionStateStore,
        client: MessagingClient,
        monitor: Optional[ConnectionMonitor] = None,
        *,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        on_event: Optional[EventSink] = None,
    ):
        self.store = store
        self.client = client
        self.monitor = monitor or ConnectionMonitor(ConnectionState.CONNECTED)
        self.state = SafetyState(config=config)
        self.state.apply_stats_record(store.load_stats())
        self.quota = QuotaTracker(self.state, store, clock)
        self.breaker = CircuitBreaker(self.state, store, clock)
        self.scheduler = DelayScheduler(rng, clock)
        self.failures = FailureTracker(store, clock)
        self.retry = RetryPolicy(sleep=sleep)
        self.on_event = on_event
        self.current_batch: Optional[Batch] = None
        self._clock = clock
        self._sleep = sleep

    @property
    def config(self) -> SafetyConfig:
        return self.state.config

    # ------------------------------------------------------------------
    # Caller-facing operations
    # ------------------------------------------------------------------
    async def submit_batch(
        self,
        target: str | GroupTarget,
        items: Sequence[str],
        message: Optional[str] = None,
    ) -> BatchResult:
        """Admit and run a batch; returns once it completes, pauses or fails."""
        try:
            batch = await self.admit(target, items, message)
        except AdmissionError as exc:
            return self._reject(exc)
        return await self.run(batch)

    async def resume_batch(self) -> BatchResult:
        """Re-submit the persisted batch with its own group, items and message."""
        try:
            batch = await self.admit_resume()
        except AdmissionError as exc:
            return self._reject(exc)
        return await self.run(batch)

    async def admit(
        self,
        target: str | GroupTarget,
        items: Sequence[str],
        message: Optional[str] = None,
    ) -> Batch:
        """Admission only. Raises AdmissionError.

        On success the processor stays marked busy and the returned batch must
        be passed to ``run``; this lets the HTTP layer answer before the batch
        finishes.
        """
        if self.state.is_processing:
            raise AlreadyRunningError("Already adding members. Please wait for the current batch to finish.")
        self.state.is_processing = True
        try:
            group_id = await self._admit(target, items)
            return self._prepare(group_id, items, message)
        except BaseException:
            self.state.is_processing = False
            raise

    async def admit_resume(self) -> Batch:
        if self.state.is_processing:
            raise AlreadyRunningError("A batch is already running")
        persisted = Batch.from_record(self.store.load_batch())
        if persisted is None:
            raise NoBatchToResumeError("No batch to resume")
        logger.info(
            "batch_resume_requested",
            group_id=persisted.group_id,
            cursor=persisted.cursor,
            total=len(persisted.items),
        )
        return await self.admit(persisted.group_id, persisted.items, persisted.message)

    async def run(self, batch: Batch) -> BatchResult:
        """Process an admitted batch to completion, pause or failure."""
        return await self._run(batch)

    def get_status(self) -> Dict[str, Any]:
        self.breaker.refresh()
        self.quota.rollover()
        state = self.state
        config = state.config
        batch = self.current_batch if state.is_processing else Batch.from_record(self.store.load_batch())
        reset_at = state.circuit_breaker_reset_at if state.circuit_breaker_tripped else None
        return {
            "added_today": state.added_today,
            "daily_limit": config.daily_limit,
            "remaining": self.quota.remaining_today,
            "hourly_added": self.quota.added_this_hour,
            "hourly_limit": config.hourly_limit,
            "hourly_remaining": self.quota.remaining_this_hour,
            "protection_tripped": state.circuit_breaker_tripped,
            "reset_eta": reset_at.isoformat() if reset_at else None,
            "consecutive_failures": state.consecutive_failures,
            "batch_progress": batch.cursor if batch else 0,
            "batch_size": len(batch.items) if batch else 0,
            "has_pending_batch": bool(batch) and not state.is_processing,
            "status": "adding" if state.is_processing else "ready",
            "client_ready": self.monitor.is_ready,
        }

    def reset_protection(self) -> Dict[str, Any]:
        self.breaker.reset()
        return self.get_status()

    def list_failures(self) -> List[Dict[str, Any]]:
        return self.failures.list()

    def clear_failures(self) -> None:
        self.failures.clear()

    def update_config(self, **changes: Any) -> SafetyConfig:
        """Replace configuration values; refused while a batch is running.

        Raises AlreadyRunningError, or ValueError/TypeError for bad values.
        """
        if self.state.is_processing:
            raise AlreadyRunningError("Cannot change configuration while a batch is running")
        self.state.config = dataclasses.replace(self.state.config, **changes)
        logger.info("config_updated", **changes)
        return self.state.config

    def save_state(self) -> None:
        self.store.save_stats(self.state.to_stats_record())

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------
    def _reject(self, exc: AdmissionError) -> BatchResult:
        self.note_rejection(exc)
        return BatchResult.rejected(exc)

    def note_rejection(self, exc: AdmissionError) -> None:
        MEMBER_BATCHES_TOTAL.labels(outcome=str(BatchStatus.REJECTED)).inc()
        logger.warning("batch_rejected", code=exc.code, reason=str(exc))

    def progress(self, batch: Batch) -> BatchProgress:
        return BatchProgress(
            total=len(batch.items),
            processed=batch.cursor,
            remaining=batch.remaining,
            estimated_completion_seconds=estimate_completion_seconds(self.config, batch.remaining),
        )

    async def _admit(self, target: str | GroupTarget, items: Sequence[str]) -> str:
        if not items:
            raise AdmissionError("No numbers provided", code="empty_batch")
        self.quota.rollover()
        if self.breaker.is_blocking():
            minutes = self.breaker.remaining_minutes()
            raise ProtectionActiveError(
                f"Protection mode active due to too many failures. Please wait {minutes} minutes before trying again."
            )
        if not self.quota.admit_hourly():
            raise QuotaExceededError(
                f"Hourly limit reached ({self.quota.added_this_hour}/{self.config.hourly_limit}). "
                "Please try again next hour."
            )
        if not self.quota.admit_daily():
            raise QuotaExceededError(
                f"Daily limit reached ({self.config.daily_limit}). Remaining: 0. Please try again tomorrow."
            )
        if not self.monitor.is_ready:
            raise ClientNotReadyError("Messaging client is not ready. Please wait for it to connect.")
        resolved = parse_group_target(target) if isinstance(target, str) else target
        group = await self._resolve(resolved)
        await self._verify(group)
        return group.group_id

    async def _resolve(self, target: GroupTarget) -> DirectGroup:
        if isinstance(target, DirectGroup):
            return target
        if not isinstance(target, InviteLink):
            raise InvalidTargetError("Unsupported group target")
        try:
            group_id = await self.retry.run("accept_invite", self.client.accept_invite, target.code)
        except Exception as exc:
            raise InvalidTargetError(f"Failed to join group from invite link: {error_text(exc)}") from exc
        if not group_id:
            raise InvalidTargetError("Failed to join group from invite link")
        logger.info("invite_accepted", invite=target.url, group_id=group_id)
        return DirectGroup(group_id)

    async def _verify(self, group: DirectGroup) -> None:
        group_id = group.group_id
        if group.id_format is GroupIdFormat.MODERN:
            try:
                participants = await self.retry.run("fetch_participants", self.client.fetch_participants, group_id)
                logger.info("group_verified", group_id=group_id, participants=len(participants))
            except Exception as exc:
                self.state.consecutive_failures += 1
                logger.warning(
                    "group_verification_failed_proceeding",
                    group_id=group_id,
                    error=error_text(exc),
                    consecutive_failures=self.state.consecutive_failures,
                )
            return
        try:
            info = await self.retry.run("lookup_group", self.client.lookup_group, group_id)
        except Exception as exc:
            self.state.consecutive_failures += 1
            logger.warning("group_lookup_failed", group_id=group_id, error=error_text(exc))
            raise InvalidTargetError("Invalid group ID or group not found") from exc
        if not info.is_group:
            raise InvalidTargetError("Provided ID is not a group")
        logger.info("group_verified", group_id=group_id, name=info.name)

    def _prepare(self, group_id: str, items: Sequence[str], message: Optional[str]) -> Batch:
        persisted = Batch.from_record(self.store.load_batch())
        cursor = 0
        if persisted is not None and persisted.group_id == group_id:
            cursor = persisted.cursor
            logger.info("batch_resuming", group_id=group_id, cursor=cursor, total=len(items))
        return Batch(group_id=group_id, items=list(items), cursor=cursor, message=message)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------
    async def _run(self, batch: Batch) -> BatchResult:
        self.current_batch = batch
        result = BatchResult(success=True, status=BatchStatus.COMPLETED, group_id=batch.group_id)
        log = logger.bind(group_id=batch.group_id, total=len(batch.items))
        log.info("batch_started", start_cursor=batch.cursor)
        try:
            await self._loop(batch, result, log)
            if result.status is BatchStatus.COMPLETED:
                await self._finish(batch, result, log)
        except Exception as exc:
            log.exception("batch_failed", cursor=batch.cursor, error=error_text(exc))
            result.success = False
            result.status = BatchStatus.FAILED
            result.message = f"Unexpected error: {error_text(exc)}. Current progress saved."
        finally:
            self.state.is_processing = False
            self.current_batch = None
            try:
                self.save_state()
            except Exception as exc:
                log.error("stats_persist_failed", error=error_text(exc))
        MEMBER_BATCHES_TOTAL.labels(outcome=str(result.status)).inc()
        result.batch = self.progress(batch)
        log.info(
            "batch_finished",
            status=str(result.status),
            added=result.added,
            failed=result.failed,
            skipped=result.skipped,
            cursor=batch.cursor,
        )
        await self._emit(ProcessorEvent.BATCH_COMPLETE, result.to_dict)
        await self._emit(ProcessorEvent.STATS, self.get_status)
        return result

    async def _loop(self, batch: Batch, result: BatchResult, log) -> None:
        config = self.config
        items = batch.items
        i = batch.cursor
        while i < len(items):
            number = items[i]
            batch.cursor = i
            self.store.save_batch(batch.to_record())

            if i > 0 and i % config.max_batch_size == 0:
                log.info("batch_cooldown", index=i, seconds=config.batch_cooldown_seconds)
                await self._sleep(config.batch_cooldown_seconds)

            if not self.quota.admit_daily():
                result.record(number, ItemStatus.SKIPPED, "Daily limit reached")
                log.info("item_skipped_daily_limit", index=i, number=number)
                i += 1
                continue

            if not self.quota.admit_hourly():
                result.record(number, ItemStatus.SKIPPED, "Hourly limit reached")
                wait = seconds_until_next_hour(self._clock())
                log.info("hourly_limit_wait", index=i, number=number, seconds=round(wait, 1))
                await self._sleep(wait)
                self.quota.reset_hour(self._clock().hour)
                i += 1
                continue

            try:
                await self._add_one(batch.group_id, number, log)
            except Exception as exc:
                reason = error_text(exc)
                self.state.consecutive_failures += 1
                self.failures.record(number, reason)
                result.record(number, ItemStatus.FAILED, reason)
                log.warning(
                    "member_add_failed",
                    index=i,
                    number=number,
                    error=reason,
                    consecutive_failures=self.state.consecutive_failures,
                )
                if is_ban_indicative(exc):
                    cooldown = self.scheduler.ban_cooldown()
                    log.warning("ban_risk_cooldown", number=number, seconds=round(cooldown, 1))
                    await self._sleep(cooldown)
                    if self.state.consecutive_failures >= BAN_TRIP_STREAK:
                        self.breaker.trip(reason="ban_risk")
                        self._checkpoint(batch, i + 1)
                        result.pause("Operation paused due to potential ban risk. Please wait before trying again.")
                        await self._emit(ProcessorEvent.PROTECTION, self.get_status)
                        return
                else:
                    await self._sleep(failure_backoff(self.state.consecutive_failures))
            else:
                self.quota.record_addition()
                self.state.consecutive_failures = 0
                result.record(number, ItemStatus.ADDED)
                if i < len(items) - 1:
                    delay = self.scheduler.compute_delay(self.state)
                    INTER_ITEM_DELAY_SECONDS.observe(delay)
                    log.debug("inter_item_delay", seconds=delay)
                    await self._sleep(delay)

            await self._emit(
                ProcessorEvent.BATCH_PROGRESS,
                {
                    "processed": i + 1,
                    "total": len(items),
                    "added": result.added,
                    "failed": result.failed,
                    "skipped": result.skipped,
                    "last": result.details[-1].to_dict(),
                },
            )

            if self.breaker.is_blocking():
                self._checkpoint(batch, i + 1)
                result.pause(
                    "Operation paused due to too many consecutive failures. "
                    "Protection mode activated, please try again later."
                )
                await self._emit(ProcessorEvent.PROTECTION, self.get_status)
                return
            i += 1
        batch.cursor = len(items)

    def _checkpoint(self, batch: Batch, cursor: int) -> None:
        """Persist the pause point; a batch with nothing left has no record."""
        batch.cursor = min(cursor, len(batch.items))
        if batch.is_complete:
            self.store.clear_batch()
        else:
            self.store.save_batch(batch.to_record())

    async def _finish(self, batch: Batch, result: BatchResult, log) -> None:
        if batch.message and result.added > 0:
            try:
                await self.client.send_message(batch.group_id, batch.message)
                log.info("group_message_sent")
            except Exception as exc:
                log.warning("group_message_failed", error=error_text(exc))
        self.store.clear_batch()
        result.message = (
            f"Batch finished: {result.added} added, {result.failed} failed, {result.skipped} skipped"
        )

    async def _add_one(self, group_id: str, number: str, log) -> str:
        """Registration check, contact lookup, human pause, participant add."""
        jid = normalize_phone(number)
        try:
            registered = await self.retry.run("is_registered", self.client.is_registered, jid)
        except PermanentProviderError:
            raise
        except Exception as exc:
            raise TransientProviderError(
                f"Failed to check if number is registered after {self.retry.attempts} attempts: {error_text(exc)}"
            ) from exc
        if not registered:
            raise NotRegisteredError("Number not registered")

        placeholder = f"WhatsApp User {jid[-9:-5]}"
        try:
            contact = await self.retry.run("fetch_contact", self.client.fetch_contact, jid)
            contact_name = contact.name or placeholder
        except Exception as exc:
            log.warning("contact_lookup_degraded", number=number, error=error_text(exc))
            contact_name = placeholder

        await self._sleep(self.scheduler.human_pause())
        await self.retry.run("add_participant", self.client.add_participant, group_id, jid)
        log.info("member_added", number=number, contact=contact_name)
        return jid

    async def _emit(
        self,
        event: ProcessorEvent,
        payload: Dict[str, Any] | Callable[[], Dict[str, Any]],
    ) -> None:
        """Forward to the event sink; a callable payload is only built when someone listens."""
        if self.on_event is None:
            return
        if callable(payload):
            payload = payload()
        try:
            await self.on_event(str(event), payload)
        except Exception as exc:
            logger.warning("event_sink_failed", event=str(event), error=error_text(exc))


__all__ = [
    "BAN_TRIP_STREAK",
    "BatchStatus",
    "ItemStatus",
    "ProcessorEvent",
    "ItemDetail",
    "BatchProgress",
    "BatchResult",
    "BatchProcessor",
]
