"""Tests for adder/processor.py - admission, add loop, pause and resume."""
from datetime import timedelta

import pytest

from conftest import jid, phone

MODERN_GROUP = "120363012345678901@g.us"
LEGACY_GROUP = "15550001111-1600000000@g.us"


class TestAdmission:
    """Refusals happen before any item is attempted."""

    @pytest.mark.asyncio
    async def test_already_running_is_rejected(self, make_processor, client):
        processor = make_processor()
        processor.state.is_processing = True

        result = await processor.submit_batch(MODERN_GROUP, [phone(1)])

        assert result.success is False
        assert result.code == "already_running"
        assert client.calls == []
        # The guard belongs to the running batch; a rejection must not clear it
        assert processor.state.is_processing is True

    @pytest.mark.asyncio
    async def test_protection_active_reports_minutes(self, make_processor, client):
        processor = make_processor(failure_threshold=3, circuit_breaker_timeout_seconds=1800)
        processor.state.consecutive_failures = 3

        result = await processor.submit_batch(MODERN_GROUP, [phone(1)])

        assert result.code == "protection_active"
        assert "30 minutes" in result.message
        assert processor.state.circuit_breaker_tripped is True
        assert processor.state.is_processing is False
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_hourly_limit_rejects(self, make_processor, clock):
        processor = make_processor(hourly_limit=2)
        processor.state.last_reset_date = clock().date()
        processor.state.hourly_addition_counts[clock().hour] = 2

        result = await processor.submit_batch(MODERN_GROUP, [phone(1)])

        assert result.code == "quota_exceeded"
        assert "Hourly limit" in result.message

    @pytest.mark.asyncio
    async def test_daily_limit_rejects(self, make_processor, clock):
        processor = make_processor(daily_limit=5)
        processor.state.last_reset_date = clock().date()
        processor.state.added_today = 5

        result = await processor.submit_batch(MODERN_GROUP, [phone(1)])

        assert result.code == "quota_exceeded"
        assert "Daily limit" in result.message

    @pytest.mark.asyncio
    async def test_daily_count_from_yesterday_does_not_block(self, make_processor, clock):
        processor = make_processor(daily_limit=5)
        processor.state.last_reset_date = (clock() - timedelta(days=1)).date()
        processor.state.added_today = 5

        result = await processor.submit_batch(MODERN_GROUP, [phone(1)])

        assert result.success is True
        assert result.added == 1
        assert processor.state.added_today == 1

    @pytest.mark.asyncio
    async def test_client_not_ready(self, make_processor, client):
        from adder.client import ConnectionMonitor

        processor = make_processor(monitor=ConnectionMonitor())

        result = await processor.submit_batch(MODERN_GROUP, [phone(1)])

        assert result.code == "client_not_ready"
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_invalid_target(self, make_processor):
        processor = make_processor()

        result = await processor.submit_batch("not-a-group", [phone(1)])

        assert result.code == "invalid_target"
        assert processor.state.is_processing is False

    @pytest.mark.asyncio
    async def test_empty_batch(self, make_processor):
        result = await make_processor().submit_batch(MODERN_GROUP, [])
        assert result.code == "empty_batch"


class TestGroupVerification:
    """Modern ids proceed on verification failure, legacy ids do not."""

    @pytest.mark.asyncio
    async def test_modern_failure_proceeds(self, make_processor, client, sleep):
        from adder.errors import TransientProviderError

        client.participants_error = TransientProviderError("timeout")
        processor = make_processor()

        result = await processor.submit_batch(MODERN_GROUP, [phone(1)])

        assert result.success is True
        assert result.added == 1
        assert client.call_count("fetch_participants") == 3
        assert sleep.calls[:2] == [2.0, 2.0]
        # Success resets the streak that verification started
        assert processor.state.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_legacy_lookup_failure_rejects(self, make_processor, client):
        from adder.errors import TransientProviderError

        client.lookup_error = TransientProviderError("group lookup timed out")
        processor = make_processor()

        result = await processor.submit_batch(LEGACY_GROUP, [phone(1)])

        assert result.code == "invalid_target"
        assert result.message == "Invalid group ID or group not found"
        assert processor.state.consecutive_failures == 1
        assert client.call_count("add_participant") == 0

    @pytest.mark.asyncio
    async def test_legacy_not_a_group(self, make_processor, client):
        from adder.client import GroupInfo

        client.groups[LEGACY_GROUP] = GroupInfo(group_id=LEGACY_GROUP, is_group=False)

        result = await make_processor().submit_batch(LEGACY_GROUP, [phone(1)])

        assert result.code == "invalid_target"
        assert result.message == "Provided ID is not a group"

    @pytest.mark.asyncio
    async def test_invite_link_is_accepted_then_used(self, make_processor, client):
        from adder.mock_client import DEFAULT_INVITE_GROUP

        result = await make_processor().submit_batch("https://chat.whatsapp.com/AbCd123_x", [phone(1)])

        assert result.success is True
        assert result.group_id == DEFAULT_INVITE_GROUP
        assert ("accept_invite", "AbCd123_x") in client.calls
        assert client.added[DEFAULT_INVITE_GROUP] == [jid(1)]

    @pytest.mark.asyncio
    async def test_invite_without_group_rejects(self, make_processor, client):
        client.invites["expired"] = None

        result = await make_processor().submit_batch("chat.whatsapp.com/expired", [phone(1)])

        assert result.code == "invalid_target"
        assert client.call_count("add_participant") == 0


class TestAddLoop:
    """Per-item outcomes, pacing and bookkeeping."""

    @pytest.mark.asyncio
    async def test_daily_limit_skips_the_rest(self, make_processor, store):
        processor = make_processor(daily_limit=5)
        items = [phone(n) for n in range(1, 8)]

        result = await processor.submit_batch(MODERN_GROUP, items)

        assert result.success is True
        assert (result.added, result.failed, result.skipped) == (5, 0, 2)
        assert [d.number for d in result.details if str(d.status) == "skipped"] == [phone(6), phone(7)]
        assert processor.state.added_today == 5
        assert sum(processor.state.hourly_addition_counts) == 5
        assert store.batch is None

    @pytest.mark.asyncio
    async def test_hourly_limit_waits_for_next_hour(self, make_processor, clock, sleep):
        processor = make_processor(hourly_limit=2, pattern_variation_enabled=False)
        items = [phone(n) for n in range(1, 5)]

        result = await processor.submit_batch(MODERN_GROUP, items)

        assert (result.added, result.skipped) == (3, 1)
        assert result.details[2].status.value == "skipped"
        assert clock().hour == 13
        assert processor.state.hourly_addition_counts[12] == 2
        assert processor.state.hourly_addition_counts[13] == 1
        # One wait long enough to reach the next hour
        assert any(s > 3000 for s in sleep.calls)

    @pytest.mark.asyncio
    async def test_success_paths_pace_between_items(self, make_processor, sleep):
        processor = make_processor(min_delay_seconds=30, max_delay_seconds=90)

        result = await processor.submit_batch(MODERN_GROUP, [phone(1), phone(2)])

        assert result.added == 2
        # human pause, inter-item delay, human pause; no delay after the last item
        assert len(sleep.calls) == 3
        assert 0.5 <= sleep.calls[0] <= 2.0
        assert 21 <= sleep.calls[1] <= 225
        assert 0.5 <= sleep.calls[2] <= 2.0

    @pytest.mark.asyncio
    async def test_invalid_number_fails_without_provider_calls(self, make_processor, client, store):
        processor = make_processor()

        result = await processor.submit_batch(MODERN_GROUP, ["12345", "0000000000"])

        assert result.failed == 2
        assert "Invalid phone number" in result.details[0].reason
        assert client.call_count("is_registered") == 0
        assert {f["number"] for f in processor.list_failures()} == {"12345", "0000000000"}

    @pytest.mark.asyncio
    async def test_not_registered(self, make_processor, client):
        client.unregistered.add(jid(1))

        result = await make_processor().submit_batch(MODERN_GROUP, [phone(1)])

        assert result.failed == 1
        assert result.details[0].reason == "Number not registered"
        assert client.call_count("add_participant") == 0

    @pytest.mark.asyncio
    async def test_transient_add_errors_are_retried(self, make_processor, client, sleep):
        from adder.mock_client import flaky

        client.add_errors[jid(1)] = flaky(2)

        result = await make_processor().submit_batch(MODERN_GROUP, [phone(1)])

        assert result.added == 1
        assert client.call_count("add_participant") == 3
        assert sleep.calls.count(2.0) == 2

    @pytest.mark.asyncio
    async def test_execution_context_waits_longer(self, make_processor, client, sleep):
        from adder.errors import ExecutionContextError

        client.registration_errors[jid(1)] = [ExecutionContextError("Execution context was destroyed")]

        result = await make_processor().submit_batch(MODERN_GROUP, [phone(1)])

        assert result.added == 1
        assert sleep.calls[0] == 5.0

    @pytest.mark.asyncio
    async def test_registration_exhausted_is_wrapped(self, make_processor, client):
        from adder.errors import TransientProviderError

        client.registration_errors[jid(1)] = TransientProviderError("socket hang up")

        result = await make_processor().submit_batch(MODERN_GROUP, [phone(1)])

        assert result.failed == 1
        assert result.details[0].reason.startswith("Failed to check if number is registered after 3 attempts")
        assert "socket hang up" in result.details[0].reason

    @pytest.mark.asyncio
    async def test_contact_lookup_degrades(self, make_processor, client):
        from adder.errors import TransientProviderError

        client.contact_errors[jid(1)] = TransientProviderError("contact store unavailable")

        result = await make_processor().submit_batch(MODERN_GROUP, [phone(1)])

        assert result.added == 1

    @pytest.mark.asyncio
    async def test_periodic_cooldown(self, make_processor, sleep):
        processor = make_processor(max_batch_size=2, batch_cooldown_seconds=300)

        await processor.submit_batch(MODERN_GROUP, [phone(n) for n in range(1, 4)])

        assert sleep.calls.count(300) == 1

    @pytest.mark.asyncio
    async def test_message_only_after_an_addition(self, make_processor, client):
        processor = make_processor()
        client.unregistered.add(jid(1))

        await processor.submit_batch(MODERN_GROUP, [phone(1)], message="Welcome!")
        assert client.sent_messages == []

        await processor.submit_batch(MODERN_GROUP, [phone(2)], message="Welcome!")
        assert client.sent_messages == [(MODERN_GROUP, "Welcome!")]

    @pytest.mark.asyncio
    async def test_failed_message_does_not_fail_batch(self, make_processor, client):
        client.send_error = RuntimeError("send failed")

        result = await make_processor().submit_batch(MODERN_GROUP, [phone(1)], message="hi")

        assert result.success is True

    @pytest.mark.asyncio
    async def test_progress_estimate(self, make_processor):
        result = await make_processor().submit_batch(MODERN_GROUP, [phone(1), phone(2)])

        assert result.batch.total == 2
        assert result.batch.processed == 2
        assert result.batch.remaining == 0
        assert result.batch.estimated_completion_seconds == 0


class TestProtection:
    """Failure streaks pause the batch and persist the cursor past the last attempt."""

    @pytest.mark.asyncio
    async def test_ban_cascade_trips_breaker(self, make_processor, client, store, clock, sleep):
        from adder.errors import PermanentProviderError

        for n in (1, 2, 3):
            client.add_errors[jid(n)] = PermanentProviderError("not-authorized")
        processor = make_processor()
        items = [phone(n) for n in range(1, 6)]

        result = await processor.submit_batch(MODERN_GROUP, items)

        assert result.status.value == "paused"
        assert result.success is False
        assert "potential ban risk" in result.message
        assert result.failed == 3
        assert processor.state.circuit_breaker_tripped is True
        assert processor.state.circuit_breaker_reset_at == clock() + timedelta(seconds=1800)
        assert store.batch["cursor"] == 3
        assert store.stats["circuitBreakerTripped"] is True
        assert len([s for s in sleep.calls if 300 <= s <= 600]) == 3
        assert client.call_count("add_participant") == 3

    @pytest.mark.asyncio
    async def test_failure_threshold_pauses(self, make_processor, client, store, sleep):
        from adder.errors import PermanentProviderError

        for n in (1, 2):
            client.add_errors[jid(n)] = PermanentProviderError("bad request")
        processor = make_processor(failure_threshold=2)

        result = await processor.submit_batch(MODERN_GROUP, [phone(n) for n in range(1, 5)])

        assert result.status.value == "paused"
        assert "too many consecutive failures" in result.message
        assert store.batch["cursor"] == 2
        # failure backoff: 60 + 30 * streak
        assert 90 in sleep.calls and 120 in sleep.calls

    @pytest.mark.asyncio
    async def test_reset_protection_allows_new_batch(self, make_processor):
        processor = make_processor()
        processor.breaker.trip()

        status = processor.reset_protection()
        result = await processor.submit_batch(MODERN_GROUP, [phone(1)])

        assert status["protection_tripped"] is False
        assert result.success is True

    @pytest.mark.asyncio
    async def test_pause_on_last_item_leaves_no_batch(self, make_processor, client, store):
        from adder.errors import PermanentProviderError

        for n in (1, 2, 3):
            client.add_errors[jid(n)] = PermanentProviderError("not-authorized")
        processor = make_processor()

        result = await processor.submit_batch(MODERN_GROUP, [phone(n) for n in (1, 2, 3)])

        assert result.status.value == "paused"
        assert result.batch.remaining == 0
        assert store.batch is None
        assert processor.get_status()["has_pending_batch"] is False

        # A fresh list for the same group starts from its first number
        processor.reset_protection()
        fresh = [phone(n) for n in range(4, 9)]
        follow_up = await processor.submit_batch(MODERN_GROUP, fresh)

        assert follow_up.added == 5
        assert client.added[MODERN_GROUP] == [jid(n) for n in range(4, 9)]


class TestResume:
    """Persisted batches resume from their cursor."""

    @pytest.mark.asyncio
    async def test_resume_processes_only_remaining_items(self, make_processor, client, store):
        store.batch = {
            "items": [phone(1), phone(2), phone(3), phone(4)],
            "cursor": 2,
            "groupIdentifier": MODERN_GROUP,
            "message": None,
        }
        processor = make_processor()

        result = await processor.resume_batch()

        assert result.success is True
        assert client.added[MODERN_GROUP] == [jid(3), jid(4)]
        assert store.batch is None

    @pytest.mark.asyncio
    async def test_resume_without_batch(self, make_processor):
        result = await make_processor().resume_batch()
        assert result.code == "no_batch"

    @pytest.mark.asyncio
    async def test_resubmit_to_same_group_continues(self, make_processor, client, store):
        store.batch = {"items": [phone(1), phone(2)], "cursor": 1, "groupIdentifier": MODERN_GROUP}

        await make_processor().submit_batch(MODERN_GROUP, [phone(1), phone(2)])

        assert client.added[MODERN_GROUP] == [jid(2)]

    @pytest.mark.asyncio
    async def test_other_group_starts_from_zero(self, make_processor, client, store):
        store.batch = {"items": [phone(1), phone(2)], "cursor": 1, "groupIdentifier": MODERN_GROUP}
        other = "120363099999999999@g.us"

        await make_processor().submit_batch(other, [phone(1), phone(2)])

        assert client.added[other] == [jid(1), jid(2)]

    @pytest.mark.asyncio
    async def test_pause_then_resume_finishes(self, make_processor, client, store):
        from adder.errors import PermanentProviderError

        for n in (1, 2, 3):
            client.add_errors[jid(n)] = PermanentProviderError("spam detected")
        processor = make_processor()
        await processor.submit_batch(MODERN_GROUP, [phone(n) for n in range(1, 6)], message="hello")
        processor.reset_protection()

        result = await processor.resume_batch()

        assert result.added == 2
        assert client.added[MODERN_GROUP] == [jid(4), jid(5)]
        assert client.sent_messages == [(MODERN_GROUP, "hello")]


class TestFatalErrors:
    """Unexpected errors end the batch but never leak out."""

    @pytest.mark.asyncio
    async def test_store_failure_returns_result_and_releases_guard(self, make_processor, store):
        calls = {"n": 0}
        original = store.save_batch

        def failing_save(record):
            calls["n"] += 1
            if calls["n"] == 2:
                raise RuntimeError("disk unplugged")
            original(record)

        store.save_batch = failing_save
        processor = make_processor()

        result = await processor.submit_batch(MODERN_GROUP, [phone(1), phone(2), phone(3)])

        assert result.success is False
        assert result.status.value == "failed"
        assert result.message.startswith("Unexpected error: disk unplugged")
        assert processor.state.is_processing is False
        assert result.added == 1
        assert result.batch.processed == 1
        assert store.batch["cursor"] == 0

    @pytest.mark.asyncio
    async def test_cancellation_releases_guard(self, make_processor, client):
        import asyncio

        async def cancelled_add(group_id, jid_):
            raise asyncio.CancelledError()

        client.add_participant = cancelled_add
        processor = make_processor()

        with pytest.raises(asyncio.CancelledError):
            await processor.submit_batch(MODERN_GROUP, [phone(1)])
        assert processor.state.is_processing is False


class TestStatusAndConfig:
    @pytest.mark.asyncio
    async def test_status_shape(self, make_processor, store):
        processor = make_processor(daily_limit=10, hourly_limit=4)
        await processor.submit_batch(MODERN_GROUP, [phone(1)])

        status = processor.get_status()

        assert status["added_today"] == 1
        assert status["remaining"] == 9
        assert status["hourly_added"] == 1
        assert status["hourly_remaining"] == 3
        assert status["status"] == "ready"
        assert status["client_ready"] is True
        assert status["reset_eta"] is None

    def test_status_reports_pending_batch(self, make_processor, store):
        store.batch = {"items": [phone(1), phone(2)], "cursor": 1, "groupIdentifier": MODERN_GROUP}

        status = make_processor().get_status()

        assert status["batch_progress"] == 1
        assert status["batch_size"] == 2
        assert status["has_pending_batch"] is True

    def test_update_config(self, make_processor):
        processor = make_processor()
        config = processor.update_config(daily_limit=50, min_delay_seconds=10)
        assert config.daily_limit == 50
        assert processor.state.config.min_delay_seconds == 10

    def test_update_config_rejected_while_running(self, make_processor):
        from adder.errors import AlreadyRunningError

        processor = make_processor()
        processor.state.is_processing = True
        with pytest.raises(AlreadyRunningError):
            processor.update_config(daily_limit=50)

    def test_update_config_validates(self, make_processor):
        processor = make_processor()
        with pytest.raises(ValueError):
            processor.update_config(min_delay_seconds=100, max_delay_seconds=50)

    @pytest.mark.asyncio
    async def test_clear_failures_twice(self, make_processor, client):
        client.unregistered.add(jid(1))
        processor = make_processor()
        await processor.submit_batch(MODERN_GROUP, [phone(1)])
        assert len(processor.list_failures()) == 1

        processor.clear_failures()
        assert processor.list_failures() == []
        processor.clear_failures()
        assert processor.list_failures() == []

    def test_stats_survive_restart(self, make_processor, store, clock):
        store.stats = {
            "addedToday": 7,
            "lastResetDate": clock().date().isoformat(),
            "hourlyAdditionCounts": [0] * 12 + [7] + [0] * 11,
            "circuitBreakerTripped": False,
            "circuitBreakerResetAt": None,
        }

        status = make_processor().get_status()

        assert status["added_today"] == 7
        assert status["hourly_added"] == 7
