"""Tests for the outbound dispatch idempotency ledger."""

import pytest

from core.dispatch_ledger import DLQ_ESCALATION_REASON, DispatchLedger


@pytest.fixture
def ledger(db_path):
    return DispatchLedger(db_path)


@pytest.mark.asyncio
async def test_first_begin_dispatches(ledger):
    guard = await ledger.begin("m-1", "key-a", platform="spareroom", now="2099-01-01T00:00:00+00:00")

    assert guard.should_dispatch is True
    assert guard.duplicate is False
    attempt = await ledger.get("m-1")
    assert attempt.state == "in_progress"
    assert attempt.attempts == 1
    assert attempt.platform == "spareroom"
    assert attempt.last_attempt_at == "2099-01-01T00:00:00+00:00"


@pytest.mark.asyncio
async def test_same_key_in_progress_is_suppressed(ledger):
    await ledger.begin("m-1", "key-a")
    guard = await ledger.begin("m-1", "key-a")

    assert guard.should_dispatch is False
    assert guard.duplicate is True
    assert guard.state == "in_progress"
    assert (await ledger.get("m-1")).attempts == 1


@pytest.mark.asyncio
async def test_completed_key_replays_stored_delivery(ledger):
    delivery = {"external_message_id": "sr-9", "channel": "in_app", "provider_status": "sent"}
    await ledger.begin("m-1", "key-a")
    await ledger.complete("m-1", "key-a", "sent", delivery, now="2099-01-01T00:01:00+00:00")

    guard = await ledger.begin("m-1", "key-a")

    assert guard.duplicate is True
    assert guard.state == "completed"
    assert guard.delivery == delivery
    attempt = await ledger.get("m-1")
    assert attempt.status == "sent"
    assert attempt.completed_at == "2099-01-01T00:01:00+00:00"


@pytest.mark.asyncio
async def test_changed_reply_starts_new_attempt(ledger):
    await ledger.begin("m-1", "key-a")
    await ledger.complete("m-1", "key-a", "sent", {"external_message_id": "x"})

    guard = await ledger.begin("m-1", "key-b")

    assert guard.should_dispatch is True
    attempt = await ledger.get("m-1")
    assert attempt.dispatch_key == "key-b"
    assert attempt.state == "in_progress"
    assert attempt.attempts == 2


@pytest.mark.asyncio
async def test_complete_with_stale_key_is_ignored(ledger):
    await ledger.begin("m-1", "key-b")
    await ledger.complete("m-1", "key-a", "sent", {"external_message_id": "stale"})

    attempt = await ledger.get("m-1")
    assert attempt.state == "in_progress"
    assert attempt.delivery is None


@pytest.mark.asyncio
async def test_failed_attempt_can_be_retried(ledger):
    await ledger.begin("m-1", "key-a")
    state = await ledger.fail("m-1", stage="dispatch_outbound_message", error="timeout", retry={"retry_attempts": 1})

    assert state == "failed"
    attempt = await ledger.get("m-1")
    assert attempt.last_error == "timeout"
    assert attempt.retry == {"retry_attempts": 1}
    assert attempt.dlq_queued_at is None

    guard = await ledger.begin("m-1", "key-a")
    assert guard.should_dispatch is True
    assert (await ledger.get("m-1")).attempts == 2


@pytest.mark.asyncio
async def test_exhausted_retries_move_to_dlq(ledger):
    await ledger.begin("m-1", "key-a")
    state = await ledger.fail(
        "m-1",
        error="net::ERR_TIMED_OUT",
        now="2099-01-01T00:02:00+00:00",
        retry={"retry_attempts": 4, "retry_exhausted": True},
    )

    assert state == "dlq"
    attempt = await ledger.get("m-1")
    assert attempt.state == "dlq"
    assert attempt.escalation_reason == DLQ_ESCALATION_REASON
    assert attempt.dlq_queued_at == "2099-01-01T00:02:00+00:00"
    assert attempt.failed_stage == "dispatch_outbound_message"


@pytest.mark.asyncio
async def test_unknown_message_has_no_attempt(ledger):
    assert await ledger.get("missing") is None
