"""Tests for one decision-worker batch against a real SQLite store."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from conftest import FakeRegistry
from core.config import WorkerSettings
from core.errors import AutomationError, ErrorCode
from core.reply_classifier import ClassifierDecision
from core.reply_pipeline import ReplyPipeline
from core.slot_scheduling import build_slot_confirmation_prompt, build_slot_confirmed_reply, format_slot_window
from execution.decision_worker import (
    build_dispatch_key,
    build_workflow_persistence_payload,
    get_policy_context,
    normalize_lead_name,
    process_pending_messages_with_ai,
    requires_human_action,
)
from execution.queue_store import SQLiteQueueStore


NOW = datetime.now(timezone.utc)
TOUR_BODY = "Can I tour the room on Saturday?"
SLOTS = (
    ("2099-03-07T15:00:00+00:00", "2099-03-07T15:30:00+00:00", "Avery"),
    ("2099-03-07T17:00:00+00:00", "2099-03-07T17:30:00+00:00", "Blake"),
)
FIRST_LABEL = format_slot_window(SLOTS[0][0], SLOTS[0][1], "UTC", "Avery")


class StaticClassifier:
    def __init__(self, decision):
        self.decision = decision
        self.requests = []

    async def classify(self, request):
        self.requests.append(request)
        return self.decision


class FlakyStore(SQLiteQueueStore):
    """Fails the first mark_inbound_processed call."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_next_mark = True

    async def mark_inbound_processed(self, message_id, metadata_patch):
        if self.fail_next_mark:
            self.fail_next_mark = False
            raise RuntimeError("database is locked")
        await super().mark_inbound_processed(message_id, metadata_patch)


class UnauditableFailureStore(SQLiteQueueStore):
    """Fails marking one message processed, and every ai_reply_error audit write."""

    def __init__(self, *args, failing_message_id=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.failing_message_id = failing_message_id

    async def mark_inbound_processed(self, message_id, metadata_patch):
        if message_id == self.failing_message_id:
            raise RuntimeError("database is locked")
        await super().mark_inbound_processed(message_id, metadata_patch)

    async def record_log(self, actor_type, entity_type, entity_id, action, details=None):
        if action == "ai_reply_error":
            raise RuntimeError("audit table locked")
        return await super().record_log(actor_type, entity_type, entity_id, action, details)


async def seed(store, body=TOUR_BODY, send_mode="auto_send", is_active=True, slots=SLOTS[:1], sent_at=None, thread_id="thread-1"):
    account_id = await store.upsert_platform_account(
        "spareroom",
        account_id="acct-1",
        credentials={"loginIdRef": "env:SPAREROOM_LOGIN", "passwordRef": "secret:SPAREROOM_PASSWORD"},
        is_active=is_active,
        send_mode=send_mode,
    )
    unit_id = await store.add_unit("Maple Court", "4B", unit_id="unit-1")
    for starts_at, ends_at, agent in slots:
        await store.add_availability_slot(unit_id, starts_at, ends_at, "UTC", agent_id=agent.lower(), agent_name=agent)
    await store.add_automation_rule(account_id, "tour_request", "tour_invite")
    await store.add_template("tour_invite", "Hi {{ lead_name }}, open slot: {{ slot }}", account_id)
    conversation_id = await store.upsert_conversation(
        account_id, thread_id, lead_name="Jamie", unit_id=unit_id, assigned_agent_id="agent-1"
    )
    message_id = await store.insert_message(
        conversation_id,
        "inbound",
        body,
        sent_at=sent_at or (NOW - timedelta(minutes=1)).isoformat(),
        external_message_id="in-1",
    )
    return conversation_id, message_id


async def actions_for(store, message_id):
    return [row["action"] for row in await store.audit.get_logs(entity_id=message_id)]


@pytest.fixture
def registry():
    return FakeRegistry()


@pytest.fixture
def store(db_path, registry):
    return SQLiteQueueStore(db_path, registry=registry)


@pytest.fixture
def settings():
    return WorkerSettings(worker_id="worker-test")


# ============================================================================
# HELPERS
# ============================================================================

def test_workflow_payloads():
    assert build_workflow_persistence_payload("showing_confirmed") == {
        "workflow_outcome": "showing_confirmed",
        "follow_up_stage": None,
        "showing_state": "confirmed",
    }
    assert build_workflow_persistence_payload("not_interested")["showing_state"] == "cancelled"
    assert "showing_state" not in build_workflow_persistence_payload("human_required")
    assert build_workflow_persistence_payload("general_question") is None
    assert build_workflow_persistence_payload(None) is None


def test_requires_human_action():
    assert requires_human_action(SimpleNamespace(workflow_outcome="human_required", escalation_reason_code=None))
    assert requires_human_action(SimpleNamespace(workflow_outcome=None, escalation_reason_code="escalate_human_required_x"))
    assert not requires_human_action(SimpleNamespace(workflow_outcome="not_interested", escalation_reason_code=None))


def test_policy_context_defaults_to_draft():
    assert get_policy_context({}) == {
        "is_active": True,
        "send_mode": "draft_only",
        "send_mode_override": None,
        "global_default_send_mode": "draft_only",
    }
    assert get_policy_context({"platform_policy": {"send_mode": "auto_send"}})["send_mode"] == "auto_send"


def test_dispatch_key_depends_on_status_and_body():
    message = {"id": "m-1", "conversation_id": "c-1", "platform": "spareroom"}
    pipeline = SimpleNamespace(reply_body="Hi", intent="tour_request", effective_intent="tour_request")

    key = build_dispatch_key(message, pipeline, "sent")
    assert key == build_dispatch_key(dict(message), pipeline, "sent")
    assert len(key) == 64
    assert key != build_dispatch_key(message, pipeline, "draft")
    assert key != build_dispatch_key(message, SimpleNamespace(**{**vars(pipeline), "reply_body": "Hey"}), "sent")


def test_normalize_lead_name():
    assert normalize_lead_name("  Jamie   Lee ") == "jamie lee"
    assert normalize_lead_name(None) == ""


# ============================================================================
# SEND / DRAFT
# ============================================================================

@pytest.mark.asyncio
async def test_auto_send_dispatches_and_records_reply(store, registry, settings):
    conversation_id, message_id = await seed(store)

    result = await process_pending_messages_with_ai(store, pipeline=ReplyPipeline(), settings=settings, now=NOW)

    assert result.scanned == 1
    assert result.replies_created == 1
    assert result.outcomes[0].status == "sent"
    assert result.outcomes[0].reason == "auto_send"
    assert result.metrics.sends_sent == 1

    account, outbound = registry.sent[0]
    assert account["id"] == "acct-1"
    assert outbound == {"external_thread_id": "thread-1", "body": f"Hi Jamie, open slot: {FIRST_LABEL}"}

    reply = (await store.list_messages(conversation_id, direction="outbound"))[0]
    assert reply["external_message_id"] == "out-1"
    assert reply["sender_agent_id"] == "agent-1"
    assert reply["metadata"]["review_status"] == "sent"
    assert reply["metadata"]["delivery"]["provider_status"] == "sent"

    inbound = await store.get_message(message_id)
    assert inbound["metadata"]["reply_eligible"] is True
    assert inbound["metadata"]["ai_processed_at"] == NOW.isoformat()
    assert "worker_claim" not in inbound["metadata"]

    assert (await store.ledger.get(message_id)).state == "completed"
    assert await actions_for(store, message_id) == ["ai_reply_decision", "ai_reply_send_attempted", "ai_reply_created"]


@pytest.mark.asyncio
async def test_draft_mode_records_reply_without_sending(store, registry, settings):
    conversation_id, message_id = await seed(store, send_mode=None)

    result = await process_pending_messages_with_ai(store, settings=settings, now=NOW)

    assert result.outcomes[0].status == "draft"
    assert result.outcomes[0].reason == "requires_review"
    assert result.metrics.sends_drafted == 1
    assert registry.sent == []

    reply = (await store.list_messages(conversation_id, direction="outbound"))[0]
    assert reply["metadata"]["review_status"] == "draft"
    assert reply["external_message_id"] == reply["metadata"]["dispatch_key"]
    assert "ai_reply_draft_created" in await actions_for(store, message_id)


# ============================================================================
# GATES
# ============================================================================

@pytest.mark.asyncio
async def test_inactive_platform_is_blocked(store, registry, settings):
    _, message_id = await seed(store, is_active=False)

    result = await process_pending_messages_with_ai(store, settings=settings, now=NOW)

    assert result.outcomes[0].status == "blocked"
    assert result.outcomes[0].reason == "policy_platform_inactive"
    assert registry.sent == []
    metadata = (await store.get_message(message_id))["metadata"]
    assert metadata["reply_decision_reason"] == "policy_platform_inactive"
    assert metadata["outcome"] == "blocked"
    assert await actions_for(store, message_id) == ["ai_reply_policy_blocked"]


@pytest.mark.asyncio
async def test_lead_outside_allowlist_is_blocked(store):
    _, message_id = await seed(store)
    settings = WorkerSettings(worker_id="worker-test", allow_lead_names=["Someone Else"])

    result = await process_pending_messages_with_ai(store, settings=settings, now=NOW)

    assert result.outcomes[0].reason == "test_allowlist_blocked"
    metadata = (await store.get_message(message_id))["metadata"]
    assert metadata["allowlist"]["matched"] is False
    assert await actions_for(store, message_id) == ["ai_reply_test_allowlist_blocked"]


@pytest.mark.asyncio
async def test_allowlisted_lead_with_old_message_is_blocked(store):
    _, message_id = await seed(store, sent_at=(NOW - timedelta(hours=2)).isoformat())
    settings = WorkerSettings(worker_id="worker-test", allow_lead_names=["  JAMIE "], max_message_age_minutes=60)

    result = await process_pending_messages_with_ai(store, settings=settings, now=NOW)

    assert result.outcomes[0].reason == "test_allowlist_message_too_old"
    metadata = (await store.get_message(message_id))["metadata"]
    assert metadata["allowlist"]["matched"] is True
    assert metadata["allowlist"]["max_message_age_minutes"] == 60


@pytest.mark.asyncio
async def test_zero_max_age_disables_the_staleness_gate(store, registry):
    await seed(store, sent_at=(NOW - timedelta(days=3)).isoformat())
    settings = WorkerSettings(worker_id="worker-test", allow_lead_names=["Jamie"], max_message_age_minutes=0)

    result = await process_pending_messages_with_ai(store, settings=settings, now=NOW)

    assert result.outcomes[0].status == "sent"
    assert len(registry.sent) == 1


# ============================================================================
# ESCALATION
# ============================================================================

@pytest.mark.asyncio
async def test_unsubscribe_escalates_and_cancels_showing(store, registry, settings):
    conversation_id, message_id = await seed(store, body="Please stop messaging me")

    result = await process_pending_messages_with_ai(store, settings=settings, now=NOW)

    assert result.outcomes[0].status == "escalated"
    assert result.outcomes[0].reason == "escalate_unsubscribe_requested"
    assert result.metrics.escalations_raised == 1
    assert registry.sent == []
    assert await store.list_messages(conversation_id, direction="outbound") == []

    workflow = await store.get_conversation_workflow(conversation_id)
    assert workflow["workflow_outcome"] == "not_interested"
    assert workflow["showing_state"] == "cancelled"
    assert workflow["source"] == "ai_outcome_decision"
    assert await actions_for(store, message_id) == ["ai_reply_decision", "ai_reply_escalated", "ai_reply_skipped"]


@pytest.mark.asyncio
async def test_ambiguous_message_is_queued_for_a_human(store, settings):
    conversation_id, message_id = await seed(store, body="Not sure yet, maybe later for a tour")

    result = await process_pending_messages_with_ai(store, settings=settings, now=NOW)

    assert result.outcomes[0].reason == "escalate_ambiguous_intent"
    metadata = (await store.get_message(message_id))["metadata"]
    assert metadata["review_status"] == "hold"
    assert metadata["action_queue"] == "agent_action"
    assert (await store.get_conversation_workflow(conversation_id))["workflow_outcome"] == "human_required"
    assert "ai_reply_human_required_queued" in await actions_for(store, message_id)


@pytest.mark.asyncio
async def test_unit_without_slots_escalates(store, settings):
    _, message_id = await seed(store, slots=())

    result = await process_pending_messages_with_ai(store, settings=settings, now=NOW)

    assert result.outcomes[0].status == "escalated"
    assert result.outcomes[0].reason == "escalate_no_slot_candidates"


# ============================================================================
# DISPATCH FAILURES
# ============================================================================

@pytest.mark.asyncio
async def test_exhausted_send_moves_to_dlq(db_path, settings):
    error = AutomationError(ErrorCode.NETWORK_ERROR, "net::ERR_TIMED_OUT", retryable=True)
    error.retry_attempts = 4
    error.retry_exhausted = True
    store = SQLiteQueueStore(db_path, registry=FakeRegistry(send_error=error))
    conversation_id, message_id = await seed(store)

    result = await process_pending_messages_with_ai(store, settings=settings, now=NOW)

    outcome = result.outcomes[0]
    assert outcome.status == "dlq"
    assert outcome.stage == "dispatch_outbound_message"
    assert outcome.reason == "escalate_dispatch_retry_exhausted"
    metrics = result.metrics.to_dict()
    assert metrics["dispatch"]["dlq_queued"] == 1
    assert metrics["platform_failures"] == {"spareroom": 1}
    assert metrics["platform_failure_stages"] == {"spareroom:dispatch_outbound_message": 1}

    attempt = await store.ledger.get(message_id)
    assert attempt.state == "dlq"
    assert attempt.retry["attempts"] == 4
    assert await actions_for(store, message_id) == [
        "ai_reply_decision",
        "ai_reply_error",
        "platform_dispatch_error",
        "platform_dispatch_dlq",
        "ai_reply_dispatch_escalated",
    ]
    assert "ai_processed_at" not in (await store.get_message(message_id))["metadata"]
    assert await store.list_messages(conversation_id, direction="outbound") == []


@pytest.mark.asyncio
async def test_non_retryable_send_failure_is_not_dead_lettered(db_path, settings):
    store = SQLiteQueueStore(db_path, registry=FakeRegistry(send_error=ValueError("composer not found")))
    _, message_id = await seed(store)

    result = await process_pending_messages_with_ai(store, settings=settings, now=NOW)

    assert result.outcomes[0].status == "error"
    assert result.outcomes[0].error == "composer not found"
    assert result.metrics.errors == 1
    assert result.metrics.dlq_queued == 0
    assert (await store.ledger.get(message_id)).state == "failed"


@pytest.mark.asyncio
async def test_redelivery_after_crash_does_not_send_twice(db_path, registry, settings):
    store = FlakyStore(db_path, registry=registry)
    conversation_id, message_id = await seed(store)

    first = await process_pending_messages_with_ai(store, settings=settings, now=NOW, claim_ttl_ms=60_000)
    assert first.outcomes[0].status == "error"
    assert first.outcomes[0].stage == "mark_inbound_processed"

    second = await process_pending_messages_with_ai(store, settings=settings, now=NOW + timedelta(minutes=5))

    assert second.scanned == 1
    assert second.outcomes[0].status == "duplicate_suppressed"
    assert second.metrics.duplicates_suppressed == 1
    assert len(registry.sent) == 1
    assert len(await store.list_messages(conversation_id, direction="outbound")) == 1
    assert "ai_reply_dispatch_duplicate_suppressed" in await actions_for(store, message_id)
    assert (await store.get_message(message_id))["metadata"]["reply_eligible"] is True


@pytest.mark.asyncio
async def test_failed_error_audit_does_not_stop_the_batch(db_path, registry, settings):
    store = UnauditableFailureStore(db_path, registry=registry)
    conversation_id, first_id = await seed(store)
    second_id = await store.insert_message(
        conversation_id,
        "inbound",
        "Could I also tour on Sunday?",
        sent_at=(NOW - timedelta(seconds=30)).isoformat(),
        external_message_id="in-2",
    )
    store.failing_message_id = first_id

    result = await process_pending_messages_with_ai(store, settings=settings, now=NOW)

    assert result.scanned == 2
    assert [outcome.message_id for outcome in result.outcomes] == [first_id, second_id]
    assert result.outcomes[0].status == "error"
    assert result.outcomes[0].stage == "mark_inbound_processed"
    assert result.outcomes[1].status == "sent"
    assert result.metrics.errors == 1
    assert len(registry.sent) == 2
    assert (await store.get_message(second_id))["metadata"]["reply_eligible"] is True


@pytest.mark.asyncio
async def test_missing_thread_fails_dispatch_instead_of_counting_a_send(store, registry, settings):
    conversation_id, message_id = await seed(store, thread_id="")

    result = await process_pending_messages_with_ai(store, settings=settings, now=NOW)

    outcome = result.outcomes[0]
    assert outcome.status == "error"
    assert outcome.stage == "dispatch_outbound_message"
    assert "external_thread_id" in outcome.error
    assert result.metrics.sends_sent == 0
    assert result.metrics.dlq_queued == 0
    assert result.metrics.platform_failures == {"spareroom": 1}
    assert registry.sent == []
    assert await store.list_messages(conversation_id, direction="outbound") == []
    attempt = await store.ledger.get(message_id)
    assert attempt.state == "failed"
    assert attempt.retry["retry_exhausted"] is False


# ============================================================================
# SLOT CONFIRMATION
# ============================================================================

@pytest.mark.asyncio
async def test_slot_is_held_then_confirmed(store, registry, settings):
    classifier = StaticClassifier(ClassifierDecision(
        intent="tour_request",
        workflow_outcome="showing_confirmed",
        confidence=0.9,
        risk_level="low",
    ))
    pipeline = ReplyPipeline(classifier=classifier)
    conversation_id, first_id = await seed(store, slots=SLOTS)

    first = await process_pending_messages_with_ai(store, pipeline=pipeline, settings=settings, now=NOW)

    assert first.outcomes[0].status == "sent"
    assert registry.sent[0][1]["body"] == build_slot_confirmation_prompt("Jamie", FIRST_LABEL)
    hold = (await store.list_messages(conversation_id, direction="outbound"))[0]
    assert hold["metadata"]["slot_confirmation_state"]["strategy"] == "deterministic_arbitration"
    assert hold["metadata"]["slot_confirmation_pending"]["label"] == FIRST_LABEL
    assert hold["metadata"]["slot_confirmation_pending"]["source_message_id"] == first_id
    assert await store.get_conversation_workflow(conversation_id) is None

    await store.insert_message(
        conversation_id,
        "inbound",
        "Yes, confirm please",
        sent_at=datetime.now(timezone.utc).isoformat(),
        external_message_id="in-2",
    )
    second = await process_pending_messages_with_ai(store, pipeline=pipeline, settings=settings)

    assert second.scanned == 1
    assert second.outcomes[0].status == "sent"
    assert registry.sent[1][1]["body"] == build_slot_confirmed_reply("Jamie", FIRST_LABEL)
    workflow = await store.get_conversation_workflow(conversation_id)
    assert workflow["workflow_outcome"] == "showing_confirmed"
    assert workflow["showing_state"] == "confirmed"

    confirmation = (await store.list_messages(conversation_id, direction="outbound"))[-1]
    assert confirmation["metadata"]["slot_confirmation_resolved"]["label"] == FIRST_LABEL
    assert confirmation["metadata"]["selected_slot_index"] == 1

    context = classifier.requests[1].conversation_context
    assert [m["direction"] for m in context] == ["inbound", "outbound", "inbound"]
