"""Tests for the decision audit trail and PII redaction."""

import pytest

from core.audit_trail import AuditTrail, DetailRedactor


@pytest.fixture
def audit_trail(db_path):
    return AuditTrail(db_path=db_path)


# ============================================================================
# REDACTION
# ============================================================================

def test_redact_string_masks_contact_details():
    text = "Reach jamie@example.com, card 4111 1111 1111 1111, ssn 123-45-6789"
    redacted = DetailRedactor.scrub_text(text)

    assert "[EMAIL_REDACTED]" in redacted
    assert "[CC_REDACTED]" in redacted
    assert "[SSN_REDACTED]" in redacted
    assert "jamie@example.com" not in redacted


def test_redact_string_keeps_key_name_for_secrets():
    assert DetailRedactor.scrub_text("api_key=sk_live_abcdefgh123") == "api_key=[API_KEY_REDACTED]"


def test_sensitive_fields_are_replaced_wholesale():
    details = DetailRedactor.scrub({
        "platform": "spareroom",
        "passwordRef": "secret:SPAREROOM_PASSWORD",
        "storage_state": {"cookies": []},
        "Auth-Token": "abc",
        "nested": {"session_cookie": "sid=1", "body": "hello"},
    })

    assert details["platform"] == "spareroom"
    assert details["passwordRef"] == "[SENSITIVE_REDACTED]"
    assert details["storage_state"] == "[SENSITIVE_REDACTED]"
    assert details["Auth-Token"] == "[SENSITIVE_REDACTED]"
    assert details["nested"] == {"session_cookie": "[SENSITIVE_REDACTED]", "body": "hello"}


def test_deep_nesting_is_truncated():
    nested = {"leaf": "x"}
    for _ in range(12):
        nested = {"child": nested}

    redacted = DetailRedactor.scrub(nested)
    while isinstance(redacted, dict):
        redacted = redacted["child"] if "child" in redacted else redacted["leaf"]
    assert redacted == "[TRUNCATED]"


# ============================================================================
# STORAGE
# ============================================================================

@pytest.mark.asyncio
async def test_record_and_query_logs(audit_trail):
    first = await audit_trail.record_log("worker", "message", "m-1", "ai_reply_decision", {"intent": "tour_request"})
    second = await audit_trail.record_log("worker", "message", "m-1", "ai_reply_created", {"status": "sent"})
    await audit_trail.record_log("worker", "message", "m-2", "ai_reply_skipped", {"reason": "no_rule"})

    assert second > first
    logs = await audit_trail.get_logs(entity_id="m-1")
    assert [row["action"] for row in logs] == ["ai_reply_decision", "ai_reply_created"]
    assert logs[0]["details"] == {"intent": "tour_request"}
    assert logs[0]["actor_type"] == "worker"
    assert logs[0]["entity_type"] == "message"

    skipped = await audit_trail.get_logs(action="ai_reply_skipped")
    assert len(skipped) == 1
    assert skipped[0]["entity_id"] == "m-2"


@pytest.mark.asyncio
async def test_details_are_redacted_before_storage(audit_trail):
    await audit_trail.record_log("worker", "message", 7, "ai_reply_error", {
        "error": "login failed for agent@example.com",
        "token": "abc",
    })

    row = (await audit_trail.get_logs(entity_id="7"))[0]
    assert row["details"]["error"] == "login failed for [EMAIL_REDACTED]"
    assert row["details"]["token"] == "[SENSITIVE_REDACTED]"


@pytest.mark.asyncio
async def test_redaction_can_be_disabled(db_path):
    trail = AuditTrail(db_path=db_path, redact_pii=False)
    await trail.record_log("worker", "message", "m-1", "ai_reply_error", {"error": "agent@example.com"})
    assert (await trail.get_logs(entity_id="m-1"))[0]["details"]["error"] == "agent@example.com"


@pytest.mark.asyncio
async def test_count_by_action(audit_trail):
    for _ in range(2):
        await audit_trail.record_log("worker", "message", "m-1", "ai_reply_skipped", {})
    await audit_trail.record_log("worker", "message", "m-1", "ai_reply_created", {})

    assert await audit_trail.count_by_action() == {"ai_reply_skipped": 2, "ai_reply_created": 1}


@pytest.mark.asyncio
async def test_limit_caps_rows(audit_trail):
    for index in range(5):
        await audit_trail.record_log("worker", "message", "m-1", "ai_reply_decision", {"n": index})

    rows = await audit_trail.get_logs(entity_id="m-1", limit=2)
    assert [row["details"]["n"] for row in rows] == [0, 1]
