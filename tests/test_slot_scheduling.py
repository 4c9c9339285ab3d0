"""Tests for showing-slot helpers."""

from datetime import datetime, timezone

from core.slot_scheduling import (
    SlotCandidate,
    build_slot_confirmation_prompt,
    build_slot_confirmed_reply,
    build_template_context,
    format_slot_window,
    is_explicit_slot_confirmation,
    is_same_slot_candidate,
    merge_pending_slot,
    normalize_pending_slot_confirmation,
    normalize_slot_candidate,
    parse_timestamp,
    select_deterministic_slot_candidate,
)


def slot(start, end, agent=None, tz="UTC"):
    return normalize_slot_candidate({"starts_at": start, "ends_at": end, "timezone": tz, "agent_name": agent})


def test_parse_timestamp_variants():
    assert parse_timestamp("2099-03-07T15:00:00Z") == datetime(2099, 3, 7, 15, tzinfo=timezone.utc)
    assert parse_timestamp("2099-03-07T15:00:00").tzinfo == timezone.utc
    assert parse_timestamp("not a date") is None
    assert parse_timestamp("") is None


def test_format_slot_window_in_local_zone():
    label = format_slot_window("2099-03-07T15:00:00Z", "2099-03-07T15:30:00Z", "America/New_York", "Avery")
    assert label == "Sat, Mar 7 10:00 AM - 10:30 AM EST (Avery)"


def test_format_slot_window_without_agent():
    label = format_slot_window("2099-03-07T13:05:00Z", "2099-03-07T13:35:00Z", "UTC")
    assert label == "Sat, Mar 7 1:05 PM - 1:35 PM UTC"
    assert format_slot_window(None, "2099-03-07T13:35:00Z") == ""


def test_normalize_accepts_camel_case():
    candidate = normalize_slot_candidate({
        "startsAt": "2099-03-07T15:00:00Z",
        "endsAt": "2099-03-07T15:30:00Z",
        "agentName": " Avery ",
        "agentId": 4,
    })
    assert candidate.agent_name == "Avery"
    assert candidate.agent_id == "4"
    assert candidate.timezone == "UTC"
    assert candidate.label.endswith("(Avery)")


def test_normalize_rejects_missing_bounds():
    assert normalize_slot_candidate({"starts_at": "2099-03-07T15:00:00Z"}) is None
    assert normalize_slot_candidate(None) is None


def test_pending_slot_keeps_stored_label():
    pending = normalize_pending_slot_confirmation({
        "starts_at": "2099-03-07T15:00:00Z",
        "ends_at": "2099-03-07T15:30:00Z",
        "label": "Saturday morning with Avery",
    })
    assert pending.label == "Saturday morning with Avery"
    assert normalize_pending_slot_confirmation("nope") is None


def test_same_slot_ignores_agent():
    left = slot("2099-03-07T15:00:00Z", "2099-03-07T15:30:00Z", "Avery")
    right = slot("2099-03-07T15:00:00Z", "2099-03-07T15:30:00Z", "Blake")
    assert is_same_slot_candidate(left, right) is True
    assert is_same_slot_candidate(left, None) is False


def test_deterministic_selection():
    later = slot("2099-03-07T17:00:00Z", "2099-03-07T17:30:00Z", "Avery")
    early_long = slot("2099-03-07T15:00:00Z", "2099-03-07T16:00:00Z", "Avery")
    early_short_b = slot("2099-03-07T15:00:00Z", "2099-03-07T15:30:00Z", "Blake")
    early_short_a = slot("2099-03-07T15:00:00Z", "2099-03-07T15:30:00Z", "avery")

    chosen = select_deterministic_slot_candidate([later, early_long, early_short_b, early_short_a])
    assert chosen is early_short_a
    assert select_deterministic_slot_candidate([]) is None


def test_merge_pending_slot_prepends_and_caps():
    offered = [
        slot("2099-03-07T15:00:00Z", "2099-03-07T15:30:00Z"),
        slot("2099-03-07T16:00:00Z", "2099-03-07T16:30:00Z"),
    ]
    pending = slot("2099-03-08T15:00:00Z", "2099-03-08T15:30:00Z")

    merged = merge_pending_slot(offered, pending, limit=2)
    assert merged == [pending, offered[0]]

    already = merge_pending_slot(offered, offered[1], limit=5)
    assert already == offered

    assert len(merge_pending_slot(offered, None, limit=0)) == 1


def test_explicit_confirmation():
    assert is_explicit_slot_confirmation("Yes, confirm please") is True
    assert is_explicit_slot_confirmation("that works!") is True
    assert is_explicit_slot_confirmation("yes but can we do a different time") is False
    assert is_explicit_slot_confirmation("maybe") is False
    assert is_explicit_slot_confirmation(None) is False


def test_confirmation_texts():
    label = "Sat, Mar 7 10:00 AM - 10:30 AM EST (Avery)"
    prompt = build_slot_confirmation_prompt("Jamie", label)
    assert prompt.startswith("Hi Jamie,")
    assert f"- {label}" in prompt
    assert 'Please reply with "confirm"' in prompt

    confirmed = build_slot_confirmed_reply(None, label)
    assert confirmed.startswith("Perfect, you're confirmed for:")
    assert label in confirmed


def test_template_context():
    context = build_template_context(
        {"property_name": "Maple Court", "unit_number": "4B", "lead_name": "Jamie"},
        ["Slot A", "Slot B"],
    )
    assert context["unit"] == "Maple Court 4B"
    assert context["slot"] == "Slot A"
    assert context["slot_options_inline"] == "Slot A, Slot B"
    assert context["slot_options_list"] == "- Slot A\n- Slot B"
    assert context["slot_options"] == "- Slot A\n- Slot B"
    assert context["slot_option_labels"] == ["Slot A", "Slot B"]
    assert context["lead_name"] == "Jamie"

    empty = build_template_context({}, [])
    assert empty["unit"] == ""
    assert empty["slot"] == ""
    assert empty["slot_options"] == ""


def test_slot_candidate_to_dict():
    candidate = SlotCandidate(starts_at="a", ends_at="b", label="x")
    assert candidate.to_dict()["timezone"] == "UTC"
