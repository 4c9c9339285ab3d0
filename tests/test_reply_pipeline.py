"""Tests for the reply pipeline decision flow."""

import pytest

from core.reply_classifier import ClassifierDecision
from core.reply_pipeline import (
    AutomationRule,
    ReplyPipeline,
    ReplyPipelineInput,
    ReplyTemplate,
    build_default_tour_reply,
    render_template,
    run_reply_pipeline,
)


SLOT_LABEL = "Sat, Mar 7 10:00 AM - 10:30 AM UTC (Agent A)"


def make_request(body="Can I tour the room on Saturday?", **overrides):
    values = dict(
        inbound_body=body,
        rule=AutomationRule(id="rule-1", enabled=True, action_config={"template": "tour_invite"}),
        template=ReplyTemplate(id="tpl-1", name="tour_invite", body="Hi {{ lead_name }}, open slot: {{slot}}"),
        template_context={
            "lead_name": "Jamie",
            "slot": SLOT_LABEL,
            "slot_options_list": f"- {SLOT_LABEL}",
            "slot_option_labels": [SLOT_LABEL],
        },
        slot_count=1,
    )
    values.update(overrides)
    return ReplyPipelineInput(**values)


class StaticClassifier:
    def __init__(self, decision=None, error=None):
        self.decision = decision
        self.error = error
        self.requests = []

    async def classify(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.decision


# ============================================================================
# TEMPLATE RENDERING
# ============================================================================

def test_render_template_substitutes_tokens():
    assert render_template("Hi {{ name }} / {{slot}}", {"name": "Ana", "slot": "Sat"}) == "Hi Ana / Sat"


def test_render_template_blanks_missing_values():
    assert render_template("Hi {{name}}{{ missing }}!", {"name": None}) == "Hi !"


def test_render_template_rejects_non_string():
    assert render_template(None, {"a": 1}) == ""


def test_default_tour_reply_prefers_suggestion():
    assert build_default_tour_reply({}, "  See you Saturday  ") == "See you Saturday"


def test_default_tour_reply_lists_slots():
    reply = build_default_tour_reply({"lead_name": "Jamie", "unit": "Maple 4B", "slot_options_list": "- Sat 10 AM"})
    assert reply.startswith("Hi Jamie,")
    assert "about Maple 4B" in reply
    assert "- Sat 10 AM" in reply


# ============================================================================
# ELIGIBILITY PRECEDENCE
# ============================================================================

def test_tour_request_is_drafted_without_auto_send():
    result = run_reply_pipeline(make_request())
    assert result.intent == "tour_request"
    assert result.eligibility.eligible is True
    assert result.eligibility.reason == "requires_review"
    assert result.outcome == "draft"
    assert result.reply_body == f"Hi Jamie, open slot: {SLOT_LABEL}"
    assert result.escalation_reason_code is None
    assert result.provider == "heuristic"


def test_tour_request_is_sent_with_auto_send():
    result = run_reply_pipeline(make_request(auto_send_enabled=True))
    assert result.outcome == "send"
    assert result.eligibility.reason == "auto_send"


def test_unsubscribe_escalates_and_clears_reply():
    result = run_reply_pipeline(make_request("Please stop, I found a place"))
    assert result.outcome == "escalate"
    assert result.escalation_reason_code == "escalate_unsubscribe_requested"
    assert result.reply_body == ""
    assert result.workflow_outcome == "not_interested"


def test_guardrail_block_outranks_tour_intent():
    result = run_reply_pipeline(make_request("My lawyer wants to tour the unit"))
    assert result.intent == "tour_request"
    assert result.escalation_reason_code == "escalate_legal_escalation"
    assert result.workflow_outcome == "human_required"


def test_ambiguous_tour_request_escalates():
    result = run_reply_pipeline(make_request("maybe later for a tour, not sure"))
    assert result.escalation_reason_code == "escalate_ambiguous_intent"
    assert result.workflow_outcome == "human_required"


def test_unknown_intent_escalates_as_ambiguous():
    result = run_reply_pipeline(make_request("Hello there"))
    assert result.intent == "unknown"
    assert result.escalation_reason_code == "escalate_ambiguous_intent"
    assert result.workflow_outcome is None


def test_pricing_question_is_not_a_tour():
    result = run_reply_pipeline(make_request("What is the rent?"))
    assert result.escalation_reason_code == "escalate_non_tour_intent"


def test_missing_slots_escalate():
    result = run_reply_pipeline(make_request(slot_count=0))
    assert result.escalation_reason_code == "escalate_no_slot_candidates"


def test_missing_rule_escalates():
    result = run_reply_pipeline(make_request(rule=None))
    assert result.escalation_reason_code == "escalate_no_matching_rule"


def test_missing_template_escalates():
    result = run_reply_pipeline(make_request(template=None))
    assert result.escalation_reason_code == "escalate_template_missing"
    assert result.reply_body == ""


def test_outbound_ssn_in_template_blocks_send():
    template = ReplyTemplate(id="tpl-2", name="tour_invite", body="Use code 123-45-6789 at the door")
    result = run_reply_pipeline(make_request(template=template, auto_send_enabled=True))
    assert result.outcome == "escalate"
    assert result.escalation_reason_code == "escalate_outbound_contains_ssn_pattern"


def test_follow_up_uses_fallback_intent():
    result = run_reply_pipeline(make_request("Any update?", has_recent_outbound=True))
    assert result.follow_up is True
    assert result.intent == "tour_request"
    assert result.effective_intent == "follow_up"
    assert result.eligibility.eligible is True


def test_follow_up_phrase_without_prior_outbound_is_unknown():
    result = run_reply_pipeline(make_request("Any update?", has_recent_outbound=False))
    assert result.follow_up is False
    assert result.escalation_reason_code == "escalate_ambiguous_intent"


# ============================================================================
# EXTERNAL CLASSIFIER
# ============================================================================

@pytest.mark.asyncio
async def test_classifier_decision_drives_result():
    decision = ClassifierDecision(
        intent="tour_request",
        workflow_outcome="showing_confirmed",
        confidence=0.92,
        risk_level="low",
        selected_slot_index=1,
    )
    classifier = StaticClassifier(decision)
    pipeline = ReplyPipeline(classifier=classifier, playbook="Be brief.")

    result = await pipeline.run(make_request("Saturday works for me"))

    assert result.provider == "anthropic"
    assert result.intent == "tour_request"
    assert result.workflow_outcome == "showing_confirmed"
    assert result.confidence == 0.92
    assert result.selected_slot_index == 1
    assert classifier.requests[0].playbook == "Be brief."
    assert classifier.requests[0].slot_options == [SLOT_LABEL]
    assert classifier.requests[0].lead_name == "Jamie"


@pytest.mark.asyncio
async def test_classifier_path_builds_default_reply_without_template():
    classifier = StaticClassifier(ClassifierDecision(intent="tour_request"))
    result = await ReplyPipeline(classifier=classifier).run(make_request(template=None))

    assert result.eligibility.eligible is True
    assert result.reply_body.startswith("Hi Jamie,")
    assert SLOT_LABEL in result.reply_body


@pytest.mark.asyncio
async def test_literal_unsubscribe_overrides_classifier():
    classifier = StaticClassifier(ClassifierDecision(intent="tour_request", workflow_outcome="showing_confirmed"))
    result = await ReplyPipeline(classifier=classifier).run(make_request("stop messaging me"))

    assert result.intent == "unsubscribe"
    assert result.escalation_reason_code == "escalate_unsubscribe_requested"
    assert result.workflow_outcome == "not_interested"


@pytest.mark.asyncio
async def test_classifier_ambiguity_escalates():
    classifier = StaticClassifier(ClassifierDecision(intent="tour_request", ambiguous=True))
    result = await ReplyPipeline(classifier=classifier).run(make_request())
    assert result.escalation_reason_code == "escalate_ambiguous_intent"


@pytest.mark.asyncio
async def test_classifier_failure_falls_back_to_heuristic():
    classifier = StaticClassifier(error=RuntimeError("provider down"))
    result = await ReplyPipeline(classifier=classifier).run(make_request())

    assert result.provider == "heuristic"
    assert result.outcome == "draft"


@pytest.mark.asyncio
async def test_pipelines_with_different_classifiers_are_independent():
    external = ReplyPipeline(classifier=StaticClassifier(ClassifierDecision(intent="pricing_question")))
    heuristic = ReplyPipeline()

    external_result = await external.run(make_request())
    heuristic_result = await heuristic.run(make_request())

    assert external_result.escalation_reason_code == "escalate_non_tour_intent"
    assert heuristic_result.eligibility.eligible is True


# ============================================================================
# END-TO-END SCENARIOS
# ============================================================================

def test_weekend_tour_request_drafts_with_slot_label():
    label = "Sat 10:00–10:30 AM (Agent A)"
    result = run_reply_pipeline(make_request(
        "Can we do a tour this weekend?",
        has_recent_outbound=False,
        auto_send_enabled=False,
        template_context={"lead_name": "Jamie", "slot": label, "slot_option_labels": [label]},
        slot_count=1,
    ))

    assert result.eligibility.eligible is True
    assert result.outcome == "draft"
    assert label in result.reply_body


def test_stop_message_is_never_answered():
    result = run_reply_pipeline(make_request("STOP contacting me", auto_send_enabled=True))

    assert result.outcome == "escalate"
    assert result.eligibility.eligible is False
    assert result.eligibility.reason == "escalate_unsubscribe_requested"
    assert result.reply_body == ""
