#!/usr/bin/env python3
"""
Reply Pipeline
==============
Turns one inbound lead message into a reply decision.

Steps:
1. Heuristic intent classification and follow-up detection
2. Optional external structured classifier (falls back silently on failure)
3. Policy / effective intent resolution
4. Template rendering with the slot context
5. Guardrails on inbound text and rendered reply
6. Eligibility decision in strict precedence order

The decision functions are pure. Only ReplyPipeline.run awaits, and only
on the injected classifier.

Usage:
    pipeline = ReplyPipeline()
    result = await pipeline.run(ReplyPipelineInput(
        inbound_body="Can we do a tour this weekend?",
        rule=AutomationRule(id="r1", enabled=True, action_config={"template": "tour_invite"}),
        template=ReplyTemplate(id="t1", name="tour_invite", body="Open slot: {{slot}}"),
        template_context={"slot": "Sat 10:00-10:30 AM (Agent A)", "slot_options_list": "..."},
        slot_count=1,
    ))
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from core.guardrails import GuardrailResult, evaluate_guardrails
from core.intent_classifier import (
    FOLLOW_UP_INTENT,
    TOUR_INTENTS,
    Intent,
    classify_intent,
    detect_follow_up,
    is_ambiguous,
)
from core.reply_classifier import ClassificationRequest, ClassifierDecision

logger = logging.getLogger("reply_pipeline")

TEMPLATE_TOKEN_PATTERN = re.compile(r"\{\{\s*([a-zA-Z0-9_]+)\s*\}\}")
HEURISTIC_PROVIDER = "heuristic"


class ReplyOutcome(str, Enum):
    SEND = "send"
    DRAFT = "draft"
    ESCALATE = "escalate"


class EscalationReason(str, Enum):
    UNSUBSCRIBE_REQUESTED = "escalate_unsubscribe_requested"
    AMBIGUOUS_INTENT = "escalate_ambiguous_intent"
    NON_TOUR_INTENT = "escalate_non_tour_intent"
    NO_SLOT_CANDIDATES = "escalate_no_slot_candidates"
    NO_MATCHING_RULE = "escalate_no_matching_rule"
    TEMPLATE_MISSING = "escalate_template_missing"


# =============================================================================
# DATA MODELS
# =============================================================================

@dataclass
class AutomationRule:
    """A message_received -> send_template rule for one platform account."""
    id: str
    enabled: bool = False
    action_config: Dict[str, Any] = field(default_factory=dict)
    conditions: Dict[str, Any] = field(default_factory=dict)

    @property
    def template_name(self) -> Optional[str]:
        return self.action_config.get("template") or None


@dataclass
class ReplyTemplate:
    id: str
    name: str
    body: str


@dataclass(frozen=True)
class Eligibility:
    """Tagged decision: eligible, or escalate with a reason code."""
    eligible: bool
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {"eligible": self.eligible, "reason": self.reason}


@dataclass
class ReplyPipelineInput:
    inbound_body: str
    has_recent_outbound: bool = False
    fallback_intent: str = Intent.TOUR_REQUEST.value
    rule: Optional[AutomationRule] = None
    template: Optional[ReplyTemplate] = None
    template_context: Dict[str, Any] = field(default_factory=dict)
    slot_count: int = 0
    auto_send_enabled: bool = False
    conversation_context: list = field(default_factory=list)


@dataclass
class ReplyPipelineResult:
    intent: str
    effective_intent: str
    follow_up: bool
    guardrails: GuardrailResult
    eligibility: Eligibility
    outcome: str
    reply_body: str
    provider: str = HEURISTIC_PROVIDER
    escalation_reason_code: Optional[str] = None
    workflow_outcome: Optional[str] = None
    confidence: Optional[float] = None
    risk_level: Optional[str] = None
    selected_slot_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intent": self.intent,
            "effective_intent": self.effective_intent,
            "follow_up": self.follow_up,
            "guardrails": self.guardrails.to_dict(),
            "eligibility": self.eligibility.to_dict(),
            "outcome": self.outcome,
            "reply_body": self.reply_body,
            "provider": self.provider,
            "escalation_reason_code": self.escalation_reason_code,
            "workflow_outcome": self.workflow_outcome,
            "confidence": self.confidence,
            "risk_level": self.risk_level,
            "selected_slot_index": self.selected_slot_index,
        }


# =============================================================================
# PURE STEPS
# =============================================================================

def render_template(body: Optional[str], context: Optional[Dict[str, Any]] = None) -> str:
    """Replace {{ key }} tokens; missing or None values render as an empty string."""
    if not isinstance(body, str):
        return ""
    values = context or {}

    def _substitute(match: "re.Match[str]") -> str:
        value = values.get(match.group(1))
        return "" if value is None else str(value)

    return TEMPLATE_TOKEN_PATTERN.sub(_substitute, body)


def build_default_tour_reply(context: Dict[str, Any], suggestion: Optional[str] = None) -> str:
    """Scheduling reply used by the external provider path when no template text rendered."""
    if suggestion and suggestion.strip():
        return suggestion.strip()

    lead_name = str(context.get("lead_name") or "").strip()
    greeting = f"Hi {lead_name}," if lead_name else "Hi,"
    unit = str(context.get("unit") or "").strip()
    subject = f" about {unit}" if unit else ""
    slots = context.get("slot_options_list") or context.get("slot_options") or context.get("slot") or ""
    return (
        f"{greeting}\n\nThanks for reaching out{subject}. "
        f"Here are the next available showing times:\n{slots}\n\n"
        "Reply with the time that works best and I will confirm it."
    )


def resolve_policy_intent(
    heuristic_intent: str,
    follow_up: bool,
    fallback_intent: str,
    decision: Optional[ClassifierDecision] = None,
) -> str:
    intent = decision.intent if decision else heuristic_intent
    if follow_up and intent == Intent.UNKNOWN.value:
        intent = fallback_intent or heuristic_intent
    return intent


def decide_reply_eligibility(
    intent: str,
    effective_intent: str,
    guardrails: GuardrailResult,
    ambiguous: bool,
    slot_count: int,
    rule: Optional[AutomationRule],
    reply_body: str,
    auto_send_enabled: bool,
) -> Eligibility:
    """First failing check wins; order matters."""
    if intent == Intent.UNSUBSCRIBE.value:
        return Eligibility(False, EscalationReason.UNSUBSCRIBE_REQUESTED.value)
    if guardrails.blocked:
        return Eligibility(False, f"escalate_{guardrails.reasons[0]}")
    if ambiguous or intent == Intent.UNKNOWN.value:
        return Eligibility(False, EscalationReason.AMBIGUOUS_INTENT.value)
    if effective_intent not in TOUR_INTENTS:
        return Eligibility(False, EscalationReason.NON_TOUR_INTENT.value)
    if slot_count <= 0:
        return Eligibility(False, EscalationReason.NO_SLOT_CANDIDATES.value)
    if rule is None:
        return Eligibility(False, EscalationReason.NO_MATCHING_RULE.value)
    if not reply_body.strip():
        return Eligibility(False, EscalationReason.TEMPLATE_MISSING.value)
    return Eligibility(True, "auto_send" if auto_send_enabled else "requires_review")


def _heuristic_workflow_outcome(intent: str, guardrails: GuardrailResult, ambiguous: bool) -> Optional[str]:
    if intent == Intent.UNSUBSCRIBE.value:
        return "not_interested"
    if guardrails.blocked or ambiguous:
        return "human_required"
    return None


def run_reply_pipeline(
    request: ReplyPipelineInput,
    decision: Optional[ClassifierDecision] = None,
) -> ReplyPipelineResult:
    """Deterministic pipeline over the request and an optional external decision."""
    heuristic_intent = classify_intent(request.inbound_body)
    follow_up = detect_follow_up(request.inbound_body, request.has_recent_outbound)
    intent = resolve_policy_intent(heuristic_intent, follow_up, request.fallback_intent, decision)
    # A literal unsubscribe keyword always wins over the provider
    if heuristic_intent == Intent.UNSUBSCRIBE.value:
        intent = Intent.UNSUBSCRIBE.value
    effective_intent = FOLLOW_UP_INTENT if follow_up else intent

    template_body = request.template.body if request.template else ""
    reply_body = render_template(template_body, request.template_context)
    if (
        decision is not None
        and not reply_body.strip()
        and effective_intent in TOUR_INTENTS
        and request.slot_count > 0
    ):
        reply_body = build_default_tour_reply(request.template_context, decision.suggested_reply)

    guardrails = evaluate_guardrails(request.inbound_body, reply_body)
    ambiguous = is_ambiguous(request.inbound_body) or bool(decision and decision.ambiguous)

    eligibility = decide_reply_eligibility(
        intent=intent,
        effective_intent=effective_intent,
        guardrails=guardrails,
        ambiguous=ambiguous,
        slot_count=request.slot_count,
        rule=request.rule,
        reply_body=reply_body,
        auto_send_enabled=request.auto_send_enabled,
    )

    if eligibility.eligible:
        outcome = ReplyOutcome.SEND.value if request.auto_send_enabled else ReplyOutcome.DRAFT.value
        escalation_reason_code = None
    else:
        outcome = ReplyOutcome.ESCALATE.value
        escalation_reason_code = eligibility.reason
        reply_body = "" if intent == Intent.UNSUBSCRIBE.value else reply_body

    workflow_outcome = decision.workflow_outcome if decision and decision.workflow_outcome else None
    if workflow_outcome is None or intent == Intent.UNSUBSCRIBE.value:
        workflow_outcome = _heuristic_workflow_outcome(intent, guardrails, ambiguous) or workflow_outcome

    return ReplyPipelineResult(
        intent=intent,
        effective_intent=effective_intent,
        follow_up=follow_up,
        guardrails=guardrails,
        eligibility=eligibility,
        outcome=outcome,
        reply_body=reply_body,
        provider=decision.provider if decision else HEURISTIC_PROVIDER,
        escalation_reason_code=escalation_reason_code,
        workflow_outcome=workflow_outcome,
        confidence=decision.confidence if decision else None,
        risk_level=decision.risk_level if decision else None,
        selected_slot_index=decision.selected_slot_index if decision else None,
    )


# =============================================================================
# PIPELINE WITH OPTIONAL EXTERNAL CLASSIFIER
# =============================================================================

class ReplyPipeline:
    """
    Holds the injected classifier and playbook for one configuration.

    Two instances with different classifiers or playbooks can run side by
    side in one process.
    """

    def __init__(self, classifier: Any = None, playbook: str = ""):
        self.classifier = classifier
        self.playbook = playbook

    async def run(self, request: ReplyPipelineInput) -> ReplyPipelineResult:
        decision: Optional[ClassifierDecision] = None
        if self.classifier is not None:
            context = request.template_context or {}
            try:
                decision = await self.classifier.classify(ClassificationRequest(
                    inbound_body=request.inbound_body,
                    has_recent_outbound=request.has_recent_outbound,
                    slot_options=list(context.get("slot_option_labels") or []),
                    lead_name=str(context.get("lead_name") or ""),
                    playbook=self.playbook,
                    conversation_context=list(request.conversation_context),
                ))
            except Exception as e:
                logger.warning("External classifier failed, using heuristic decision: %s", e)
                decision = None

        return run_reply_pipeline(request, decision)
