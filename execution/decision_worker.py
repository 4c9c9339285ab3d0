#!/usr/bin/env python3
"""
Decision Worker
===============

One batch of AI-assisted triage over claimed inbound messages.

Per message:
1. Gates: platform policy active, lead-name allowlist, message age
2. Slot candidates, rule and template lookup, template context
3. Reply pipeline (heuristic, optionally an external classifier)
4. Slot confirmation / deterministic slot arbitration
5. Workflow transition for terminal conversation outcomes
6. Eligible replies: idempotent dispatch, outbound record, audit trail
7. Inbound message marked processed with the decision patch

A failure on one message is logged and audited; the batch continues.
Failures on dispatch_* stages count as platform failures and, once
retries are exhausted, land in the dead-letter state.

Usage:
    from execution.decision_worker import process_pending_messages_with_ai

    result = await process_pending_messages_with_ai(store, pipeline=ReplyPipeline(), settings=settings)
    print(result.metrics.to_dict())
"""

import dataclasses
import hashlib
import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from core.config import WorkerSettings
from core.dispatch_ledger import DEFAULT_STAGE, DLQ_ESCALATION_REASON, DispatchGuard, DispatchState
from core.errors import get_retry_details
from core.intent_classifier import Intent, classify_intent, detect_follow_up
from core.reply_pipeline import ReplyOutcome, ReplyPipeline, ReplyPipelineInput, ReplyPipelineResult
from core.slot_scheduling import (
    build_slot_confirmation_prompt,
    build_slot_confirmed_reply,
    build_template_context,
    is_explicit_slot_confirmation,
    merge_pending_slot,
    normalize_pending_slot_confirmation,
    normalize_slot_candidate,
    parse_timestamp,
    select_deterministic_slot_candidate,
)

logger = logging.getLogger("decision_worker")

SLOT_ROW_LIMIT = 6
CONTEXT_MESSAGE_LIMIT = 12
ALLOWLIST_ENV = "WORKER_AUTOREPLY_ALLOW_LEAD_NAMES"
HUMAN_ACTION_QUEUE = "agent_action"

WORKFLOW_SHOWING_STATES = {
    "human_required": None,
    "showing_confirmed": "confirmed",
    "wants_reschedule": "reschedule_requested",
    "no_reply": None,
    "completed": "completed",
    "no_show": "no_show",
    "not_interested": "cancelled",
}


# =============================================================================
# RESULTS
# =============================================================================

def _counter() -> Dict[str, int]:
    return defaultdict(int)


@dataclass
class MetricsSnapshot:
    decisions_eligible: int = 0
    decisions_ineligible: int = 0
    decision_reasons: Dict[str, int] = field(default_factory=_counter)
    sends_attempted: int = 0
    sends_sent: int = 0
    sends_drafted: int = 0
    escalations_raised: int = 0
    escalation_reasons: Dict[str, int] = field(default_factory=_counter)
    platform_failures: Dict[str, int] = field(default_factory=_counter)
    platform_failure_stages: Dict[str, int] = field(default_factory=_counter)
    duplicates_suppressed: int = 0
    dlq_queued: int = 0
    errors: int = 0
    audit_logs_written: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decisions": {
                "eligible": self.decisions_eligible,
                "ineligible": self.decisions_ineligible,
                "reasons": dict(self.decision_reasons),
            },
            "sends": {
                "attempted": self.sends_attempted,
                "sent": self.sends_sent,
                "drafted": self.sends_drafted,
            },
            "escalations": {
                "raised": self.escalations_raised,
                "reasons": dict(self.escalation_reasons),
            },
            "platform_failures": dict(self.platform_failures),
            "platform_failure_stages": dict(self.platform_failure_stages),
            "dispatch": {
                "duplicates_suppressed": self.duplicates_suppressed,
                "dlq_queued": self.dlq_queued,
            },
            "errors": self.errors,
            "audit_logs_written": self.audit_logs_written,
        }


@dataclass
class MessageOutcome:
    """What happened to one message in the batch."""
    message_id: str
    status: str
    reason: Optional[str] = None
    stage: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class BatchResult:
    scanned: int
    replies_created: int
    metrics: MetricsSnapshot
    outcomes: List[MessageOutcome] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scanned": self.scanned,
            "replies_created": self.replies_created,
            "metrics": self.metrics.to_dict(),
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }


# =============================================================================
# HELPERS
# =============================================================================

def normalize_lead_name(value: Any) -> str:
    return " ".join(str(value or "").split()).lower()


def get_policy_context(message: Dict[str, Any]) -> Dict[str, Any]:
    policy = message.get("platform_policy") or {}
    return {
        "is_active": policy.get("is_active") is not False,
        "send_mode": "auto_send" if policy.get("send_mode") == "auto_send" else "draft_only",
        "send_mode_override": policy.get("send_mode_override"),
        "global_default_send_mode": policy.get("global_default_send_mode") or "draft_only",
    }


def build_dispatch_key(message: Dict[str, Any], pipeline: ReplyPipelineResult, status: str) -> str:
    """sha256 over the compact JSON identity of one reply send."""
    payload = json.dumps(
        {
            "messageId": message.get("id"),
            "conversationId": message.get("conversation_id"),
            "externalThreadId": message.get("external_thread_id"),
            "platformAccountId": message.get("platform_account_id"),
            "platform": message.get("platform"),
            "status": status,
            "body": pipeline.reply_body,
            "intent": pipeline.intent,
            "effectiveIntent": pipeline.effective_intent,
        },
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def build_workflow_persistence_payload(workflow_outcome: Optional[str]) -> Optional[Dict[str, Any]]:
    if workflow_outcome not in WORKFLOW_SHOWING_STATES:
        return None
    payload: Dict[str, Any] = {"workflow_outcome": workflow_outcome, "follow_up_stage": None}
    showing_state = WORKFLOW_SHOWING_STATES[workflow_outcome]
    if showing_state:
        payload["showing_state"] = showing_state
    return payload


def requires_human_action(pipeline: ReplyPipelineResult) -> bool:
    if pipeline.workflow_outcome == "human_required":
        return True
    return isinstance(pipeline.escalation_reason_code, str) and "human_required" in pipeline.escalation_reason_code


def _bump(bucket: Dict[str, int], key: Optional[str]) -> None:
    bucket[key or "unknown"] += 1


def _decision_details(pipeline: ReplyPipelineResult) -> Dict[str, Any]:
    return {
        "intent": pipeline.intent,
        "effective_intent": pipeline.effective_intent,
        "follow_up": pipeline.follow_up,
        "provider": pipeline.provider,
        "outcome": pipeline.outcome,
        "workflow_outcome": pipeline.workflow_outcome,
        "confidence": pipeline.confidence,
        "risk_level": pipeline.risk_level,
        "selected_slot_index": pipeline.selected_slot_index,
        "decision": pipeline.eligibility.to_dict(),
        "escalation_reason_code": pipeline.escalation_reason_code,
    }


# =============================================================================
# BATCH
# =============================================================================

class _Blocked(Exception):
    """Internal: message stopped at a gate before the pipeline."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class DecisionWorker:
    """Runs one batch against a queue adapter. State is per batch."""

    def __init__(
        self,
        adapter,
        pipeline: Optional[ReplyPipeline] = None,
        settings: Optional[WorkerSettings] = None,
        now: Optional[datetime] = None,
    ):
        self.adapter = adapter
        self.pipeline = pipeline or ReplyPipeline()
        self.settings = settings or WorkerSettings()
        self.now = parse_timestamp(now) or datetime.now(timezone.utc)
        self.now_iso = self.now.isoformat()
        self.metrics = MetricsSnapshot()
        self.replies_created = 0
        self.allowlist = list(self.settings.allow_lead_names)
        self.allowlist_set = {normalize_lead_name(name) for name in self.allowlist}

    async def _log(self, message_id: str, action: str, details: Dict[str, Any]) -> None:
        await self.adapter.record_log(
            actor_type="worker",
            entity_type="message",
            entity_id=message_id,
            action=action,
            details=details,
        )
        self.metrics.audit_logs_written += 1

    async def _record_quietly(self, message_id: str, what: str, write) -> None:
        """Await one failure-path write; its own failure is logged so the batch carries on."""
        try:
            await write
        except Exception:
            logger.exception("Failed recording %s for message %s", what, message_id)

    async def _block(
        self,
        message: Dict[str, Any],
        reason: str,
        action: str,
        policy: Dict[str, Any],
        extra_patch: Optional[Dict[str, Any]] = None,
        extra_details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.metrics.decisions_ineligible += 1
        _bump(self.metrics.decision_reasons, reason)

        patch = {
            "ai_processed_at": self.now_iso,
            "reply_eligible": False,
            "reply_decision_reason": reason,
            "outcome": "blocked",
            "platform_policy": policy,
            **(extra_patch or {}),
        }
        await self.adapter.mark_inbound_processed(message_id=message["id"], metadata_patch=patch)
        await self._log(message["id"], action, {
            "platform": message.get("platform") or "unknown",
            "reason": reason,
            "platform_policy": policy,
            **(extra_details or {}),
        })
        raise _Blocked(reason)

    async def _check_gates(self, message: Dict[str, Any], policy: Dict[str, Any]) -> None:
        if not policy["is_active"]:
            await self._block(message, "policy_platform_inactive", "ai_reply_policy_blocked", policy)

        if not self.allowlist_set:
            return

        allowlist_meta = {"type": "lead_name", "env": ALLOWLIST_ENV, "configured": self.allowlist}
        if normalize_lead_name(message.get("lead_name")) not in self.allowlist_set:
            await self._block(
                message,
                "test_allowlist_blocked",
                "ai_reply_test_allowlist_blocked",
                policy,
                extra_patch={"allowlist": {**allowlist_meta, "matched": False}},
                extra_details={"lead_name": message.get("lead_name"), "allowlist": self.allowlist},
            )

        max_age = self.settings.max_message_age_minutes
        sent_at = parse_timestamp(message.get("sent_at"))
        if max_age > 0 and sent_at is not None:
            age_seconds = (self.now - sent_at).total_seconds()
            if age_seconds > max_age * 60:
                await self._block(
                    message,
                    "test_allowlist_message_too_old",
                    "ai_reply_test_allowlist_blocked",
                    policy,
                    extra_patch={"allowlist": {**allowlist_meta, "matched": True, "max_message_age_minutes": max_age}},
                    extra_details={
                        "lead_name": message.get("lead_name"),
                        "sent_at": message.get("sent_at"),
                        "max_message_age_minutes": max_age,
                        "allowlist": self.allowlist,
                    },
                )

    async def _slot_candidates(self, message: Dict[str, Any]):
        rows: List[Dict[str, Any]] = []
        if message.get("unit_id"):
            rows = await self.adapter.fetch_slot_options(message["unit_id"], SLOT_ROW_LIMIT) or []

        limit = max(1, self.settings.slot_option_limit)
        candidates = [c for c in (normalize_slot_candidate(row) for row in rows) if c is not None][:limit]
        pending = normalize_pending_slot_confirmation(message.get("pending_slot_confirmation"))
        candidates = merge_pending_slot(candidates, pending, limit)

        labels: List[str] = []
        for candidate in candidates:
            if candidate.label not in labels:
                labels.append(candidate.label)
        return candidates, pending, labels[:limit]

    async def _conversation_context(self, message: Dict[str, Any]) -> List[Dict[str, Any]]:
        fetch = getattr(self.adapter, "fetch_conversation_recent_messages", None)
        if self.pipeline.classifier is None or fetch is None or not message.get("conversation_id"):
            return []
        try:
            return await fetch(message["conversation_id"], CONTEXT_MESSAGE_LIMIT)
        except Exception as e:
            logger.warning("Failed fetching conversation context for %s: %s", message["conversation_id"], e)
            return []

    async def process(self, message: Dict[str, Any]) -> MessageOutcome:
        platform = message.get("platform") or "unknown"
        policy = get_policy_context(message)
        stage = "pipeline"

        try:
            await self._check_gates(message, policy)

            candidates, pending, slot_options = await self._slot_candidates(message)
            fallback_intent = (message.get("metadata") or {}).get("intent") or Intent.TOUR_REQUEST.value
            follow_up = detect_follow_up(message.get("body"), bool(message.get("has_recent_outbound")))
            rule_intent = fallback_intent if follow_up else classify_intent(message.get("body"))

            rule = await self.adapter.find_rule(
                platform_account_id=message.get("platform_account_id"),
                intent=rule_intent,
                fallback_intent=fallback_intent,
            )
            template = None
            if rule is not None and rule.template_name:
                template = await self.adapter.find_template(
                    platform_account_id=message.get("platform_account_id"),
                    template_name=rule.template_name,
                )

            pipeline = await self.pipeline.run(ReplyPipelineInput(
                inbound_body=message.get("body") or "",
                has_recent_outbound=bool(message.get("has_recent_outbound")),
                fallback_intent=fallback_intent,
                rule=rule,
                template=template,
                template_context=build_template_context(message, slot_options),
                slot_count=len(slot_options),
                auto_send_enabled=bool(rule is not None and rule.enabled) and policy["send_mode"] == "auto_send",
                conversation_context=await self._conversation_context(message),
            ))

            selected_candidates = candidates
            slot_state: Optional[Dict[str, Any]] = None
            if pipeline.workflow_outcome == "showing_confirmed" and not pipeline.selected_slot_index:
                if pending is not None and is_explicit_slot_confirmation(message.get("body")):
                    selected_candidates = [pending]
                    pipeline = dataclasses.replace(
                        pipeline,
                        selected_slot_index=1,
                        reply_body=build_slot_confirmed_reply(message.get("lead_name") or "", pending.label),
                    )
                    slot_state = {
                        "status": "confirmed",
                        "strategy": "pending_slot_confirmation",
                        "slot_candidate": pending.to_dict(),
                    }
                elif pending is None and len(candidates) > 1:
                    chosen = select_deterministic_slot_candidate(candidates)
                    selected_candidates = [chosen]
                    pipeline = dataclasses.replace(
                        pipeline,
                        workflow_outcome="general_question",
                        selected_slot_index=None,
                        reply_body=build_slot_confirmation_prompt(message.get("lead_name") or "", chosen.label),
                    )
                    slot_state = {
                        "status": "pending",
                        "strategy": "deterministic_arbitration",
                        "slot_candidate": chosen.to_dict(),
                    }

            human_required = requires_human_action(pipeline)
            workflow_payload = build_workflow_persistence_payload(pipeline.workflow_outcome)
            if (
                workflow_payload
                and message.get("conversation_id")
                and hasattr(self.adapter, "transition_conversation_workflow")
            ):
                stage = "persist_workflow_transition"
                await self.adapter.transition_conversation_workflow(
                    conversation_id=message["conversation_id"],
                    payload=workflow_payload,
                    actor_type="worker",
                    actor_id=message.get("assigned_agent_id"),
                    source="ai_outcome_decision",
                    message_id=message["id"],
                )

            await self._log(message["id"], "ai_reply_decision", {
                **_decision_details(pipeline),
                "slot_confirmation_state": slot_state,
                "platform_policy": policy,
                "guardrails": pipeline.guardrails.reasons,
            })
            if pipeline.eligibility.eligible:
                self.metrics.decisions_eligible += 1
            else:
                self.metrics.decisions_ineligible += 1
            _bump(self.metrics.decision_reasons, pipeline.eligibility.reason)

            status = "skipped"
            if pipeline.outcome == ReplyOutcome.ESCALATE.value:
                status = "escalated"
                await self._escalate(message, platform, pipeline, policy, human_required)

            if pipeline.eligibility.eligible:
                status, stage = await self._dispatch(
                    message, platform, pipeline, policy, template, selected_candidates, slot_state
                )

            stage = "mark_inbound_processed"
            patch = {
                "ai_processed_at": self.now_iso,
                **_decision_details(pipeline),
                "reply_eligible": pipeline.eligibility.eligible,
                "reply_decision_reason": pipeline.eligibility.reason,
                "slot_confirmation_state": slot_state,
                "platform_policy": policy,
                "guardrails": pipeline.guardrails.reasons,
            }
            patch.pop("decision")
            if human_required:
                patch.update({"review_status": "hold", "action_queue": HUMAN_ACTION_QUEUE})
            await self.adapter.mark_inbound_processed(message_id=message["id"], metadata_patch=patch)

            stage = "record_audit_outcome"
            await self._log(
                message["id"],
                "ai_reply_created" if pipeline.eligibility.eligible else "ai_reply_skipped",
                {
                    "platform": platform,
                    **_decision_details(pipeline),
                    "platform_policy": policy,
                    "guardrails": pipeline.guardrails.reasons,
                },
            )
            return MessageOutcome(message["id"], status, reason=pipeline.eligibility.reason)

        except _Blocked as blocked:
            return MessageOutcome(message["id"], "blocked", reason=blocked.reason)

        except Exception as e:
            return await self._handle_failure(message, platform, stage, e)

    async def _escalate(
        self,
        message: Dict[str, Any],
        platform: str,
        pipeline: ReplyPipelineResult,
        policy: Dict[str, Any],
        human_required: bool,
    ) -> None:
        reason = pipeline.escalation_reason_code or pipeline.eligibility.reason
        self.metrics.escalations_raised += 1
        _bump(self.metrics.escalation_reasons, reason)

        details = _decision_details(pipeline)
        details.pop("outcome")
        details.pop("selected_slot_index")
        await self._log(message["id"], "ai_reply_escalated", {
            "platform": platform,
            **details,
            "platform_policy": policy,
            "guardrails": pipeline.guardrails.reasons,
        })

        if human_required:
            await self._log(message["id"], "ai_reply_human_required_queued", {
                "platform": platform,
                "reason": reason,
                "workflow_outcome": pipeline.workflow_outcome,
                "confidence": pipeline.confidence,
                "risk_level": pipeline.risk_level,
                "queue": HUMAN_ACTION_QUEUE,
            })

    async def _dispatch(
        self,
        message: Dict[str, Any],
        platform: str,
        pipeline: ReplyPipelineResult,
        policy: Dict[str, Any],
        template,
        selected_candidates,
        slot_state: Optional[Dict[str, Any]],
    ):
        """Guarded send or draft. Failures propagate with the stage set on the error."""
        status = "sent" if pipeline.outcome == ReplyOutcome.SEND.value else "draft"
        dispatch_key = build_dispatch_key(message, pipeline, status)
        stage = "dispatch_idempotency_guard"

        try:
            guard = DispatchGuard(should_dispatch=True, duplicate=False, state=DispatchState.NEW.value)
            if hasattr(self.adapter, "begin_dispatch_attempt"):
                guard = await self.adapter.begin_dispatch_attempt(
                    message_id=message["id"],
                    dispatch_key=dispatch_key,
                    platform=platform,
                    stage=DEFAULT_STAGE,
                    now=self.now_iso,
                )

            if not guard.should_dispatch:
                self.metrics.duplicates_suppressed += 1
                await self._log(message["id"], "ai_reply_dispatch_duplicate_suppressed", {
                    "platform": platform,
                    "stage": DEFAULT_STAGE,
                    "dispatch_key": dispatch_key,
                    "state": guard.state or DispatchState.COMPLETED.value,
                })

            self.metrics.sends_attempted += 1
            stage = DEFAULT_STAGE
            if not guard.should_dispatch:
                delivery = guard.delivery
            elif status == "sent" and hasattr(self.adapter, "dispatch_outbound_message"):
                delivery = await self.adapter.dispatch_outbound_message(
                    platform_account_id=message.get("platform_account_id"),
                    platform=message.get("platform"),
                    platform_credentials=message.get("platform_credentials"),
                    external_thread_id=message.get("external_thread_id"),
                    body=pipeline.reply_body,
                    metadata={"intent": pipeline.intent, "effective_intent": pipeline.effective_intent},
                )
            else:
                delivery = None

            if guard.should_dispatch and hasattr(self.adapter, "complete_dispatch_attempt"):
                stage = "dispatch_idempotency_complete"
                await self.adapter.complete_dispatch_attempt(
                    message_id=message["id"],
                    dispatch_key=dispatch_key,
                    status=status,
                    delivery=delivery,
                    now=self.now_iso,
                )

            if not guard.should_dispatch:
                return "duplicate_suppressed", stage

            stage = "record_audit_send"
            await self._log(
                message["id"],
                "ai_reply_send_attempted" if status == "sent" else "ai_reply_draft_created",
                {
                    "platform": platform,
                    "intent": pipeline.intent,
                    "effective_intent": pipeline.effective_intent,
                    "review_status": status,
                    "platform_policy": policy,
                    "dispatch_key": dispatch_key,
                    "selected_slot_index": pipeline.selected_slot_index,
                    "slot_confirmation_state": slot_state,
                    "delivery": delivery,
                },
            )

            outbound_metadata: Dict[str, Any] = {
                "review_status": status,
                "template_id": template.id if template is not None else None,
                "intent": pipeline.intent,
                "effective_intent": pipeline.effective_intent,
                "follow_up": pipeline.follow_up,
                "worker_generated_at": self.now_iso,
                "guardrails": pipeline.guardrails.reasons,
                "escalation_reason_code": pipeline.escalation_reason_code,
                "platform_policy": policy,
                "selected_slot_index": pipeline.selected_slot_index,
                "slot_candidates": [candidate.to_dict() for candidate in selected_candidates],
                "slot_confirmation_state": slot_state,
                "dispatch_key": dispatch_key,
                "delivery": delivery,
            }
            if slot_state and slot_state["status"] == "pending":
                outbound_metadata["slot_confirmation_pending"] = {
                    **slot_state["slot_candidate"],
                    "created_at": self.now_iso,
                    "source_message_id": message["id"],
                }
            if slot_state and slot_state["status"] == "confirmed":
                outbound_metadata["slot_confirmation_resolved"] = {
                    **slot_state["slot_candidate"],
                    "resolved_at": self.now_iso,
                    "source_message_id": message["id"],
                }

            stage = "record_outbound_reply"
            await self.adapter.record_outbound_reply(
                conversation_id=message.get("conversation_id"),
                assigned_agent_id=message.get("assigned_agent_id"),
                body=pipeline.reply_body,
                metadata=outbound_metadata,
                channel=(delivery or {}).get("channel") or "in_app",
                external_message_id=(delivery or {}).get("external_message_id") or dispatch_key,
            )
        except Exception as e:
            e.failure_stage = stage
            raise

        self.replies_created += 1
        if status == "sent":
            self.metrics.sends_sent += 1
        else:
            self.metrics.sends_drafted += 1
        return status, stage

    async def _handle_failure(
        self,
        message: Dict[str, Any],
        platform: str,
        stage: str,
        error: Exception,
    ) -> MessageOutcome:
        stage = getattr(error, "failure_stage", None) or stage
        error_text = str(error)
        message_id = message["id"]
        logger.error("Failed processing message %s at %s: %s", message_id, stage, error_text)
        self.metrics.errors += 1

        await self._record_quietly(message_id, "ai_reply_error", self._log(message_id, "ai_reply_error", {
            "platform": platform,
            "stage": stage,
            "error": error_text,
        }))

        if not stage.startswith("dispatch_"):
            return MessageOutcome(message_id, "error", stage=stage, error=error_text)

        retry = get_retry_details(error)
        _bump(self.metrics.platform_failures, platform)
        _bump(self.metrics.platform_failure_stages, f"{platform}:{stage}")

        if hasattr(self.adapter, "fail_dispatch_attempt"):
            await self._record_quietly(message_id, "failed dispatch attempt", self.adapter.fail_dispatch_attempt(
                message_id=message_id,
                stage=stage,
                error=error_text,
                now=self.now_iso,
                retry=retry,
            ))

        await self._record_quietly(message_id, "platform_dispatch_error", self._log(message_id, "platform_dispatch_error", {
            "platform": platform,
            "stage": stage,
            "error": error_text,
            "retry": retry,
        }))

        if not retry["retry_exhausted"]:
            return MessageOutcome(message_id, "error", stage=stage, error=error_text)

        self.metrics.dlq_queued += 1
        await self._record_quietly(message_id, "platform_dispatch_dlq", self._log(message_id, "platform_dispatch_dlq", {
            "platform": platform,
            "stage": stage,
            "error": error_text,
            "retry": retry,
        }))
        await self._record_quietly(
            message_id,
            "ai_reply_dispatch_escalated",
            self._log(message_id, "ai_reply_dispatch_escalated", {
                "platform": platform,
                "stage": stage,
                "reason": DLQ_ESCALATION_REASON,
            }),
        )
        return MessageOutcome(message_id, "dlq", reason=DLQ_ESCALATION_REASON, stage=stage, error=error_text)

    async def run(
        self,
        limit: int,
        worker_id: Optional[str] = None,
        claim_ttl_ms: Optional[int] = None,
    ) -> BatchResult:
        messages = await self.adapter.fetch_pending_messages(
            limit=limit,
            now=self.now,
            worker_id=worker_id,
            claim_ttl_ms=claim_ttl_ms,
        )
        outcomes = []
        for message in messages:
            outcomes.append(await self.process(message))

        return BatchResult(
            scanned=len(messages),
            replies_created=self.replies_created,
            metrics=self.metrics,
            outcomes=outcomes,
        )


async def process_pending_messages_with_ai(
    adapter,
    pipeline: Optional[ReplyPipeline] = None,
    settings: Optional[WorkerSettings] = None,
    limit: Optional[int] = None,
    now: Optional[datetime] = None,
    worker_id: Optional[str] = None,
    claim_ttl_ms: Optional[int] = None,
) -> BatchResult:
    """Claim and triage one batch of pending inbound messages."""
    settings = settings or WorkerSettings()
    worker = DecisionWorker(adapter, pipeline=pipeline, settings=settings, now=now)
    return await worker.run(
        limit=limit if limit is not None else settings.batch_size,
        worker_id=worker_id or settings.worker_id,
        claim_ttl_ms=claim_ttl_ms if claim_ttl_ms is not None else settings.claim_ttl_ms,
    )
