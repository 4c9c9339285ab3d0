#!/usr/bin/env python3
"""
External Reply Classifier
=========================
Structured-output intent decisions from the Anthropic Messages API.

The model is forced to answer through a single tool whose input schema
constrains the intent to the closed vocabulary used by the heuristic
classifier. The reply pipeline treats this as an optional, injectable
dependency: any failure here falls back to the heuristic decision.

Usage:
    classifier = AnthropicReplyClassifier(api_key=os.getenv("ANTHROPIC_API_KEY"))
    decision = await classifier.classify(ClassificationRequest(inbound_body="Can I tour?"))
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from core.intent_classifier import KNOWN_INTENTS, Intent

logger = logging.getLogger("reply_classifier")

ANTHROPIC_BASE_URL = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MODEL = "claude-3-5-haiku-latest"

WORKFLOW_OUTCOMES = (
    "general_question",
    "human_required",
    "showing_confirmed",
    "wants_reschedule",
    "no_reply",
    "completed",
    "no_show",
    "not_interested",
)

DECISION_TOOL = {
    "name": "record_reply_decision",
    "description": "Record the triage decision for an inbound rental lead message.",
    "input_schema": {
        "type": "object",
        "properties": {
            "intent": {"type": "string", "enum": sorted(KNOWN_INTENTS)},
            "ambiguous": {"type": "boolean"},
            "suggested_reply": {"type": "string"},
            "reason_code": {"type": "string"},
            "workflow_outcome": {"type": "string", "enum": list(WORKFLOW_OUTCOMES)},
            "confidence": {"type": "number", "minimum": 0, "maximum": 1},
            "risk_level": {"type": "string", "enum": ["low", "medium", "high"]},
            "selected_slot_index": {"type": "integer", "minimum": 1},
        },
        "required": ["intent", "ambiguous", "reason_code"],
    },
}


@dataclass
class ClassificationRequest:
    """Everything the external classifier may look at for one message."""
    inbound_body: str
    has_recent_outbound: bool = False
    slot_options: List[str] = field(default_factory=list)
    lead_name: str = ""
    playbook: str = ""
    conversation_context: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class ClassifierDecision:
    """Schema-constrained decision returned by the provider."""
    intent: str
    ambiguous: bool = False
    suggested_reply: Optional[str] = None
    reason_code: Optional[str] = None
    workflow_outcome: Optional[str] = None
    confidence: Optional[float] = None
    risk_level: Optional[str] = None
    selected_slot_index: Optional[int] = None
    provider: str = "anthropic"

    @classmethod
    def from_dict(cls, data: Dict[str, Any], provider: str = "anthropic") -> "ClassifierDecision":
        intent = str(data.get("intent") or Intent.UNKNOWN.value)
        if intent not in KNOWN_INTENTS:
            intent = Intent.UNKNOWN.value
        workflow_outcome = data.get("workflow_outcome")
        if workflow_outcome not in WORKFLOW_OUTCOMES:
            workflow_outcome = None
        suggested = data.get("suggested_reply")
        slot_index = data.get("selected_slot_index")
        return cls(
            intent=intent,
            ambiguous=bool(data.get("ambiguous", False)),
            suggested_reply=suggested.strip() if isinstance(suggested, str) and suggested.strip() else None,
            reason_code=data.get("reason_code") or None,
            workflow_outcome=workflow_outcome,
            confidence=float(data["confidence"]) if isinstance(data.get("confidence"), (int, float)) else None,
            risk_level=data.get("risk_level") or None,
            selected_slot_index=slot_index if isinstance(slot_index, int) and slot_index > 0 else None,
            provider=provider,
        )


class ReplyClassifierError(Exception):
    """Raised when the provider response cannot be turned into a decision."""


class AnthropicReplyClassifier:
    """Calls the Anthropic Messages API with a forced decision tool."""

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        base_url: str = ANTHROPIC_BASE_URL,
        timeout_seconds: float = 20.0,
        max_tokens: int = 600,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_tokens = max_tokens
        self._transport = transport

    def _build_system_prompt(self, request: ClassificationRequest) -> str:
        lines = [
            "You triage inbound messages from prospective tenants on rental listing platforms.",
            "Classify the message intent and decide whether a human must handle it.",
            "Only suggest a reply when the lead wants to schedule a tour.",
        ]
        if request.playbook:
            lines.append("")
            lines.append("Operator playbook:")
            lines.append(request.playbook.strip())
        return "\n".join(lines)

    def _build_user_content(self, request: ClassificationRequest) -> str:
        payload = {
            "inbound_body": request.inbound_body,
            "has_recent_outbound": request.has_recent_outbound,
            "lead_name": request.lead_name,
            "slot_options": request.slot_options,
            "recent_messages": request.conversation_context,
        }
        return json.dumps(payload, ensure_ascii=False)

    async def classify(self, request: ClassificationRequest) -> ClassifierDecision:
        payload = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": 0,
            "system": self._build_system_prompt(request),
            "tools": [DECISION_TOOL],
            "tool_choice": {"type": "tool", "name": DECISION_TOOL["name"]},
            "messages": [{"role": "user", "content": self._build_user_content(request)}],
        }
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            response = await client.post(f"{self.base_url}/messages", json=payload, headers=headers)
            response.raise_for_status()
            data = response.json()

        for block in data.get("content", []):
            if block.get("type") == "tool_use" and block.get("name") == DECISION_TOOL["name"]:
                return ClassifierDecision.from_dict(block.get("input") or {}, provider="anthropic")

        raise ReplyClassifierError("provider response did not include a decision tool call")
