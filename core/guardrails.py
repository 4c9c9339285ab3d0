#!/usr/bin/env python3
"""
Reply Guardrails
================
Content checks applied to every inbound lead message and every candidate reply
before anything is sent on a listing platform.

Inbound categories:
- legal_escalation: attorney / lawyer / legal notice / lawsuit
- abusive_language: hate you / idiot / stupid
- payment_or_pii: ssn / social security / credit card / routing number

Outbound check:
- outbound_contains_ssn_pattern: an SSN-shaped number in the reply body

Usage:
    from core.guardrails import evaluate_guardrails

    verdict = evaluate_guardrails("Can I tour Saturday?", "Sure, Sat 10 AM works")
    if verdict.blocked:
        print(verdict.reasons)
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


# =============================================================================
# PATTERNS
# =============================================================================

INBOUND_BLOCK_PATTERNS: Tuple[Tuple[str, "re.Pattern[str]"], ...] = (
    ("legal_escalation", re.compile(r"\b(attorney|lawyer|legal notice|lawsuit)\b", re.IGNORECASE)),
    ("abusive_language", re.compile(r"\b(hate you|idiot|stupid)\b", re.IGNORECASE)),
    ("payment_or_pii", re.compile(r"\b(ssn|social security|credit card|routing number)\b", re.IGNORECASE)),
)

OUTBOUND_SSN_PATTERN = re.compile(r"\b\d{3}[-\s]?\d{2}[-\s]?\d{4}\b")
OUTBOUND_SSN_REASON = "outbound_contains_ssn_pattern"


# =============================================================================
# RESULT
# =============================================================================

@dataclass(frozen=True)
class GuardrailResult:
    """Verdict from evaluate_guardrails. Reasons keep match order."""
    blocked: bool
    reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"blocked": self.blocked, "reasons": list(self.reasons)}


def evaluate_guardrails(inbound_body: Optional[str] = "", outbound_body: Optional[str] = "") -> GuardrailResult:
    """Scan inbound text for blocked categories and the outbound reply for SSN-shaped numbers."""
    reasons: List[str] = []
    inbound = "" if inbound_body is None else str(inbound_body)
    outbound = "" if outbound_body is None else str(outbound_body)

    for category, pattern in INBOUND_BLOCK_PATTERNS:
        if pattern.search(inbound):
            reasons.append(category)

    if OUTBOUND_SSN_PATTERN.search(outbound):
        reasons.append(OUTBOUND_SSN_REASON)

    return GuardrailResult(blocked=bool(reasons), reasons=reasons)
