"""
Heuristic intent classification for inbound lead messages.

Maps free text to a closed vocabulary of intents and flags follow-ups
(re-contact after we already replied).
"""

import re
from enum import Enum
from typing import Optional, Tuple


class Intent(str, Enum):
    """Closed intent vocabulary shared by the heuristic and external classifiers."""
    UNSUBSCRIBE = "unsubscribe"
    TOUR_REQUEST = "tour_request"
    PRICING_QUESTION = "pricing_question"
    AVAILABILITY_QUESTION = "availability_question"
    UNKNOWN = "unknown"


FOLLOW_UP_INTENT = "follow_up"
TOUR_INTENTS = frozenset({Intent.TOUR_REQUEST.value, FOLLOW_UP_INTENT})
KNOWN_INTENTS = frozenset(i.value for i in Intent)

# Checked in order; first match wins
INTENT_PATTERNS: Tuple[Tuple[Intent, "re.Pattern[str]"], ...] = (
    (Intent.UNSUBSCRIBE, re.compile(r"\b(stop|unsubscribe|do not contact)\b")),
    (Intent.TOUR_REQUEST, re.compile(r"\b(tour|visit|see the place|walkthrough|showing)\b")),
    (Intent.PRICING_QUESTION, re.compile(r"\b(price|rent|deposit|fee|cost)\b")),
    (Intent.AVAILABILITY_QUESTION, re.compile(r"\b(available|availability|when can i|open slot)\b")),
)

FOLLOW_UP_PATTERN = re.compile(r"\b(follow\s*up|any update|checking in|just checking|status\??)\b", re.IGNORECASE)

# Hedged replies that should go to a human even when a keyword matched
AMBIGUITY_PATTERN = re.compile(
    r"\b(not sure|maybe later|i don'?t know|idk|never mind|nevermind)\b",
    re.IGNORECASE,
)


def classify_intent(body: Optional[str]) -> str:
    """Return the first matching intent for the lowercased body, else 'unknown'."""
    text = str(body or "").lower()
    if not text.strip():
        return Intent.UNKNOWN.value

    for intent, pattern in INTENT_PATTERNS:
        if pattern.search(text):
            return intent.value

    return Intent.UNKNOWN.value


def detect_follow_up(body: Optional[str], has_recent_outbound: bool = False) -> bool:
    """A follow-up needs both a prior outbound message and a 'checking in' phrase."""
    if not has_recent_outbound:
        return False
    return bool(FOLLOW_UP_PATTERN.search(str(body or "")))


def is_ambiguous(body: Optional[str]) -> bool:
    return bool(AMBIGUITY_PATTERN.search(str(body or "")))
