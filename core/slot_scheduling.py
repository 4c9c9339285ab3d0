"""
Slot Scheduling Helpers.
========================

Turns availability rows into showing-slot candidates and the text the
worker needs around them:

- Normalize rows (snake_case or camelCase keys) into SlotCandidate
- Human labels like "Sat, Mar 7 10:00 AM - 10:30 AM EST (Agent)"
- Template context for reply templates
- Deterministic arbitration when several candidates compete
- Explicit confirmation detection for a pending slot
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


@dataclass
class SlotCandidate:
    starts_at: str
    ends_at: str
    timezone: str = "UTC"
    agent_id: Optional[str] = None
    agent_name: Optional[str] = None
    label: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "starts_at": self.starts_at,
            "ends_at": self.ends_at,
            "timezone": self.timezone,
            "agent_id": self.agent_id,
            "agent_name": self.agent_name,
            "label": self.label,
        }


SLOT_CONFIRMATION_POSITIVE_PATTERN = re.compile(
    r"\b(confirm|confirmed|yes|yep|yeah|sounds good|works for me|that works|book it|see you)\b",
    re.IGNORECASE,
)
SLOT_CONFIRMATION_NEGATIVE_PATTERN = re.compile(
    r"\b(not|can't|cannot|unable|different|another|later|reschedule)\b",
    re.IGNORECASE,
)


def _first(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value:
            return value
    return None


def _as_text(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp; naive values are treated as UTC."""
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value or "").strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _resolve_zone(name: str):
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def _format_clock(moment: datetime) -> str:
    hour = moment.hour % 12 or 12
    suffix = "AM" if moment.hour < 12 else "PM"
    return f"{hour}:{moment.minute:02d} {suffix}"


def format_slot_window(
    starts_at: Any,
    ends_at: Any,
    tz_name: Optional[str] = "UTC",
    agent_name: Optional[str] = None,
) -> str:
    tz_name = tz_name or "UTC"
    zone = _resolve_zone(tz_name)
    start = parse_timestamp(starts_at)
    end = parse_timestamp(ends_at)
    if start is None or end is None:
        return ""

    if zone is not None:
        start = start.astimezone(zone)
        end = end.astimezone(zone)
        tz_label = start.tzname() or tz_name
    else:
        start = start.astimezone(timezone.utc)
        end = end.astimezone(timezone.utc)
        tz_label = tz_name

    date_label = f"{start.strftime('%a, %b')} {start.day}"
    base = f"{date_label} {_format_clock(start)} - {_format_clock(end)} {tz_label}"
    agent = (agent_name or "").strip()
    return f"{base} ({agent})" if agent else base


def normalize_slot_candidate(slot: Optional[Dict[str, Any]]) -> Optional[SlotCandidate]:
    """Availability row -> SlotCandidate, or None when a bound is missing."""
    if not isinstance(slot, dict):
        return None

    starts_at = _first(slot, "starts_at", "startsAt")
    ends_at = _first(slot, "ends_at", "endsAt")
    if not starts_at or not ends_at:
        return None

    tz_name = slot.get("timezone") or "UTC"
    agent_name = _first(slot, "agent_name", "agentName")
    agent_name = agent_name.strip() if isinstance(agent_name, str) else None
    agent_id = _first(slot, "agent_id", "agentId")

    candidate = SlotCandidate(
        starts_at=_as_text(starts_at),
        ends_at=_as_text(ends_at),
        timezone=tz_name,
        agent_id=str(agent_id) if agent_id is not None else None,
        agent_name=agent_name or None,
    )
    candidate.label = format_slot_window(candidate.starts_at, candidate.ends_at, tz_name, agent_name)
    return candidate


def normalize_pending_slot_confirmation(slot: Any) -> Optional[SlotCandidate]:
    """Like normalize_slot_candidate, but a stored label wins over the computed one."""
    if not isinstance(slot, dict):
        return None

    candidate = normalize_slot_candidate(slot)
    if candidate is None:
        return None

    stored_label = slot.get("label")
    if isinstance(stored_label, str) and stored_label.strip():
        candidate.label = stored_label.strip()
    return candidate


def is_same_slot_candidate(left: Optional[SlotCandidate], right: Optional[SlotCandidate]) -> bool:
    if left is None or right is None:
        return False
    return (
        left.starts_at == right.starts_at
        and left.ends_at == right.ends_at
        and (left.timezone or "UTC") == (right.timezone or "UTC")
    )


def _sort_key(candidate: SlotCandidate):
    start = parse_timestamp(candidate.starts_at)
    end = parse_timestamp(candidate.ends_at)
    return (
        start.timestamp() if start else float("inf"),
        end.timestamp() if end else float("inf"),
        str(candidate.agent_name or candidate.agent_id or "").lower(),
        candidate.label or "",
    )


def select_deterministic_slot_candidate(candidates: Sequence[SlotCandidate]) -> Optional[SlotCandidate]:
    """Earliest start, then earliest end, then agent, then label."""
    if not candidates:
        return None
    return sorted(candidates, key=_sort_key)[0]


def merge_pending_slot(
    candidates: List[SlotCandidate],
    pending: Optional[SlotCandidate],
    limit: int,
) -> List[SlotCandidate]:
    """Put the pending slot in front when it is not already offered, then cap."""
    merged = list(candidates)
    if pending is not None and not any(is_same_slot_candidate(pending, c) for c in merged):
        merged.insert(0, pending)
    return merged[:max(1, limit)]


def is_explicit_slot_confirmation(text: Optional[str]) -> bool:
    normalized = str(text or "").strip()
    if not normalized:
        return False
    if not SLOT_CONFIRMATION_POSITIVE_PATTERN.search(normalized):
        return False
    return not SLOT_CONFIRMATION_NEGATIVE_PATTERN.search(normalized)


def build_slot_confirmation_prompt(lead_name: Optional[str], slot_label: str) -> str:
    greeting = f"Hi {lead_name}," if lead_name else "Hi,"
    return (
        f"{greeting}\n\nGreat, I can hold this showing slot for you:\n- {slot_label}\n\n"
        'Please reply with "confirm" and I will lock it in.'
    )


def build_slot_confirmed_reply(lead_name: Optional[str], slot_label: str) -> str:
    greeting = f"Perfect {lead_name}," if lead_name else "Perfect,"
    return f"{greeting} you're confirmed for:\n- {slot_label}\n\nSee you then."


def build_template_context(message: Dict[str, Any], slot_options: Sequence[str]) -> Dict[str, Any]:
    """Values available to reply templates as {{ key }}."""
    property_name = message.get("property_name")
    unit_number = message.get("unit_number")
    unit = f"{property_name} {unit_number}" if property_name and unit_number else ""
    labels = list(slot_options)
    inline = ", ".join(labels)
    as_list = "\n".join(f"- {label}" for label in labels)

    return {
        "unit": unit,
        "unit_number": unit_number or "",
        "slot": labels[0] if labels else "",
        "slot_options": as_list or inline,
        "slot_options_inline": inline,
        "slot_options_list": as_list,
        "slot_option_labels": labels,
        "lead_name": message.get("lead_name") or "",
    }
