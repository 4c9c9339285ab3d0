"""
Event logging module for platform automation.
Writes structured reliability events to JSONL format.
"""

import json
import os
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional


class EventType(Enum):
    """Classification of connector and runner events."""
    RPA_RUN_STARTED = "rpa_run_started"
    RPA_RUN_SUCCEEDED = "rpa_run_succeeded"
    RPA_RUN_FAILED = "rpa_run_failed"
    RPA_RETRY_SCHEDULED = "rpa_retry_scheduled"
    RPA_SESSION_REFRESH_REQUESTED = "rpa_session_refresh_requested"
    RPA_CIRCUIT_OPENED = "rpa_circuit_opened"
    RPA_CIRCUIT_OPEN_FAIL_FAST = "rpa_circuit_open_fail_fast"
    RPA_CIRCUIT_HALF_OPEN_PROBE = "rpa_circuit_half_open_probe"
    RPA_CIRCUIT_HALF_OPEN_BUSY = "rpa_circuit_half_open_busy"
    RPA_CIRCUIT_CLOSED = "rpa_circuit_closed"
    RPA_INGEST_LATENCY_MEASURED = "rpa_ingest_latency_measured"
    RPA_INGEST_LATENCY_TARGET_EXCEEDED = "rpa_ingest_latency_target_exceeded"
    WORKER_CYCLE_COMPLETED = "worker_cycle_completed"
    SYSTEM_ERROR = "system_error"


EVENTS_FILE = Path(os.getenv("LEASE_BOT_EVENTS_FILE", ".hive-mind/events.jsonl"))


def log_event(
    event_type: EventType,
    payload: Dict[str, Any],
    metadata: Optional[Dict[str, Any]] = None,
    events_file: Optional[Path] = None,
) -> str:
    """
    Log an event to the JSONL event store.

    Args:
        event_type: The type of event being logged
        payload: Event-specific data
        metadata: Optional additional context
        events_file: Override for the target file

    Returns:
        The generated event_id
    """
    event_id = str(uuid.uuid4())
    timestamp = datetime.now(timezone.utc).isoformat()

    event = {
        "timestamp": timestamp,
        "event_id": event_id,
        "event_type": event_type.value,
        "payload": payload
    }

    if metadata:
        event["metadata"] = metadata

    target = events_file or EVENTS_FILE
    target.parent.mkdir(parents=True, exist_ok=True)

    with open(target, "a", encoding="utf-8") as f:
        f.write(json.dumps(event, default=str) + "\n")

    return event_id


def record_reliability_event(event: Dict[str, Any], events_file: Optional[Path] = None) -> Optional[str]:
    """Persist a connector event dict keyed by its `type`; unknown types are skipped."""
    try:
        event_type = EventType(event.get("type"))
    except ValueError:
        return None
    payload = {k: v for k, v in event.items() if k != "type"}
    return log_event(event_type, payload, events_file=events_file)
