"""
Core modules for the lease bot worker.
"""

from core.event_log import log_event, record_reliability_event, EventType
from core.errors import (
    AutomationError,
    ErrorCode,
    is_retryable_error,
    get_retry_details,
)
from core.retry import RetryPolicy, with_retry, calculate_backoff_delay
from core.alerts import (
    Alert,
    AlertLevel,
    RpaAlertDispatcher,
    send_alert,
)

from core import config
from core import credentials
from core import guardrails
from core import intent_classifier
from core import reply_classifier
from core import reply_pipeline
from core import slot_scheduling
from core import pacing
from core import circuit_breaker
from core import audit_trail
from core import dispatch_ledger

__all__ = [
    # Event logging
    "log_event",
    "record_reliability_event",
    "EventType",
    # Errors
    "AutomationError",
    "ErrorCode",
    "is_retryable_error",
    "get_retry_details",
    # Retry
    "RetryPolicy",
    "with_retry",
    "calculate_backoff_delay",
    # Alerts
    "Alert",
    "AlertLevel",
    "RpaAlertDispatcher",
    "send_alert",
    # Modules
    "config",
    "credentials",
    "guardrails",
    "intent_classifier",
    "reply_classifier",
    "reply_pipeline",
    "slot_scheduling",
    "pacing",
    "circuit_breaker",
    "audit_trail",
    "dispatch_ledger",
]
