"""
Typed error taxonomy for platform automation.

Every fault raised by the connector layer is an AutomationError carrying a
stable code and a retryable flag. Eligibility outcomes (guardrail blocks,
ambiguous intents) are never raised; they are returned as values by the
reply pipeline.
"""

from enum import Enum
from typing import Any, Dict, Optional

import httpx


class ErrorCode(str, Enum):
    """Stable error codes surfaced to the orchestrator and audit log."""
    CREDENTIAL_MISSING = "CREDENTIAL_MISSING"
    CREDENTIAL_PLAINTEXT_FORBIDDEN = "CREDENTIAL_PLAINTEXT_FORBIDDEN"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    UNSUPPORTED_PLATFORM = "UNSUPPORTED_PLATFORM"
    UNSUPPORTED_ACTION = "UNSUPPORTED_ACTION"
    OUTBOUND_THREAD_REQUIRED = "OUTBOUND_THREAD_REQUIRED"
    OUTBOUND_BODY_REQUIRED = "OUTBOUND_BODY_REQUIRED"
    BOT_CHALLENGE = "BOT_CHALLENGE"
    CAPTCHA_REQUIRED = "CAPTCHA_REQUIRED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    AUTH_REFRESH_REQUIRED = "AUTH_REFRESH_REQUIRED"
    ACCESS_BLOCKED = "ACCESS_BLOCKED"
    SESSION_INVALID = "SESSION_INVALID"
    RPA_RUNTIME_UNAVAILABLE = "RPA_RUNTIME_UNAVAILABLE"
    RPA_PROFILE_INVALID = "RPA_PROFILE_INVALID"
    MOCK_RUNTIME_FORBIDDEN = "MOCK_RUNTIME_FORBIDDEN"
    NETWORK_ERROR = "NETWORK_ERROR"


RETRYABLE_NETWORK_CODES = frozenset({
    "ECONNRESET",
    "ETIMEDOUT",
    "ECONNREFUSED",
    "EPIPE",
    "ENOTFOUND",
})


class AutomationError(Exception):
    """Raised when a platform action fails."""

    def __init__(
        self,
        code: str,
        message: str,
        retryable: bool = False,
        retry_after_ms: Optional[int] = None,
        status: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code.value if isinstance(code, ErrorCode) else code
        self.message = message
        self.retryable = retryable
        self.retry_after_ms = retry_after_ms
        self.status = status
        self.details = details or {}
        # Populated by with_retry once the retry loop gives up
        self.retry_attempts: Optional[int] = None
        self.retry_exhausted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.retry_after_ms is not None:
            data["retry_after_ms"] = self.retry_after_ms
        if self.status is not None:
            data["status"] = self.status
        if self.retry_attempts is not None:
            data["retry_attempts"] = self.retry_attempts
            data["retry_exhausted"] = self.retry_exhausted
        if self.details:
            data["details"] = self.details
        return data


def credential_missing(platform: str, key: str, ref: Optional[str] = None) -> AutomationError:
    reference = f" (reference: {ref})" if ref else ""
    return AutomationError(
        ErrorCode.CREDENTIAL_MISSING,
        f"Missing credential '{key}' for {platform}{reference}",
        details={"platform": platform, "field": key},
    )


def credential_plaintext_forbidden(platform: str, key: str) -> AutomationError:
    return AutomationError(
        ErrorCode.CREDENTIAL_PLAINTEXT_FORBIDDEN,
        f"Credential '{key}' for {platform} must use env: or secret: reference",
        details={"platform": platform, "field": key},
    )


def circuit_open(platform: str, account_id: str, action: str, retry_after_ms: int) -> AutomationError:
    return AutomationError(
        ErrorCode.CIRCUIT_OPEN,
        f"Circuit open for {platform}:{account_id}:{action}",
        retryable=False,
        retry_after_ms=retry_after_ms,
        details={"platform": platform, "account_id": account_id, "action": action},
    )


def unsupported_platform(platform: str) -> AutomationError:
    return AutomationError(ErrorCode.UNSUPPORTED_PLATFORM, f"Unsupported platform '{platform}'")


def unsupported_action(platform: str, action: str) -> AutomationError:
    return AutomationError(
        ErrorCode.UNSUPPORTED_ACTION,
        f"Unsupported action '{action}' for {platform}",
    )


def outbound_thread_required(platform: str) -> AutomationError:
    return AutomationError(
        ErrorCode.OUTBOUND_THREAD_REQUIRED,
        f"Missing external_thread_id for {platform}",
    )


def outbound_body_required(platform: str) -> AutomationError:
    return AutomationError(
        ErrorCode.OUTBOUND_BODY_REQUIRED,
        f"Missing outbound body for {platform}",
    )


def session_invalid(platform: str, reason: str) -> AutomationError:
    return AutomationError(
        ErrorCode.SESSION_INVALID,
        f"Invalid storage_state for {platform}: {reason}",
    )


def _error_status(error: BaseException) -> Optional[int]:
    status = getattr(error, "status", None)
    if status is None:
        status = getattr(error, "status_code", None)
    if status is None and isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
    return status if isinstance(status, int) else None


def is_retryable_error(error: BaseException) -> bool:
    """True when the failure is transient and worth another attempt."""
    if getattr(error, "retryable", None) is True:
        return True

    status = _error_status(error)
    if status is not None and (status == 429 or status >= 500):
        return True

    if isinstance(error, httpx.TransportError):
        return True

    return getattr(error, "code", None) in RETRYABLE_NETWORK_CODES


def get_retry_details(error: BaseException) -> Dict[str, Any]:
    """
    Summarize retry metadata attached to a failed dispatch.

    An error counts as exhausted when with_retry flagged it, or when it was
    retryable and more than one attempt was made.
    """
    try:
        attempts = int(getattr(error, "retry_attempts", None) or 1)
    except (TypeError, ValueError):
        attempts = 1

    status = _error_status(error)
    retryable = getattr(error, "retryable", None) is True or (
        status is not None and (status == 429 or status >= 500)
    )
    return {
        "attempts": attempts,
        "retry_exhausted": bool(getattr(error, "retry_exhausted", False)) or (retryable and attempts > 1),
        "retryable": retryable,
    }
