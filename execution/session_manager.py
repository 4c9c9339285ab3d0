"""
Browser session lookup for platform accounts.

Turns resolved account credentials into the session the RPA runner launches
with: a persistent profile directory and/or a Playwright storage_state.
"""

import base64
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from core.errors import session_invalid

logger = logging.getLogger("session_manager")


def _looks_like_json(value: str) -> bool:
    trimmed = value.strip()
    return trimmed.startswith("{") or trimmed.startswith("[")


def parse_storage_state(value: Any) -> Optional[Any]:
    """
    storage_state from `base64:<json>`, inline JSON text or a file path.

    Raises ValueError/OSError on unreadable input.
    """
    if isinstance(value, dict):
        return value
    if not isinstance(value, str) or not value.strip():
        return None

    trimmed = value.strip()
    if trimmed.startswith("base64:"):
        decoded = base64.b64decode(trimmed[len("base64:"):], validate=True).decode("utf-8")
        return json.loads(decoded)
    if _looks_like_json(trimmed):
        return json.loads(trimmed)
    return json.loads(Path(trimmed).read_text(encoding="utf-8"))


class EnvSessionManager:
    """Sessions come from the account's resolved credentials."""

    async def get(
        self,
        platform: str,
        account: Dict[str, Any],
        action: Optional[str] = None,
        attempt: int = 1,
    ) -> Optional[Dict[str, Any]]:
        credentials = (account or {}).get("credentials") or {}
        user_data_dir = credentials.get("user_data_dir")
        storage_value = credentials.get("storage_state_path") or credentials.get("storage_state")
        if not user_data_dir and not storage_value:
            return None

        try:
            storage_state = parse_storage_state(storage_value) if storage_value else None
        except (ValueError, OSError) as e:
            raise session_invalid(platform, str(e)) from e

        session: Dict[str, Any] = {}
        if user_data_dir:
            session["user_data_dir"] = user_data_dir
        if storage_state:
            session["storage_state"] = storage_state
        return session

    async def refresh(
        self,
        platform: str,
        account: Dict[str, Any],
        action: Optional[str] = None,
        reason: Optional[str] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        # Challenges are cleared by an operator rotating the session reference
        logger.warning(
            "Session refresh required for %s account %s (%s): %s",
            platform, (account or {}).get("id"), reason, error,
        )


class NoopSessionManager:
    """No stored sessions; the runner starts from a clean context."""

    async def get(self, platform: str, account: Dict[str, Any], action: Optional[str] = None, attempt: int = 1):
        return None

    async def refresh(self, platform: str, account: Dict[str, Any], action: Optional[str] = None,
                      reason: Optional[str] = None, error: Optional[BaseException] = None) -> None:
        return None
