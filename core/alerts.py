"""
Alert system for platform automation.
Shows operator alerts on the console and forwards selected reliability events
(session refresh requests, opened circuits) to Telegram or a webhook.
"""

import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx
from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

logger = logging.getLogger("alerts")

console = Console()


class AlertLevel(Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


LEVEL_BORDERS = {
    AlertLevel.INFO.value: "blue",
    AlertLevel.WARNING.value: "yellow",
    AlertLevel.CRITICAL.value: "red",
}


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Alert:
    """Operator-facing alert, rendered as a console panel."""
    level: str
    title: str
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    source: str = "worker"
    alert_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    raised_at: str = field(default_factory=_utc_now)


def render_alert(alert: Alert) -> Panel:
    border = LEVEL_BORDERS.get(alert.level, "white")

    facts = Table.grid(padding=(0, 1))
    facts.add_column(style="dim", justify="right", no_wrap=True)
    facts.add_column()
    for key, value in alert.metadata.items():
        facts.add_row(f"{key}:", str(value))
    facts.add_row("source:", alert.source)
    facts.add_row("raised:", alert.raised_at)

    return Panel(
        Group(Text(alert.message), Text(""), facts),
        title=Text.assemble((alert.level.upper(), f"{border} bold"), " ", alert.title),
        title_align="left",
        border_style=border,
        padding=(0, 1),
    )


def send_alert(
    level: Any,
    title: str,
    message: str,
    metadata: Optional[Dict[str, Any]] = None,
    source: str = "worker",
    console_output: bool = True,
) -> Alert:
    """Build an alert and print it unless console output is off."""
    alert = Alert(
        level=str(getattr(level, "value", level)),
        title=title,
        message=message,
        metadata=dict(metadata or {}),
        source=source,
    )
    if console_output:
        console.print(render_alert(alert))
    return alert


# =============================================================================
# RELIABILITY EVENT DISPATCH
# =============================================================================

DEFAULT_ALERT_EVENT_TYPES = ("rpa_session_refresh_requested", "rpa_circuit_opened")
DEFAULT_ALERT_COOLDOWN_MS = 5 * 60 * 1000


def _parse_bool(value: Optional[str], fallback: bool = False) -> bool:
    if not isinstance(value, str):
        return fallback
    normalized = value.strip().lower()
    if normalized in ("1", "true", "yes", "on"):
        return True
    if normalized in ("0", "false", "no", "off"):
        return False
    return fallback


def _parse_positive_int(value: Optional[str], fallback: int) -> int:
    try:
        parsed = int(str(value))
    except (TypeError, ValueError):
        return fallback
    return parsed if parsed > 0 else fallback


def _parse_csv(value: Optional[str], fallback: tuple) -> List[str]:
    if not isinstance(value, str) or not value.strip():
        return list(fallback)
    return [item.strip() for item in value.split(",") if item.strip()]


def detect_alert_provider(env: Mapping[str, str]) -> str:
    configured = (env.get("LEASE_BOT_RPA_ALERTS_PROVIDER") or "").strip().lower()
    if configured:
        return configured
    if (env.get("LEASE_BOT_RPA_ALERT_TELEGRAM_BOT_TOKEN") or "").strip() and (
        env.get("LEASE_BOT_RPA_ALERT_TELEGRAM_CHAT_ID") or ""
    ).strip():
        return "telegram"
    if (env.get("LEASE_BOT_RPA_ALERT_WEBHOOK_URL") or "").strip():
        return "webhook"
    return "none"


def build_alert_message(event: Dict[str, Any], source: str) -> str:
    lines = [
        f"Lease Bot alert ({source})",
        f"Event: {event.get('type') or 'unknown'}",
        f"Platform: {event.get('platform') or 'unknown'}",
        f"Account: {event.get('account_id') or 'unknown'}",
        f"Action: {event.get('action') or 'unknown'}",
    ]
    if event.get("reason"):
        lines.append(f"Reason: {event['reason']}")
    if event.get("retry_after_ms") is not None:
        lines.append(f"Retry after: {event['retry_after_ms']}ms")
    if event.get("error"):
        lines.append(f"Error: {str(event['error'])[:500]}")
    lines.append(f"Time: {datetime.now(timezone.utc).isoformat()}")
    return "\n".join(lines)


class RpaAlertDispatcher:
    """
    Forwards selected connector events to an out-of-band channel.

    Each (type, platform, account, action, reason) combination is sent at most
    once per cooldown window.
    """

    def __init__(
        self,
        env: Optional[Mapping[str, str]] = None,
        source: str = "runtime",
        now_ms: Optional[Callable[[], float]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        console_output: bool = True,
    ):
        self.env = os.environ if env is None else env
        self.source = source
        self._now_ms = now_ms or (lambda: time.time() * 1000)
        self._transport = transport
        self.console_output = console_output

        self.enabled = _parse_bool(self.env.get("LEASE_BOT_RPA_ALERTS_ENABLED"), False)
        self.provider = detect_alert_provider(self.env)
        self.cooldown_ms = _parse_positive_int(
            self.env.get("LEASE_BOT_RPA_ALERT_COOLDOWN_MS"), DEFAULT_ALERT_COOLDOWN_MS
        )
        self.event_types = set(
            _parse_csv(self.env.get("LEASE_BOT_RPA_ALERT_EVENT_TYPES"), DEFAULT_ALERT_EVENT_TYPES)
        )
        self._last_sent: Dict[str, float] = {}

    @staticmethod
    def cooldown_key(event: Dict[str, Any]) -> str:
        return ":".join([
            str(event.get("type") or "unknown"),
            str(event.get("platform") or "unknown"),
            str(event.get("account_id") or "unknown"),
            str(event.get("action") or "unknown"),
            str(event.get("reason") or ""),
        ])

    async def _post(self, url: str, payload: Dict[str, Any], label: str) -> None:
        async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
            response = await client.post(url, json=payload)
        if response.status_code >= 400:
            raise RuntimeError(f"{label} alert failed ({response.status_code}): {response.text[:400]}")

    async def _send_telegram(self, text: str) -> None:
        token = (self.env.get("LEASE_BOT_RPA_ALERT_TELEGRAM_BOT_TOKEN") or "").strip()
        chat_id = (self.env.get("LEASE_BOT_RPA_ALERT_TELEGRAM_CHAT_ID") or "").strip()
        if not token or not chat_id:
            raise RuntimeError("telegram alert settings are missing")
        await self._post(
            f"https://api.telegram.org/bot{token}/sendMessage",
            {"chat_id": chat_id, "text": text, "disable_web_page_preview": True},
            "telegram",
        )

    async def _send_webhook(self, text: str, event: Dict[str, Any]) -> None:
        url = (self.env.get("LEASE_BOT_RPA_ALERT_WEBHOOK_URL") or "").strip()
        if not url:
            raise RuntimeError("webhook alert url is missing")
        await self._post(
            url,
            {
                "source": self.source,
                "text": text,
                "event": event,
                "sent_at": datetime.now(timezone.utc).isoformat(),
            },
            "webhook",
        )

    async def dispatch_event(self, event: Any) -> Dict[str, Any]:
        if not self.enabled:
            return {"sent": False, "reason": "disabled"}
        if not isinstance(event, dict):
            return {"sent": False, "reason": "invalid_event"}
        if event.get("type") not in self.event_types:
            return {"sent": False, "reason": "event_filtered"}
        if self.provider == "none":
            return {"sent": False, "reason": "provider_unconfigured"}

        key = self.cooldown_key(event)
        now = self._now_ms()
        previous = self._last_sent.get(key)
        if previous is not None and now - previous < self.cooldown_ms:
            return {"sent": False, "reason": "cooldown"}

        text = build_alert_message(event, self.source)
        if self.provider == "telegram":
            await self._send_telegram(text)
        elif self.provider == "webhook":
            await self._send_webhook(text, event)
        else:
            return {"sent": False, "reason": "provider_unsupported"}

        self._last_sent[key] = now
        logger.warning(
            "RPA alert sent via %s: %s %s/%s",
            self.provider, event.get("type"), event.get("platform"), event.get("account_id"),
        )
        if self.console_output:
            send_alert(
                AlertLevel.WARNING,
                str(event.get("type")),
                text,
                metadata={"provider": self.provider},
                source=self.source,
            )
        return {"sent": True}

    async def handle_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """dispatch_event that logs delivery failures instead of raising."""
        try:
            return await self.dispatch_event(event)
        except Exception as e:
            logger.error(
                "Failed sending RPA alert (%s, %s): %s",
                self.provider, event.get("type") if isinstance(event, dict) else "unknown", e,
            )
            return {"sent": False, "reason": "delivery_failed", "error": str(e)}
