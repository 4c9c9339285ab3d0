#!/usr/bin/env python3
"""
RPA Runner - Browser Actions via Playwright
===========================================

Executes one platform action (inbox ingest or reply send) in a fresh
browser context:

- Launch Chromium (or a persistent profile) with env-driven options
- Detect challenge / captcha / login walls before touching the page
- Scrape inbox rows into normalized inbound messages
- Fill and submit the reply composer for a thread
- Optional debug artifacts (screenshot, HTML, meta JSON) on failure
- Lifecycle events: rpa_run_started / rpa_run_succeeded / rpa_run_failed

Usage:
    from execution.rpa_runner import create_rpa_runner

    runner = create_rpa_runner(runtime_mode="playwright")
    result = await runner.run(platform="spareroom", action="ingest", account=account, session=session)
"""

import json
import logging
import os
import re
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from config.platform_adapters import PlatformAdapter, build_adapter_registry, load_adapter_overrides
from core.errors import (
    AutomationError,
    ErrorCode,
    outbound_body_required,
    outbound_thread_required,
    unsupported_action,
    unsupported_platform,
)

logger = logging.getLogger("rpa_runner")

Clock = Callable[[], datetime]
EventHook = Callable[[Dict[str, Any]], None]

DEFAULT_DEBUG_DIR = ".playwright/rpa-debug"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_bool_env(value: Optional[str]) -> Optional[bool]:
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    if normalized in ("1", "true", "yes", "on"):
        return True
    if normalized in ("0", "false", "no", "off"):
        return False
    return None


# =============================================================================
# TEXT HELPERS
# =============================================================================

def sanitize_message_body(value: Any) -> str:
    """Collapse whitespace and drop injected script tails."""
    if value is None:
        return ""
    body = re.sub(r"\s+", " ", str(value)).strip()
    marker = body.find("jQuery(")
    if marker >= 0:
        return body[:marker].strip()
    return body


MONTHS = {
    "jan": 1, "january": 1, "feb": 2, "february": 2, "mar": 3, "march": 3,
    "apr": 4, "april": 4, "may": 5, "jun": 6, "june": 6, "jul": 7, "july": 7,
    "aug": 8, "august": 8, "sep": 9, "sept": 9, "september": 9,
    "oct": 10, "october": 10, "nov": 11, "november": 11, "dec": 12, "december": 12,
}

TIME_OF_DAY_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?\s*([AaPp][Mm])?$")
RELATIVE_DATE_PATTERN = re.compile(r"^(today|yesterday)(?:\s+(.*))?$", re.IGNORECASE)
SLASH_DATE_PATTERN = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})(?:\s+(.*))?$")
MONTH_DATE_PATTERN = re.compile(r"^([A-Za-z]{3,9})\s+(\d{1,2})(?:st|nd|rd|th)?,?\s+(\d{4})(?:\s+(.*))?$")
TRAILING_ZONE_PATTERN = re.compile(r"\s+([A-Za-z]{2,5})$")


def strip_trailing_timezone(text: str) -> str:
    """'11:21 PM EST' -> '11:21 PM'; AM/PM and two-letter tokens are kept."""
    trimmed = (text or "").strip()

    def _drop(match: "re.Match[str]") -> str:
        token = match.group(1).lower()
        if token in ("am", "pm") or len(token) < 3:
            return match.group(0)
        return ""

    return TRAILING_ZONE_PATTERN.sub(_drop, trimmed).strip()


def parse_time_of_day(text: Optional[str]):
    """Return (hours, minutes, seconds) or None."""
    if not isinstance(text, str):
        return None
    cleaned = strip_trailing_timezone(text)
    match = TIME_OF_DAY_PATTERN.match(cleaned)
    if not match:
        return None

    hours = int(match.group(1))
    minutes = int(match.group(2))
    seconds = int(match.group(3) or 0)
    meridiem = (match.group(4) or "").lower()

    if minutes > 59 or seconds > 59:
        return None
    if meridiem:
        if hours < 1 or hours > 12:
            return None
        hours = hours % 12 + (12 if meridiem == "pm" else 0)
    elif hours > 23:
        return None
    return hours, minutes, seconds


def _at_time(base: datetime, time_text: Optional[str]) -> datetime:
    parsed = parse_time_of_day((time_text or "").strip())
    if parsed:
        hours, minutes, seconds = parsed
        return base.replace(hour=hours, minute=minutes, second=seconds, microsecond=0)
    return base


def parse_human_date_text(text: Optional[str], now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Parse inbox timestamps such as "Yesterday 11:21 PM EST", "01/20/2026",
    "Feb 1st, 2026 9:05 am" or ISO strings. Dates without a time land on noon.
    """
    raw = text.strip() if isinstance(text, str) else ""
    if not raw:
        return None
    now = now or _utc_now()
    tz = now.tzinfo or timezone.utc
    normalized = re.sub(r"\s+", " ", raw)

    match = RELATIVE_DATE_PATTERN.match(normalized)
    if match:
        base = now.replace(hour=12, minute=0, second=0, microsecond=0)
        if match.group(1).lower() == "yesterday":
            base -= timedelta(days=1)
        return _at_time(base, match.group(2))

    match = SLASH_DATE_PATTERN.match(normalized)
    if match:
        try:
            base = datetime(int(match.group(3)), int(match.group(1)), int(match.group(2)), 12, tzinfo=tz)
        except ValueError:
            return None
        return _at_time(base, match.group(4))

    match = MONTH_DATE_PATTERN.match(normalized)
    if match:
        month = MONTHS.get(match.group(1).lower())
        if month is None:
            return None
        try:
            base = datetime(int(match.group(3)), month, int(match.group(2)), 12, tzinfo=tz)
        except ValueError:
            return None
        return _at_time(base, match.group(4))

    iso = normalized[:-1] + "+00:00" if normalized.endswith("Z") else normalized
    try:
        parsed = datetime.fromisoformat(iso)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=tz)


def normalize_automation_error(error: BaseException) -> BaseException:
    """Map raw browser failures onto the retryable automation codes."""
    if isinstance(error, AutomationError):
        return error

    message = str(error)
    lowered = message.lower()
    status = getattr(error, "status", None) or getattr(error, "status_code", None)

    if "session expired" in lowered or status == 401:
        return AutomationError(ErrorCode.SESSION_EXPIRED, message or "session expired", retryable=True, status=status)
    if "captcha" in lowered:
        return AutomationError(ErrorCode.CAPTCHA_REQUIRED, message or "captcha required", retryable=True)
    if "challenge" in lowered or "cloudflare" in lowered:
        return AutomationError(ErrorCode.BOT_CHALLENGE, message or "bot challenge detected", retryable=True)
    if isinstance(error, PlaywrightTimeoutError) or (isinstance(error, PlaywrightError) and "net::err_" in lowered):
        return AutomationError(ErrorCode.NETWORK_ERROR, message or "browser navigation failed", retryable=True)
    return error


# =============================================================================
# PROTECTION LAYER DETECTION
# =============================================================================

CHALLENGE_TITLE_MARKERS = (
    "just a moment", "attention required", "access denied", "request blocked", "service unavailable",
)
CLOUDFLARE_BODY_MARKERS = (
    "verifying you are human",
    "needs to review the security of your connection",
    "performance & security by cloudflare",
    "ray id",
    "cloudflare",
)
BLOCKED_BODY_MARKERS = ("sorry, you have been blocked", "unable to access")
CHALLENGE_STATUSES = (403, 429, 503)


async def _page_text(page) -> str:
    try:
        text = await page.evaluate("() => (document.body && document.body.innerText) || ''")
    except PlaywrightError as e:
        logger.debug("Could not read page text: %s", e)
        return ""
    return str(text or "").lower()


async def detect_protection_layer(page, adapter: PlatformAdapter, response=None) -> None:
    """Raise the matching automation error when the page is a wall instead of content."""
    for selector in adapter.selector_list("challenge"):
        if await page.query_selector(selector):
            raise AutomationError(
                ErrorCode.BOT_CHALLENGE, f"Bot challenge detected on {adapter.platform}", retryable=True
            )

    for selector in adapter.selector_list("captcha"):
        if await page.query_selector(selector):
            raise AutomationError(
                ErrorCode.CAPTCHA_REQUIRED, f"Captcha detected on {adapter.platform}", retryable=True
            )

    url = str(page.url or "")
    for pattern in adapter.auth_required_url_patterns:
        if pattern and pattern in url:
            raise AutomationError(
                ErrorCode.SESSION_EXPIRED, f"Authentication required on {adapter.platform}", retryable=True
            )

    if adapter.auth_required_text:
        text = await _page_text(page)
        for marker in adapter.auth_required_text:
            if marker and marker.lower() in text:
                raise AutomationError(
                    ErrorCode.SESSION_EXPIRED, f"Authentication required on {adapter.platform}", retryable=True
                )

    try:
        title = (await page.title() or "").lower()
    except PlaywrightError as e:
        logger.debug("Could not read page title: %s", e)
        title = ""
    status = response.status if response is not None else None

    looks_like_challenge = any(marker in title for marker in CHALLENGE_TITLE_MARKERS)
    if not looks_like_challenge and status not in CHALLENGE_STATUSES:
        return

    text = await _page_text(page)
    if not any(marker in text for marker in CLOUDFLARE_BODY_MARKERS):
        return
    if any(marker in text for marker in BLOCKED_BODY_MARKERS):
        raise AutomationError(ErrorCode.ACCESS_BLOCKED, f"Access blocked on {adapter.platform}", retryable=False)
    raise AutomationError(ErrorCode.BOT_CHALLENGE, f"Bot challenge detected on {adapter.platform}", retryable=True)


# =============================================================================
# ACTION HANDLERS
# =============================================================================

INBOX_ROWS_SCRIPT = """(elements, meta) => elements.map((element, index) => {
    const threadId = element.getAttribute('data-thread-id') || element.getAttribute('data-thread') || `thread-${index + 1}`;
    const messageId = element.getAttribute('data-message-id') || `message-${index + 1}`;
    const bodyElement = element.querySelector(meta.bodySelector);
    const body = (bodyElement && bodyElement.textContent.trim()) || element.textContent.trim() || '';
    const sentAtElement = meta.sentAtSelector ? element.querySelector(meta.sentAtSelector) : null;
    const leadNameElement = meta.leadNameSelector ? element.querySelector(meta.leadNameSelector) : null;
    return {
        external_thread_id: threadId,
        external_message_id: messageId,
        body,
        lead_name_raw: element.getAttribute('data-lead-name') || (leadNameElement && leadNameElement.textContent.trim()) || null,
        sent_at_text: sentAtElement ? sentAtElement.textContent.trim() : null
    };
})"""

LEAD_NAME_COUNT_PATTERN = re.compile(r"\s*\(\d+\)\s*$")


def clean_lead_name(value: Optional[str]) -> Optional[str]:
    """'Jamie (3)' -> 'Jamie'."""
    if not value:
        return None
    cleaned = LEAD_NAME_COUNT_PATTERN.sub("", value).strip()
    return cleaned or None


async def ingest_inbox(adapter: PlatformAdapter, page, payload: Dict[str, Any], clock: Clock) -> Dict[str, Any]:
    response = await page.goto(adapter.inbox_url, wait_until="domcontentloaded")
    await detect_protection_layer(page, adapter, response)

    row_selector = (adapter.selector_list("message_items") or ["[data-thread-id][data-message-id]"])[0]
    meta = {
        "bodySelector": (adapter.selector_list("message_body") or ["[data-role='message-body']"])[0],
        "sentAtSelector": (adapter.selector_list("message_sent_at") or [None])[0],
        "leadNameSelector": (adapter.selector_list("lead_name") or [None])[0],
    }
    now = clock()
    rows = await page.eval_on_selector_all(row_selector, INBOX_ROWS_SCRIPT, meta)

    messages: List[Dict[str, Any]] = []
    for row in rows:
        sent_at_text = row.get("sent_at_text")
        parsed = parse_human_date_text(sent_at_text, now) if sent_at_text else None
        metadata = {
            "adapter": adapter.platform,
            "source": "playwright_rpa",
            "sent_at_source": "platform_inbox" if parsed else "clock",
        }
        if sent_at_text:
            metadata["sent_at_text"] = sent_at_text
        messages.append({
            "external_thread_id": row.get("external_thread_id"),
            "external_message_id": row.get("external_message_id"),
            "body": sanitize_message_body(row.get("body")),
            "lead_name": clean_lead_name(row.get("lead_name_raw")),
            "channel": "in_app",
            "sent_at": (parsed or now).isoformat(),
            "metadata": metadata,
        })

    return {"messages": messages}


async def send_reply(adapter: PlatformAdapter, page, payload: Dict[str, Any], clock: Clock) -> Dict[str, Any]:
    thread_id = (payload or {}).get("external_thread_id")
    if not thread_id:
        raise outbound_thread_required(adapter.platform)
    body = (payload or {}).get("body")
    if not body:
        raise outbound_body_required(adapter.platform)

    response = await page.goto(adapter.thread_url(thread_id), wait_until="domcontentloaded")
    await detect_protection_layer(page, adapter, response)
    await page.fill(adapter.selectors["composer"], body)
    await page.click(adapter.selectors["submit"])

    return {
        "external_message_id": f"{adapter.platform}-{thread_id}-{int(clock().timestamp() * 1000)}",
        "channel": "in_app",
        "status": "sent",
    }


DEFAULT_ACTION_HANDLERS = {
    "ingest": ingest_inbox,
    "send": send_reply,
}


# =============================================================================
# BROWSER LAUNCH
# =============================================================================

class PlaywrightFactory:
    """Starts Playwright lazily and launches browsers with env-driven options."""

    def __init__(self, env: Optional[Mapping[str, str]] = None):
        self.env = os.environ if env is None else env
        self._playwright = None

    def launch_config(self) -> Dict[str, Any]:
        args: List[str] = []
        raw_args = (self.env.get("LEASE_BOT_RPA_LAUNCH_ARGS_JSON") or "").strip()
        if raw_args:
            try:
                parsed = json.loads(raw_args)
            except ValueError:
                logger.warning("Ignoring invalid LEASE_BOT_RPA_LAUNCH_ARGS_JSON")
                parsed = None
            if isinstance(parsed, list):
                args = [str(item) for item in parsed]

        channel = (self.env.get("LEASE_BOT_RPA_BROWSER_CHANNEL") or "").strip() or None
        sandbox_off = self.env.get("LEASE_BOT_RPA_CHROMIUM_SANDBOX") == "0"
        return {"args": args, "channel": channel, "sandbox_off": sandbox_off}

    def launch_options(self, headless: bool, omit_channel: bool = False) -> Dict[str, Any]:
        config = self.launch_config()
        options: Dict[str, Any] = {"headless": headless}
        if config["channel"] and not omit_channel:
            options["channel"] = config["channel"]
        if config["sandbox_off"]:
            options["chromium_sandbox"] = False
        if config["args"]:
            options["args"] = config["args"]
        return options

    async def _chromium(self):
        if self._playwright is None:
            try:
                self._playwright = await async_playwright().start()
            except Exception as e:
                logger.error("Playwright runtime unavailable: %s", e)
                raise AutomationError(
                    ErrorCode.RPA_RUNTIME_UNAVAILABLE, "Playwright runtime is unavailable"
                ) from e
        return self._playwright.chromium

    async def _with_channel_fallback(self, launch: Callable[[bool], Awaitable[Any]], label: str):
        try:
            return await launch(False)
        except PlaywrightError as e:
            channel = self.launch_config()["channel"]
            if not channel:
                raise
            logger.warning("Playwright launch failed for %s; retrying without channel %s: %s", label, channel, e)
            return await launch(True)

    async def launch(self, headless: bool):
        chromium = await self._chromium()
        return await self._with_channel_fallback(
            lambda omit: chromium.launch(**self.launch_options(headless, omit)), "browser"
        )

    async def launch_persistent_context(self, headless: bool, user_data_dir: str):
        if not isinstance(user_data_dir, str) or not user_data_dir.strip():
            raise AutomationError(ErrorCode.RPA_PROFILE_INVALID, "Invalid user_data_dir for persistent context")
        chromium = await self._chromium()
        return await self._with_channel_fallback(
            lambda omit: chromium.launch_persistent_context(user_data_dir, **self.launch_options(headless, omit)),
            user_data_dir,
        )

    async def close(self) -> None:
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None


# =============================================================================
# RUNNERS
# =============================================================================

class PlaywrightRpaRunner:
    """Runs one action per call in its own browser context."""

    def __init__(
        self,
        adapters: Optional[Dict[str, PlatformAdapter]] = None,
        action_handlers: Optional[Dict[str, Dict[str, Callable]]] = None,
        on_event: Optional[EventHook] = None,
        headless: Optional[bool] = None,
        debug_artifacts_enabled: Optional[bool] = None,
        debug_artifacts_dir: Optional[str] = None,
        clock: Clock = _utc_now,
        factory: Optional[PlaywrightFactory] = None,
        env: Optional[Mapping[str, str]] = None,
    ):
        env = os.environ if env is None else env
        self.adapters = adapters or build_adapter_registry(load_adapter_overrides(env))
        self.action_handlers = action_handlers or {}
        self.on_event = on_event
        env_headless = _parse_bool_env(env.get("LEASE_BOT_RPA_HEADLESS"))
        self.headless = headless if isinstance(headless, bool) else (True if env_headless is None else env_headless)
        self.debug_artifacts_enabled = (
            debug_artifacts_enabled if debug_artifacts_enabled is not None else env.get("LEASE_BOT_RPA_DEBUG") == "1"
        )
        self.debug_artifacts_dir = Path(debug_artifacts_dir or env.get("LEASE_BOT_RPA_DEBUG_DIR") or DEFAULT_DEBUG_DIR)
        self.clock = clock
        self.factory = factory or PlaywrightFactory(env)

    def _emit(self, event: Dict[str, Any]) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(event)
        except Exception as e:
            logger.warning("RPA runner event hook failed: %s", e)

    def _handler_for(self, platform: str, action: str):
        custom = (self.action_handlers.get(platform) or {}).get(action)
        return custom or DEFAULT_ACTION_HANDLERS.get(action)

    async def capture_debug_artifacts(self, page, meta: Dict[str, Any]) -> Optional[Dict[str, str]]:
        if not self.debug_artifacts_enabled or page is None:
            return None

        def _safe(value: Any) -> str:
            return re.sub(r"[^a-z0-9_-]", "_", str(value or "unknown"), flags=re.IGNORECASE)

        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        base_name = (
            f"{stamp}-{_safe(meta.get('platform'))}-{_safe(meta.get('action'))}-"
            f"{_safe(meta.get('account_id'))}-attempt{meta.get('attempt') or 1}"
        )
        self.debug_artifacts_dir.mkdir(parents=True, exist_ok=True)
        paths = {
            "dir": str(self.debug_artifacts_dir),
            "screenshot_path": str(self.debug_artifacts_dir / f"{base_name}.png"),
            "html_path": str(self.debug_artifacts_dir / f"{base_name}.html"),
            "meta_path": str(self.debug_artifacts_dir / f"{base_name}.json"),
        }

        try:
            html = await page.content()
        except PlaywrightError as e:
            logger.warning("Failed reading page HTML for debug artifacts: %s", e)
            html = ""
        try:
            Path(paths["html_path"]).write_text(html or "", encoding="utf-8")
            Path(paths["meta_path"]).write_text(
                json.dumps({**meta, "url": str(page.url or "")}, indent=2, default=str), encoding="utf-8"
            )
        except OSError as e:
            logger.warning("Failed writing debug artifacts for %s/%s: %s", meta.get("platform"), meta.get("action"), e)
            return None
        try:
            await page.screenshot(path=paths["screenshot_path"], full_page=True)
        except PlaywrightError as e:
            logger.warning("Failed capturing screenshot for %s/%s: %s", meta.get("platform"), meta.get("action"), e)
        return paths

    async def _open_context(self, session: Optional[Dict[str, Any]]):
        session = session or {}
        if session.get("user_data_dir"):
            context = await self.factory.launch_persistent_context(self.headless, session["user_data_dir"])
            return context.browser, context

        browser = await self.factory.launch(self.headless)
        storage_state = session.get("storage_state")
        if storage_state:
            context = await browser.new_context(storage_state=storage_state)
        else:
            context = await browser.new_context()
        return browser, context

    async def run(
        self,
        platform: str,
        action: str,
        account: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
        session: Optional[Dict[str, Any]] = None,
        attempt: int = 1,
    ) -> Dict[str, Any]:
        adapter = self.adapters.get(platform)
        if adapter is None:
            raise unsupported_platform(platform)
        handler = self._handler_for(platform, action)
        if handler is None:
            raise unsupported_action(platform, action)

        account_id = (account or {}).get("id")
        started = time.monotonic()
        self._emit({
            "type": "rpa_run_started",
            "platform": platform,
            "action": action,
            "account_id": account_id,
            "attempt": attempt,
        })

        browser = None
        context = None
        page = None
        try:
            browser, context = await self._open_context(session)
            page = await context.new_page()
            result = await handler(adapter, page, payload or {}, self.clock)
            self._emit({
                "type": "rpa_run_succeeded",
                "platform": platform,
                "action": action,
                "account_id": account_id,
                "duration_ms": int((time.monotonic() - started) * 1000),
            })
            return result
        except Exception as raw_error:
            debug_artifacts = await self.capture_debug_artifacts(page, {
                "platform": platform,
                "action": action,
                "account_id": account_id,
                "attempt": attempt,
            })
            error = normalize_automation_error(raw_error)
            event = {
                "type": "rpa_run_failed",
                "platform": platform,
                "action": action,
                "account_id": account_id,
                "code": getattr(error, "code", None) or "UNKNOWN",
                "message": str(error),
            }
            if debug_artifacts:
                event["debug_artifacts"] = debug_artifacts
            self._emit(event)
            if error is raw_error:
                raise
            raise error from raw_error
        finally:
            await self._close_quietly(context, "context", platform, action)
            await self._close_quietly(browser, "browser", platform, action)

    @staticmethod
    async def _close_quietly(resource, label: str, platform: str, action: str) -> None:
        if resource is None:
            return
        try:
            await resource.close()
        except PlaywrightError as e:
            logger.warning("Failed closing playwright %s for %s/%s: %s", label, platform, action, e)

    async def close(self) -> None:
        await self.factory.close()


class MockRpaRunner:
    """Offline runner: empty inboxes and synthetic send receipts."""

    async def run(
        self,
        platform: str,
        action: str,
        account: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
        session: Optional[Dict[str, Any]] = None,
        attempt: int = 1,
    ) -> Dict[str, Any]:
        if action == "ingest":
            return {"messages": []}
        return {
            "external_message_id": f"{platform or 'rpa'}-{int(time.time() * 1000)}",
            "status": "sent",
            "channel": "in_app",
        }

    async def close(self) -> None:
        return None


def create_rpa_runner(
    runtime_mode: Optional[str] = None,
    app_env: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    **options: Any,
):
    """
    Pick the runner for this process.

    Production refuses anything but the real browser runtime.
    """
    env = os.environ if env is None else env
    mode = str(runtime_mode or env.get("LEASE_BOT_RPA_RUNTIME") or "mock").strip().lower()
    environment = str(app_env or env.get("LEASE_BOT_APP_ENV") or "development").strip().lower()

    if environment == "production" and mode != "playwright":
        raise AutomationError(
            ErrorCode.MOCK_RUNTIME_FORBIDDEN,
            "Mock RPA runtime is forbidden in production; set LEASE_BOT_RPA_RUNTIME=playwright",
        )
    if mode == "playwright":
        return PlaywrightRpaRunner(env=env, **options)
    return MockRpaRunner()
