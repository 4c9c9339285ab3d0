#!/usr/bin/env python3
"""
Connector Registry - Resilient Platform Access
==============================================

One connector per supported platform. Every ingest/send runs:

    circuit breaker -> retry loop -> (pacing -> session -> RPA runner)

- Credentials resolved from env:/secret: references on every call, never cached
- Session-expired and captcha/challenge failures request a session refresh
- Captcha retries are capped by the platform's anti-bot policy
- Reliability events (retry scheduled, circuit transitions, ingest latency)
  go to the logger and an optional hook

Usage:
    from execution.connector_registry import ConnectorRegistry

    registry = ConnectorRegistry(on_event=record_reliability_event)
    messages = await registry.ingest_messages_for_account(account)
    receipt = await registry.send_message_for_account(account, {"external_thread_id": "t1", "body": "Hi"})
"""

import logging
import os
import random as _random
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from config.platform_adapters import REQUIRED_RPA_PLATFORMS
from core.circuit_breaker import CircuitBreakerPolicy, CircuitBreakerRegistry
from core.config import ReliabilityPolicy
from core.credentials import resolve_credentials
from core.errors import is_retryable_error, unsupported_platform
from core.pacing import AntiBotPolicy, PacingGovernor
from core.retry import RetryPolicy, with_retry
from execution.rpa_runner import create_rpa_runner
from execution.session_manager import EnvSessionManager

logger = logging.getLogger("connector_registry")

EventHook = Callable[[Dict[str, Any]], None]
Sleep = Callable[[float], Awaitable[None]]

DEFAULT_INGEST_P95_TARGET_MS = 60_000

SESSION_EXPIRED_CODES = ("SESSION_EXPIRED", "AUTH_REFRESH_REQUIRED")
SESSION_EXPIRED_STATUSES = (401, 419)
SESSION_EXPIRED_MARKERS = ("session expired", "not authenticated")
CAPTCHA_CODES = ("CAPTCHA_REQUIRED", "BOT_CHALLENGE", "ACCESS_BLOCKED")
CAPTCHA_MARKERS = ("captcha", "challenge page", "cloudflare")


def normalize_p95_target_ms(value: Any) -> int:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return DEFAULT_INGEST_P95_TARGET_MS
    if parsed <= 0 or parsed != parsed:
        return DEFAULT_INGEST_P95_TARGET_MS
    return int(round(parsed))


def is_session_expired_error(error: BaseException) -> bool:
    message = str(error).lower()
    status = getattr(error, "status", None) or getattr(error, "status_code", None)
    return (
        getattr(error, "code", None) in SESSION_EXPIRED_CODES
        or status in SESSION_EXPIRED_STATUSES
        or any(marker in message for marker in SESSION_EXPIRED_MARKERS)
    )


def is_captcha_error(error: BaseException) -> bool:
    message = str(error).lower()
    return getattr(error, "code", None) in CAPTCHA_CODES or any(marker in message for marker in CAPTCHA_MARKERS)


def normalize_inbound_message(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Fill the fields downstream ingestion relies on."""
    message_id = raw.get("external_message_id") or raw.get("message_id")
    if not message_id:
        message_id = f"msg_{int(time.time() * 1000)}_{secrets.token_hex(3)}"
    return {
        "external_thread_id": raw.get("external_thread_id") or raw.get("thread_id") or "",
        "external_message_id": message_id,
        "body": raw.get("body") or "",
        "lead_name": raw.get("lead_name"),
        "lead_contact": raw.get("lead_contact") or {},
        "channel": raw.get("channel") or "in_app",
        "sent_at": raw.get("sent_at") or datetime.now(timezone.utc).isoformat(),
        "metadata": raw.get("metadata") or {},
    }


def account_key(account: Dict[str, Any]) -> str:
    return str(account.get("id") or account.get("account_external_id") or "unknown")


class RpaConnector:
    """Ingest/send for one platform behind pacing, breaker and retry."""

    mode = "rpa"

    def __init__(
        self,
        platform: str,
        runner,
        session_manager,
        pacing: PacingGovernor,
        breakers: CircuitBreakerRegistry,
        anti_bot: AntiBotPolicy,
        circuit_breaker: CircuitBreakerPolicy,
        retry: RetryPolicy,
        ingest_p95_target_ms: int,
        emit: EventHook,
        now_ms: Callable[[], float],
        sleep: Optional[Sleep] = None,
        random: Callable[[], float] = _random.random,
    ):
        self.platform = platform
        self.runner = runner
        self.session_manager = session_manager
        self.pacing = pacing
        self.breakers = breakers
        self.anti_bot = anti_bot
        self.circuit_breaker = circuit_breaker
        self.retry = retry
        self.ingest_p95_target_ms = normalize_p95_target_ms(ingest_p95_target_ms)
        self._emit = emit
        self._now_ms = now_ms
        self._sleep = sleep
        self._random = random

    async def _attempt(self, account: Dict[str, Any], action: str, payload: Optional[Dict[str, Any]], attempt: int):
        account_id = account_key(account)
        await self.pacing.wait_turn(self.platform, account_id, action, self.anti_bot)
        session = await self.session_manager.get(self.platform, account, action=action, attempt=attempt)

        try:
            return await self.runner.run(
                platform=self.platform,
                action=action,
                account=account,
                payload=payload,
                session=session,
                attempt=attempt,
            )
        except Exception as e:
            if is_session_expired_error(e) or is_captcha_error(e):
                reason = "captcha_or_bot_challenge" if is_captcha_error(e) else "session_expired"
                self._emit({
                    "type": "rpa_session_refresh_requested",
                    "platform": self.platform,
                    "account_id": account_id,
                    "action": action,
                    "attempt": attempt,
                    "reason": reason,
                    "error": str(e),
                })
                await self.session_manager.refresh(self.platform, account, action=action, reason=reason, error=e)
            raise

    async def run_with_resilience(
        self,
        account: Dict[str, Any],
        action: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        account_id = account_key(account)
        max_captcha_retries = max(0, self.anti_bot.max_captcha_retries)
        captcha_retries = 0

        def should_retry(error: BaseException, attempt: int) -> bool:
            nonlocal captcha_retries
            if is_session_expired_error(error):
                return True
            if is_captcha_error(error):
                if captcha_retries >= max_captcha_retries:
                    return False
                captcha_retries += 1
                return True
            return is_retryable_error(error)

        def on_retry(attempt: int, delay_ms: float, error: BaseException) -> None:
            if is_captcha_error(error):
                reason = "captcha_or_challenge"
            elif is_session_expired_error(error):
                reason = "session_refresh"
            else:
                reason = "transient_failure"
            self._emit({
                "type": "rpa_retry_scheduled",
                "platform": self.platform,
                "account_id": account_id,
                "action": action,
                "attempt": attempt,
                "delay_ms": delay_ms,
                "reason": reason,
                "error": str(error),
            })
            logger.warning(
                "Anti-bot retry %s for %s/%s %s in %.0fms (%s): %s",
                attempt, self.platform, account_id, action, delay_ms, reason, error,
            )

        retry_kwargs: Dict[str, Any] = {"should_retry": should_retry, "on_retry": on_retry, "random": self._random}
        if self._sleep is not None:
            retry_kwargs["sleep"] = self._sleep

        async def _guarded():
            return await with_retry(
                lambda attempt: self._attempt(account, action, payload, attempt),
                self.retry,
                **retry_kwargs,
            )

        return await self.breakers.call(self.platform, account_id, action, self.circuit_breaker, _guarded)

    async def ingest(self, account: Dict[str, Any]) -> List[Dict[str, Any]]:
        started = self._now_ms()
        result = await self.run_with_resilience(account, "ingest")
        duration_ms = max(0, self._now_ms() - started)
        target_exceeded = duration_ms > self.ingest_p95_target_ms

        measurement = {
            "platform": self.platform,
            "account_id": account_key(account),
            "action": "ingest",
            "duration_ms": duration_ms,
            "p95_target_ms": self.ingest_p95_target_ms,
        }
        self._emit({"type": "rpa_ingest_latency_measured", **measurement, "target_exceeded": target_exceeded})
        if target_exceeded:
            self._emit({"type": "rpa_ingest_latency_target_exceeded", **measurement})

        messages = (result or {}).get("messages") or []
        return [normalize_inbound_message(message) for message in messages]

    async def send(self, account: Dict[str, Any], outbound: Dict[str, Any]) -> Dict[str, Any]:
        result = await self.run_with_resilience(account, "send", {
            "external_thread_id": outbound.get("external_thread_id"),
            "body": outbound.get("body"),
        })
        result = result or {}
        return {
            "external_message_id": result.get("external_message_id"),
            "channel": result.get("channel") or "in_app",
            "provider_status": result.get("status") or "sent",
        }


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class ConnectorRegistry:
    """
    Connectors for every supported platform.

    Breaker and pacing state live on this instance; two registries in one
    process never share it.
    """

    def __init__(
        self,
        env: Optional[Mapping[str, str]] = None,
        runner=None,
        session_manager=None,
        reliability: Optional[ReliabilityPolicy] = None,
        ingest_p95_target_ms: Optional[int] = None,
        on_event: Optional[EventHook] = None,
        now_ms: Callable[[], float] = _monotonic_ms,
        sleep: Optional[Sleep] = None,
        random: Callable[[], float] = _random.random,
    ):
        self.env = os.environ if env is None else env
        self.on_event = on_event
        self.reliability = reliability or ReliabilityPolicy()
        self.runner = runner or create_rpa_runner(env=self.env)
        self.session_manager = session_manager or EnvSessionManager()
        target = normalize_p95_target_ms(
            ingest_p95_target_ms if ingest_p95_target_ms is not None
            else self.env.get("LEASE_BOT_INGEST_P95_TARGET_MS")
        )

        pacing_kwargs: Dict[str, Any] = {"now_ms": now_ms, "random": random}
        if sleep is not None:
            pacing_kwargs["sleep"] = sleep
        self.pacing = PacingGovernor(**pacing_kwargs)
        self.breakers = CircuitBreakerRegistry(now_ms=now_ms, on_event=self.emit)

        self.connectors: Dict[str, RpaConnector] = {}
        for platform in REQUIRED_RPA_PLATFORMS:
            self.connectors[platform] = RpaConnector(
                platform=platform,
                runner=self.runner,
                session_manager=self.session_manager,
                pacing=self.pacing,
                breakers=self.breakers,
                anti_bot=self.reliability.anti_bot_for(platform),
                circuit_breaker=self.reliability.circuit_breaker_for(platform),
                retry=self.reliability.retry_for(platform),
                ingest_p95_target_ms=target,
                emit=self.emit,
                now_ms=now_ms,
                sleep=sleep,
                random=random,
            )

    @property
    def supported_platforms(self) -> List[str]:
        return list(REQUIRED_RPA_PLATFORMS)

    def emit(self, event: Dict[str, Any]) -> None:
        logger.info("RPA reliability event %s: %s", event.get("type"), event)
        if self.on_event is None:
            return
        try:
            self.on_event(event)
        except Exception as e:
            logger.warning("Reliability hook failed for %s: %s", event.get("platform"), e)

    def get_connector(self, platform: str) -> RpaConnector:
        connector = self.connectors.get(platform)
        if connector is None:
            raise unsupported_platform(platform)
        return connector

    def normalize_account(self, account: Dict[str, Any]) -> Dict[str, Any]:
        """Copy of the account with credentials resolved for this call only."""
        return {
            **account,
            "credentials": resolve_credentials(account.get("platform"), account.get("credentials") or {}, self.env),
        }

    async def ingest_messages_for_account(self, account: Dict[str, Any]) -> List[Dict[str, Any]]:
        connector = self.get_connector(account.get("platform"))
        return await connector.ingest(self.normalize_account(account))

    async def send_message_for_account(self, account: Dict[str, Any], outbound: Dict[str, Any]) -> Dict[str, Any]:
        connector = self.get_connector(account.get("platform"))
        return await connector.send(self.normalize_account(account), outbound)

    def get_status(self) -> Dict[str, Dict[str, Any]]:
        return self.breakers.get_status()

    async def close(self) -> None:
        close = getattr(self.runner, "close", None)
        if close is not None:
            await close()
