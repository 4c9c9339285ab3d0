"""
Circuit Breaker pattern for platform automation.
Fails fast on a (platform, account, action) key once consecutive failures
reach the threshold, then admits a single probe after the cooldown.
"""

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from core.errors import circuit_open

logger = logging.getLogger("circuit_breaker")

T = TypeVar("T")
EventHook = Callable[[Dict[str, Any]], None]


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing fast until cooldown elapses
    HALF_OPEN = "half_open"  # One probe in flight


@dataclass(frozen=True)
class CircuitBreakerPolicy:
    failure_threshold: int = 3
    cooldown_ms: int = 30_000

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base: Optional["CircuitBreakerPolicy"] = None) -> "CircuitBreakerPolicy":
        merged = (base or cls()).to_dict()
        merged.update({k: int(v) for k, v in data.items() if k in merged and v is not None})
        return cls(**merged)


DEFAULT_CIRCUIT_BREAKER_POLICY = CircuitBreakerPolicy()


@dataclass
class CircuitBreaker:
    """Breaker state for one platform:account:action key."""
    platform: str
    account_id: str
    action: str
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    opened_at_ms: float = 0
    half_open_in_flight: bool = False

    @property
    def key(self) -> str:
        return f"{self.platform}:{self.account_id}:{self.action}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "opened_at_ms": self.opened_at_ms,
            "half_open_in_flight": self.half_open_in_flight,
        }


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class CircuitBreakerRegistry:
    """
    In-memory breakers scoped to one connector registry.

    State transitions happen under a per-key asyncio.Lock. The lock is not
    held while the guarded operation runs, which is what lets a concurrent
    caller observe the half-open probe and fail fast.
    """

    def __init__(self, now_ms: Callable[[], float] = _monotonic_ms, on_event: Optional[EventHook] = None):
        self._now_ms = now_ms
        self._on_event = on_event
        self.breakers: Dict[str, CircuitBreaker] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def get(self, platform: str, account_id: str, action: str) -> CircuitBreaker:
        key = f"{platform}:{account_id}:{action}"
        breaker = self.breakers.get(key)
        if breaker is None:
            breaker = CircuitBreaker(platform=platform, account_id=account_id, action=action)
            self.breakers[key] = breaker
        return breaker

    def _emit(self, breaker: CircuitBreaker, event_type: str, **fields: Any) -> None:
        event = {
            "type": event_type,
            "platform": breaker.platform,
            "account_id": breaker.account_id,
            "action": breaker.action,
            **fields,
        }
        if self._on_event is None:
            return
        try:
            self._on_event(event)
        except Exception as e:
            logger.warning("Circuit breaker event hook failed for %s: %s", breaker.key, e)

    async def acquire(self, platform: str, account_id: str, action: str, policy: CircuitBreakerPolicy) -> CircuitBreaker:
        """
        Admit a call or raise CIRCUIT_OPEN.

        An open breaker past its cooldown becomes half-open and this caller
        becomes the probe.
        """
        breaker = self.get(platform, account_id, action)
        cooldown_ms = max(0, policy.cooldown_ms)

        async with self._locks[breaker.key]:
            now = self._now_ms()
            if breaker.state == CircuitState.OPEN:
                elapsed = now - breaker.opened_at_ms
                if elapsed < cooldown_ms:
                    retry_after_ms = max(1, int(round(cooldown_ms - elapsed)))
                    self._emit(breaker, "rpa_circuit_open_fail_fast", retry_after_ms=retry_after_ms)
                    raise circuit_open(platform, account_id, action, retry_after_ms)

                breaker.state = CircuitState.HALF_OPEN
                breaker.half_open_in_flight = True
                self._emit(breaker, "rpa_circuit_half_open_probe", cooldown_ms=cooldown_ms)
            elif breaker.state == CircuitState.HALF_OPEN:
                if breaker.half_open_in_flight:
                    retry_after_ms = max(1, cooldown_ms)
                    self._emit(breaker, "rpa_circuit_half_open_busy", retry_after_ms=retry_after_ms)
                    raise circuit_open(platform, account_id, action, retry_after_ms)
                breaker.half_open_in_flight = True

        return breaker

    def release(self, breaker: CircuitBreaker) -> None:
        """Free a half-open probe slot without counting a success or a failure."""
        if breaker.state == CircuitState.HALF_OPEN and breaker.half_open_in_flight:
            breaker.half_open_in_flight = False
            logger.info("Circuit %s probe abandoned; next call probes again", breaker.key)

    async def record_success(self, breaker: CircuitBreaker) -> None:
        async with self._locks[breaker.key]:
            previous = breaker.state
            breaker.state = CircuitState.CLOSED
            breaker.failure_count = 0
            breaker.opened_at_ms = 0
            breaker.half_open_in_flight = False
            if previous != CircuitState.CLOSED:
                logger.info("Circuit %s closed after successful probe", breaker.key)
                self._emit(breaker, "rpa_circuit_closed", previous_state=previous.value)

    async def record_failure(
        self,
        breaker: CircuitBreaker,
        policy: CircuitBreakerPolicy,
        error: Optional[BaseException] = None,
    ) -> None:
        threshold = max(1, policy.failure_threshold)
        async with self._locks[breaker.key]:
            opened = False
            if breaker.state == CircuitState.HALF_OPEN:
                breaker.state = CircuitState.OPEN
                breaker.failure_count = threshold
                breaker.opened_at_ms = self._now_ms()
                breaker.half_open_in_flight = False
                opened = True
            else:
                breaker.failure_count += 1
                if breaker.state == CircuitState.CLOSED and breaker.failure_count >= threshold:
                    breaker.state = CircuitState.OPEN
                    breaker.opened_at_ms = self._now_ms()
                    breaker.half_open_in_flight = False
                    opened = True

            if opened:
                logger.warning(
                    "Circuit %s opened (%s/%s failures)", breaker.key, breaker.failure_count, threshold
                )
                self._emit(
                    breaker,
                    "rpa_circuit_opened",
                    failure_count=breaker.failure_count,
                    failure_threshold=threshold,
                    error=str(error) if error is not None else None,
                )

    async def call(
        self,
        platform: str,
        account_id: str,
        action: str,
        policy: CircuitBreakerPolicy,
        operation: Callable[[], Awaitable[T]],
    ) -> T:
        """Run `operation` behind the breaker for this key."""
        breaker = await self.acquire(platform, account_id, action, policy)
        try:
            result = await operation()
        except Exception as e:
            await self.record_failure(breaker, policy, e)
            raise
        except BaseException:
            # Cancellation says nothing about the platform
            self.release(breaker)
            raise
        await self.record_success(breaker)
        return result

    def get_status(self) -> Dict[str, Dict[str, Any]]:
        return {key: breaker.to_dict() for key, breaker in self.breakers.items()}
