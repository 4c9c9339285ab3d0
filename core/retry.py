"""
Retry handling for platform automation.
Implements exponential backoff with jitter behind an explicit policy object,
with injectable sleep and randomness so timing is testable without delays.
"""

import asyncio
import logging
import random as _random
from dataclasses import dataclass, asdict
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from core.errors import is_retryable_error

logger = logging.getLogger("retry")

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]
ShouldRetry = Callable[[BaseException, int], bool]
OnRetry = Callable[[int, float, BaseException], None]


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry behavior. Delays are milliseconds."""
    retries: int = 3
    base_delay_ms: int = 250
    max_delay_ms: int = 5_000
    factor: float = 2.0
    jitter: bool = True
    jitter_ratio: float = 0.2

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base: Optional["RetryPolicy"] = None) -> "RetryPolicy":
        merged = (base or cls()).to_dict()
        for key, value in data.items():
            if key in merged and value is not None:
                merged[key] = type(merged[key])(value)
        return cls(**merged)


DEFAULT_RETRY_POLICY = RetryPolicy()


def calculate_backoff_delay(
    attempt: int,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    random: Callable[[], float] = _random.random,
) -> float:
    """
    Delay in ms before retrying after `attempt` (1-based) failed.

    raw = min(max_delay, base * factor ** (attempt - 1)); jitter adds up to
    raw * jitter_ratio on top.
    """
    base = max(1, policy.base_delay_ms)
    max_delay = max(base, policy.max_delay_ms)
    factor = max(1.0, policy.factor)
    ratio = min(1.0, max(0.0, policy.jitter_ratio))

    raw = min(max_delay, base * factor ** max(0, attempt - 1))
    if not policy.jitter:
        return raw
    return round(raw + raw * ratio * random())


async def _asyncio_sleep_ms(delay_ms: float) -> None:
    await asyncio.sleep(delay_ms / 1000)


def _default_should_retry(error: BaseException, attempt: int) -> bool:
    return is_retryable_error(error)


def _annotate(error: BaseException, attempts: int, exhausted: bool) -> None:
    try:
        error.retry_attempts = attempts
        error.retry_exhausted = exhausted
    except AttributeError:
        pass


async def with_retry(
    operation: Callable[[int], Awaitable[T]],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    should_retry: ShouldRetry = _default_should_retry,
    on_retry: Optional[OnRetry] = None,
    sleep: Sleep = _asyncio_sleep_ms,
    random: Callable[[], float] = _random.random,
) -> T:
    """
    Run `operation(attempt)` up to `policy.retries + 1` times.

    The final error is re-raised with `retry_attempts` and `retry_exhausted`
    attached so callers can decide on dead-lettering.
    """
    retries = max(0, policy.retries)
    attempt = 1
    while True:
        try:
            return await operation(attempt)
        except Exception as e:
            can_retry = attempt <= retries and should_retry(e, attempt)
            if not can_retry:
                _annotate(e, attempt, exhausted=attempt > retries and is_retryable_error(e))
                raise

            delay_ms = calculate_backoff_delay(attempt, policy, random)
            logger.debug("Retry %s/%s in %.0fms: %s", attempt, retries, delay_ms, e)
            if on_retry:
                on_retry(attempt, delay_ms, e)
            await sleep(delay_ms)
            attempt += 1
