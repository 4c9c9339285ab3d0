"""
Anti-bot pacing for browser-driven platform actions.

Consecutive actions sharing a (platform, account, action) key are spaced by
at least the platform's minimum interval plus random jitter. Pacing runs on
every attempt, retries included.
"""

import asyncio
import logging
import random as _random
import time
from collections import defaultdict
from dataclasses import dataclass, asdict
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger("pacing")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class AntiBotPolicy:
    """Pacing bounds in milliseconds."""
    min_interval_ms: int = 1200
    jitter_ms: int = 350
    max_captcha_retries: int = 1

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base: Optional["AntiBotPolicy"] = None) -> "AntiBotPolicy":
        merged = (base or cls()).to_dict()
        merged.update({k: int(v) for k, v in data.items() if k in merged and v is not None})
        return cls(**merged)


DEFAULT_ANTI_BOT_POLICY = AntiBotPolicy()

PLATFORM_ANTI_BOT_POLICIES: Dict[str, AntiBotPolicy] = {
    "spareroom": AntiBotPolicy(min_interval_ms=1400, jitter_ms=400),
    "roomies": AntiBotPolicy(min_interval_ms=1250, jitter_ms=300),
    "leasebreak": AntiBotPolicy(min_interval_ms=1100, jitter_ms=250),
    "renthop": AntiBotPolicy(min_interval_ms=1100, jitter_ms=250),
    "furnishedfinder": AntiBotPolicy(min_interval_ms=1500, jitter_ms=450),
}


def pacing_key(platform: str, account_id: str, action: str) -> str:
    return f"{platform}:{account_id}:{action}"


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


async def _asyncio_sleep_ms(delay_ms: float) -> None:
    await asyncio.sleep(delay_ms / 1000)


class PacingGovernor:
    """
    Tracks the last action timestamp per key and suspends callers until the
    key's minimum spacing has elapsed.

    The clock (`now_ms`), `sleep` (milliseconds) and `random` are injectable
    so tests can drive time deterministically.
    """

    def __init__(
        self,
        now_ms: Callable[[], float] = _monotonic_ms,
        sleep: Sleep = _asyncio_sleep_ms,
        random: Callable[[], float] = _random.random,
    ):
        self._now_ms = now_ms
        self._sleep = sleep
        self._random = random
        self._last_action: Dict[str, float] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def last_action_at(self, key: str) -> Optional[float]:
        return self._last_action.get(key)

    async def wait_turn(self, platform: str, account_id: str, action: str, policy: AntiBotPolicy) -> float:
        """Wait for this key's turn and record the action. Returns the wait in ms."""
        key = pacing_key(platform, account_id, action)
        min_interval = max(0, policy.min_interval_ms)
        jitter_bound = max(0, policy.jitter_ms)

        async with self._locks[key]:
            prior = self._last_action.get(key)
            wait_ms = 0.0
            if prior is not None:
                jitter = round(jitter_bound * self._random()) if jitter_bound > 0 else 0
                wait_ms = max(0.0, prior + min_interval + jitter - self._now_ms())
            if wait_ms > 0:
                logger.debug("Pacing %s for %.0fms", key, wait_ms)
                await self._sleep(wait_ms)
            self._last_action[key] = self._now_ms()
            return wait_ms
