"""Per-provider rate limiting with a short and a long token bucket.

Each provider gets a per-second bucket and a per-minute bucket; a request
needs a token from both. Buckets refill continuously based on elapsed time.
State is guarded by one lock per provider, and waiting always happens outside
the lock so concurrent pipeline runs never block each other while sleeping.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderLimits:
    """Request budget for one provider."""

    per_second: int
    per_minute: int


DEFAULT_LIMITS: Dict[str, ProviderLimits] = {
    "openai": ProviderLimits(per_second=3, per_minute=200),
    "anthropic": ProviderLimits(per_second=2, per_minute=50),
    "perplexity": ProviderLimits(per_second=10, per_minute=600),
}


class TokenBucket:
    """Continuously refilling token bucket. Not synchronized on its own."""

    def __init__(
        self,
        capacity: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.capacity = capacity
        self.window_seconds = window_seconds
        self._clock = clock
        self.tokens = float(capacity)
        self.last_update = clock()

    def refill(self) -> None:
        now = self._clock()
        elapsed = now - self.last_update
        tokens_to_add = (elapsed / self.window_seconds) * self.capacity
        self.tokens = min(self.tokens + tokens_to_add, float(self.capacity))
        self.last_update = now

    def time_until_token(self) -> float:
        """Seconds until one token is available (0 if one is available now)."""
        if self.tokens >= 1.0:
            return 0.0
        seconds_per_token = self.window_seconds / self.capacity
        return (1.0 - self.tokens) * seconds_per_token

    def drain(self) -> None:
        self.tokens = 0.0


class _ProviderState:
    """Buckets, lock and counters for one provider."""

    def __init__(self, limits: ProviderLimits, clock: Callable[[], float]) -> None:
        self.limits = limits
        self.lock = threading.Lock()
        self.second = TokenBucket(limits.per_second, 1.0, clock)
        self.minute = TokenBucket(limits.per_minute, 60.0, clock)
        self.recent: deque[float] = deque()
        self.waiting = 0
        self.total_consumed = 0
        self.total_waited = 0.0
        self.last_throttled: float | None = None


class ProviderRateLimiter:
    """Thread-safe rate limiter keyed by provider id.

    Providers without configured limits (local models, unknown ids) are not
    limited.
    """

    def __init__(
        self,
        limits: Mapping[str, ProviderLimits] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self._limits = dict(DEFAULT_LIMITS if limits is None else limits)
        self._clock = clock
        self._sleep = sleep
        self._states: dict[str, _ProviderState] = {}
        self._states_lock = threading.Lock()

    def _state(self, provider: str) -> _ProviderState | None:
        limits = self._limits.get(provider)
        if limits is None:
            return None
        with self._states_lock:
            state = self._states.get(provider)
            if state is None:
                state = _ProviderState(limits, self._clock)
                self._states[provider] = state
            return state

    def _refill(self, state: _ProviderState) -> None:
        state.second.refill()
        state.minute.refill()
        cutoff = self._clock() - 60.0
        while state.recent and state.recent[0] < cutoff:
            state.recent.popleft()

    def _take(self, state: _ProviderState) -> bool:
        # Both buckets or neither
        if state.second.tokens >= 1.0 and state.minute.tokens >= 1.0:
            state.second.tokens -= 1.0
            state.minute.tokens -= 1.0
            state.total_consumed += 1
            state.recent.append(self._clock())
            return True
        return False

    def try_acquire(self, provider: str) -> bool:
        """Consume one request from ``provider``'s budget without waiting."""
        state = self._state(provider)
        if state is None:
            return True
        with state.lock:
            self._refill(state)
            return self._take(state)

    async def acquire(self, provider: str, max_wait: float) -> bool:
        """Wait up to ``max_wait`` seconds for a request slot.

        Returns False when the budget cannot be met within ``max_wait``.
        """
        state = self._state(provider)
        if state is None:
            return True

        waited = 0.0
        with state.lock:
            state.waiting += 1
        try:
            while True:
                with state.lock:
                    self._refill(state)
                    if self._take(state):
                        state.total_waited += waited
                        return True
                    wait_time = max(
                        state.second.time_until_token(),
                        state.minute.time_until_token(),
                    )
                if waited + wait_time > max_wait:
                    logger.warning(
                        "Rate limit budget for %s exhausted (needed %.2fs, max %.2fs)",
                        provider,
                        waited + wait_time,
                        max_wait,
                    )
                    return False
                await self._sleep(wait_time)
                waited += wait_time
        finally:
            with state.lock:
                state.waiting -= 1

    def record_throttled(self, provider: str) -> None:
        """Empty ``provider``'s buckets after an upstream 429."""
        state = self._state(provider)
        if state is None:
            return
        with state.lock:
            state.second.drain()
            state.minute.drain()
            state.last_throttled = self._clock()
        logger.info("Provider %s throttled upstream, draining rate limit buckets", provider)

    def get_status(self, provider: str) -> dict[str, Any]:
        """Return available permits, queue length and load for ``provider``."""
        state = self._state(provider)
        if state is None:
            return {
                "provider": provider,
                "limited": False,
                "available_permits": None,
                "queue_length": 0,
                "requests_last_minute": 0,
                "load_percentage": 0.0,
            }
        with state.lock:
            self._refill(state)
            used = len(state.recent)
            return {
                "provider": provider,
                "limited": True,
                "available_permits": int(min(state.second.tokens, state.minute.tokens)),
                "queue_length": state.waiting,
                "requests_last_minute": used,
                "load_percentage": round(100.0 * used / state.limits.per_minute, 1),
                "total_consumed": state.total_consumed,
                "total_waited_sec": state.total_waited,
                "last_throttled": state.last_throttled,
            }

    def get_all_status(self) -> dict[str, dict[str, Any]]:
        """Return ``get_status`` for every configured provider."""
        return {provider: self.get_status(provider) for provider in self._limits}
