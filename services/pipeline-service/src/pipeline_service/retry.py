"""Retry policy wrapping every stage's provider call.

Each attempt first consults the stage's circuit breaker (fail fast when
open) and the provider's rate limiter (bounded wait, or fail the attempt),
then invokes the operation. Retryable failures back off exponentially with
jitter; backoff uses ``asyncio.sleep`` so other runs keep going. A stage
execution that finally fails counts once against the breaker, and may be
handed to a fallback operation.
"""

from __future__ import annotations

import asyncio
import logging
import random
import threading
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Mapping

from paperflow_inference.errors import (
    CircuitOpenError,
    ProviderError,
    RateLimitExceededError,
    is_retryable_error,
)
from paperflow_shared.rate_limit import ProviderRateLimiter
from paperflow_shared.resilience import CircuitBreakerRegistry
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from pipeline_service.models import AgentResult, AgentTask, AgentType

logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[AgentResult]]
Classifier = Callable[[BaseException], bool]

# Relative jitter applied to every backoff delay
_JITTER = 0.1
_MAX_DELAY = 30.0


@dataclass(frozen=True)
class RetrySettings:
    """Retry budget for one agent type."""

    max_retries: int
    initial_delay: float

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


DEFAULT_RETRY_SETTINGS: dict[AgentType, RetrySettings] = {
    AgentType.PAPER_PROCESSOR: RetrySettings(3, 10.0),
    AgentType.CONTENT_SUMMARIZER: RetrySettings(4, 8.0),
    AgentType.CONCEPT_EXPLAINER: RetrySettings(4, 5.0),
    AgentType.METADATA_ENHANCER: RetrySettings(4, 5.0),
    AgentType.QUALITY_CHECKER: RetrySettings(3, 6.0),
    AgentType.CITATION_FORMATTER: RetrySettings(3, 4.0),
    AgentType.PERPLEXITY_RESEARCHER: RetrySettings(5, 15.0),
    AgentType.RELATED_PAPER_DISCOVERY: RetrySettings(4, 12.0),
}
FALLBACK_RETRY_SETTINGS = RetrySettings(3, 8.0)


def backoff_delay(
    settings: RetrySettings,
    retry_index: int,
    max_delay: float = _MAX_DELAY,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay before retry ``retry_index`` (0-based): initial * 2^n, +/-10%, capped."""
    base = settings.initial_delay * (2**retry_index)
    jitter = base * _JITTER * (2 * rng() - 1)
    return min(base + jitter, max_delay)


@dataclass(frozen=True)
class RetryStatistics:
    """Cumulative retry counters for one agent type. Read-only snapshot."""

    agent_type: str
    total_attempts: int = 0
    total_retries: int = 0
    successful_operations: int = 0
    successful_retries: int = 0
    failed_operations: int = 0
    circuit_breaker_trips: int = 0
    fallback_attempts: int = 0
    fallback_successes: int = 0
    fallback_failures: int = 0

    @property
    def success_rate(self) -> float:
        total = self.successful_operations + self.failed_operations
        return self.successful_operations / total if total else 0.0

    @property
    def retry_success_rate(self) -> float:
        return self.successful_retries / self.total_retries if self.total_retries else 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "agent_type": self.agent_type,
            "total_attempts": self.total_attempts,
            "total_retries": self.total_retries,
            "successful_operations": self.successful_operations,
            "successful_retries": self.successful_retries,
            "failed_operations": self.failed_operations,
            "success_rate": round(self.success_rate, 4),
            "retry_success_rate": round(self.retry_success_rate, 4),
            "circuit_breaker_trips": self.circuit_breaker_trips,
            "fallback_attempts": self.fallback_attempts,
            "fallback_successes": self.fallback_successes,
            "fallback_failures": self.fallback_failures,
        }


class RetryPolicy:
    """Bounded retries with backoff, guarded by breakers and rate limits.

    Usage:
        policy = RetryPolicy(CircuitBreakerRegistry(), ProviderRateLimiter())
        result = await policy.execute_with_retry(
            AgentType.CONTENT_SUMMARIZER, lambda: agent.call(task), task
        )
    """

    def __init__(
        self,
        breakers: CircuitBreakerRegistry,
        rate_limiter: ProviderRateLimiter | None = None,
        *,
        settings: Mapping[AgentType, RetrySettings] | None = None,
        max_delay: float = _MAX_DELAY,
        wait_for_rate_limit: bool = True,
        rate_limit_max_wait: float = 30.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._breakers = breakers
        self._rate_limiter = rate_limiter
        self._settings = dict(DEFAULT_RETRY_SETTINGS if settings is None else settings)
        self.max_delay = max_delay
        self._wait_for_rate_limit = wait_for_rate_limit
        self._rate_limit_max_wait = rate_limit_max_wait
        self._sleep = sleep
        self._rng = rng
        self._stats: dict[str, RetryStatistics] = {}
        self._stats_lock = threading.Lock()

    @property
    def breakers(self) -> CircuitBreakerRegistry:
        return self._breakers

    def settings_for(self, agent_type: AgentType) -> RetrySettings:
        return self._settings.get(agent_type, FALLBACK_RETRY_SETTINGS)

    # ── Statistics ─────────────────────────────────────────────────

    def _count(self, name: str, **increments: int) -> None:
        with self._stats_lock:
            current = self._stats.get(name) or RetryStatistics(agent_type=name)
            self._stats[name] = replace(
                current,
                **{key: getattr(current, key) + value for key, value in increments.items()},
            )

    def get_statistics(self, agent_type: AgentType | str) -> RetryStatistics:
        """Return a snapshot of the counters for ``agent_type``."""
        name = AgentType(agent_type).value
        with self._stats_lock:
            stats = self._stats.get(name) or RetryStatistics(agent_type=name)
        return replace(stats, circuit_breaker_trips=self._breakers.trip_count(name))

    def get_all_statistics(self) -> dict[str, RetryStatistics]:
        with self._stats_lock:
            names = list(self._stats)
        return {name: self.get_statistics(name) for name in names}

    def reset_statistics(self) -> None:
        with self._stats_lock:
            self._stats.clear()

    # ── Execution ──────────────────────────────────────────────────

    async def _acquire_budget(self, provider: str) -> None:
        if self._rate_limiter is None:
            return
        if self._wait_for_rate_limit:
            granted = await self._rate_limiter.acquire(provider, self._rate_limit_max_wait)
        else:
            granted = self._rate_limiter.try_acquire(provider)
        if not granted:
            raise RateLimitExceededError(f"Rate limit budget exhausted for {provider}")

    def _wait(self, settings: RetrySettings) -> Callable[[RetryCallState], float]:
        def wait(retry_state: RetryCallState) -> float:
            return backoff_delay(
                settings, retry_state.attempt_number - 1, self.max_delay, self._rng
            )

        return wait

    @staticmethod
    def _log_retry(name: str, task_id: str) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            outcome = retry_state.outcome
            error = outcome.exception() if outcome is not None else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                "Retrying %s for task %s in %.2fs after attempt %d failed: %s",
                name,
                task_id,
                delay,
                retry_state.attempt_number,
                error,
            )

        return before_sleep

    async def execute_with_retry(
        self,
        agent_type: AgentType,
        operation: Operation,
        task: AgentTask,
        *,
        classifier: Classifier = is_retryable_error,
        fallback: Operation | None = None,
    ) -> AgentResult:
        """Run ``operation`` under the retry budget of ``agent_type``.

        Never raises for provider failures: the final outcome is always an
        AgentResult.
        """
        name = agent_type.value
        provider = agent_type.provider.value
        settings = self.settings_for(agent_type)
        result: AgentResult | None = None
        retried = False
        attempts = 0

        retrying = AsyncRetrying(
            stop=stop_after_attempt(settings.max_attempts),
            wait=self._wait(settings),
            retry=retry_if_exception(classifier),
            before_sleep=self._log_retry(name, task.task_id),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if not self._breakers.allow_request(name, owner=task.task_id):
                        raise CircuitOpenError(f"Circuit breaker open for {name}")
                    await self._acquire_budget(provider)
                    retried = attempts > 1
                    self._count(name, total_attempts=1, total_retries=int(retried))
                    try:
                        result = await operation()
                    except ProviderError as exc:
                        if exc.status_code == 429 and self._rate_limiter is not None:
                            self._rate_limiter.record_throttled(provider)
                        raise
        except CircuitOpenError as exc:
            logger.warning("Skipping %s for task %s: %s", name, task.task_id, exc)
            message = str(exc)
        except RateLimitExceededError as exc:
            # Local budget, not a provider fault: not reported to the breaker
            self._breakers.release_trial(name, owner=task.task_id)
            logger.warning("%s for task %s gave up waiting: %s", name, task.task_id, exc)
            message = f"{name} failed after {attempts} attempts: {exc}"
        except Exception as exc:
            self._breakers.record_failure(name, exc)
            if classifier(exc):
                message = f"{name} failed after {attempts} attempts: {exc}"
                logger.error("%s exhausted retries for task %s: %s", name, task.task_id, exc)
            else:
                message = f"{name} failed: {exc}"
                logger.error("%s failed permanently for task %s: %s", name, task.task_id, exc)
        else:
            if result is not None and result.success:
                self._breakers.record_success(name)
                self._count(
                    name, successful_operations=1, successful_retries=int(retried)
                )
                return result
            self._breakers.record_failure(name)
            message = (result.error_message if result else None) or f"{name} failed"

        self._count(name, failed_operations=1)
        if fallback is not None:
            return await self._run_fallback(name, fallback, task, message)
        return AgentResult.failed(task.task_id, message)

    async def _run_fallback(
        self,
        name: str,
        fallback: Operation,
        task: AgentTask,
        message: str,
    ) -> AgentResult:
        logger.info("Attempting local fallback for %s (task %s)", name, task.task_id)
        self._count(name, fallback_attempts=1)
        try:
            result = await fallback()
        except Exception as exc:
            logger.warning("Fallback for %s failed: %s", name, exc)
            self._count(name, fallback_failures=1)
            return AgentResult.failed(task.task_id, f"{message}; fallback failed: {exc}")
        if result.success:
            self._count(name, fallback_successes=1)
            return result
        self._count(name, fallback_failures=1)
        return AgentResult.failed(
            task.task_id, f"{message}; fallback failed: {result.error_message}"
        )
