"""Per-stage circuit breakers backed by pybreaker.

One breaker per agent type, created on first use. A breaker trips after
``fail_max`` consecutive failed stage executions and stays open for
``reset_timeout`` seconds, after which a single trial call is let through
(half-open). A successful trial closes the breaker; a failed one reopens it.

Outcomes are reported explicitly through ``record_success`` and
``record_failure`` instead of wrapping coroutines, because pybreaker cannot
observe the result of an awaited provider call that is retried in between.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from enum import Enum
from typing import Callable

from pybreaker import (
    STATE_CLOSED,
    STATE_HALF_OPEN,
    STATE_OPEN,
    CircuitBreaker,
    CircuitBreakerError,
    CircuitBreakerListener,
)

logger = logging.getLogger(__name__)

# Cooldown before an open breaker lets a trial through
_RECOVERY_TIMEOUT = 180
# Consecutive failed stage executions before tripping
_FAIL_MAX = 5


class CircuitBreakerStatus(str, Enum):
    """Externally visible breaker state."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


_STATUS_BY_STATE = {
    STATE_CLOSED: CircuitBreakerStatus.CLOSED,
    STATE_OPEN: CircuitBreakerStatus.OPEN,
    STATE_HALF_OPEN: CircuitBreakerStatus.HALF_OPEN,
}


class _ReportedFailure(Exception):
    """Raised inside the breaker to register a failure that already happened."""


def _succeed() -> None:
    return None


def _fail(error: BaseException | None) -> None:
    raise _ReportedFailure(str(error) if error else "stage failed")


class _StateChangeListener(CircuitBreakerListener):
    """Log breaker transitions and feed open timestamps back to the registry."""

    def __init__(self, registry: CircuitBreakerRegistry) -> None:
        self._registry = registry

    def state_change(self, cb, old_state, new_state):  # type: ignore[override]
        old_name = old_state.name if old_state is not None else None
        logger.warning(
            "Circuit breaker %s: %s -> %s (fail_counter=%d)",
            cb.name,
            old_name,
            new_state.name,
            cb.fail_counter,
        )
        self._registry._on_state_change(cb.name, new_state.name)
        _trace_state_change(cb, old_name, new_state.name)


def _trace_state_change(cb: CircuitBreaker, old: str | None, new: str) -> None:
    """Record the transition as an MLflow span when tracing is configured."""
    if not os.getenv("MLFLOW_TRACKING_URI"):
        return
    try:
        import mlflow

        with mlflow.start_span(
            name=f"circuit_breaker_{cb.name}",
            span_type="TOOL",
        ) as span:
            span.set_inputs({
                "stage": cb.name,
                "old_state": str(old),
                "new_state": new,
                "fail_counter": cb.fail_counter,
            })
    except Exception:
        logger.debug("MLflow circuit breaker logging failed", exc_info=True)


class CircuitBreakerRegistry:
    """Thread-safe set of circuit breakers keyed by stage type.

    ``get_status`` never mutates. The only mutation paths are the attempt
    gate (``allow_request``, which moves a cooled-down breaker to half-open)
    and the outcome reports.
    """

    def __init__(
        self,
        fail_max: int = _FAIL_MAX,
        reset_timeout: float = _RECOVERY_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.fail_max = fail_max
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._opened_at: dict[str, float] = {}
        self._trips: dict[str, int] = {}
        # name -> (owner, started_at) of the half-open trial call in flight
        self._trials: dict[str, tuple[object, float]] = {}
        self._lock = threading.Lock()
        self._listener = _StateChangeListener(self)

    def _breaker(self, name: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    fail_max=self.fail_max,
                    reset_timeout=self.reset_timeout,
                    name=name,
                    listeners=[self._listener],
                )
                self._breakers[name] = breaker
            return breaker

    def _on_state_change(self, name: str, new_state: str) -> None:
        if new_state == STATE_OPEN:
            self._opened_at[name] = self._clock()
            self._trips[name] = self._trips.get(name, 0) + 1

    def _cooled_down(self, name: str) -> bool:
        opened_at = self._opened_at.get(name)
        if opened_at is None:
            return True
        return self._clock() - opened_at >= self.reset_timeout

    def get_status(self, name: str) -> CircuitBreakerStatus:
        """Return the current status of the breaker for ``name``."""
        breaker = self._breakers.get(name)
        if breaker is None:
            return CircuitBreakerStatus.CLOSED
        status = _STATUS_BY_STATE[breaker.current_state]
        if status is CircuitBreakerStatus.OPEN and self._cooled_down(name):
            return CircuitBreakerStatus.HALF_OPEN
        return status

    def allow_request(self, name: str, owner: object = None) -> bool:
        """Return False while the breaker is open and still cooling down.

        Once cooled down, exactly one caller becomes the half-open trial call;
        everyone else is refused until that trial's outcome is recorded.
        Repeated calls with the trial's ``owner`` (e.g. retry attempts of the
        same task) keep being allowed. A trial that reports nothing for
        ``reset_timeout`` seconds is considered abandoned.
        """
        breaker = self._breaker(name)
        with self._lock:
            state = breaker.current_state
            if state == STATE_CLOSED:
                return True
            if state == STATE_OPEN:
                if not self._cooled_down(name):
                    return False
                breaker.half_open()
                return self._claim_trial(name, owner)
            trial = self._trials.get(name)
            if trial is None:
                return self._claim_trial(name, owner)
            trial_owner, started_at = trial
            if owner is not None and trial_owner == owner:
                return True
            if self._clock() - started_at >= self.reset_timeout:
                logger.warning("Half-open trial call for %s abandoned; allowing a new one", name)
                return self._claim_trial(name, owner)
            return False

    def _claim_trial(self, name: str, owner: object) -> bool:
        self._trials[name] = (owner, self._clock())
        return True

    def release_trial(self, name: str, owner: object = None) -> None:
        """Give up a half-open trial call without reporting an outcome.

        With ``owner`` set, only that owner's trial is released.
        """
        with self._lock:
            trial = self._trials.get(name)
            if trial is not None and (owner is None or trial[0] == owner):
                del self._trials[name]

    def record_success(self, name: str) -> None:
        """Reset the failure counter, closing a half-open breaker."""
        try:
            self._breaker(name).call(_succeed)
        except CircuitBreakerError:
            logger.debug("Success for %s ignored: breaker is open", name)
        finally:
            self.release_trial(name)

    def record_failure(self, name: str, error: BaseException | None = None) -> None:
        """Count one failed stage execution against the breaker."""
        try:
            self._breaker(name).call(_fail, error)
        except (_ReportedFailure, CircuitBreakerError):
            # The outcome is recorded by the breaker either way
            logger.debug("Recorded failure for %s: %s", name, error)
        finally:
            self.release_trial(name)

    def failure_count(self, name: str) -> int:
        """Return the consecutive failure count for ``name``."""
        breaker = self._breakers.get(name)
        return breaker.fail_counter if breaker is not None else 0

    def trip_count(self, name: str) -> int:
        """Return how many times the breaker for ``name`` has opened."""
        return self._trips.get(name, 0)

    def snapshot(self) -> dict[str, CircuitBreakerStatus]:
        """Return the status of every breaker created so far."""
        with self._lock:
            names = list(self._breakers)
        return {name: self.get_status(name) for name in names}
