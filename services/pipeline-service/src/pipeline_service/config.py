"""Configuration for the pipeline service."""

from __future__ import annotations

import os
from dataclasses import dataclass


def _int_env(name: str, default: int, minimum: int = 1) -> int:
    try:
        value = int(os.getenv(name, str(default)))
    except ValueError:
        return default
    return value if value >= minimum else default


def _float_env(name: str, default: float) -> float:
    try:
        value = float(os.getenv(name, str(default)))
    except ValueError:
        return default
    return value if value >= 0 else default


@dataclass(frozen=True)
class PipelineConfig:
    """Settings for orchestration and provider protection.

    Attributes:
        max_workers: Pipeline runs executed concurrently.
        credit_threshold: Credits a user needs to launch a full run.
        rate_limit_mode: "wait" to wait for budget, "fail" to fail the attempt.
        rate_limit_max_wait: Longest wait for rate limit budget, in seconds.
        breaker_fail_max: Consecutive failed stage executions that open a breaker.
        breaker_reset_seconds: Cooldown before an open breaker allows a trial call.
        max_backoff_seconds: Cap for the exponential retry backoff.
        fallback_enabled: Retry finally failed stages against the local model.
    """

    max_workers: int = 4
    credit_threshold: int = 30
    rate_limit_mode: str = "wait"
    rate_limit_max_wait: float = 30.0
    breaker_fail_max: int = 5
    breaker_reset_seconds: float = 180.0
    max_backoff_seconds: float = 30.0
    fallback_enabled: bool = False

    @property
    def wait_for_rate_limit(self) -> bool:
        return self.rate_limit_mode == "wait"

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Create PipelineConfig from environment variables."""
        mode = os.getenv("PIPELINE_RATE_LIMIT_MODE", cls.rate_limit_mode).strip().lower()
        if mode not in {"wait", "fail"}:
            mode = cls.rate_limit_mode
        fallback = os.getenv("PIPELINE_FALLBACK_ENABLED", "false").strip().lower()
        return cls(
            max_workers=_int_env("PIPELINE_MAX_WORKERS", cls.max_workers),
            credit_threshold=_int_env(
                "PIPELINE_CREDIT_THRESHOLD", cls.credit_threshold, minimum=0
            ),
            rate_limit_mode=mode,
            rate_limit_max_wait=_float_env(
                "PIPELINE_RATE_LIMIT_MAX_WAIT", cls.rate_limit_max_wait
            ),
            breaker_fail_max=_int_env("PIPELINE_BREAKER_FAIL_MAX", cls.breaker_fail_max),
            breaker_reset_seconds=_float_env(
                "PIPELINE_BREAKER_RESET_SECONDS", cls.breaker_reset_seconds
            ),
            max_backoff_seconds=_float_env(
                "PIPELINE_MAX_BACKOFF_SECONDS", cls.max_backoff_seconds
            ),
            fallback_enabled=fallback in {"1", "true", "yes", "on"},
        )
