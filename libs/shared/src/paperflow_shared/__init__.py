"""Shared models, persistence helpers, and provider resilience primitives."""

from paperflow_shared.models import CreditBalance, Paper, PaperStatus
from paperflow_shared.rate_limit import ProviderRateLimiter
from paperflow_shared.resilience import CircuitBreakerRegistry, CircuitBreakerStatus

__all__ = [
    "CircuitBreakerRegistry",
    "CircuitBreakerStatus",
    "CreditBalance",
    "Paper",
    "PaperStatus",
    "ProviderRateLimiter",
]
