"""Process-wide wiring of the pipeline, built once on first use.

Breakers, rate limiter and broadcaster are shared by every run in the
process; each run gets its own ExecutionContext.
"""

from __future__ import annotations

import logging

from paperflow_events import ProgressBroadcaster
from paperflow_inference.config import ProviderConfig
from paperflow_inference.factory import build_gateway_registry
from paperflow_shared.lazy_cache import lazy_singleton
from paperflow_shared.rate_limit import ProviderRateLimiter
from paperflow_shared.resilience import CircuitBreakerRegistry
from paperflow_shared.storage import get_engine

from pipeline_service.agents import AGENT_CLASSES
from pipeline_service.collaborators import SqlCreditService, SqlPaperRepository
from pipeline_service.config import PipelineConfig
from pipeline_service.launcher import PipelineLauncher
from pipeline_service.orchestrator import PipelineOrchestrator
from pipeline_service.retry import RetryPolicy

logger = logging.getLogger(__name__)


@lazy_singleton
def get_broadcaster() -> ProgressBroadcaster:
    return ProgressBroadcaster()


@lazy_singleton
def get_retry_policy() -> RetryPolicy:
    config = PipelineConfig.from_env()
    return RetryPolicy(
        CircuitBreakerRegistry(
            fail_max=config.breaker_fail_max,
            reset_timeout=config.breaker_reset_seconds,
        ),
        ProviderRateLimiter(),
        max_delay=config.max_backoff_seconds,
        wait_for_rate_limit=config.wait_for_rate_limit,
        rate_limit_max_wait=config.rate_limit_max_wait,
    )


@lazy_singleton
def get_launcher() -> PipelineLauncher:
    """Build the launcher with the orchestrator injected as its runner."""
    config = PipelineConfig.from_env()
    engine = get_engine()
    papers = SqlPaperRepository(engine)
    gateways = build_gateway_registry(
        ProviderConfig.from_env(), include_fallback=config.fallback_enabled
    )
    retry_policy = get_retry_policy()
    agents = {
        cls.agent_type: cls(
            gateways,
            retry_policy,
            papers=papers,
            fallback_enabled=config.fallback_enabled,
        )
        for cls in AGENT_CLASSES
    }
    orchestrator = PipelineOrchestrator(agents, get_broadcaster(), papers)
    logger.info(
        "Pipeline runtime ready: %d agents, %d workers, rate limit mode %s",
        len(agents),
        config.max_workers,
        config.rate_limit_mode,
    )
    return PipelineLauncher(orchestrator, SqlCreditService(engine), papers, config)
