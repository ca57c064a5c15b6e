"""Run trigger: admission checks and bounded background execution.

``launch`` validates the run parameters, checks that the pipeline engine is
available and that the user has enough credits, then submits the run to a
bounded ThreadPoolExecutor. Each worker thread drives its run with
``asyncio.run()``, so there is no event loop to share with other runs and
backoff sleeps inside one run never block another.

The runner is injected as a ``PipelineRunner``; the launcher knows nothing
about stages.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Protocol
from uuid import uuid4

from paperflow_shared.models import PaperStatus

from pipeline_service.collaborators import CreditService, PaperRepository
from pipeline_service.config import PipelineConfig
from pipeline_service.context import ExecutionContext
from pipeline_service.errors import PipelineConfigurationError, PipelineError
from pipeline_service.params import RunParameters

logger = logging.getLogger(__name__)


class PipelineRunner(Protocol):
    """Executes one pipeline run for already validated parameters."""

    async def run(
        self,
        parameters: Mapping[str, Any],
        context: ExecutionContext | None = None,
    ) -> Any: ...


class LoadLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


def classify_load(active: int, maximum: int) -> LoadLevel:
    """Band occupancy: below 50% LOW, below 80% MEDIUM, otherwise HIGH."""
    if maximum <= 0:
        return LoadLevel.HIGH
    ratio = active / maximum
    if ratio < 0.5:
        return LoadLevel.LOW
    if ratio < 0.8:
        return LoadLevel.MEDIUM
    return LoadLevel.HIGH


@dataclass(frozen=True)
class LoadStatus:
    active: int
    maximum: int
    level: LoadLevel


@dataclass(frozen=True)
class LaunchResult:
    """Outcome of a launch request.

    Attributes:
        accepted: True if the run was submitted.
        run_id: Identifier of the submitted run.
        reason: Why the run was rejected.
        error: The configuration error behind a rejection, if any.
        future: Completes with the runner's outcome, or its exception.
    """

    accepted: bool
    run_id: str | None = None
    reason: str | None = None
    error: Exception | None = None
    future: Future | None = None

    @classmethod
    def rejected(cls, reason: str, error: Exception | None = None) -> "LaunchResult":
        return cls(accepted=False, reason=reason, error=error)


def _categorize_pipeline_error(e: Exception) -> str:
    """Convert a worker exception into a reason shown to the user."""
    if isinstance(e, PipelineConfigurationError):
        return "Invalid pipeline parameters"

    error_str = str(e).lower()
    if "circuit" in error_str:
        return "AI service temporarily unavailable"
    if "rate limit" in error_str:
        return "AI provider rate limit reached"
    if "timeout" in error_str or "timed out" in error_str:
        return "Processing timed out"
    if "401" in error_str or "403" in error_str or "auth" in error_str or "api key" in error_str:
        return "AI provider authentication failed"
    if "no content available" in error_str:
        return "No text content available for analysis"
    if isinstance(e, PipelineError):
        return str(e)
    return f"Pipeline failed: {type(e).__name__}"


class PipelineLauncher:
    """Admits pipeline runs and executes them on a bounded worker pool."""

    def __init__(
        self,
        runner: PipelineRunner | None,
        credits: CreditService,
        papers: PaperRepository | None = None,
        config: PipelineConfig | None = None,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self._runner = runner
        self._credits = credits
        self._papers = papers
        self.config = config or PipelineConfig()
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self.config.max_workers,
            thread_name_prefix="pipeline",
        )
        self._active = 0
        self._lock = threading.Lock()
        self._closed = False

    @property
    def active_runs(self) -> int:
        return self._active

    def is_available(self) -> bool:
        return self._runner is not None and not self._closed

    def launch(self, document_id: Any, user_id: Any) -> LaunchResult:
        """Validate and submit a full pipeline run for ``document_id``."""
        return self.launch_with({"paperId": document_id, "userId": user_id})

    def launch_with(self, parameters: Mapping[str, Any]) -> LaunchResult:
        """Like ``launch``, taking raw run parameters under any accepted key."""
        try:
            params = RunParameters.resolve(parameters)
        except PipelineConfigurationError as exc:
            logger.warning("Rejected pipeline launch: %s", exc)
            return LaunchResult.rejected(str(exc), exc)

        if not self.is_available():
            logger.warning("Rejected launch for paper %s: engine unavailable", params.paper_id)
            return LaunchResult.rejected("Pipeline engine unavailable")

        threshold = self.config.credit_threshold
        try:
            enough = self._credits.has_enough_credits(params.user_id, threshold)
        except Exception:
            logger.exception("Credit check failed for user %s", params.user_id)
            return LaunchResult.rejected("Credit check unavailable")
        if not enough:
            logger.info(
                "Rejected launch for paper %s: user %s has fewer than %d credits",
                params.paper_id,
                params.user_id,
                threshold,
            )
            return LaunchResult.rejected(
                f"Insufficient credits: {threshold} required for full analysis"
            )

        run_id = str(uuid4())
        with self._lock:
            self._active += 1
        try:
            future = self._executor.submit(self._run_sync, params, run_id)
        except RuntimeError as exc:
            with self._lock:
                self._active -= 1
            logger.error("Could not submit run for paper %s: %s", params.paper_id, exc)
            return LaunchResult.rejected("Pipeline engine unavailable", exc)

        logger.info("Launched run %s for paper %s", run_id, params.paper_id)
        return LaunchResult(accepted=True, run_id=run_id, future=future)

    def _run_sync(self, params: RunParameters, run_id: str) -> Any:
        paper_id = str(params.paper_id)
        try:
            if self._runner is None:
                raise PipelineError("Pipeline engine unavailable")
            return asyncio.run(
                self._runner.run(params.as_mapping(), ExecutionContext(run_id))
            )
        except Exception as e:
            logger.exception("Pipeline run %s failed for paper %s", run_id, paper_id)
            self._mark_failed(paper_id, _categorize_pipeline_error(e), e)
            raise
        finally:
            with self._lock:
                self._active -= 1

    def _mark_failed(self, paper_id: str, reason: str, error: Exception) -> None:
        if self._papers is None:
            return
        try:
            self._papers.update_status(paper_id, None, PaperStatus.FAILED, reason)
            self._papers.update_metadata(
                paper_id,
                {
                    "error": {
                        "category": "pipeline_failed",
                        "reason": reason,
                        "stage": getattr(error, "stage", None),
                        "exception_type": type(error).__name__,
                    }
                },
            )
        except Exception:
            logger.exception("Failed to mark paper %s as failed", paper_id)

    def load_status(self) -> LoadStatus:
        """Current occupancy of the worker pool."""
        active = self._active
        maximum = self.config.max_workers
        return LoadStatus(active=active, maximum=maximum, level=classify_load(active, maximum))

    def shutdown(self, wait: bool = True) -> None:
        self._closed = True
        self._executor.shutdown(wait=wait)
