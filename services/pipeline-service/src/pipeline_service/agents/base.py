"""Base class shared by every stage agent.

An agent turns an AgentTask into an AgentResult in three steps:

1. ``prepare``: stage-specific precondition checks, returning prompt
   variables. A failed check becomes a failed AgentResult, never an
   exception, and never touches the circuit breaker.
2. ``run``: the provider call(s), executed through the RetryPolicy. With
   fallbacks enabled, a finally failed run is repeated once against the
   local model.
3. ``persist``: optional idempotent write-back after a successful result.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from datetime import timedelta
from functools import partial
from pathlib import Path
from typing import Any, ClassVar, Mapping, TypeVar

from paperflow_inference.errors import is_retryable_error
from paperflow_inference.factory import parse_json_response, render_prompts
from paperflow_inference.gateway import GatewayRegistry, Provider
from pydantic import BaseModel

from pipeline_service.collaborators import PaperRepository
from pipeline_service.errors import StagePreconditionError
from pipeline_service.models import AgentResult, AgentTask, AgentType, StageType
from pipeline_service.prompts import PROMPTS_DIR
from pipeline_service.retry import RetryPolicy

logger = logging.getLogger(__name__)
TModel = TypeVar("TModel", bound=BaseModel)

# Task input keys
PAPER_ID = "paper_id"
USER_ID = "user_id"
TEXT_CONTENT = "text_content"
TITLE = "title"
SUMMARY = "summary"
METADATA = "metadata"
CONCEPTS = "concepts"
REFERENCES = "references"
ABSTRACT = "abstract"
PROCESSING_MODE = "processing_mode"

# Longest paper text sent in a single prompt
_PROMPT_CHAR_LIMIT = 60_000


def clip(text: str, limit: int = _PROMPT_CHAR_LIMIT) -> str:
    """Truncate ``text`` to ``limit`` characters, marking the cut."""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def content_length(task: AgentTask | None) -> int | None:
    """Length of the task's text content, or None when unknown."""
    if task is None or task.input is None:
        return None
    text = task.input.get(TEXT_CONTENT)
    return len(text) if isinstance(text, str) else None


class BaseAgent(ABC):
    """Stage agent contract: can_handle, estimate, process, classify."""

    agent_type: ClassVar[AgentType]
    stage_type: ClassVar[StageType]
    prompt_name: ClassVar[str]
    supports_fallback: ClassVar[bool] = True
    default_estimate: ClassVar[timedelta] = timedelta(minutes=2)

    def __init__(
        self,
        gateways: GatewayRegistry,
        retry_policy: RetryPolicy,
        *,
        papers: PaperRepository | None = None,
        fallback_enabled: bool = False,
        prompts_dir: Path = PROMPTS_DIR,
    ) -> None:
        self._gateways = gateways
        self._retry_policy = retry_policy
        self._papers = papers
        self._fallback_enabled = fallback_enabled
        self._prompts_dir = prompts_dir

    @property
    def provider(self) -> Provider:
        return self.agent_type.provider

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.agent_type.value}, {self.provider.value})"

    # ── Contract ───────────────────────────────────────────────────

    def can_handle(self, task: AgentTask | None) -> bool:
        """False if the task is absent, unset, or meant for another agent."""
        if task is None or task.input is None:
            return False
        return task.agent_type == self.agent_type

    def estimate_processing_time(self, task: AgentTask | None) -> timedelta:
        """Scheduling hint only; never enforced as a timeout."""
        return self.default_estimate

    def is_retryable_exception(self, error: BaseException) -> bool:
        return is_retryable_error(error)

    async def process(self, task: AgentTask) -> AgentResult:
        """Validate ``task``, run the provider call under retry, persist."""
        task_id = task.task_id if task is not None else "unknown"
        if not self.can_handle(task):
            return AgentResult.failed(
                task_id, f"{self.agent_type.value} cannot handle task {task_id}"
            )

        started = time.monotonic()
        try:
            prepared = self.prepare(task)
        except StagePreconditionError as exc:
            logger.warning("%s precondition failed for %s: %s", self, task_id, exc)
            return AgentResult.failed(task_id, str(exc))

        fallback = (
            partial(self._call, task, prepared, Provider.OLLAMA)
            if self._fallback_available()
            else None
        )
        result = await self._retry_policy.execute_with_retry(
            self.agent_type,
            partial(self._call, task, prepared, self.provider),
            task,
            classifier=self.is_retryable_exception,
            fallback=fallback,
        )
        if result.success:
            self._persist_safely(task, result)
        return result.with_timing(time.monotonic() - started)

    # ── Stage hooks ────────────────────────────────────────────────

    def prepare(self, task: AgentTask) -> dict[str, Any]:
        """Check preconditions and return prompt variables.

        The default requires non-blank text content.

        Raises:
            StagePreconditionError: If the stage cannot run.
        """
        content = task.get_str(TEXT_CONTENT)
        if content is None:
            raise StagePreconditionError(
                f"{self.stage_type.value}: no content available"
            )
        return {"content": content, "title": task.get_str(TITLE)}

    @abstractmethod
    async def run(
        self, task: AgentTask, prepared: Mapping[str, Any], provider: Provider
    ) -> dict[str, Any]:
        """Call ``provider`` and return the result data. Raises on failure."""

    def persist(self, task: AgentTask, result: AgentResult) -> None:
        """Write derived fields back to the paper. Must be idempotent."""
        return None

    # ── Helpers ────────────────────────────────────────────────────

    def _fallback_available(self) -> bool:
        return (
            self._fallback_enabled
            and self.supports_fallback
            and self._gateways.has(Provider.OLLAMA)
        )

    async def _call(
        self, task: AgentTask, prepared: Mapping[str, Any], provider: Provider
    ) -> AgentResult:
        data = await self.run(task, prepared, provider)
        data.setdefault("agentId", self.agent_type.value)
        data.setdefault("provider", provider.value)
        if provider is not self.provider:
            data["fallbackUsed"] = True
        return AgentResult.succeeded(task.task_id, data)

    def _persist_safely(self, task: AgentTask, result: AgentResult) -> None:
        try:
            self.persist(task, result)
        except Exception:
            logger.warning(
                "%s could not persist result of task %s", self, task.task_id, exc_info=True
            )

    async def complete(
        self,
        provider: Provider,
        prompt_vars: Mapping[str, Any],
        *,
        prompt_name: str | None = None,
    ) -> str:
        """Render this stage's prompts and return the provider's reply text."""
        name = prompt_name or self.prompt_name
        system, user = render_prompts(
            prompts_dir=self._prompts_dir,
            system_template=f"{name}_system.j2",
            user_template=f"{name}_user.j2",
            prompt_vars=prompt_vars,
        )
        return await self._gateways.invoke(provider, user, system=system)

    async def complete_json(
        self,
        provider: Provider,
        prompt_vars: Mapping[str, Any],
        schema: type[TModel],
    ) -> TModel:
        """Like ``complete``, parsing the reply into ``schema``."""
        text = await self.complete(provider, prompt_vars)
        return parse_json_response(text, schema, provider.value)
