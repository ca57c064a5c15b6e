"""Pipeline orchestrator: runs the stage agents in dependency order.

For every stage the orchestrator validates the upstream results the stage
requires, builds an AgentTask from the run parameters and the execution
context, runs the agent (which applies the retry policy), stores the
AgentResult under the stage's context key and broadcasts progress.

Every outcome is stored before anything is raised. A failed stage aborts the
run only when a later stage requires its result; any other failure is
recorded and the run continues with reduced context.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, NoReturn, Sequence
from uuid import UUID, uuid4

from paperflow_events import PipelineProgressUpdate, ProgressBroadcaster
from paperflow_shared.models import PaperStatus

from pipeline_service.agents.base import (
    ABSTRACT,
    CONCEPTS,
    METADATA,
    PAPER_ID,
    PROCESSING_MODE,
    REFERENCES,
    SUMMARY,
    TEXT_CONTENT,
    TITLE,
    USER_ID,
    BaseAgent,
)
from pipeline_service.collaborators import PaperRepository
from pipeline_service.context import (
    SUMMARY_KEYS,
    TITLE_KEYS,
    ExecutionContext,
    extract_content,
    extract_string,
)
from pipeline_service.errors import PipelineAbortedError, StagePreconditionError
from pipeline_service.models import AgentResult, AgentTask, AgentType, ContextKey, StageType
from pipeline_service.params import RunParameters
from pipeline_service.tracing import pipeline_span

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageSpec:
    """One pipeline stage and the upstream results it reads.

    Attributes:
        stage_type: Stage, also used as the display name.
        agent_type: Agent that runs the stage.
        result_key: Execution context key the stage's result is stored under.
        requires: Keys that must hold a successful result before the stage runs.
        optional: Keys read when available; absence or failure is tolerated.
    """

    stage_type: StageType
    agent_type: AgentType
    result_key: str
    requires: tuple[str, ...] = ()
    optional: tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return self.stage_type.value

    def reads(self, key: str) -> bool:
        return key in self.requires or key in self.optional


_EXTRACTION = ContextKey.PAPER_PROCESSOR_RESULT
_METADATA = ContextKey.METADATA_ENHANCEMENT_RESULT
_SUMMARY = ContextKey.CONTENT_SUMMARIZER_RESULT
_CONCEPTS = ContextKey.CONCEPT_EXPLAINER_RESULT

DEFAULT_STAGES: tuple[StageSpec, ...] = (
    StageSpec(StageType.TEXT_EXTRACTION, AgentType.PAPER_PROCESSOR, _EXTRACTION),
    StageSpec(
        StageType.METADATA_ENHANCEMENT,
        AgentType.METADATA_ENHANCER,
        _METADATA,
        requires=(_EXTRACTION,),
    ),
    StageSpec(
        StageType.CONTENT_ANALYSIS,
        AgentType.CONTENT_SUMMARIZER,
        _SUMMARY,
        requires=(_EXTRACTION,),
        optional=(_METADATA,),
    ),
    StageSpec(
        StageType.CONCEPT_EXTRACTION,
        AgentType.CONCEPT_EXPLAINER,
        _CONCEPTS,
        requires=(_EXTRACTION,),
        optional=(_SUMMARY,),
    ),
    StageSpec(
        StageType.QUALITY_CHECK,
        AgentType.QUALITY_CHECKER,
        ContextKey.QUALITY_CHECKER_RESULT,
        requires=(_EXTRACTION,),
        optional=(_SUMMARY, _CONCEPTS),
    ),
    StageSpec(
        StageType.CITATION_PROCESSING,
        AgentType.CITATION_FORMATTER,
        ContextKey.CITATION_FORMATTER_RESULT,
        requires=(_EXTRACTION,),
        optional=(_METADATA,),
    ),
    StageSpec(
        StageType.PERPLEXITY_RESEARCH,
        AgentType.PERPLEXITY_RESEARCHER,
        ContextKey.PERPLEXITY_RESEARCH_RESULT,
        requires=(_EXTRACTION,),
    ),
    StageSpec(
        StageType.RESEARCH_DISCOVERY,
        AgentType.RELATED_PAPER_DISCOVERY,
        ContextKey.RELATED_PAPER_DISCOVERY_RESULT,
        requires=(_EXTRACTION,),
        optional=(_SUMMARY,),
    ),
)


@dataclass(frozen=True)
class PipelineOutcome:
    """Result of a run that reached the end of the stage list.

    Optional stages may still have failed; ``failed_stages`` names them.
    """

    paper_id: UUID
    run_id: str
    context: ExecutionContext
    failed_stages: tuple[str, ...] = ()

    @property
    def stage_results(self) -> dict[str, AgentResult]:
        return self.context.results()

    def stage_statuses(self) -> dict[str, bool]:
        return {key: result.success for key, result in self.stage_results.items()}


class PipelineOrchestrator:
    """Sequential stage runner over a per-run ExecutionContext.

    Implements the ``PipelineRunner`` interface consumed by the launcher.
    """

    def __init__(
        self,
        agents: Mapping[AgentType, BaseAgent],
        broadcaster: ProgressBroadcaster | None = None,
        papers: PaperRepository | None = None,
        stages: Sequence[StageSpec] = DEFAULT_STAGES,
    ) -> None:
        self._agents = dict(agents)
        self._broadcaster = broadcaster
        self._papers = papers
        self.stages = tuple(stages)

    # ── Run ────────────────────────────────────────────────────────

    async def run(
        self,
        parameters: Mapping[str, Any],
        context: ExecutionContext | None = None,
    ) -> PipelineOutcome:
        """Run every stage for the paper named in ``parameters``.

        Raises:
            PipelineConfigurationError: If the identifiers cannot be resolved.
            PipelineAbortedError: If a stage that later stages require fails.
        """
        context = context if context is not None else ExecutionContext(str(uuid4()))
        params = RunParameters.resolve(parameters, context)
        paper_id = str(params.paper_id)
        total = len(self.stages)
        logger.info(
            "Starting pipeline run %s for paper %s (%d stages)",
            context.run_id,
            paper_id,
            total,
        )

        self._update_status(paper_id, PaperStatus.PROCESSING)
        self._emit(paper_id, PipelineProgressUpdate.initializing(paper_id, total))

        failed: list[str] = []
        with pipeline_span("paper_pipeline", paper_id=paper_id) as span:
            span.set_inputs({"paper_id": paper_id, "run_id": context.run_id})
            for index in range(total):
                result = await self.run_stage(index, context, params)
                if not result.success:
                    failed.append(self.stages[index].name)
            span.set_outputs({"failed_stages": failed})

        self._record_completion(paper_id, context)
        self._emit(paper_id, PipelineProgressUpdate.completed_run(paper_id, total))
        logger.info(
            "Pipeline run %s finished for paper %s; failed optional stages: %s",
            context.run_id,
            paper_id,
            ", ".join(failed) or "none",
        )
        return PipelineOutcome(
            paper_id=params.paper_id,
            run_id=context.run_id,
            context=context,
            failed_stages=tuple(failed),
        )

    async def run_stage(
        self, index: int, context: ExecutionContext, params: RunParameters
    ) -> AgentResult:
        """Run stage ``index`` and store its result.

        Returns the stored AgentResult, or raises PipelineAbortedError when
        the stage failed and a later stage requires it.
        """
        stage = self.stages[index]
        paper_id = str(params.paper_id)
        task_id = f"{context.run_id}:{stage.agent_type.value}"
        total = len(self.stages)

        try:
            agent = self._agent_for(stage)
            task = self.build_task(stage, context, params, task_id)
        except StagePreconditionError as exc:
            context.store_result(stage.result_key, AgentResult.failed(task_id, str(exc)))
            self._abort(index, paper_id, str(exc), context, cause=exc)

        self._emit(
            paper_id,
            PipelineProgressUpdate.for_stage(
                paper_id,
                stage.name,
                index * 100 // total,
                stages_completed=index,
                total_stages=total,
                estimated_seconds_remaining=self.estimate_remaining(index, task),
            ),
        )

        with pipeline_span(stage.name, "AGENT", paper_id) as span:
            span.set_inputs({"task_id": task_id, "agent": stage.agent_type.value})
            try:
                result = await agent.process(task)
            except Exception as exc:
                logger.exception("%s raised for paper %s", stage.name, paper_id)
                result = AgentResult.failed(task_id, f"{stage.name} failed: {exc}")
            span.set_outputs(result.to_summary())

        context.store_result(stage.result_key, result)

        if result.success:
            logger.info(
                "%s succeeded for paper %s in %.2fs",
                stage.name,
                paper_id,
                result.processing_seconds or 0.0,
            )
            self._emit(
                paper_id,
                PipelineProgressUpdate.for_stage(
                    paper_id,
                    stage.name,
                    (index + 1) * 100 // total,
                    stages_completed=index + 1,
                    total_stages=total,
                    estimated_seconds_remaining=self.estimate_remaining(index + 1, task),
                    finished=True,
                ),
            )
            return result

        message = f"{stage.name} failed: {result.error_message}"
        if self.required_later(index):
            self._abort(index, paper_id, message, context)

        logger.warning("Optional %s; continuing paper %s", message, paper_id)
        self._emit(
            paper_id,
            PipelineProgressUpdate.stage_failed(
                paper_id,
                stage.name,
                (index + 1) * 100 // total,
                result.error_message or "",
                stages_completed=index,
                total_stages=total,
            ),
        )
        return result

    # ── Tasks ──────────────────────────────────────────────────────

    def build_task(
        self,
        stage: StageSpec,
        context: ExecutionContext,
        params: RunParameters,
        task_id: str,
    ) -> AgentTask:
        """Validate upstream results and build the stage's AgentTask.

        Raises:
            StagePreconditionError: If a required result is missing or failed,
                or the extraction result carries no content.
        """
        for key in stage.requires:
            context.require_result(key, stage.name)

        values: dict[str, Any] = {
            PAPER_ID: str(params.paper_id),
            USER_ID: str(params.user_id),
            PROCESSING_MODE: params.processing_mode,
        }

        extraction = context.get_result(_EXTRACTION)
        if stage.reads(_EXTRACTION) and extraction is not None:
            values[TEXT_CONTENT] = extract_content(extraction, stage.name)
            title = extract_string(extraction, TITLE_KEYS)
            if title:
                values[TITLE] = title
            data = extraction.result_data or {}
            if data.get("abstract"):
                values[ABSTRACT] = data["abstract"]
            if data.get("references"):
                values[REFERENCES] = list(data["references"])

        if stage.reads(_SUMMARY):
            summary = extract_string(context.optional_result(_SUMMARY), SUMMARY_KEYS)
            if summary:
                values[SUMMARY] = summary

        if stage.reads(_METADATA):
            metadata = context.optional_result(_METADATA)
            if metadata is not None:
                values[METADATA] = dict(metadata.result_data.get("enhancedMetadata") or {})

        if stage.reads(_CONCEPTS):
            concepts = context.optional_result(_CONCEPTS)
            if concepts is not None:
                values[CONCEPTS] = list(concepts.result_data.get("concepts") or [])

        return AgentTask(task_id=task_id, agent_type=stage.agent_type, input=values)

    def required_later(self, index: int) -> bool:
        """True if a stage after ``index`` requires stage ``index``'s result."""
        key = self.stages[index].result_key
        return any(key in later.requires for later in self.stages[index + 1 :])

    def estimate_remaining(self, index: int, task: AgentTask | None = None) -> int:
        """Seconds estimated for stages ``index`` onwards."""
        text = (task.input or {}).get(TEXT_CONTENT) if task is not None else None
        seconds = 0.0
        for stage in self.stages[index:]:
            agent = self._agents.get(stage.agent_type)
            if agent is None:
                continue
            hint = AgentTask(
                task_id="estimate",
                agent_type=stage.agent_type,
                input={TEXT_CONTENT: text} if text else {},
            )
            seconds += agent.estimate_processing_time(hint).total_seconds()
        return int(seconds)

    # ── Helpers ────────────────────────────────────────────────────

    def _agent_for(self, stage: StageSpec) -> BaseAgent:
        agent = self._agents.get(stage.agent_type)
        if agent is None:
            raise StagePreconditionError(
                f"{stage.name}: no agent registered for {stage.agent_type.value}"
            )
        return agent

    def _abort(
        self,
        index: int,
        paper_id: str,
        message: str,
        context: ExecutionContext,
        cause: BaseException | None = None,
    ) -> NoReturn:
        stage = self.stages[index]
        logger.error("Aborting run %s for paper %s: %s", context.run_id, paper_id, message)
        self._emit(
            paper_id,
            PipelineProgressUpdate.failed_run(
                paper_id,
                stage.name,
                index * 100 // len(self.stages),
                message,
                stages_completed=index,
                total_stages=len(self.stages),
            ),
        )
        raise PipelineAbortedError(message, stage=stage.name, context=context) from cause

    def _emit(self, paper_id: str, update: PipelineProgressUpdate) -> None:
        if self._broadcaster is not None:
            self._broadcaster.broadcast(paper_id, update)

    def _update_status(self, paper_id: str, status: PaperStatus) -> None:
        if self._papers is None:
            return
        try:
            self._papers.update_status(paper_id, None, status)
        except Exception:
            logger.warning("Failed to set paper %s to %s", paper_id, status.value, exc_info=True)

    def _record_completion(self, paper_id: str, context: ExecutionContext) -> None:
        if self._papers is None:
            return
        summary = {
            "run_id": context.run_id,
            "stages": {key: r.to_summary() for key, r in context.results().items()},
        }
        try:
            self._papers.update_metadata(paper_id, {"pipeline": summary})
            self._papers.update_status(paper_id, None, PaperStatus.PROCESSED)
        except Exception:
            logger.warning("Failed to record completion for paper %s", paper_id, exc_info=True)
