"""Tests for PipelineOrchestrator: sequencing, context writes, aborts, progress."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from paperflow_events import ProgressEventKind
from paperflow_inference.errors import ProviderError, ProviderTimeoutError
from paperflow_shared.models import PaperStatus

from pipeline_service.context import ExecutionContext
from pipeline_service.errors import (
    InvalidIdentifierError,
    PipelineAbortedError,
)
from pipeline_service.models import AgentResult, AgentType, ContextKey
from pipeline_service.orchestrator import (
    DEFAULT_STAGES,
    PipelineOrchestrator,
    StageSpec,
)
from pipeline_service.params import RunParameters


def _params(paper_id: str, user_id: str) -> dict:
    return {"paperId": paper_id, "userId": user_id}


@pytest.fixture()
def updates(broadcaster, paper_id: str) -> list:
    """Progress updates delivered for ``paper_id``."""
    received: list = []
    broadcaster.subscribe(paper_id, "test", received.append)
    return received


# ── Full runs ───────────────────────────────────────────────────────


class TestFullRun:
    """A run where every provider answers."""

    async def test_every_stage_succeeds(
        self, orchestrator: PipelineOrchestrator, paper_id, user_id, papers
    ) -> None:
        outcome = await orchestrator.run(_params(paper_id, user_id))

        assert outcome.failed_stages == ()
        statuses = outcome.stage_statuses()
        assert list(statuses) == [stage.result_key for stage in DEFAULT_STAGES]
        assert all(statuses.values())

        paper = papers.get_by_id(paper_id)
        assert paper.status == PaperStatus.PROCESSED.value
        pipeline = paper.metadata_["pipeline"]
        assert pipeline["run_id"] == outcome.run_id
        assert pipeline["stages"][ContextKey.QUALITY_CHECKER_RESULT]["success"] is True

    async def test_stages_run_in_order(self, orchestrator, gateways, paper_id, user_id) -> None:
        await orchestrator.run(_params(paper_id, user_id))
        order = []
        for stage, *_ in gateways.calls:
            if not order or order[-1] != stage:
                order.append(stage)
        assert order == [
            "paper_processor",
            "metadata_enhancer",
            "content_summarizer",
            "concept_explainer",
            "quality_checker",
            "citation_formatter",
            "perplexity_researcher",
            "related_paper_discovery",
        ]

    async def test_downstream_stages_see_upstream_results(
        self, orchestrator, gateways, paper_id, user_id
    ) -> None:
        gateways.script("content_summarizer", "A faithful summary.")
        await orchestrator.run(_params(paper_id, user_id))

        quality_prompt = gateways.calls_for("quality_checker")[0][2]
        assert "A faithful summary." in quality_prompt
        assert "self-attention" in quality_prompt
        citation_prompt = gateways.calls_for("citation_formatter")[0][2]
        assert "Bahdanau et al. 2014. Neural machine translation." in citation_prompt
        assert "2017" in citation_prompt

    async def test_legacy_parameter_keys(self, orchestrator, paper_id, user_id) -> None:
        outcome = await orchestrator.run({"paperGuid": f" {paper_id} ", "user_id": user_id})
        assert str(outcome.paper_id) == paper_id

    async def test_supplied_context_is_used(self, orchestrator, paper_id, user_id) -> None:
        context = ExecutionContext("fixed-run")
        outcome = await orchestrator.run(_params(paper_id, user_id), context)
        assert outcome.run_id == "fixed-run"
        assert outcome.context is context
        assert ContextKey.PAPER_PROCESSOR_RESULT in context

    async def test_invalid_identifier_fails_before_any_stage(
        self, orchestrator, gateways, user_id
    ) -> None:
        with pytest.raises(InvalidIdentifierError, match="paperId"):
            await orchestrator.run(_params("not-a-uuid", user_id))
        assert gateways.calls == []


# ── Retries inside a run ────────────────────────────────────────────


class TestTransientFailures:
    async def test_summarizer_recovers_after_two_timeouts(
        self, orchestrator, gateways, retry_policy, paper_id, user_id
    ) -> None:
        """Two timeouts then success: the stage succeeds and both retries are counted."""
        gateways.script(
            "content_summarizer",
            ProviderTimeoutError("anthropic", "Request to anthropic timed out"),
            ProviderTimeoutError("anthropic", "Request to anthropic timed out"),
            "Recovered summary.",
        )

        outcome = await orchestrator.run(_params(paper_id, user_id))

        summary = outcome.context.get_result(ContextKey.CONTENT_SUMMARIZER_RESULT)
        assert summary.success is True
        assert summary.result_data["standardSummary"] == "Recovered summary."
        stats = retry_policy.get_statistics(AgentType.CONTENT_SUMMARIZER)
        assert stats.total_retries >= 2


# ── Optional and required failures ──────────────────────────────────


class TestFailurePropagation:
    """Required failures abort; optional failures are recorded and skipped."""

    async def test_optional_failure_continues(
        self, orchestrator, gateways, paper_id, user_id, papers
    ) -> None:
        gateways.script("perplexity_researcher", ProviderError("perplexity", "Forbidden", 403))

        outcome = await orchestrator.run(_params(paper_id, user_id))

        assert outcome.failed_stages == ("Fact research",)
        research = outcome.context.get_result(ContextKey.PERPLEXITY_RESEARCH_RESULT)
        assert research.success is False
        assert "Forbidden" in research.error_message
        discovery = outcome.context.get_result(ContextKey.RELATED_PAPER_DISCOVERY_RESULT)
        assert discovery.success is True
        assert papers.get_by_id(paper_id).status == PaperStatus.PROCESSED.value

    async def test_metadata_failure_is_optional(
        self, orchestrator, gateways, paper_id, user_id
    ) -> None:
        gateways.script("metadata_enhancer", ProviderError("openai", "bad request", 400))
        outcome = await orchestrator.run(_params(paper_id, user_id))
        assert outcome.failed_stages == ("Metadata enhancement",)
        citations = outcome.context.get_result(ContextKey.CITATION_FORMATTER_RESULT)
        assert citations.success is True

    async def test_summarizer_failure_is_optional(
        self, orchestrator, gateways, paper_id, user_id, papers
    ) -> None:
        """Every later stage treats the summary as optional, so the run completes."""
        gateways.script("content_summarizer", ProviderError("anthropic", "invalid api key", 401))

        outcome = await orchestrator.run(_params(paper_id, user_id))

        assert outcome.failed_stages == ("Summarization",)
        context = outcome.context
        assert context.get_result(ContextKey.CONTENT_SUMMARIZER_RESULT).success is False
        for key in (
            ContextKey.CONCEPT_EXPLAINER_RESULT,
            ContextKey.QUALITY_CHECKER_RESULT,
            ContextKey.CITATION_FORMATTER_RESULT,
            ContextKey.PERPLEXITY_RESEARCH_RESULT,
            ContextKey.RELATED_PAPER_DISCOVERY_RESULT,
        ):
            assert context.get_result(key).success is True, key
        discovery = context.get_result(ContextKey.RELATED_PAPER_DISCOVERY_RESULT)
        assert discovery.result_data["usedSummary"] is False
        assert "Generated summary" not in gateways.calls_for("quality_checker")[0][2]
        assert papers.get_by_id(paper_id).status == PaperStatus.PROCESSED.value

    async def test_required_failure_aborts_with_stage_name(
        self, orchestrator, gateways, paper_id, user_id, updates
    ) -> None:
        gateways.script("paper_processor", ProviderError("openai", "invalid api key", 401))

        with pytest.raises(PipelineAbortedError) as exc_info:
            await orchestrator.run(_params(paper_id, user_id))

        error = exc_info.value
        assert error.stage == "Text extraction"
        assert str(error).startswith("Text extraction failed:")
        assert "invalid api key" in str(error)
        # The failure is recorded before the abort; later stages never ran
        context = error.context
        assert context.get_result(ContextKey.PAPER_PROCESSOR_RESULT).success is False
        assert ContextKey.METADATA_ENHANCEMENT_RESULT not in context
        assert gateways.calls_for("metadata_enhancer") == []
        assert updates[-1].kind is ProgressEventKind.FAILED
        assert updates[-1].stage == "Text extraction"

    async def test_extraction_failure_aborts(
        self, orchestrator, gateways, paper_id, user_id
    ) -> None:
        gateways.script("paper_processor", ProviderError("openai", "forbidden", 403))
        with pytest.raises(PipelineAbortedError, match="Text extraction failed"):
            await orchestrator.run(_params(paper_id, user_id))

    async def test_blank_extracted_content_aborts(
        self, agents, gateways, paper_id, user_id
    ) -> None:
        """Whitespace-only extraction output stops the next stage."""
        extraction = MagicMock()
        extraction.estimate_processing_time.return_value = timedelta(0)
        extraction.process = AsyncMock(
            return_value=AgentResult.succeeded("t", {"textContent": "   ", "text": "\n"})
        )
        orchestrator = PipelineOrchestrator({**agents, AgentType.PAPER_PROCESSOR: extraction})

        with pytest.raises(PipelineAbortedError) as exc_info:
            await orchestrator.run(_params(paper_id, user_id))

        assert "Metadata enhancement: no content available" in str(exc_info.value)
        assert exc_info.value.stage == "Metadata enhancement"
        stored = exc_info.value.context.get_result(ContextKey.METADATA_ENHANCEMENT_RESULT)
        assert stored.success is False
        assert gateways.calls_for("metadata_enhancer") == []


# ── Optional upstream inputs ────────────────────────────────────────


class TestOptionalInputs:
    async def test_discovery_without_summary(self, agents, paper_id, user_id) -> None:
        """Discovery completes using only extraction when no summary was written."""
        stages = [
            spec
            for spec in DEFAULT_STAGES
            if spec.agent_type in (AgentType.PAPER_PROCESSOR, AgentType.RELATED_PAPER_DISCOVERY)
        ]
        orchestrator = PipelineOrchestrator(agents, stages=stages)

        outcome = await orchestrator.run(_params(paper_id, user_id))

        assert ContextKey.CONTENT_SUMMARIZER_RESULT not in outcome.context
        discovery = outcome.context.get_result(ContextKey.RELATED_PAPER_DISCOVERY_RESULT)
        assert discovery.success is True
        assert discovery.result_data["usedSummary"] is False

    async def test_discovery_with_failed_summary(self, agents, gateways, paper_id, user_id):
        stages = [
            spec
            for spec in DEFAULT_STAGES
            if spec.agent_type
            in (
                AgentType.PAPER_PROCESSOR,
                AgentType.CONTENT_SUMMARIZER,
                AgentType.RELATED_PAPER_DISCOVERY,
            )
        ]
        gateways.script("content_summarizer", ProviderError("anthropic", "forbidden", 403))
        orchestrator = PipelineOrchestrator(agents, stages=stages)

        # Nothing later in this list requires the summary
        outcome = await orchestrator.run(_params(paper_id, user_id))

        assert outcome.failed_stages == ("Summarization",)
        discovery = outcome.context.get_result(ContextKey.RELATED_PAPER_DISCOVERY_RESULT)
        assert discovery.result_data["usedSummary"] is False

    async def test_missing_required_upstream_aborts(self, agents, paper_id, user_id) -> None:
        quality_only = [s for s in DEFAULT_STAGES if s.agent_type is AgentType.QUALITY_CHECKER]
        orchestrator = PipelineOrchestrator(agents, stages=quality_only)

        with pytest.raises(PipelineAbortedError) as exc_info:
            await orchestrator.run(_params(paper_id, user_id))

        assert str(exc_info.value) == (
            "Quality check: paperProcessorResult result not available"
        )

    async def test_unregistered_agent_aborts(self, paper_id, user_id) -> None:
        orchestrator = PipelineOrchestrator({}, stages=DEFAULT_STAGES[:1])
        with pytest.raises(PipelineAbortedError, match="no agent registered"):
            await orchestrator.run(_params(paper_id, user_id))


# ── Progress ────────────────────────────────────────────────────────


class TestProgress:
    async def test_progress_sequence(self, orchestrator, paper_id, user_id, updates) -> None:
        await orchestrator.run(_params(paper_id, user_id))

        assert updates[0].kind is ProgressEventKind.INITIALIZING
        assert updates[-1].kind is ProgressEventKind.COMPLETED
        assert updates[-1].percent_complete == 100
        percents = [u.percent_complete for u in updates]
        assert percents == sorted(percents)
        completed = [u for u in updates if u.kind is ProgressEventKind.STAGE_COMPLETED]
        assert [u.stage for u in completed] == [s.name for s in DEFAULT_STAGES]
        started = [u for u in updates if u.kind is ProgressEventKind.STAGE_STARTED]
        # Estimates are sized by the extracted text once it exists
        remaining = [u.estimated_seconds_remaining for u in started[1:]]
        assert remaining == sorted(remaining, reverse=True)
        assert remaining[-1] > 0

    async def test_optional_failure_emits_stage_failed(
        self, orchestrator, gateways, paper_id, user_id, updates
    ) -> None:
        gateways.script("citation_formatter", ProviderError("openai", "forbidden", 403))
        await orchestrator.run(_params(paper_id, user_id))
        failed = [u for u in updates if u.kind is ProgressEventKind.STAGE_FAILED]
        assert [u.stage for u in failed] == ["Citation formatting"]
        assert updates[-1].completed is True


class TestStageGraph:
    def test_required_later(self, orchestrator) -> None:
        required = [orchestrator.required_later(i) for i in range(len(DEFAULT_STAGES))]
        assert required == [True, False, False, False, False, False, False, False]

    def test_build_task_inputs(self, orchestrator) -> None:
        context = ExecutionContext("run")
        params = RunParameters(paper_id=uuid4(), user_id=uuid4())
        context.store_result(
            ContextKey.PAPER_PROCESSOR_RESULT,
            AgentResult.succeeded("t", {"textContent": "body", "title": "T", "references": ["r"]}),
        )
        context.store_result(
            ContextKey.CONTENT_SUMMARIZER_RESULT,
            AgentResult.succeeded("t", {"standardSummary": "sum"}),
        )
        spec: StageSpec = DEFAULT_STAGES[-1]

        task = orchestrator.build_task(spec, context, params, "run:discovery")

        assert task.agent_type is AgentType.RELATED_PAPER_DISCOVERY
        assert task.input["text_content"] == "body"
        assert task.input["title"] == "T"
        assert task.input["summary"] == "sum"
        assert task.input["references"] == ["r"]
        assert task.input["paper_id"] == str(params.paper_id)
        assert "metadata" not in task.input
