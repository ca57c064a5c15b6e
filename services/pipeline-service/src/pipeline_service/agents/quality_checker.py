"""Quality check stage: audit generated analysis against the source text."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Mapping

from paperflow_inference.gateway import Provider

from pipeline_service.agents.base import CONCEPTS, SUMMARY, BaseAgent, clip, content_length
from pipeline_service.errors import StagePreconditionError
from pipeline_service.models import AgentTask, AgentType, StageType
from pipeline_service.schemas.stages import QualityReport

# Minimum overall score for a passing check
PASS_THRESHOLD = 0.7


class QualityCheckerAgent(BaseAgent):
    """Checks whichever of the summary and concept explanations exist."""

    agent_type = AgentType.QUALITY_CHECKER
    stage_type = StageType.QUALITY_CHECK
    prompt_name = "quality_checker"

    def estimate_processing_time(self, task: AgentTask | None) -> timedelta:
        length = content_length(task) or 0
        return timedelta(seconds=90 + min(length / 2000, 180) + 75)

    def prepare(self, task: AgentTask) -> dict[str, Any]:
        prepared = super().prepare(task)
        summary = task.get_str(SUMMARY)
        concepts = list((task.input or {}).get(CONCEPTS) or [])
        if summary is None and not concepts:
            raise StagePreconditionError(
                f"{self.stage_type.value}: no generated analysis to check"
            )
        prepared["summary"] = summary
        prepared["concepts"] = concepts
        return prepared

    async def run(
        self, task: AgentTask, prepared: Mapping[str, Any], provider: Provider
    ) -> dict[str, Any]:
        report = await self.complete_json(
            provider,
            {**prepared, "content": clip(prepared["content"])},
            QualityReport,
        )
        issues = [issue.model_dump() for issue in report.issues]
        return {
            "overallScore": report.overall_score,
            "accuracyScore": report.accuracy_score,
            "consistencyScore": report.consistency_score,
            "issues": issues,
            "criticalIssues": sum(1 for i in issues if i["severity"] == "critical"),
            "recommendations": report.recommendations,
            "passed": report.overall_score >= PASS_THRESHOLD,
        }
