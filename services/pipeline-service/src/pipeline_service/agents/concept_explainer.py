"""Concept explanation stage: technical terms at four education levels."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Mapping

from paperflow_inference.gateway import Provider

from pipeline_service.agents.base import SUMMARY, BaseAgent, clip, content_length
from pipeline_service.models import AgentTask, AgentType, StageType
from pipeline_service.schemas.stages import ConceptExplanations

EDUCATION_LEVELS = ("highSchool", "undergraduate", "graduate", "expert")
_MAX_TERMS = 20
_SECONDS_PER_LEVEL = 15


def _term_count(length: int | None) -> int:
    if not length:
        return 1
    return max(1, min(length // 200, _MAX_TERMS))


class ConceptExplainerAgent(BaseAgent):
    agent_type = AgentType.CONCEPT_EXPLAINER
    stage_type = StageType.CONCEPT_EXTRACTION
    prompt_name = "concept_explainer"

    def estimate_processing_time(self, task: AgentTask | None) -> timedelta:
        terms = _term_count(content_length(task))
        per_term = len(EDUCATION_LEVELS) * _SECONDS_PER_LEVEL
        return timedelta(seconds=60 + terms * per_term + 30)

    def prepare(self, task: AgentTask) -> dict[str, Any]:
        prepared = super().prepare(task)
        prepared["summary"] = task.get_str(SUMMARY)
        prepared["max_terms"] = min(_term_count(len(prepared["content"])), 10)
        return prepared

    async def run(
        self, task: AgentTask, prepared: Mapping[str, Any], provider: Provider
    ) -> dict[str, Any]:
        explained = await self.complete_json(
            provider,
            {**prepared, "content": clip(prepared["content"])},
            ConceptExplanations,
        )
        concepts = [
            concept.model_dump(by_alias=True)
            for concept in explained.concepts[: prepared["max_terms"]]
        ]
        return {"concepts": concepts, "termCount": len(concepts)}
