"""Fact research stage: verify claims and find context with online search."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Mapping

from paperflow_inference.gateway import Provider

from pipeline_service.agents.base import BaseAgent, clip
from pipeline_service.models import AgentTask, AgentType, StageType
from pipeline_service.schemas.stages import ResearchFindings

RESEARCH_TYPES = ("fact verification", "related research", "research trends")


class PerplexityResearcherAgent(BaseAgent):
    agent_type = AgentType.PERPLEXITY_RESEARCHER
    stage_type = StageType.PERPLEXITY_RESEARCH
    prompt_name = "perplexity_researcher"

    def estimate_processing_time(self, task: AgentTask | None) -> timedelta:
        return timedelta(seconds=120 + 90 * len(RESEARCH_TYPES) + 60)

    async def run(
        self, task: AgentTask, prepared: Mapping[str, Any], provider: Provider
    ) -> dict[str, Any]:
        findings = await self.complete_json(
            provider,
            {
                **prepared,
                "content": clip(prepared["content"], 12_000),
                "research_types": list(RESEARCH_TYPES),
            },
            ResearchFindings,
        )
        groups = {
            "factChecks": findings.fact_checks,
            "relatedResearch": findings.related_research,
            "trends": findings.trends,
        }
        data: dict[str, Any] = {
            key: [item.model_dump() for item in items] for key, items in groups.items()
        }
        sources: list[str] = []
        for items in groups.values():
            for item in items:
                sources.extend(s for s in item.sources if s not in sources)
        data["sources"] = sources
        data["findingCount"] = sum(len(items) for items in groups.values())
        return data
