"""Metadata enhancement stage: authors, DOI, venue and keywords."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Mapping

from paperflow_inference.gateway import Provider

from pipeline_service.agents.base import ABSTRACT, PAPER_ID, BaseAgent, clip
from pipeline_service.models import AgentResult, AgentTask, AgentType, StageType
from pipeline_service.schemas.stages import EnhancedMetadata


class MetadataEnhancerAgent(BaseAgent):
    agent_type = AgentType.METADATA_ENHANCER
    stage_type = StageType.METADATA_ENHANCEMENT
    prompt_name = "metadata_enhancer"
    default_estimate = timedelta(seconds=125)

    def prepare(self, task: AgentTask) -> dict[str, Any]:
        prepared = super().prepare(task)
        prepared["abstract"] = task.get_str(ABSTRACT)
        return prepared

    async def run(
        self, task: AgentTask, prepared: Mapping[str, Any], provider: Provider
    ) -> dict[str, Any]:
        metadata = await self.complete_json(
            provider,
            {**prepared, "content": clip(prepared["content"], 20_000)},
            EnhancedMetadata,
        )
        enhanced = metadata.model_dump(by_alias=True)
        if not enhanced["title"] and prepared["title"]:
            enhanced["title"] = prepared["title"]
        return {
            "enhancedMetadata": enhanced,
            "title": enhanced["title"],
            "authors": metadata.authors,
            "doi": metadata.doi,
            "keywords": metadata.keywords,
        }

    def persist(self, task: AgentTask, result: AgentResult) -> None:
        paper_id = task.get_str(PAPER_ID)
        if self._papers is None or paper_id is None or not result.result_data:
            return
        self._papers.update_metadata(
            paper_id, {"enhancedMetadata": dict(result.result_data["enhancedMetadata"])}
        )
