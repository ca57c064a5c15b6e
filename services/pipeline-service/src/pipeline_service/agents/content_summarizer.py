"""Summarization stage: brief, standard and detailed summaries."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Mapping

from paperflow_inference.gateway import Provider

from pipeline_service.agents.base import METADATA, BaseAgent, clip, content_length
from pipeline_service.models import AgentTask, AgentType, StageType

# level -> (target words, base seconds)
SUMMARY_LEVELS: dict[str, tuple[int, int]] = {
    "brief": (100, 30),
    "standard": (300, 60),
    "detailed": (800, 120),
}
_MAX_ESTIMATE_SECONDS = 600


class ContentSummarizerAgent(BaseAgent):
    """Produces one summary per level, in a single result.

    ``standardSummary`` doubles as ``summary`` for downstream stages.
    """

    agent_type = AgentType.CONTENT_SUMMARIZER
    stage_type = StageType.CONTENT_ANALYSIS
    prompt_name = "content_summarizer"

    def estimate_processing_time(self, task: AgentTask | None) -> timedelta:
        base = sum(seconds for _, seconds in SUMMARY_LEVELS.values())
        extra = (content_length(task) or 0) / 1000
        return timedelta(seconds=min(base + extra, _MAX_ESTIMATE_SECONDS))

    def prepare(self, task: AgentTask) -> dict[str, Any]:
        prepared = super().prepare(task)
        metadata = (task.input or {}).get(METADATA) or {}
        prepared["keywords"] = list(metadata.get("keywords") or [])
        return prepared

    async def run(
        self, task: AgentTask, prepared: Mapping[str, Any], provider: Provider
    ) -> dict[str, Any]:
        summaries: dict[str, str] = {}
        for level, (word_target, _) in SUMMARY_LEVELS.items():
            text = await self.complete(
                provider,
                {
                    **prepared,
                    "content": clip(prepared["content"]),
                    "level": level,
                    "word_target": word_target,
                },
            )
            summaries[level] = text.strip()
        return {
            "briefSummary": summaries["brief"],
            "standardSummary": summaries["standard"],
            "detailedSummary": summaries["detailed"],
            "summary": summaries["standard"],
        }
