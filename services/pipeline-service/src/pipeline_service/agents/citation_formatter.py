"""Citation formatting stage: references in several citation styles."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Mapping

from paperflow_inference.gateway import Provider

from pipeline_service.agents.base import (
    METADATA,
    REFERENCES,
    BaseAgent,
    clip,
    content_length,
)
from pipeline_service.models import AgentTask, AgentType, StageType
from pipeline_service.schemas.stages import FormattedCitations

DEFAULT_STYLES = ("APA", "MLA", "Chicago", "IEEE")


class CitationFormatterAgent(BaseAgent):
    """Formats the reference list found during extraction.

    Without extracted references the model reads them from the text itself.
    """

    agent_type = AgentType.CITATION_FORMATTER
    stage_type = StageType.CITATION_PROCESSING
    prompt_name = "citation_formatter"

    @staticmethod
    def _styles(task: AgentTask | None) -> list[str]:
        requested = (task.input or {}).get("styles") if task is not None else None
        return list(requested or DEFAULT_STYLES)

    def estimate_processing_time(self, task: AgentTask | None) -> timedelta:
        citations = max(5, (content_length(task) or 0) // 1000)
        return timedelta(seconds=60 + 10 * citations + 30 * len(self._styles(task)))

    def prepare(self, task: AgentTask) -> dict[str, Any]:
        prepared = super().prepare(task)
        metadata = (task.input or {}).get(METADATA) or {}
        prepared["styles"] = self._styles(task)
        prepared["references"] = list((task.input or {}).get(REFERENCES) or [])
        prepared["metadata"] = (
            {"title": metadata.get("title"), "year": metadata.get("year")}
            if metadata
            else None
        )
        return prepared

    async def run(
        self, task: AgentTask, prepared: Mapping[str, Any], provider: Provider
    ) -> dict[str, Any]:
        formatted = await self.complete_json(
            provider,
            {**prepared, "content": clip(prepared["content"])},
            FormattedCitations,
        )
        citations = [citation.model_dump() for citation in formatted.citations]
        bibliography = {
            style: [c["formatted"][style] for c in citations if c["formatted"].get(style)]
            for style in prepared["styles"]
        }
        return {
            "citations": citations,
            "bibliography": bibliography,
            "citationCount": len(citations),
            "styles": list(prepared["styles"]),
        }
