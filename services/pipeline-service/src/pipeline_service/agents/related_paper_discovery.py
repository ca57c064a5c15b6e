"""Related paper discovery stage."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from paperflow_inference.gateway import Provider

from pipeline_service.agents.base import SUMMARY, BaseAgent
from pipeline_service.models import AgentTask, AgentType, StageType
from pipeline_service.schemas.stages import DiscoveredPaper, DiscoveredPapers

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiscoveryConfig:
    """Limits applied to discovered papers.

    Attributes:
        max_total_papers: Papers kept across all sources.
        max_papers_per_source: Papers kept from any single source.
        minimum_relevance_score: Papers below this score are dropped.
        context_chars: Characters of paper text sent as context.
    """

    max_total_papers: int = 50
    max_papers_per_source: int = 20
    minimum_relevance_score: float = 0.3
    context_chars: int = 3000


def select_papers(
    papers: list[DiscoveredPaper], config: DiscoveryConfig
) -> list[DiscoveredPaper]:
    """Filter by relevance, cap per source and in total, most relevant first."""
    ranked = sorted(
        (p for p in papers if p.relevance_score >= config.minimum_relevance_score),
        key=lambda p: p.relevance_score,
        reverse=True,
    )
    per_source: dict[str, int] = {}
    selected: list[DiscoveredPaper] = []
    for paper in ranked:
        source = paper.source.lower()
        if per_source.get(source, 0) >= config.max_papers_per_source:
            continue
        per_source[source] = per_source.get(source, 0) + 1
        selected.append(paper)
        if len(selected) >= config.max_total_papers:
            break
    return selected


class RelatedPaperDiscoveryAgent(BaseAgent):
    """Finds related work from the extracted text.

    The summary enriches the prompt when available but is never required.
    There is no local fallback: a small local model invents citations.
    """

    agent_type = AgentType.RELATED_PAPER_DISCOVERY
    stage_type = StageType.RESEARCH_DISCOVERY
    prompt_name = "related_paper_discovery"
    supports_fallback = False

    def __init__(self, *args: Any, config: DiscoveryConfig | None = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.config = config or DiscoveryConfig()

    def prepare(self, task: AgentTask) -> dict[str, Any]:
        prepared = super().prepare(task)
        content = prepared["content"]
        limit = self.config.context_chars
        prepared["context"] = content[:limit] + "..." if len(content) > limit else content
        prepared["summary"] = task.get_str(SUMMARY)
        prepared["max_papers"] = self.config.max_total_papers
        return prepared

    async def run(
        self, task: AgentTask, prepared: Mapping[str, Any], provider: Provider
    ) -> dict[str, Any]:
        discovered = await self.complete_json(provider, prepared, DiscoveredPapers)
        selected = select_papers(discovered.papers, self.config)
        sources: dict[str, int] = {}
        for paper in selected:
            sources[paper.source] = sources.get(paper.source, 0) + 1
        logger.info(
            "Discovery kept %d of %d papers for task %s",
            len(selected),
            len(discovered.papers),
            task.task_id,
        )
        return {
            "relatedPapers": [paper.model_dump(by_alias=True) for paper in selected],
            "totalDiscovered": len(discovered.papers),
            "sources": sources,
            "usedSummary": prepared["summary"] is not None,
        }
