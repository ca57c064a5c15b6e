"""Text extraction stage: structure the paper's raw text."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Mapping

from paperflow_inference.gateway import Provider
from paperflow_shared.models import PaperStatus

from pipeline_service.agents.base import (
    PAPER_ID,
    TEXT_CONTENT,
    TITLE,
    BaseAgent,
    clip,
    content_length,
)
from pipeline_service.errors import StagePreconditionError
from pipeline_service.models import AgentResult, AgentTask, AgentType, StageType
from pipeline_service.schemas.stages import StructuredPaper

_MAX_ESTIMATE_SECONDS = 300


class PaperProcessorAgent(BaseAgent):
    """Reads the uploaded paper and recovers title, sections and references.

    The paper's text is stored back on the record and the paper moves from
    ``processing`` to ``text_extracted`` once this stage succeeds.
    """

    agent_type = AgentType.PAPER_PROCESSOR
    stage_type = StageType.TEXT_EXTRACTION
    prompt_name = "paper_processor"

    def can_handle(self, task: AgentTask | None) -> bool:
        return super().can_handle(task) and task.get_str(PAPER_ID) is not None

    def estimate_processing_time(self, task: AgentTask | None) -> timedelta:
        length = content_length(task)
        if length is None:
            return self.default_estimate
        return timedelta(seconds=min(30 + length / 1000, _MAX_ESTIMATE_SECONDS))

    def prepare(self, task: AgentTask) -> dict[str, Any]:
        stage = self.stage_type.value
        if self._papers is None:
            raise StagePreconditionError(f"{stage}: no paper repository configured")
        paper_id = task.get_str(PAPER_ID)
        paper = self._papers.get_by_id(paper_id)
        if paper is None:
            raise StagePreconditionError(f"{stage}: paper {paper_id} not found")
        content = task.get_str(TEXT_CONTENT) or (paper.text_content or "").strip()
        if not content:
            raise StagePreconditionError(
                f"{stage}: no content available for paper {paper_id}"
            )
        return {
            "paper_id": paper_id,
            "content": content,
            "title": (paper.title or "").strip() or task.get_str(TITLE),
        }

    async def run(
        self, task: AgentTask, prepared: Mapping[str, Any], provider: Provider
    ) -> dict[str, Any]:
        content = prepared["content"]
        structured = await self.complete_json(
            provider,
            {"title": prepared["title"], "content": clip(content)},
            StructuredPaper,
        )
        return {
            "textContent": content,
            "title": structured.title or prepared["title"] or "",
            "abstract": structured.abstract,
            "sections": [section.model_dump() for section in structured.sections],
            "keyFindings": structured.key_findings,
            "references": structured.references,
            "wordCount": len(content.split()),
        }

    def persist(self, task: AgentTask, result: AgentResult) -> None:
        if self._papers is None or not result.result_data:
            return
        paper_id = task.get_str(PAPER_ID)
        self._papers.update_text_content(paper_id, result.result_data["textContent"])
        self._papers.update_status(
            paper_id, PaperStatus.PROCESSING, PaperStatus.TEXT_EXTRACTED
        )
