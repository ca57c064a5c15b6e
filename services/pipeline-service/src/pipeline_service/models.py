"""Agent, task and result types shared by every stage."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

from paperflow_inference.gateway import Provider


class AgentType(str, Enum):
    """Analysis agents, one per pipeline stage."""

    PAPER_PROCESSOR = "paper-processor"
    METADATA_ENHANCER = "metadata-enhancer"
    CONTENT_SUMMARIZER = "content-summarizer"
    CONCEPT_EXPLAINER = "concept-explainer"
    QUALITY_CHECKER = "quality-checker"
    CITATION_FORMATTER = "citation-formatter"
    PERPLEXITY_RESEARCHER = "perplexity-researcher"
    RELATED_PAPER_DISCOVERY = "related-paper-discovery"

    @property
    def provider(self) -> Provider:
        return _AGENT_PROVIDERS[self]


_AGENT_PROVIDERS = {
    AgentType.PAPER_PROCESSOR: Provider.OPENAI,
    AgentType.METADATA_ENHANCER: Provider.OPENAI,
    AgentType.CONTENT_SUMMARIZER: Provider.ANTHROPIC,
    AgentType.CONCEPT_EXPLAINER: Provider.OPENAI,
    AgentType.QUALITY_CHECKER: Provider.ANTHROPIC,
    AgentType.CITATION_FORMATTER: Provider.OPENAI,
    AgentType.PERPLEXITY_RESEARCHER: Provider.PERPLEXITY,
    AgentType.RELATED_PAPER_DISCOVERY: Provider.ANTHROPIC,
}


class StageType(str, Enum):
    """Pipeline stages and their display names."""

    TEXT_EXTRACTION = "Text extraction"
    METADATA_ENHANCEMENT = "Metadata enhancement"
    CONTENT_ANALYSIS = "Summarization"
    CONCEPT_EXTRACTION = "Concept explanation"
    QUALITY_CHECK = "Quality check"
    CITATION_PROCESSING = "Citation formatting"
    PERPLEXITY_RESEARCH = "Fact research"
    RESEARCH_DISCOVERY = "Related paper discovery"


class ContextKey:
    """Execution context keys read by downstream stages and the UI."""

    PAPER_ID = "paperId"
    USER_ID = "userId"
    PAPER_PROCESSOR_RESULT = "paperProcessorResult"
    METADATA_ENHANCEMENT_RESULT = "metadataEnhancementResult"
    CONTENT_SUMMARIZER_RESULT = "contentSummarizerResult"
    CONCEPT_EXPLAINER_RESULT = "conceptExplainerResult"
    QUALITY_CHECKER_RESULT = "qualityCheckerResult"
    CITATION_FORMATTER_RESULT = "citationFormatterResult"
    PERPLEXITY_RESEARCH_RESULT = "perplexityResearchResult"
    RELATED_PAPER_DISCOVERY_RESULT = "relatedPaperDiscoveryResult"


def _freeze(values: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(values or {}))


@dataclass(frozen=True)
class AgentTask:
    """One stage invocation. The input map is read-only and keeps its order."""

    task_id: str
    agent_type: AgentType
    input: Mapping[str, Any] | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if self.input is not None:
            object.__setattr__(self, "input", _freeze(self.input))

    def get_str(self, key: str) -> str | None:
        """Return a stripped, non-empty string input or None."""
        value = (self.input or {}).get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None


@dataclass(frozen=True)
class AgentResult:
    """Uniform success/failure envelope returned by every stage."""

    task_id: str
    success: bool
    result_data: Mapping[str, Any] | None = None
    error_message: str | None = None
    processing_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.success:
            object.__setattr__(self, "result_data", _freeze(self.result_data))
            object.__setattr__(self, "error_message", None)
        else:
            object.__setattr__(self, "result_data", None)
            object.__setattr__(
                self, "error_message", self.error_message or "unknown error"
            )

    @classmethod
    def succeeded(
        cls,
        task_id: str,
        data: Mapping[str, Any],
        processing_seconds: float | None = None,
    ) -> "AgentResult":
        return cls(
            task_id=task_id,
            success=True,
            result_data=data,
            processing_seconds=processing_seconds,
        )

    @classmethod
    def failed(cls, task_id: str, message: str) -> "AgentResult":
        return cls(task_id=task_id, success=False, error_message=message)

    def with_timing(self, seconds: float) -> "AgentResult":
        return AgentResult(
            task_id=self.task_id,
            success=self.success,
            result_data=self.result_data,
            error_message=self.error_message,
            processing_seconds=seconds,
        )

    def to_summary(self) -> dict[str, Any]:
        """Compact JSON-safe status for persistence and diagnostics."""
        return {
            "task_id": self.task_id,
            "success": self.success,
            "error": self.error_message,
            "processing_seconds": self.processing_seconds,
        }
