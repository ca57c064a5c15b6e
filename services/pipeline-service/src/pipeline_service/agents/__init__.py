"""Stage agents, one per analysis type."""

from pipeline_service.agents.base import BaseAgent
from pipeline_service.agents.citation_formatter import CitationFormatterAgent
from pipeline_service.agents.concept_explainer import ConceptExplainerAgent
from pipeline_service.agents.content_summarizer import ContentSummarizerAgent
from pipeline_service.agents.metadata_enhancer import MetadataEnhancerAgent
from pipeline_service.agents.paper_processor import PaperProcessorAgent
from pipeline_service.agents.perplexity_researcher import PerplexityResearcherAgent
from pipeline_service.agents.quality_checker import QualityCheckerAgent
from pipeline_service.agents.related_paper_discovery import RelatedPaperDiscoveryAgent

AGENT_CLASSES: tuple[type[BaseAgent], ...] = (
    PaperProcessorAgent,
    MetadataEnhancerAgent,
    ContentSummarizerAgent,
    ConceptExplainerAgent,
    QualityCheckerAgent,
    CitationFormatterAgent,
    PerplexityResearcherAgent,
    RelatedPaperDiscoveryAgent,
)

__all__ = [
    "AGENT_CLASSES",
    "BaseAgent",
    "CitationFormatterAgent",
    "ConceptExplainerAgent",
    "ContentSummarizerAgent",
    "MetadataEnhancerAgent",
    "PaperProcessorAgent",
    "PerplexityResearcherAgent",
    "QualityCheckerAgent",
    "RelatedPaperDiscoveryAgent",
]
