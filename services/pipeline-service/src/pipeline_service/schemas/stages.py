"""Pydantic schemas for structured stage replies.

Models are asked to reply with JSON matching these schemas. Field aliases
accept the camelCase keys models tend to produce, and ``populate_by_name``
keeps snake_case working as well.
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _Reply(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class PaperSection(_Reply):
    """One section of a structured paper."""

    heading: str = Field(description="Section heading")
    content: str = Field(default="", description="Section text or synopsis")


class StructuredPaper(_Reply):
    """Structure recovered from a paper's raw text."""

    title: str = Field(default="", description="Paper title")
    abstract: str = Field(default="", description="Abstract, if present")
    sections: List[PaperSection] = Field(default_factory=list)
    key_findings: List[str] = Field(default_factory=list, alias="keyFindings")
    references: List[str] = Field(
        default_factory=list, description="Reference list entries, verbatim"
    )


class EnhancedMetadata(_Reply):
    """Bibliographic metadata inferred for a paper."""

    title: str = Field(default="")
    authors: List[str] = Field(default_factory=list)
    doi: Optional[str] = Field(default=None)
    journal: Optional[str] = Field(default=None)
    year: Optional[int] = Field(default=None)
    keywords: List[str] = Field(default_factory=list)
    research_field: Optional[str] = Field(default=None, alias="researchField")


class ConceptExplanation(_Reply):
    """A technical term explained at several education levels."""

    term: str
    definition: str = Field(default="")
    high_school: str = Field(default="", alias="highSchool")
    undergraduate: str = Field(default="")
    graduate: str = Field(default="")
    expert: str = Field(default="")
    related_terms: List[str] = Field(default_factory=list, alias="relatedTerms")


class ConceptExplanations(_Reply):
    concepts: List[ConceptExplanation] = Field(default_factory=list)


class QualityIssue(_Reply):
    """A problem found while checking generated analysis against the source."""

    category: str = Field(description="accuracy, consistency, completeness, ...")
    severity: str = Field(default="minor", description="minor, major or critical")
    description: str = Field(default="")


class QualityReport(_Reply):
    overall_score: float = Field(ge=0.0, le=1.0, alias="overallScore")
    accuracy_score: Optional[float] = Field(default=None, ge=0.0, le=1.0, alias="accuracyScore")
    consistency_score: Optional[float] = Field(
        default=None, ge=0.0, le=1.0, alias="consistencyScore"
    )
    issues: List[QualityIssue] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class FormattedCitation(_Reply):
    """One reference formatted in every requested style."""

    raw: str = Field(default="", description="Citation as found in the text")
    formatted: dict[str, str] = Field(default_factory=dict, description="style -> text")


class FormattedCitations(_Reply):
    citations: List[FormattedCitation] = Field(default_factory=list)


class ResearchFinding(_Reply):
    """A claim checked or a trend found through online research."""

    topic: str
    finding: str = Field(default="")
    verdict: Optional[str] = Field(
        default=None, description="supported, contradicted or unverified"
    )
    sources: List[str] = Field(default_factory=list)


class ResearchFindings(_Reply):
    fact_checks: List[ResearchFinding] = Field(default_factory=list, alias="factChecks")
    related_research: List[ResearchFinding] = Field(
        default_factory=list, alias="relatedResearch"
    )
    trends: List[ResearchFinding] = Field(default_factory=list)


class DiscoveredPaper(_Reply):
    """A paper related to the analyzed one."""

    title: str
    authors: List[str] = Field(default_factory=list)
    year: Optional[int] = Field(default=None)
    source: str = Field(default="unknown", description="Where the paper was found")
    relevance_score: float = Field(default=0.0, ge=0.0, le=1.0, alias="relevanceScore")
    relationship: str = Field(default="related", description="cites, cited-by, similar, ...")
    doi: Optional[str] = Field(default=None)


class DiscoveredPapers(_Reply):
    papers: List[DiscoveredPaper] = Field(default_factory=list)
