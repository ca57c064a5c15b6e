"""Shared fixtures for pipeline-service tests.

Provider calls are served by ``FakeGateways``, which picks a scripted reply
by recognising the stage from its system prompt. Papers live in an
in-memory SQLite database.
"""

import json
import os
from typing import Any
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from paperflow_events import ProgressBroadcaster
from paperflow_inference.gateway import Provider
from paperflow_shared.models import CreditBalance, Paper, PaperStatus
from paperflow_shared.resilience import CircuitBreakerRegistry
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from pipeline_service.agents import AGENT_CLASSES
from pipeline_service.collaborators import SqlCreditService, SqlPaperRepository
from pipeline_service.orchestrator import PipelineOrchestrator
from pipeline_service.retry import RetryPolicy

# Keep tests off any real tracking server
os.environ.pop("MLFLOW_TRACKING_URI", None)

PAPER_TEXT = (
    "Attention Is All You Need. Abstract: We propose the Transformer, a model "
    "architecture based solely on attention mechanisms. " * 20
)

# Fragment of each stage's system prompt -> stage name
STAGE_MARKERS = {
    "structure the raw text": "paper_processor",
    "bibliographic metadata": "metadata_enhancer",
    "faithful summaries": "content_summarizer",
    "explain technical terms": "concept_explainer",
    "audit generated analyses": "quality_checker",
    "format the references": "citation_formatter",
    "research the claims": "perplexity_researcher",
    "find research papers related": "related_paper_discovery",
}

DEFAULT_REPLIES: dict[str, Any] = {
    "paper_processor": json.dumps(
        {
            "title": "Attention Is All You Need",
            "abstract": "We propose the Transformer.",
            "sections": [{"heading": "Introduction", "content": "Motivation"}],
            "keyFindings": ["Attention suffices"],
            "references": ["Bahdanau et al. 2014. Neural machine translation."],
        }
    ),
    "metadata_enhancer": json.dumps(
        {
            "title": "Attention Is All You Need",
            "authors": ["Vaswani", "Shazeer"],
            "doi": "10.5555/3295222.3295349",
            "year": 2017,
            "keywords": ["attention", "transformer"],
        }
    ),
    "content_summarizer": "The paper introduces the Transformer architecture.",
    "concept_explainer": json.dumps(
        {"concepts": [{"term": "self-attention", "definition": "Relating positions"}]}
    ),
    "quality_checker": json.dumps(
        {
            "overallScore": 0.85,
            "accuracyScore": 0.9,
            "consistencyScore": 0.8,
            "issues": [{"category": "completeness", "severity": "minor"}],
            "recommendations": ["Mention training cost"],
        }
    ),
    "citation_formatter": json.dumps(
        {
            "citations": [
                {
                    "raw": "Bahdanau et al. 2014",
                    "formatted": {"APA": "Bahdanau, D. (2014).", "IEEE": "[1] D. Bahdanau"},
                }
            ]
        }
    ),
    "perplexity_researcher": json.dumps(
        {
            "factChecks": [
                {
                    "topic": "BLEU score",
                    "finding": "Reported 28.4 BLEU",
                    "verdict": "supported",
                    "sources": ["https://arxiv.org/abs/1706.03762"],
                }
            ],
            "trends": [
                {
                    "topic": "Efficient attention",
                    "sources": ["https://arxiv.org/abs/1706.03762", "https://example.org/t"],
                }
            ],
        }
    ),
    "related_paper_discovery": json.dumps(
        {
            "papers": [
                {"title": "BERT", "source": "arxiv", "relevanceScore": 0.9},
                {"title": "GPT", "source": "arxiv", "relevanceScore": 0.7},
                {"title": "Unrelated", "source": "crossref", "relevanceScore": 0.1},
            ]
        }
    ),
}


class FakeGateways:
    """GatewayRegistry stand-in serving scripted replies per stage.

    A stage's script is a list of replies consumed in order; the last one
    repeats. Exception instances in a script are raised instead of returned.
    """

    def __init__(self, providers: set[Provider] | None = None) -> None:
        self.providers = providers or {Provider.OPENAI, Provider.ANTHROPIC, Provider.PERPLEXITY}
        self.scripts: dict[str, list[Any]] = {k: [v] for k, v in DEFAULT_REPLIES.items()}
        self.calls: list[tuple[str, Provider, str, str | None]] = []

    def script(self, stage: str, *replies: Any) -> None:
        self.scripts[stage] = list(replies)

    def calls_for(self, stage: str) -> list[tuple[str, Provider, str, str | None]]:
        return [call for call in self.calls if call[0] == stage]

    def has(self, provider: Provider | str) -> bool:
        return Provider(provider) in self.providers

    async def invoke(
        self, provider: Provider | str, prompt: str, *, system: str | None = None
    ) -> str:
        stage = next(
            (name for marker, name in STAGE_MARKERS.items() if marker in (system or "")),
            "unknown",
        )
        self.calls.append((stage, Provider(provider), prompt, system))
        script = self.scripts[stage]
        reply = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(reply, BaseException):
            raise reply
        return reply


@pytest.fixture()
def gateway_factory() -> type[FakeGateways]:
    return FakeGateways


@pytest.fixture()
def gateways() -> FakeGateways:
    return FakeGateways()


@pytest.fixture()
def paper_text() -> str:
    return PAPER_TEXT


@pytest.fixture()
def sleep() -> AsyncMock:
    """Recorded backoff sleep that returns immediately."""
    return AsyncMock()


@pytest.fixture()
def breakers() -> CircuitBreakerRegistry:
    return CircuitBreakerRegistry(fail_max=5, reset_timeout=180)


@pytest.fixture()
def retry_policy(breakers: CircuitBreakerRegistry, sleep: AsyncMock) -> RetryPolicy:
    """Retry policy without rate limiting and with jitter-free backoff."""
    return RetryPolicy(breakers, None, sleep=sleep, rng=lambda: 0.5)


@pytest.fixture()
def engine():
    """In-memory SQLite engine with all tables created."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def papers(engine) -> SqlPaperRepository:
    return SqlPaperRepository(engine)


@pytest.fixture()
def credits(engine) -> SqlCreditService:
    return SqlCreditService(engine)


@pytest.fixture()
def user_id() -> str:
    return str(uuid4())


@pytest.fixture()
def paper_id(engine, user_id: str) -> str:
    """An uploaded paper with raw text, owned by ``user_id``."""
    paper = Paper(
        user_id=user_id,
        title="Attention Is All You Need",
        status=PaperStatus.UPLOADED.value,
        text_content=PAPER_TEXT,
    )
    with Session(engine) as session:
        session.add(paper)
        session.commit()
        session.refresh(paper)
        return paper.id


@pytest.fixture()
def funded_user(engine, user_id: str) -> str:
    """``user_id`` with enough credits for a full run."""
    with Session(engine) as session:
        session.add(CreditBalance(user_id=user_id, balance=100))
        session.commit()
    return user_id


@pytest.fixture()
def agents(gateways: FakeGateways, retry_policy: RetryPolicy, papers: SqlPaperRepository):
    return {
        cls.agent_type: cls(gateways, retry_policy, papers=papers) for cls in AGENT_CLASSES
    }


@pytest.fixture()
def broadcaster() -> ProgressBroadcaster:
    return ProgressBroadcaster()


@pytest.fixture()
def orchestrator(agents, broadcaster: ProgressBroadcaster, papers: SqlPaperRepository):
    return PipelineOrchestrator(agents, broadcaster, papers)
