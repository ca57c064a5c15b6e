"""External collaborators: paper records and credit balances.

The pipeline only depends on the two Protocols below. The SQLModel-backed
implementations serve the CLI and local deployments.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol
from uuid import UUID

from paperflow_shared.models import CreditBalance, Paper, PaperStatus
from sqlalchemy import Engine
from sqlmodel import Session

logger = logging.getLogger(__name__)


class PaperRepository(Protocol):
    """Access to the persisted paper being analyzed."""

    def get_by_id(self, paper_id: UUID | str) -> Paper | None: ...

    def update_text_content(self, paper_id: UUID | str, text: str) -> None: ...

    def update_status(
        self,
        paper_id: UUID | str,
        from_state: PaperStatus | None,
        to_state: PaperStatus,
        error_reason: str | None = None,
    ) -> bool: ...

    def update_metadata(self, paper_id: UUID | str, values: Mapping[str, Any]) -> None: ...


class CreditService(Protocol):
    """The single credit gate consulted at launch."""

    def has_enough_credits(self, user_id: UUID | str, amount: int) -> bool: ...


class SqlPaperRepository:
    """PaperRepository over a SQLModel engine."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get_by_id(self, paper_id: UUID | str) -> Paper | None:
        with Session(self.engine) as session:
            return session.get(Paper, str(paper_id))

    def update_text_content(self, paper_id: UUID | str, text: str) -> None:
        with Session(self.engine) as session:
            paper = session.get(Paper, str(paper_id))
            if paper is None:
                logger.warning("Cannot store text: paper %s not found", paper_id)
                return
            if paper.text_content == text:
                return
            paper.text_content = text
            session.add(paper)
            session.commit()

    def update_status(
        self,
        paper_id: UUID | str,
        from_state: PaperStatus | None,
        to_state: PaperStatus,
        error_reason: str | None = None,
    ) -> bool:
        """Move a paper to ``to_state``.

        With ``from_state`` set, the transition only happens if the paper is
        currently in that state. Returns True if the status changed.
        """
        with Session(self.engine) as session:
            paper = session.get(Paper, str(paper_id))
            if paper is None:
                logger.warning("Cannot update status: paper %s not found", paper_id)
                return False
            if from_state is not None and paper.status != from_state.value:
                logger.debug(
                    "Paper %s is %s, not %s; status left unchanged",
                    paper_id,
                    paper.status,
                    from_state.value,
                )
                return False
            paper.status = to_state.value
            paper.error_reason = error_reason
            session.add(paper)
            session.commit()
            return True

    def update_metadata(self, paper_id: UUID | str, values: Mapping[str, Any]) -> None:
        with Session(self.engine) as session:
            paper = session.get(Paper, str(paper_id))
            if paper is None:
                logger.warning("Cannot update metadata: paper %s not found", paper_id)
                return
            paper.metadata_ = {**(paper.metadata_ or {}), **values}
            session.add(paper)
            session.commit()


class SqlCreditService:
    """CreditService reading CreditBalance rows."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def has_enough_credits(self, user_id: UUID | str, amount: int) -> bool:
        with Session(self.engine) as session:
            balance = session.get(CreditBalance, str(user_id))
            return balance is not None and balance.balance >= amount
