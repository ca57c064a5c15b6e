"""Shared data models for the paper analysis pipeline."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Text, func
from sqlmodel import Field, SQLModel


def _ts_col() -> Column:  # type: ignore[type-arg]
    """Create a created_at timestamp column with server default."""
    return Column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


def _ts_col_update() -> Column:  # type: ignore[type-arg]
    """Create an updated_at timestamp column with server default and onupdate."""
    return Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class PaperStatus(str, Enum):
    """Paper processing status enum."""

    UPLOADED = "uploaded"
    PROCESSING = "processing"
    TEXT_EXTRACTED = "text_extracted"
    PROCESSED = "processed"
    FAILED = "failed"


class Paper(SQLModel, table=True):
    """Uploaded research paper and the fields derived from it."""

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    user_id: str = Field(index=True)
    title: str = Field(default="")
    status: str = Field(default=PaperStatus.UPLOADED, index=True)
    text_content: str | None = Field(default=None, sa_column=Column(Text))
    error_reason: str | None = Field(default=None)
    metadata_: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(sa_column=_ts_col())
    updated_at: datetime = Field(sa_column=_ts_col_update())


class CreditBalance(SQLModel, table=True):
    """Remaining analysis credits for a user."""

    user_id: str = Field(primary_key=True)
    balance: int = Field(default=0)
    updated_at: datetime = Field(sa_column=_ts_col_update())
