"""Progress update events emitted while a pipeline run advances."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ProgressEventKind(str, Enum):
    """Kinds of progress events a run emits."""

    INITIALIZING = "initializing"
    STAGE_STARTED = "stage_started"
    STAGE_COMPLETED = "stage_completed"
    STAGE_FAILED = "stage_failed"
    COMPLETED = "completed"
    FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PipelineProgressUpdate(BaseModel):
    """One progress event for a document. Immutable; never persisted."""

    model_config = ConfigDict(frozen=True)

    document_id: str = Field(description="Document (paper) the run processes")
    stage: str = Field(description="Stage display name, or a run-level marker")
    percent_complete: int = Field(ge=0, le=100)
    kind: ProgressEventKind = Field(default=ProgressEventKind.STAGE_STARTED)
    status_message: str = Field(default="")
    error_message: str | None = Field(default=None)
    stages_completed: int = Field(default=0, ge=0)
    total_stages: int = Field(default=0, ge=0)
    estimated_seconds_remaining: int | None = Field(default=None, ge=0)
    completed: bool = Field(default=False)
    failed: bool = Field(default=False)
    timestamp: datetime = Field(default_factory=_utcnow)

    @classmethod
    def initializing(cls, document_id: str, total_stages: int) -> "PipelineProgressUpdate":
        return cls(
            document_id=document_id,
            stage="initializing",
            percent_complete=0,
            kind=ProgressEventKind.INITIALIZING,
            status_message="Starting analysis pipeline",
            total_stages=total_stages,
        )

    @classmethod
    def for_stage(
        cls,
        document_id: str,
        stage: str,
        percent_complete: int,
        *,
        stages_completed: int,
        total_stages: int,
        status_message: str = "",
        estimated_seconds_remaining: int | None = None,
        finished: bool = False,
    ) -> "PipelineProgressUpdate":
        """Build a stage started/completed event."""
        return cls(
            document_id=document_id,
            stage=stage,
            percent_complete=percent_complete,
            kind=(
                ProgressEventKind.STAGE_COMPLETED
                if finished
                else ProgressEventKind.STAGE_STARTED
            ),
            status_message=status_message or (
                f"{stage} completed" if finished else f"{stage} in progress"
            ),
            stages_completed=stages_completed,
            total_stages=total_stages,
            estimated_seconds_remaining=estimated_seconds_remaining,
        )

    @classmethod
    def stage_failed(
        cls,
        document_id: str,
        stage: str,
        percent_complete: int,
        error_message: str,
        *,
        stages_completed: int,
        total_stages: int,
    ) -> "PipelineProgressUpdate":
        """Build an event for a stage failure that does not end the run."""
        return cls(
            document_id=document_id,
            stage=stage,
            percent_complete=percent_complete,
            kind=ProgressEventKind.STAGE_FAILED,
            status_message=f"{stage} failed",
            error_message=error_message,
            stages_completed=stages_completed,
            total_stages=total_stages,
        )

    @classmethod
    def completed_run(cls, document_id: str, total_stages: int) -> "PipelineProgressUpdate":
        return cls(
            document_id=document_id,
            stage="completed",
            percent_complete=100,
            kind=ProgressEventKind.COMPLETED,
            status_message="Analysis complete",
            stages_completed=total_stages,
            total_stages=total_stages,
            estimated_seconds_remaining=0,
            completed=True,
        )

    @classmethod
    def failed_run(
        cls,
        document_id: str,
        stage: str,
        percent_complete: int,
        error_message: str,
        *,
        stages_completed: int = 0,
        total_stages: int = 0,
    ) -> "PipelineProgressUpdate":
        return cls(
            document_id=document_id,
            stage=stage,
            percent_complete=percent_complete,
            kind=ProgressEventKind.FAILED,
            status_message=f"Analysis failed during {stage}",
            error_message=error_message,
            stages_completed=stages_completed,
            total_stages=total_stages,
            failed=True,
        )

    @property
    def is_terminal(self) -> bool:
        return self.completed or self.failed

    @property
    def formatted_progress(self) -> str:
        """Human readable progress, e.g. ``"Summarization: 38% (3/8)"``."""
        text = f"{self.stage}: {self.percent_complete}%"
        if self.total_stages:
            text += f" ({self.stages_completed}/{self.total_stages})"
        return text
