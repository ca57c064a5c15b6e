"""Exceptions raised while orchestrating a pipeline run."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pipeline_service.context import ExecutionContext


class PipelineError(Exception):
    """Base exception for pipeline failures."""

    pass


class PipelineConfigurationError(PipelineError):
    """Run parameters are missing or unusable. Never retried."""

    pass


class MissingIdentifierError(PipelineConfigurationError):
    """No accepted key carried the identifier."""

    pass


class InvalidIdentifierError(PipelineConfigurationError):
    """An identifier was present but is not a valid UUID."""

    pass


class StagePreconditionError(PipelineError):
    """A stage cannot run: missing or failed upstream result, or no content."""

    pass


class PipelineAbortedError(PipelineError):
    """A required stage failed and the run was stopped.

    Attributes:
        stage: Display name of the stage that stopped the run.
        context: The run's execution context, with every recorded result.
    """

    def __init__(
        self,
        message: str,
        *,
        stage: str,
        context: "ExecutionContext | None" = None,
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.context = context
