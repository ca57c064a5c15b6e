"""Paper analysis pipeline: stage agents, retry policy, orchestrator, launcher."""

from pipeline_service.launcher import LaunchResult, LoadLevel, PipelineLauncher, classify_load
from pipeline_service.orchestrator import (
    DEFAULT_STAGES,
    PipelineOrchestrator,
    PipelineOutcome,
    StageSpec,
)

__all__ = [
    "DEFAULT_STAGES",
    "LaunchResult",
    "LoadLevel",
    "PipelineLauncher",
    "PipelineOrchestrator",
    "PipelineOutcome",
    "StageSpec",
    "classify_load",
]
