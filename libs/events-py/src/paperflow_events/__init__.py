"""Progress events and their broadcaster."""

from paperflow_events.broadcaster import (
    ChannelClosedError,
    ProgressBroadcaster,
    ProgressObserver,
)
from paperflow_events.models import PipelineProgressUpdate, ProgressEventKind

__all__ = [
    "ChannelClosedError",
    "PipelineProgressUpdate",
    "ProgressBroadcaster",
    "ProgressEventKind",
    "ProgressObserver",
]
