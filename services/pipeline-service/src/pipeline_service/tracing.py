"""Optional MLflow tracing for pipeline runs and stages.

Spans are only recorded when MLflow is installed and MLFLOW_TRACKING_URI is
set. Otherwise ``pipeline_span`` yields a span that ignores every call, so
callers never branch on tracing availability.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import Any, Iterator

logger = logging.getLogger(__name__)


class _NoOpSpan:
    """Accepts the span calls the pipeline makes and drops them."""

    def set_inputs(self, inputs: dict[str, Any]) -> None:
        pass

    def set_outputs(self, outputs: dict[str, Any]) -> None:
        pass

    def set_attribute(self, key: str, value: Any) -> None:
        pass


def tracing_enabled() -> bool:
    return bool(os.getenv("MLFLOW_TRACKING_URI"))


@contextmanager
def pipeline_span(
    name: str,
    span_type: str = "CHAIN",
    paper_id: str = "",
) -> Iterator[Any]:
    """Open an MLflow span tagged with ``paper_id``, or a no-op span.

    Args:
        name: Span name, e.g. "paper_pipeline" or a stage display name.
        span_type: MLflow span type.
        paper_id: Paper the run processes; used to group traces.
    """
    if not tracing_enabled():
        yield _NoOpSpan()
        return
    try:
        import mlflow
    except ImportError:
        logger.debug("MLFLOW_TRACKING_URI is set but mlflow is not installed")
        yield _NoOpSpan()
        return

    with mlflow.start_span(name=name, span_type=span_type) as span:
        if paper_id:
            try:
                mlflow.update_current_trace(tags={"paper_id": paper_id})
            except Exception:
                logger.debug("Could not tag trace for paper %s", paper_id, exc_info=True)
        yield span
