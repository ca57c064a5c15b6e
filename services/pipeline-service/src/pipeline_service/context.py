"""Per-run key-value store carrying stage results forward.

One ExecutionContext exists per pipeline run. It is created when the run
starts, passed by reference to every stage, and dropped when the run ends.
Stages run one after another, so the context needs no locking: a result
stored by stage N is visible to stage N+1 before it starts.
"""

from __future__ import annotations

import logging
from typing import Any, Iterator

from pipeline_service.errors import StagePreconditionError
from pipeline_service.models import AgentResult

logger = logging.getLogger(__name__)

# Candidate fields, in order of preference
CONTENT_KEYS = ("textContent", "extractedText", "content", "text")
TITLE_KEYS = ("title", "paperTitle", "documentTitle")
SUMMARY_KEYS = ("standardSummary", "summary", "content")


class ExecutionContext:
    """Ordered mapping of context keys to AgentResults and scalar values."""

    def __init__(self, run_id: str = "") -> None:
        self.run_id = run_id
        self._entries: dict[str, Any] = {}

    def put(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""
        self._entries[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        return self._entries.get(key, default)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> list[str]:
        return list(self._entries)

    def store_result(self, key: str, result: AgentResult) -> None:
        """Record a stage outcome. Storing the same key again overwrites it."""
        self.put(key, result)
        logger.debug(
            "Stored %s (success=%s) in context %s", key, result.success, self.run_id
        )

    def get_result(self, key: str) -> AgentResult | None:
        value = self._entries.get(key)
        return value if isinstance(value, AgentResult) else None

    def results(self) -> dict[str, AgentResult]:
        """Return every stored AgentResult in insertion order."""
        return {
            key: value
            for key, value in self._entries.items()
            if isinstance(value, AgentResult)
        }

    def require_result(self, key: str, stage: str) -> AgentResult:
        """Return a successful upstream result or raise.

        Raises:
            StagePreconditionError: If ``key`` is absent or its stage failed.
        """
        result = self.get_result(key)
        if result is None:
            raise StagePreconditionError(f"{stage}: {key} result not available")
        if not result.success:
            raise StagePreconditionError(
                f"{stage}: {key} failed: {result.error_message}"
            )
        return result

    def optional_result(self, key: str) -> AgentResult | None:
        """Return an upstream result if it succeeded with data, else None."""
        result = self.get_result(key)
        if result is None or not result.success or not result.result_data:
            return None
        return result


def extract_string(result: AgentResult | None, keys: tuple[str, ...]) -> str | None:
    """Return the first non-blank string among ``keys`` in a result's data."""
    if result is None or not result.result_data:
        return None
    for key in keys:
        value = result.result_data.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


def extract_content(result: AgentResult, stage: str) -> str:
    """Return the text content of an extraction result.

    Raises:
        StagePreconditionError: If every candidate field is blank or absent.
    """
    content = extract_string(result, CONTENT_KEYS)
    if content is None:
        raise StagePreconditionError(f"{stage}: no content available")
    return content
