"""Run parameter resolution.

Identifiers may arrive under legacy key spellings, or already be present
as typed values in the execution context. They are resolved once, at the
orchestrator boundary, into a typed ``RunParameters``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence
from uuid import UUID

from pipeline_service.context import ExecutionContext
from pipeline_service.errors import InvalidIdentifierError, MissingIdentifierError
from pipeline_service.models import ContextKey

PAPER_ID_KEY = "paperId"
PAPER_ID_FALLBACK_KEYS = ("paper", "paperGuid", "paper_id", "documentId")
USER_ID_KEY = "userId"
USER_ID_FALLBACK_KEYS = ("user", "userGuid", "user_id")

DEFAULT_PROCESSING_MODE = "COMPREHENSIVE"


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def _parse_uuid(value: Any, key: str) -> UUID:
    if isinstance(value, UUID):
        return value
    # Entity-like objects carry their id
    nested = getattr(value, "id", None)
    if nested is not None and not isinstance(value, (str, bytes)):
        return _parse_uuid(nested, key)
    text = str(value).strip()
    try:
        return UUID(text)
    except ValueError as exc:
        raise InvalidIdentifierError(
            f"Invalid {key} '{text}': not a valid UUID"
        ) from exc


def resolve_identifier(
    parameters: Mapping[str, Any],
    primary_key: str,
    fallback_keys: Sequence[str] = (),
    context: ExecutionContext | None = None,
) -> UUID:
    """Resolve an identifier from the context or the run parameters.

    Resolution order: a typed UUID already in ``context`` under
    ``primary_key``, then ``parameters[primary_key]``, then each of
    ``fallback_keys`` in order. String values are trimmed before parsing.

    Raises:
        MissingIdentifierError: If no key carries a value.
        InvalidIdentifierError: If the first value found is not a UUID.
    """
    if context is not None:
        typed = context.get(primary_key)
        if isinstance(typed, UUID):
            return typed

    for key in (primary_key, *fallback_keys):
        value = parameters.get(key)
        if _present(value):
            label = primary_key if key == primary_key else f"{primary_key} ({key})"
            return _parse_uuid(value, label)

    accepted = ", ".join((primary_key, *fallback_keys))
    raise MissingIdentifierError(
        f"Missing required parameter {primary_key} (accepted keys: {accepted})"
    )


@dataclass(frozen=True)
class RunParameters:
    """Typed parameters of one pipeline run."""

    paper_id: UUID
    user_id: UUID
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    processing_mode: str = DEFAULT_PROCESSING_MODE

    @classmethod
    def resolve(
        cls,
        parameters: Mapping[str, Any],
        context: ExecutionContext | None = None,
    ) -> "RunParameters":
        """Resolve identifiers from ``parameters`` and seed ``context``."""
        paper_id = resolve_identifier(
            parameters, PAPER_ID_KEY, PAPER_ID_FALLBACK_KEYS, context
        )
        user_id = resolve_identifier(
            parameters, USER_ID_KEY, USER_ID_FALLBACK_KEYS, context
        )
        start_time = parameters.get("startTime")
        if not isinstance(start_time, datetime):
            start_time = datetime.now(timezone.utc)
        mode = str(parameters.get("processingMode") or DEFAULT_PROCESSING_MODE)
        if context is not None:
            context.put(ContextKey.PAPER_ID, paper_id)
            context.put(ContextKey.USER_ID, user_id)
        return cls(
            paper_id=paper_id,
            user_id=user_id,
            start_time=start_time,
            processing_mode=mode,
        )

    def as_mapping(self) -> dict[str, Any]:
        """Return the canonical parameter map handed to a runner."""
        return {
            PAPER_ID_KEY: str(self.paper_id),
            USER_ID_KEY: str(self.user_id),
            "startTime": self.start_time,
            "processingMode": self.processing_mode,
        }
