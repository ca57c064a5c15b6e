"""Tests for run parameter resolution and legacy key aliases."""

from uuid import UUID, uuid4

import pytest

from pipeline_service.context import ExecutionContext
from pipeline_service.errors import (
    InvalidIdentifierError,
    MissingIdentifierError,
    PipelineConfigurationError,
)
from pipeline_service.models import ContextKey
from pipeline_service.params import (
    PAPER_ID_FALLBACK_KEYS,
    PAPER_ID_KEY,
    USER_ID_FALLBACK_KEYS,
    USER_ID_KEY,
    RunParameters,
    resolve_identifier,
)

PAPER_UUID = UUID("8f14e45f-ceea-467f-a8f5-6a2b4a7c3e21")


class TestResolveIdentifier:
    """Tests for resolve_identifier()."""

    @pytest.mark.parametrize("key", [PAPER_ID_KEY, *PAPER_ID_FALLBACK_KEYS])
    def test_every_alias_resolves_same_uuid(self, key: str) -> None:
        """Each accepted key yields the same UUID, surrounding whitespace ignored."""
        parameters = {key: f"  {PAPER_UUID}\n"}
        resolved = resolve_identifier(parameters, PAPER_ID_KEY, PAPER_ID_FALLBACK_KEYS)
        assert resolved == PAPER_UUID

    def test_primary_key_wins_over_fallbacks(self) -> None:
        other = uuid4()
        parameters = {"paper": str(other), PAPER_ID_KEY: str(PAPER_UUID)}
        resolved = resolve_identifier(parameters, PAPER_ID_KEY, PAPER_ID_FALLBACK_KEYS)
        assert resolved == PAPER_UUID

    def test_fallbacks_tried_in_order(self) -> None:
        second = uuid4()
        parameters = {"paperGuid": str(second), "paper": str(PAPER_UUID)}
        resolved = resolve_identifier(parameters, PAPER_ID_KEY, PAPER_ID_FALLBACK_KEYS)
        assert resolved == PAPER_UUID

    def test_blank_value_falls_through_to_next_key(self) -> None:
        parameters = {PAPER_ID_KEY: "   ", "documentId": str(PAPER_UUID)}
        resolved = resolve_identifier(parameters, PAPER_ID_KEY, PAPER_ID_FALLBACK_KEYS)
        assert resolved == PAPER_UUID

    def test_typed_context_value_wins(self) -> None:
        context = ExecutionContext("run")
        context.put(PAPER_ID_KEY, PAPER_UUID)
        resolved = resolve_identifier(
            {PAPER_ID_KEY: str(uuid4())}, PAPER_ID_KEY, PAPER_ID_FALLBACK_KEYS, context
        )
        assert resolved == PAPER_UUID

    def test_untyped_context_value_is_ignored(self) -> None:
        context = ExecutionContext("run")
        context.put(PAPER_ID_KEY, "not-typed")
        resolved = resolve_identifier(
            {PAPER_ID_KEY: str(PAPER_UUID)}, PAPER_ID_KEY, PAPER_ID_FALLBACK_KEYS, context
        )
        assert resolved == PAPER_UUID

    def test_uuid_instance_accepted(self) -> None:
        assert resolve_identifier({PAPER_ID_KEY: PAPER_UUID}, PAPER_ID_KEY) == PAPER_UUID

    def test_entity_with_id_accepted(self) -> None:
        class Entity:
            id = str(PAPER_UUID)

        resolved = resolve_identifier({"paper": Entity()}, PAPER_ID_KEY, ("paper",))
        assert resolved == PAPER_UUID

    def test_missing_identifier(self) -> None:
        """Absence names the primary key and lists the accepted aliases."""
        with pytest.raises(MissingIdentifierError) as exc_info:
            resolve_identifier({}, PAPER_ID_KEY, PAPER_ID_FALLBACK_KEYS)
        message = str(exc_info.value)
        assert "Missing" in message
        assert "paperId" in message
        assert "documentId" in message

    def test_invalid_identifier(self) -> None:
        """An unparseable value is reported differently from a missing one."""
        with pytest.raises(InvalidIdentifierError) as exc_info:
            resolve_identifier({PAPER_ID_KEY: " not-a-uuid "}, PAPER_ID_KEY)
        message = str(exc_info.value)
        assert "Invalid paperId 'not-a-uuid'" in message
        assert "Missing" not in message

    def test_invalid_alias_names_alias(self) -> None:
        with pytest.raises(InvalidIdentifierError, match=r"paperId \(paper_id\)"):
            resolve_identifier({"paper_id": "42"}, PAPER_ID_KEY, PAPER_ID_FALLBACK_KEYS)

    def test_both_are_configuration_errors(self) -> None:
        assert issubclass(MissingIdentifierError, PipelineConfigurationError)
        assert issubclass(InvalidIdentifierError, PipelineConfigurationError)


class TestRunParameters:
    """Tests for RunParameters.resolve()."""

    @pytest.mark.parametrize("user_key", [USER_ID_KEY, *USER_ID_FALLBACK_KEYS])
    def test_resolves_user_aliases(self, user_key: str) -> None:
        user = uuid4()
        params = RunParameters.resolve({"paper": str(PAPER_UUID), user_key: str(user)})
        assert params.paper_id == PAPER_UUID
        assert params.user_id == user
        assert params.processing_mode == "COMPREHENSIVE"

    def test_seeds_context_with_typed_ids(self) -> None:
        user = uuid4()
        context = ExecutionContext("run")
        RunParameters.resolve({PAPER_ID_KEY: str(PAPER_UUID), USER_ID_KEY: str(user)}, context)
        assert context.get(ContextKey.PAPER_ID) == PAPER_UUID
        assert context.get(ContextKey.USER_ID) == user

    def test_missing_user_is_rejected(self) -> None:
        with pytest.raises(MissingIdentifierError, match="userId"):
            RunParameters.resolve({PAPER_ID_KEY: str(PAPER_UUID)})

    def test_as_mapping_round_trips(self) -> None:
        user = uuid4()
        params = RunParameters.resolve(
            {PAPER_ID_KEY: str(PAPER_UUID), USER_ID_KEY: str(user), "processingMode": "QUICK"}
        )
        again = RunParameters.resolve(params.as_mapping())
        assert again.paper_id == params.paper_id
        assert again.user_id == params.user_id
        assert again.start_time == params.start_time
        assert again.processing_mode == "QUICK"
