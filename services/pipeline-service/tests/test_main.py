"""Tests for the command line entry point helpers."""

from uuid import uuid4

import pytest

from pipeline_service.__main__ import _progress_key


def test_progress_key_matches_broadcast_id() -> None:
    paper_id = uuid4()
    raw = f"  {str(paper_id).upper()} "
    assert _progress_key(raw) == str(paper_id)


@pytest.mark.parametrize("raw", ["not-a-uuid", "   "])
def test_progress_key_for_unusable_id(raw: str) -> None:
    assert _progress_key(raw) is None
