"""Answer validation, payload building and staging tests."""

from __future__ import annotations

import pytest

from assessment_orchestrator.errors import ValidationError
from assessment_orchestrator.submission.answers import (
    STAGED_ANSWERS_KEY,
    build_payload,
    clear_staged_answers,
    ensure_complete,
    load_staged_answers,
    stage_answers,
    validate_answers,
)
from assessment_orchestrator.utils.store import MemoryStore
from tests.helpers import SCORES, full_answers


class TestValidation:
    def test_complete_sheet_is_valid(self) -> None:
        result = validate_answers(full_answers(200), 200)
        assert result.is_valid
        assert result.answered_questions == 200

    def test_missing_and_unanswered_questions_are_reported(self) -> None:
        answers = full_answers(200)
        del answers[7]
        answers[42] = None

        result = validate_answers(answers, 200)
        assert result.missing_questions == [7, 42]
        assert result.answered_questions == 198

    def test_numeric_string_keys_are_accepted(self) -> None:
        answers = {str(k): v for k, v in full_answers(10).items()}
        assert validate_answers(answers, 10).is_valid

    def test_ensure_complete_raises_with_count(self) -> None:
        answers = full_answers(197)
        with pytest.raises(ValidationError, match="Missing 3 answers"):
            ensure_complete(answers, 200)


class TestPayload:
    def test_payload_has_name_and_all_sections(self) -> None:
        payload = build_payload("AI-Driven Talent Mapping", SCORES)
        assert payload["assessmentName"] == "AI-Driven Talent Mapping"
        assert payload["riasec"] == SCORES["riasec"]
        assert payload["ocean"] == SCORES["ocean"]
        assert payload["viaIs"] == SCORES["viaIs"]

    def test_missing_section_is_rejected(self) -> None:
        scores = {"riasec": SCORES["riasec"], "ocean": SCORES["ocean"]}
        with pytest.raises(ValidationError, match="viaIs"):
            build_payload("x", scores)


class TestStaging:
    def test_staged_answers_round_trip_with_int_keys(self) -> None:
        store = MemoryStore()
        stage_answers(store, {1: 5, 2: None})

        assert load_staged_answers(store) == {1: 5, 2: None}

    def test_corrupt_staging_is_ignored(self) -> None:
        store = MemoryStore()
        store.set(STAGED_ANSWERS_KEY, "{broken")
        assert load_staged_answers(store) is None

    def test_clear_removes_staging(self) -> None:
        store = MemoryStore()
        stage_answers(store, {1: 5})
        clear_staged_answers(store)
        assert load_staged_answers(store) is None
