"""Answer validation, payload construction and caller-side staging."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

from assessment_orchestrator.errors import ValidationError
from assessment_orchestrator.utils.logging import get_logger
from assessment_orchestrator.utils.store import KeyValueStore

logger = get_logger("submission.answers")

STAGED_ANSWERS_KEY = "assessment-answers"
JOB_ID_KEY = "assessment-job-id"

SCORE_SECTIONS = ("riasec", "ocean", "viaIs")

Answers = Mapping[Any, Optional[int]]
ScoreCalculator = Callable[[Answers], Mapping[str, Mapping[str, float]]]


@dataclass
class AnswerValidation:
    """Outcome of checking an answer sheet for completeness."""

    total_questions: int
    answered_questions: int
    missing_questions: list[int] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.missing_questions


def _normalize_key(key: Any) -> Any:
    if isinstance(key, str) and key.strip().isdigit():
        return int(key)
    return key


def validate_answers(answers: Answers, question_count: int) -> AnswerValidation:
    """
    Check that every question 1..question_count has an answer.

    Keys may be ints or numeric strings (as they come back from JSON).

    Args:
        answers: Question id to answer value (None means unanswered)
        question_count: Number of questions in the assessment

    Returns:
        AnswerValidation
    """
    normalized = {_normalize_key(k): v for k, v in answers.items()}
    missing = [
        qid for qid in range(1, question_count + 1)
        if normalized.get(qid) is None
    ]
    return AnswerValidation(
        total_questions=question_count,
        answered_questions=question_count - len(missing),
        missing_questions=missing,
    )


def ensure_complete(answers: Answers, question_count: int) -> AnswerValidation:
    """
    Validate answers and raise if any are missing.

    Raises:
        ValidationError: If the sheet is incomplete
    """
    validation = validate_answers(answers, question_count)
    if not validation.is_valid:
        count = len(validation.missing_questions)
        raise ValidationError(
            f"Missing {count} answer{'s' if count != 1 else ''}. Please complete all questions.",
            details={"missing_questions": validation.missing_questions[:20]},
        )
    return validation


def build_payload(
    assessment_name: str,
    scores: Mapping[str, Mapping[str, float]],
) -> dict[str, Any]:
    """
    Build the submit request body from computed scores.

    Raises:
        ValidationError: If a score section is missing or not a mapping
    """
    payload: dict[str, Any] = {"assessmentName": assessment_name}
    for section in SCORE_SECTIONS:
        values = scores.get(section)
        if not isinstance(values, Mapping) or not values:
            raise ValidationError(f"Score section '{section}' is missing or empty.")
        payload[section] = dict(values)
    return payload


def stage_answers(store: KeyValueStore, answers: Answers) -> None:
    """Persist an in-progress answer sheet so it survives a restart."""
    store.set(STAGED_ANSWERS_KEY, json.dumps({str(k): v for k, v in answers.items()}))


def load_staged_answers(store: KeyValueStore) -> Optional[dict[int, Optional[int]]]:
    """Load a staged answer sheet, or None if nothing usable is stored."""
    raw = store.get(STAGED_ANSWERS_KEY)
    if not isinstance(raw, str):
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("staged_answers_corrupt", error=str(e))
        return None
    if not isinstance(data, dict):
        return None
    return {_normalize_key(k): v for k, v in data.items()}


def clear_staged_answers(store: KeyValueStore) -> None:
    store.delete(STAGED_ANSWERS_KEY)
