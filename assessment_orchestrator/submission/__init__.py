"""Submission guarding, answer validation and staging."""

from assessment_orchestrator.submission.answers import (
    AnswerValidation,
    build_payload,
    clear_staged_answers,
    ensure_complete,
    load_staged_answers,
    stage_answers,
    validate_answers,
)
from assessment_orchestrator.submission.guard import (
    GuardEntry,
    SubmissionRegistry,
    fingerprint,
)

__all__ = [
    # Guard
    "GuardEntry",
    "SubmissionRegistry",
    "fingerprint",
    # Answers
    "AnswerValidation",
    "build_payload",
    "clear_staged_answers",
    "ensure_complete",
    "load_staged_answers",
    "stage_answers",
    "validate_answers",
]
