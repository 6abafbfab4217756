"""Submission workflow state machine."""

from assessment_orchestrator.workflow.machine import TokenBalance, WorkflowStateMachine
from assessment_orchestrator.workflow.states import (
    TRANSITIONS,
    ErrorInfo,
    TransitionError,
    WorkflowState,
    WorkflowStatus,
)

__all__ = [
    "ErrorInfo",
    "TRANSITIONS",
    "TokenBalance",
    "TransitionError",
    "WorkflowState",
    "WorkflowStateMachine",
    "WorkflowStatus",
]
