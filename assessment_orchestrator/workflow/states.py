"""Workflow state definitions for one assessment submission."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Optional

from assessment_orchestrator.errors import AssessmentError
from assessment_orchestrator.models import ResultDocument


class WorkflowStatus(str, Enum):
    """States of the submission workflow."""

    IDLE = "idle"

    # Local phase
    VALIDATING = "validating"
    SUBMITTING = "submitting"

    # Remote phase
    QUEUED = "queued"
    PROCESSING = "processing"

    # Terminal states
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def is_terminal(self) -> bool:
        """Check if this is a terminal state."""
        return self in (
            WorkflowStatus.COMPLETED,
            WorkflowStatus.FAILED,
            WorkflowStatus.CANCELLED,
        )

    def is_active(self) -> bool:
        """Check if a submission is in flight."""
        return self is not WorkflowStatus.IDLE and not self.is_terminal()


# Valid state transitions
TRANSITIONS: dict[WorkflowStatus, set[WorkflowStatus]] = {
    WorkflowStatus.IDLE: {
        WorkflowStatus.VALIDATING,
        WorkflowStatus.QUEUED,  # Resume an accepted job
    },
    WorkflowStatus.VALIDATING: {
        WorkflowStatus.SUBMITTING,
        WorkflowStatus.FAILED,
        WorkflowStatus.CANCELLED,
    },
    WorkflowStatus.SUBMITTING: {
        WorkflowStatus.QUEUED,
        WorkflowStatus.FAILED,
        WorkflowStatus.CANCELLED,
    },
    WorkflowStatus.QUEUED: {
        WorkflowStatus.PROCESSING,
        WorkflowStatus.COMPLETED,
        WorkflowStatus.FAILED,
        WorkflowStatus.CANCELLED,
    },
    WorkflowStatus.PROCESSING: {
        WorkflowStatus.COMPLETED,
        WorkflowStatus.FAILED,
        WorkflowStatus.CANCELLED,
    },
    # Terminal states only leave through retry() or reset()
    WorkflowStatus.COMPLETED: {WorkflowStatus.IDLE},
    WorkflowStatus.FAILED: {WorkflowStatus.SUBMITTING, WorkflowStatus.IDLE},
    WorkflowStatus.CANCELLED: {WorkflowStatus.IDLE},
}

STATUS_MESSAGES: dict[WorkflowStatus, str] = {
    WorkflowStatus.IDLE: "",
    WorkflowStatus.VALIDATING: "Validating answers...",
    WorkflowStatus.SUBMITTING: "Submitting assessment...",
    WorkflowStatus.QUEUED: "Assessment queued for analysis",
    WorkflowStatus.PROCESSING: "Analyzing your answers...",
    WorkflowStatus.COMPLETED: "Analysis complete",
    WorkflowStatus.FAILED: "Assessment failed",
    WorkflowStatus.CANCELLED: "Assessment cancelled",
}

UNKNOWN_TRANSPORT = "unknown"


class TransitionError(Exception):
    """Invalid state transition."""

    def __init__(self, from_status: WorkflowStatus, to_status: WorkflowStatus) -> None:
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid transition: {from_status.value} -> {to_status.value}"
        )


@dataclass(frozen=True)
class ErrorInfo:
    """Failure carried by a terminal state."""

    kind: str
    message: str

    @classmethod
    def from_error(cls, error: AssessmentError) -> ErrorInfo:
        return cls(kind=error.kind.value, message=error.message)

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


@dataclass(frozen=True)
class WorkflowState:
    """Immutable snapshot of the workflow, delivered to every subscriber."""

    status: WorkflowStatus = WorkflowStatus.IDLE
    progress: int = 0
    message: str = ""
    job_id: Optional[str] = None
    result_id: Optional[str] = None
    error: Optional[ErrorInfo] = None
    transport_used: str = UNKNOWN_TRANSPORT
    estimated_time_remaining: Optional[str] = None
    started_at: Optional[float] = None
    can_retry: bool = False
    result: Optional[ResultDocument] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal()

    def can_transition_to(self, new_status: WorkflowStatus) -> bool:
        """Check if transition to new_status is valid."""
        return new_status in TRANSITIONS.get(self.status, set())

    def evolve(self, **changes: Any) -> WorkflowState:
        """Return a copy with ``changes`` applied."""
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "status": self.status.value,
            "progress": self.progress,
            "message": self.message,
            "job_id": self.job_id,
            "result_id": self.result_id,
            "error": self.error.to_dict() if self.error else None,
            "transport_used": self.transport_used,
            "estimated_time_remaining": self.estimated_time_remaining,
            "started_at": self.started_at,
            "can_retry": self.can_retry,
            "result": self.result.to_dict() if self.result else None,
        }
