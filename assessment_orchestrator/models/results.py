"""API payload models for submission, status and result documents."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from assessment_orchestrator.models.events import (
    EventKind,
    MalformedEvent,
    TransportEvent,
    TransportSource,
    coerce_progress,
    error_text,
    parse_status_kind,
)


@dataclass
class SubmitReceipt:
    """Acknowledgement returned by the submit endpoint."""

    job_id: str
    status: str = "queued"
    estimated_processing_time: Optional[str] = None
    queue_position: Optional[int] = None
    token_cost: Optional[int] = None
    remaining_tokens: Optional[int] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SubmitReceipt:
        """Create from the unwrapped response body."""
        job_id = data.get("jobId") or data.get("job_id")
        if not job_id:
            raise MalformedEvent("Submit response is missing jobId")
        estimated = data.get("estimatedProcessingTime")
        return cls(
            job_id=str(job_id),
            status=str(data.get("status") or "queued"),
            estimated_processing_time=str(estimated) if estimated is not None else None,
            queue_position=data.get("queuePosition"),
            token_cost=data.get("tokenCost"),
            remaining_tokens=data.get("remainingTokens"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status,
            "estimated_processing_time": self.estimated_processing_time,
            "queue_position": self.queue_position,
            "token_cost": self.token_cost,
            "remaining_tokens": self.remaining_tokens,
        }


@dataclass
class JobStatus:
    """A status endpoint reading for one job."""

    job_id: str
    kind: EventKind
    progress: Optional[int] = None
    result_id: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], job_id: str = "") -> JobStatus:
        """
        Create from the unwrapped status body.

        Args:
            data: Response body
            job_id: Job id requested, used when the body omits it
        """
        if not isinstance(data, dict):
            raise MalformedEvent("Status response must be an object")
        kind = parse_status_kind(data.get("status"))
        result_id = data.get("resultId") or data.get("result_id")
        return cls(
            job_id=str(data.get("jobId") or data.get("job_id") or job_id),
            kind=kind,
            progress=coerce_progress(data.get("progress")),
            result_id=str(result_id) if result_id else None,
            error=error_text(data) if kind is EventKind.FAILED else None,
        )

    def to_event(self) -> TransportEvent:
        progress = self.progress
        if self.kind is EventKind.COMPLETED and progress is None:
            progress = 100
        return TransportEvent(
            job_id=self.job_id,
            kind=self.kind,
            source=TransportSource.POLLING,
            progress=progress,
            result_id=self.result_id,
            error=self.error,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.kind.value,
            "progress": self.progress,
            "result_id": self.result_id,
            "error": self.error,
        }


@dataclass
class ResultDocument:
    """Final analysis artifact for a completed job."""

    id: str
    status: str
    created_at: Optional[str] = None
    assessment_data: dict[str, Any] = field(default_factory=dict)
    persona_profile: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResultDocument:
        """Create from the unwrapped result body."""
        if not isinstance(data, dict) or not data.get("id"):
            raise MalformedEvent("Result response is missing id")
        return cls(
            id=str(data["id"]),
            status=str(data.get("status") or "completed"),
            created_at=data.get("createdAt") or data.get("created_at"),
            assessment_data=data.get("assessment_data") or {},
            persona_profile=data.get("persona_profile") or {},
            raw=data,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "created_at": self.created_at,
            "assessment_data": self.assessment_data,
            "persona_profile": self.persona_profile,
        }
