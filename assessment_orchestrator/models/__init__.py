"""Data models for jobs, transport events and results."""

from assessment_orchestrator.models.events import (
    EventKind,
    MalformedEvent,
    TransportEvent,
    TransportSource,
    parse_socket_event,
    parse_status_kind,
)
from assessment_orchestrator.models.results import (
    JobStatus,
    ResultDocument,
    SubmitReceipt,
)

__all__ = [
    # Events
    "EventKind",
    "MalformedEvent",
    "TransportEvent",
    "TransportSource",
    "parse_socket_event",
    "parse_status_kind",
    # API payloads
    "JobStatus",
    "ResultDocument",
    "SubmitReceipt",
]
