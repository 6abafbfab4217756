"""Transport event model and boundary validation."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional


class EventKind(str, Enum):
    """Lifecycle stage reported by a transport."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        """Lifecycle order: queued < processing < terminal."""
        return _RANKS[self]

    def is_terminal(self) -> bool:
        return self in (EventKind.COMPLETED, EventKind.FAILED)


_RANKS = {
    EventKind.QUEUED: 0,
    EventKind.PROCESSING: 1,
    EventKind.COMPLETED: 2,
    EventKind.FAILED: 2,
}


class TransportSource(str, Enum):
    """Which transport produced an event."""

    SOCKET = "socket"
    POLLING = "polling"


class MalformedEvent(ValueError):
    """A transport payload did not match any known event shape."""


@dataclass(frozen=True)
class TransportEvent:
    """A normalized job status notification from either transport."""

    job_id: str
    kind: EventKind
    source: TransportSource
    progress: Optional[int] = None
    result_id: Optional[str] = None
    error: Optional[str] = None
    received_at: float = field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.kind.is_terminal()

    @property
    def awaiting_result(self) -> bool:
        """Completed, but the result id has not been published yet."""
        return self.kind is EventKind.COMPLETED and not self.result_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "kind": self.kind.value,
            "source": self.source.value,
            "progress": self.progress,
            "result_id": self.result_id,
            "error": self.error,
            "received_at": self.received_at,
        }


# Server-side socket event names
SOCKET_EVENT_KINDS: dict[str, EventKind] = {
    "analysis-started": EventKind.PROCESSING,
    "analysis-complete": EventKind.COMPLETED,
    "analysis-failed": EventKind.FAILED,
}

# Status strings accepted from the status endpoint
STATUS_KINDS: dict[str, EventKind] = {
    "queued": EventKind.QUEUED,
    "pending": EventKind.QUEUED,
    "processing": EventKind.PROCESSING,
    "in_progress": EventKind.PROCESSING,
    "started": EventKind.PROCESSING,
    "completed": EventKind.COMPLETED,
    "complete": EventKind.COMPLETED,
    "failed": EventKind.FAILED,
    "error": EventKind.FAILED,
}


def coerce_progress(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise MalformedEvent(f"progress must be numeric, got {value!r}")
    try:
        progress = int(float(value))
    except (TypeError, ValueError) as e:
        raise MalformedEvent(f"progress must be numeric, got {value!r}") from e
    return max(0, min(100, progress))


def _optional_str(data: Mapping[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return str(value)
    return None


def error_text(data: Mapping[str, Any]) -> Optional[str]:
    error = data.get("error")
    if isinstance(error, Mapping):
        return _optional_str(error, "message", "code")
    if error is not None and error != "":
        return str(error)
    return _optional_str(data, "message")


def parse_socket_event(name: str, payload: Any) -> TransportEvent:
    """
    Validate a raw socket event and normalize it.

    Args:
        name: Server event name
        payload: Event body as delivered by the socket client

    Returns:
        TransportEvent with source=socket

    Raises:
        MalformedEvent: For unknown event names or payloads without a jobId
    """
    kind = SOCKET_EVENT_KINDS.get(name)
    if kind is None:
        raise MalformedEvent(f"Unknown socket event: {name!r}")
    if not isinstance(payload, Mapping):
        raise MalformedEvent(f"{name} payload must be an object, got {type(payload).__name__}")

    job_id = _optional_str(payload, "jobId", "job_id")
    if not job_id:
        raise MalformedEvent(f"{name} payload is missing jobId")

    metadata = payload.get("metadata")
    progress = payload.get("progress")
    if progress is None and isinstance(metadata, Mapping):
        progress = metadata.get("progress")

    result_id = _optional_str(payload, "resultId", "result_id")
    error = None
    if kind is EventKind.COMPLETED:
        if progress is None:
            progress = 100
    elif kind is EventKind.FAILED:
        error = error_text(payload)

    return TransportEvent(
        job_id=job_id,
        kind=kind,
        source=TransportSource.SOCKET,
        progress=coerce_progress(progress),
        result_id=result_id,
        error=error,
    )


def parse_status_kind(status: Any) -> EventKind:
    """Map a status endpoint string onto the closed event kind set."""
    if not isinstance(status, str):
        raise MalformedEvent(f"status must be a string, got {status!r}")
    kind = STATUS_KINDS.get(status.strip().lower())
    if kind is None:
        raise MalformedEvent(f"Unknown job status: {status!r}")
    return kind
