"""Error taxonomy for assessment orchestration.

Errors are classified by recovery path. Each carries a machine-readable
``kind`` that the workflow copies into its terminal state, a human-readable
message, and whether an automatic or user-initiated retry makes sense.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Machine-readable failure categories."""

    VALIDATION = "ValidationError"
    AUTH = "AuthError"
    INSUFFICIENT_TOKENS = "InsufficientTokens"
    NETWORK = "NetworkError"
    SERVER = "ServerError"
    DUPLICATE_SUBMISSION = "DuplicateSubmission"
    TIMEOUT = "TimeoutError"
    POLLING_EXHAUSTED = "PollingExhausted"
    POLLING_TIMEOUT = "PollingTimeout"
    NOT_FOUND = "NotFound"
    CANCELLED = "Cancelled"
    JOB_FAILED = "JobFailed"
    SOCKET = "SocketError"
    UNEXPECTED = "UnexpectedError"


RETRYABLE_KINDS = frozenset({
    ErrorKind.NETWORK,
    ErrorKind.SERVER,
    ErrorKind.TIMEOUT,
    ErrorKind.POLLING_EXHAUSTED,
})


class AssessmentError(Exception):
    """Base class for every orchestration failure."""

    kind: ErrorKind = ErrorKind.UNEXPECTED
    default_message = "Something went wrong. Please try again."

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.message = message or self.default_message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        """Whether retrying the same submission can succeed."""
        return self.kind in RETRYABLE_KINDS

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.status_code is not None:
            result["status_code"] = self.status_code
        return result


class ValidationError(AssessmentError):
    """Answers are incomplete or the server rejected the payload."""

    kind = ErrorKind.VALIDATION
    default_message = "Some answers are missing. Please complete all questions."


class AuthError(AssessmentError):
    """Credential missing, expired or rejected."""

    kind = ErrorKind.AUTH
    default_message = "Authentication failed. Your session may have expired. Please login again."


class InsufficientTokens(AssessmentError):
    """The account cannot pay for the analysis."""

    kind = ErrorKind.INSUFFICIENT_TOKENS
    default_message = "Insufficient tokens to run the analysis. Please purchase more tokens."


class NetworkError(AssessmentError):
    """The request never produced an HTTP response."""

    kind = ErrorKind.NETWORK
    default_message = "Network error. Please check your connection and try again."


class ServerError(AssessmentError):
    """The service answered with a transient failure (5xx or 429)."""

    kind = ErrorKind.SERVER
    default_message = "Service temporarily unavailable. Please try again later."


class DuplicateSubmission(AssessmentError):
    """Identical content is already being submitted or was just submitted."""

    kind = ErrorKind.DUPLICATE_SUBMISSION
    default_message = (
        "Assessment submission already in progress. "
        "Please wait for the current submission to complete."
    )


class WorkflowTimeout(AssessmentError):
    """No terminal state was reached within the overall budget."""

    kind = ErrorKind.TIMEOUT
    default_message = (
        "Assessment processing is taking longer than expected. "
        "Please check the results page or try again later."
    )


class PollingExhausted(AssessmentError):
    """Too many consecutive status fetches failed."""

    kind = ErrorKind.POLLING_EXHAUSTED
    default_message = "Lost contact with the assessment service while waiting for the analysis."


class PollingTimeout(AssessmentError):
    """The attempt budget ran out before the job finished."""

    kind = ErrorKind.POLLING_TIMEOUT
    default_message = "The analysis did not finish within the polling budget."


class NotFound(AssessmentError):
    """The requested job or result does not exist."""

    kind = ErrorKind.NOT_FOUND
    default_message = "The assessment result could not be found."


class Cancelled(AssessmentError):
    """The user stopped the workflow."""

    kind = ErrorKind.CANCELLED
    default_message = "Assessment cancelled."


class JobFailed(AssessmentError):
    """The remote analysis reported a failure."""

    kind = ErrorKind.JOB_FAILED
    default_message = "The analysis failed on the server. Please try again."


class SocketChannelError(AssessmentError):
    """The push channel failed. Only ever disables that transport."""

    kind = ErrorKind.SOCKET
    default_message = "Realtime connection failed."


class SocketAuthError(SocketChannelError):
    """The push channel did not authenticate in time or was rejected."""

    default_message = "Realtime authentication failed."


def sanitize_backend_message(raw: Any) -> str:
    """
    Turn a backend failure payload into text safe to show a user.

    Args:
        raw: A string, a mapping with ``message``, or anything else

    Returns:
        Human-readable message
    """
    if isinstance(raw, dict):
        raw = raw.get("message") or raw.get("error") or ""
    message = str(raw).strip() if raw is not None else ""

    if not message:
        return JobFailed.default_message
    # JS-style crash text from the analysis worker
    if "Cannot read properties of undefined" in message or "Traceback" in message:
        return "An internal error occurred in the analysis service. Please try again shortly."
    return message
