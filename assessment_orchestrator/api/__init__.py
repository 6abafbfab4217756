"""Assessment service HTTP API."""

from assessment_orchestrator.api.client import AssessmentApiClient, raise_for_status
from assessment_orchestrator.api.results import ResultFetcher

__all__ = [
    "AssessmentApiClient",
    "ResultFetcher",
    "raise_for_status",
]
