"""Global test fixtures."""

from __future__ import annotations

import pytest

from assessment_orchestrator.api.client import AssessmentApiClient
from tests.helpers import FakeService, ManualClock, full_answers, make_api


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def service() -> FakeService:
    return FakeService()


@pytest.fixture
def api(service: FakeService) -> AssessmentApiClient:
    return make_api(service)


@pytest.fixture
def answers() -> dict[int, int]:
    return full_answers()
