"""HTTP client tests against a MockTransport service."""

from __future__ import annotations

import httpx
import pytest

from assessment_orchestrator.api.client import AssessmentApiClient
from assessment_orchestrator.config.settings import ApiConfig, RetryConfig
from assessment_orchestrator.errors import (
    AuthError,
    InsufficientTokens,
    NetworkError,
    NotFound,
    ServerError,
    ValidationError,
)
from assessment_orchestrator.models import EventKind
from tests.helpers import (
    BASE_URL,
    SCORES,
    TOKEN,
    FakeService,
    SleepRecorder,
    make_api,
    status_body,
)


class TestSubmit:
    async def test_submit_unwraps_receipt(self, service, api) -> None:
        receipt = await api.submit({"assessmentName": "x", **SCORES})

        assert receipt.job_id == "J1"
        assert receipt.remaining_tokens == 9

        request = service.requests[-1]
        assert request.headers["Authorization"] == f"Bearer {TOKEN}"
        assert request.url.path == "/api/assessment/submit"

    @pytest.mark.parametrize(
        "code, error_type",
        [
            (400, ValidationError),
            (401, AuthError),
            (403, AuthError),
            (402, InsufficientTokens),
            (429, ServerError),
            (503, ServerError),
        ],
    )
    async def test_status_codes_map_to_error_kinds(self, service, api, code, error_type) -> None:
        service.submit_response = (code, {"message": "nope"})
        with pytest.raises(error_type):
            await api.submit({})

    async def test_insufficient_tokens_message(self, service, api) -> None:
        service.submit_response = (402, {"message": "Payment required"})
        with pytest.raises(InsufficientTokens) as exc_info:
            await api.submit({})
        assert "insufficient" in exc_info.value.message.lower()
        assert not exc_info.value.retryable

    async def test_submit_is_not_retried(self, service, api) -> None:
        service.submit_response = (503, {})
        with pytest.raises(ServerError):
            await api.submit({})
        assert service.count("POST", "/assessment/submit") == 1

    async def test_unsuccessful_envelope_is_a_server_error(self, service, api) -> None:
        service.submit_response = (200, {"success": False, "message": "Queue full"})
        with pytest.raises(ServerError, match="Queue full"):
            await api.submit({})

    async def test_missing_job_id_is_a_server_error(self, service, api) -> None:
        service.submit_response = (200, {"success": True, "data": {"status": "queued"}})
        with pytest.raises(ServerError, match="job ID"):
            await api.submit({})

    async def test_missing_credential_fails_before_request(self, service) -> None:
        api = make_api(service, token=None)
        with pytest.raises(AuthError):
            await api.submit({})
        assert service.requests == []

    async def test_transport_failure_is_a_network_error(self, service, api) -> None:
        service.submit_response = httpx.ConnectError("connection refused")
        with pytest.raises(NetworkError) as exc_info:
            await api.submit({})
        assert exc_info.value.retryable

    async def test_timeout_is_a_network_error(self, service, api) -> None:
        service.submit_response = httpx.ReadTimeout("slow")
        with pytest.raises(NetworkError, match="timeout"):
            await api.submit({})


class TestStatus:
    async def test_status_is_parsed(self, service, api) -> None:
        service.statuses = [(200, status_body("J1", "processing", 50))]
        status = await api.get_status("J1")

        assert status.kind is EventKind.PROCESSING
        assert status.progress == 50

    async def test_unknown_job_is_not_found(self, service, api) -> None:
        with pytest.raises(NotFound):
            await api.get_status("missing")

    async def test_unrecognized_status_is_a_server_error(self, service, api) -> None:
        service.statuses = [(200, {"jobId": "J1", "status": "paused"})]
        with pytest.raises(ServerError):
            await api.get_status("J1")


class TestResultLookups:
    async def test_transient_failures_are_retried(self, service, api) -> None:
        attempts = []

        def flaky(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            if len(attempts) < 3:
                return httpx.Response(502, json={})
            return httpx.Response(200, json={"data": {"id": "R1"}})

        api._client = httpx.AsyncClient(
            base_url="https://api.test/api",
            transport=httpx.MockTransport(flaky),
        )

        body = await api.get_result("R1")
        assert body == {"id": "R1"}
        assert len(attempts) == 3

    async def test_retry_budget_is_bounded(self, service, api) -> None:
        service.results["R1"] = (500, {})
        with pytest.raises(ServerError):
            await api.get_result("R1")
        assert service.count("GET", "/results/R1") == 3

    async def test_backoff_grows_and_is_capped(self, service) -> None:
        service.archive["R1"] = (502, {})
        sleep = SleepRecorder()
        api = AssessmentApiClient(
            config=ApiConfig(base_url=BASE_URL),
            token_provider=lambda: TOKEN,
            retry=RetryConfig(max_attempts=4, backoff_factor=2.0, initial_delay=0.5, max_backoff=1.5),
            client=httpx.AsyncClient(
                base_url=BASE_URL,
                transport=httpx.MockTransport(service.handler),
            ),
            sleep=sleep,
        )

        with pytest.raises(ServerError):
            await api.get_archived_result("R1")

        assert sleep.delays == [0.5, 1.0, 1.5]
        assert service.count("GET", "/assessment/archive/R1") == 4

    async def test_not_found_is_not_retried(self, service, api) -> None:
        with pytest.raises(NotFound):
            await api.get_result("R404")
        assert service.count("GET", "/results/R404") == 1


class TestHealth:
    async def test_healthy(self, api) -> None:
        assert (await api.check_health())["status"] == "healthy"

    async def test_failure_reports_unhealthy(self, service: FakeService, api) -> None:
        service.health = (503, {})
        body = await api.check_health()
        assert body["status"] == "unhealthy"
        assert body["error"]["kind"] == "ServerError"

    async def test_health_does_not_need_a_credential(self, service) -> None:
        api = make_api(service, token=None)
        assert (await api.check_health())["status"] == "healthy"
