"""Test doubles shared across the suite.

The assessment service is faked at the HTTP boundary with
``httpx.MockTransport`` and the realtime server with an in-memory stand-in
for ``socketio.AsyncClient``. Everything above those two boundaries runs
for real.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

import httpx
import socketio

from assessment_orchestrator.api.client import AssessmentApiClient
from assessment_orchestrator.api.results import ResultFetcher
from assessment_orchestrator.config.settings import ApiConfig, ResultFetchConfig, RetryConfig
from assessment_orchestrator.submission.guard import SubmissionRegistry
from assessment_orchestrator.transport.coordinator import TransportCoordinator
from assessment_orchestrator.transport.polling import PollingLoop
from assessment_orchestrator.transport.socket_channel import SocketChannel
from assessment_orchestrator.utils.store import MemoryStore
from assessment_orchestrator.workflow.machine import WorkflowStateMachine

BASE_URL = "https://api.test/api"
TOKEN = "test-token"

SCORES = {
    "riasec": {"realistic": 60, "investigative": 80, "artistic": 45},
    "ocean": {"openness": 75, "conscientiousness": 68},
    "viaIs": {"creativity": 82, "curiosity": 88},
}


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class ManualClock:
    """Deterministic epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# HTTP service fake
# ---------------------------------------------------------------------------


def submit_ok(job_id: str = "J1") -> tuple[int, dict]:
    return 200, {
        "success": True,
        "data": {
            "jobId": job_id,
            "status": "queued",
            "estimatedProcessingTime": "2-5 minutes",
            "queuePosition": 1,
            "tokenCost": 1,
            "remainingTokens": 9,
        },
    }


def status_body(job_id: str, status: str, progress: int, result_id: Optional[str] = None) -> dict:
    data: dict[str, Any] = {"jobId": job_id, "status": status, "progress": progress}
    if result_id:
        data["resultId"] = result_id
    return {"success": True, "data": data}


def result_body(result_id: str) -> dict:
    return {
        "success": True,
        "data": {
            "id": result_id,
            "status": "completed",
            "createdAt": "2024-01-01T00:00:00Z",
            "assessment_data": {"riasec": SCORES["riasec"]},
            "persona_profile": {"archetype": "The Analytical Innovator"},
        },
    }


class FakeService:
    """
    Scripted assessment service behind an httpx.MockTransport.

    ``statuses`` is consumed one entry per status request; the last entry
    repeats once the script runs out. Entries are ``(code, body)`` tuples or
    exceptions to raise from the transport.
    """

    def __init__(self) -> None:
        self.submit_response: Any = submit_ok()
        self.statuses: list[Any] = []
        self.results: dict[str, Any] = {}
        self.archive: dict[str, Any] = {}
        self.health: Any = (200, {"status": "healthy"})
        self.requests: list[httpx.Request] = []

    def count(self, method: str, path: str) -> int:
        return sum(
            1 for r in self.requests
            if r.method == method and r.url.path == f"/api{path}"
        )

    @property
    def status_requests(self) -> int:
        return sum(1 for r in self.requests if "/assessment/status/" in r.url.path)

    def _reply(self, entry: Any) -> httpx.Response:
        if isinstance(entry, Exception):
            raise entry
        code, body = entry
        return httpx.Response(code, json=body)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/api")

        if request.method == "POST" and path == "/assessment/submit":
            return self._reply(self.submit_response)
        if path.startswith("/assessment/status/"):
            if not self.statuses:
                return httpx.Response(404, json={"message": "Job not found"})
            entry = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
            return self._reply(entry)
        if path.startswith("/results/"):
            result_id = path.rsplit("/", 1)[-1]
            return self._reply(self.results.get(result_id, (404, {"message": "Not found"})))
        if path.startswith("/assessment/archive/"):
            result_id = path.rsplit("/", 1)[-1]
            return self._reply(self.archive.get(result_id, (404, {"message": "Not found"})))
        if path == "/assessment/health":
            return self._reply(self.health)
        return httpx.Response(404, json={"message": f"No route for {path}"})


async def no_sleep(_delay: float) -> None:
    await asyncio.sleep(0)


class SleepRecorder:
    """Sleep replacement that records requested delays and yields once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


def make_api(
    service: FakeService,
    token: Optional[str] = TOKEN,
) -> AssessmentApiClient:
    return AssessmentApiClient(
        config=ApiConfig(base_url=BASE_URL),
        token_provider=lambda: token,
        retry=RetryConfig(max_attempts=3, initial_delay=0.0),
        client=httpx.AsyncClient(
            base_url=BASE_URL,
            transport=httpx.MockTransport(service.handler),
        ),
        sleep=no_sleep,
    )


def make_fetcher(
    api: AssessmentApiClient,
    max_attempts: int = 3,
    sleep: Callable[[float], Any] = no_sleep,
) -> ResultFetcher:
    return ResultFetcher(
        api,
        config=ResultFetchConfig(max_attempts=max_attempts, initial_delay=1.5, max_delay=10.0),
        sleep=sleep,
    )


# ---------------------------------------------------------------------------
# Realtime server fake
# ---------------------------------------------------------------------------


class FakeSocketClient:
    """
    In-memory stand-in for ``socketio.AsyncClient``.

    ``auth`` controls the reply to ``authenticate``: "ok", "error", or
    "silent" (never answers). ``fail_join`` makes room joins raise.
    """

    def __init__(
        self,
        auth: str = "ok",
        auth_delay: float = 0.0,
        fail_connect: bool = False,
        fail_join: bool = False,
    ) -> None:
        self.auth = auth
        self.auth_delay = auth_delay
        self.fail_connect = fail_connect
        self.fail_join = fail_join
        self.handlers: dict[str, Callable[..., Any]] = {}
        self.emitted: list[tuple[str, Any]] = []
        self.connected = False
        self.disconnect_calls = 0
        self.sid = "fake-sid"
        self.connect_kwargs: dict[str, Any] = {}

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self.handlers[event] = handler

    async def connect(self, url: str, **kwargs: Any) -> None:
        self.connect_kwargs = {"url": url, **kwargs}
        if self.fail_connect:
            raise socketio.exceptions.ConnectionError("Connection refused")
        self.connected = True
        self.server_emit("connect")

    async def emit(self, event: str, data: Any = None) -> None:
        self.emitted.append((event, data))
        if event == "subscribe-assessment" and self.fail_join:
            raise socketio.exceptions.BadNamespaceError("/ is not a connected namespace.")
        if event != "authenticate":
            return
        loop = asyncio.get_running_loop()
        if self.auth == "ok":
            loop.call_later(
                self.auth_delay,
                self.server_emit,
                "authenticated",
                {"userId": "user-1", "email": "user@example.com"},
            )
        elif self.auth == "error":
            loop.call_later(
                self.auth_delay,
                self.server_emit,
                "auth_error",
                {"message": "Invalid token"},
            )

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        if self.connected:
            self.connected = False
            self.server_emit("disconnect")

    def server_emit(self, event: str, *args: Any) -> None:
        """Deliver a server event to the registered handler."""
        handler = self.handlers.get(event)
        if handler is not None:
            handler(*args)

    def emitted_names(self) -> list[str]:
        return [name for name, _ in self.emitted]


class SocketClientFactory:
    """Hands out FakeSocketClients and remembers them."""

    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.clients: list[FakeSocketClient] = []

    def __call__(self) -> FakeSocketClient:
        client = FakeSocketClient(**self.kwargs)
        self.clients.append(client)
        return client

    @property
    def last(self) -> FakeSocketClient:
        return self.clients[-1]


def make_channel(factory: SocketClientFactory, auth_timeout: float = 1.0) -> SocketChannel:
    return SocketChannel(
        url="https://socket.test",
        client_factory=factory,
        auth_timeout=auth_timeout,
        connect_timeout=1.0,
        heartbeat_interval=60.0,
    )


# ---------------------------------------------------------------------------
# Workflow assembly
# ---------------------------------------------------------------------------


class FakeTokenBalance:
    def __init__(self, fail: bool = False) -> None:
        self.calls = 0
        self.fail = fail

    async def refresh(self) -> None:
        self.calls += 1
        if self.fail:
            raise RuntimeError("ledger unavailable")


def full_answers(count: int = 200) -> dict[int, int]:
    return {qid: (qid % 5) + 1 for qid in range(1, count + 1)}


def make_machine(
    api: AssessmentApiClient,
    *,
    registry: Optional[SubmissionRegistry] = None,
    store: Optional[MemoryStore] = None,
    socket_factory: Optional[SocketClientFactory] = None,
    polling_interval: float = 0.01,
    polling_sleep: Optional[Callable[[float], Any]] = None,
    max_attempts: int = 90,
    grace_period: float = 10.0,
    overall_timeout: float = 5.0,
    token_balance: Optional[FakeTokenBalance] = None,
    scorer: Optional[Callable[[Any], Any]] = None,
) -> WorkflowStateMachine:
    """Build a state machine over ``api`` with fast test timings."""

    def polling_factory() -> PollingLoop:
        kwargs: dict[str, Any] = {}
        if polling_sleep is not None:
            kwargs["sleep"] = polling_sleep
        return PollingLoop(
            api,
            interval=polling_interval,
            max_attempts=max_attempts,
            max_retries=3,
            **kwargs,
        )

    def coordinator_factory() -> TransportCoordinator:
        return TransportCoordinator(
            polling_factory=polling_factory,
            socket_factory=(lambda: make_channel(socket_factory)) if socket_factory else None,
            grace_period=grace_period,
        )

    return WorkflowStateMachine(
        api=api,
        registry=registry or SubmissionRegistry(),
        coordinator_factory=coordinator_factory,
        scorer=scorer or (lambda _answers: SCORES),
        fetcher=make_fetcher(api),
        token_balance=token_balance,
        store=store,
        overall_timeout=overall_timeout,
    )


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until ``predicate`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


def subscribed(factory: SocketClientFactory, job_id: str = "J1") -> Callable[[], bool]:
    def check() -> bool:
        return bool(factory.clients) and (
            ("subscribe-assessment", {"jobId": job_id}) in factory.last.emitted
        )

    return check
