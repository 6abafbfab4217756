"""TransportCoordinator race and fallback tests."""

from __future__ import annotations

import asyncio
from typing import Optional

import pytest

from assessment_orchestrator.errors import PollingExhausted
from assessment_orchestrator.models import EventKind, TransportSource
from assessment_orchestrator.transport.coordinator import TransportCoordinator
from assessment_orchestrator.transport.polling import PollingLoop
from assessment_orchestrator.transport.socket_channel import SocketChannel
from tests.helpers import (
    TOKEN,
    SocketClientFactory,
    eventually,
    make_channel,
    status_body,
    subscribed,
)


def make_coordinator(
    api,
    socket_factory: Optional[SocketClientFactory] = None,
    grace_period: float = 10.0,
    interval: float = 0.01,
) -> tuple[TransportCoordinator, list[PollingLoop]]:
    loops: list[PollingLoop] = []

    def polling_factory() -> PollingLoop:
        loop = PollingLoop(api, interval=interval, max_attempts=500)
        loops.append(loop)
        return loop

    coordinator = TransportCoordinator(
        polling_factory=polling_factory,
        socket_factory=(lambda: make_channel(socket_factory)) if socket_factory else None,
        grace_period=grace_period,
    )
    return coordinator, loops


class TestPollingOnly:
    async def test_socket_disabled_polls_immediately(self, service, api) -> None:
        service.statuses = [
            (200, status_body("J1", "processing", 50)),
            (200, status_body("J1", "completed", 100, result_id="R1")),
        ]
        coordinator, loops = make_coordinator(api)

        event = await coordinator.monitor("J1", token=TOKEN)

        assert event.kind is EventKind.COMPLETED
        assert event.result_id == "R1"
        assert coordinator.winner is TransportSource.POLLING
        assert len(loops) == 1
        assert "J1" in coordinator.last_terminal_at

    async def test_missing_credential_skips_socket(self, service, api) -> None:
        service.statuses = [(200, status_body("J1", "completed", 100, result_id="R1"))]
        factory = SocketClientFactory()
        coordinator, _ = make_coordinator(api, socket_factory=factory)

        event = await coordinator.monitor("J1", token=None)

        assert event.source is TransportSource.POLLING
        assert factory.clients == []

    async def test_polling_failure_without_socket_raises(self, service, api) -> None:
        service.statuses = [(503, {})]
        coordinator, _ = make_coordinator(api)

        with pytest.raises(PollingExhausted):
            await coordinator.monitor("J1", token=None)


class TestSocketPath:
    async def test_socket_terminal_wins_without_polling(self, service, api) -> None:
        factory = SocketClientFactory()
        coordinator, loops = make_coordinator(api, socket_factory=factory)

        task = asyncio.create_task(coordinator.monitor("J1", token=TOKEN))
        await eventually(subscribed(factory))
        factory.last.server_emit("analysis-complete", {"jobId": "J1", "resultId": "R1"})
        event = await task

        assert event.source is TransportSource.SOCKET
        assert loops == []
        assert service.status_requests == 0
        # Room left and connection closed once the winner is known
        assert ("unsubscribe-assessment", {"jobId": "J1"}) in factory.last.emitted
        assert factory.last.disconnect_calls == 1

    async def test_socket_race_cancels_pending_poll(self, service, api) -> None:
        """Socket completes while polling is mid-interval; the next poll never fires."""
        service.statuses = [(200, status_body("J1", "processing", 40))]
        factory = SocketClientFactory(auth_delay=0.05)
        coordinator, loops = make_coordinator(
            api,
            socket_factory=factory,
            grace_period=0.01,
            interval=0.2,
        )

        task = asyncio.create_task(coordinator.monitor("J1", token=TOKEN))
        await eventually(lambda: service.status_requests >= 1)
        await eventually(subscribed(factory))

        factory.last.server_emit("analysis-complete", {"jobId": "J1", "resultId": "R1"})
        event = await task
        polls_at_win = service.status_requests

        await asyncio.sleep(0.3)

        assert event.source is TransportSource.SOCKET
        assert coordinator.winner is TransportSource.SOCKET
        assert loops[0].stopped
        assert service.status_requests == polls_at_win

    async def test_grace_expiry_starts_polling_alongside_socket(self, service, api) -> None:
        service.statuses = [
            (200, status_body("J1", "processing", 20)),
            (200, status_body("J1", "completed", 100, result_id="R1")),
        ]
        factory = SocketClientFactory(auth="silent")
        coordinator, loops = make_coordinator(api, socket_factory=factory, grace_period=0.02)

        event = await coordinator.monitor("J1", token=TOKEN)

        assert event.source is TransportSource.POLLING
        assert len(loops) == 1

    async def test_socket_auth_failure_falls_back_to_polling(self, service, api) -> None:
        service.statuses = [(200, status_body("J1", "completed", 100, result_id="R1"))]
        factory = SocketClientFactory(auth="error")
        coordinator, loops = make_coordinator(api, socket_factory=factory, grace_period=10.0)

        event = await coordinator.monitor("J1", token=TOKEN)

        assert event.source is TransportSource.POLLING
        assert len(loops) == 1

    async def test_socket_drop_falls_back_to_polling(self, service, api) -> None:
        service.statuses = [
            (200, status_body("J1", "processing", 60)),
            (200, status_body("J1", "completed", 100, result_id="R1")),
        ]
        factory = SocketClientFactory()
        coordinator, loops = make_coordinator(api, socket_factory=factory)

        task = asyncio.create_task(coordinator.monitor("J1", token=TOKEN))
        await eventually(subscribed(factory))
        assert loops == []

        factory.last.server_emit("disconnect", "transport close")
        event = await task

        assert event.source is TransportSource.POLLING

    async def test_room_join_failure_falls_back_to_polling(self, service, api) -> None:
        service.statuses = [(200, status_body("J1", "completed", 100, result_id="R1"))]
        factory = SocketClientFactory(fail_join=True)
        coordinator, loops = make_coordinator(api, socket_factory=factory, grace_period=10.0)

        # Well inside the grace period, so polling was started by the socket error
        event = await asyncio.wait_for(coordinator.monitor("J1", token=TOKEN), timeout=1.0)

        assert event.source is TransportSource.POLLING
        assert len(loops) == 1
        assert factory.last.disconnect_calls == 1

    async def test_unexpected_socket_crash_falls_back_to_polling(self, service, api) -> None:
        service.statuses = [(200, status_body("J1", "completed", 100, result_id="R1"))]
        factory = SocketClientFactory()

        def crashing_channel() -> SocketChannel:
            channel = make_channel(factory)

            async def connect(token: str) -> None:
                raise RuntimeError("socket client bug")

            channel.connect = connect
            return channel

        coordinator = TransportCoordinator(
            polling_factory=lambda: PollingLoop(api, interval=0.01),
            socket_factory=crashing_channel,
            grace_period=10.0,
        )

        event = await asyncio.wait_for(coordinator.monitor("J1", token=TOKEN), timeout=1.0)

        assert event.source is TransportSource.POLLING

    async def test_socket_completion_without_result_id_defers_to_polling(self, service, api) -> None:
        service.statuses = [(200, status_body("J1", "completed", 100, result_id="R7"))]
        factory = SocketClientFactory()
        coordinator, loops = make_coordinator(api, socket_factory=factory)

        task = asyncio.create_task(coordinator.monitor("J1", token=TOKEN))
        await eventually(subscribed(factory))
        factory.last.server_emit("analysis-complete", {"jobId": "J1"})
        event = await asyncio.wait_for(task, timeout=1.0)

        assert event.source is TransportSource.POLLING
        assert event.result_id == "R7"
        assert len(loops) == 1


class TestExhaustion:
    async def test_both_transports_exhausted_raises_polling_error(self, service, api) -> None:
        service.statuses = [(503, {})]
        factory = SocketClientFactory(auth="error")
        coordinator, _ = make_coordinator(api, socket_factory=factory)

        with pytest.raises(PollingExhausted):
            await coordinator.monitor("J1", token=TOKEN)

    async def test_polling_exhaustion_keeps_live_socket(self, service, api) -> None:
        service.statuses = [(503, {})]
        factory = SocketClientFactory(auth_delay=0.05)
        coordinator, loops = make_coordinator(api, socket_factory=factory, grace_period=0.01)

        task = asyncio.create_task(coordinator.monitor("J1", token=TOKEN))
        await eventually(lambda: service.status_requests >= 4)
        await eventually(subscribed(factory))
        await asyncio.sleep(0.01)
        assert not task.done()

        factory.last.server_emit("analysis-complete", {"jobId": "J1", "resultId": "R1"})
        event = await task

        assert event.source is TransportSource.SOCKET

    async def test_socket_drop_after_polling_exhaustion_fails(self, service, api) -> None:
        service.statuses = [(503, {})]
        factory = SocketClientFactory(auth_delay=0.05)
        coordinator, _ = make_coordinator(api, socket_factory=factory, grace_period=0.01)

        task = asyncio.create_task(coordinator.monitor("J1", token=TOKEN))
        await eventually(lambda: service.status_requests >= 4)
        await eventually(subscribed(factory))

        factory.last.server_emit("disconnect", "transport close")

        with pytest.raises(PollingExhausted):
            await task


class TestEventFiltering:
    async def test_regressions_and_duplicates_are_not_forwarded(self, service, api) -> None:
        service.statuses = [
            (200, status_body("J1", "queued", 0)),
            (200, status_body("J1", "processing", 50)),
            (200, status_body("J1", "processing", 50)),
            (200, status_body("J1", "queued", 0)),
            (200, status_body("J1", "processing", 60)),
            (200, status_body("J1", "completed", 100, result_id="R1")),
        ]
        coordinator, _ = make_coordinator(api)
        forwarded = []

        await coordinator.monitor("J1", on_progress=forwarded.append)

        assert [(e.kind, e.progress) for e in forwarded] == [
            (EventKind.QUEUED, 0),
            (EventKind.PROCESSING, 50),
            (EventKind.PROCESSING, 60),
        ]

    async def test_first_terminal_wins_over_conflicting_one(self, service, api) -> None:
        factory = SocketClientFactory()
        coordinator, _ = make_coordinator(api, socket_factory=factory)

        task = asyncio.create_task(coordinator.monitor("J1", token=TOKEN))
        await eventually(subscribed(factory))

        client = factory.last
        client.server_emit("analysis-complete", {"jobId": "J1", "resultId": "R1"})
        client.server_emit("analysis-failed", {"jobId": "J1", "error": "late failure"})
        event = await task

        assert event.kind is EventKind.COMPLETED

    async def test_progress_listener_errors_do_not_stop_monitoring(self, service, api) -> None:
        service.statuses = [
            (200, status_body("J1", "processing", 50)),
            (200, status_body("J1", "completed", 100, result_id="R1")),
        ]
        coordinator, _ = make_coordinator(api)

        def broken(event) -> None:
            raise RuntimeError("listener bug")

        event = await coordinator.monitor("J1", on_progress=broken)
        assert event.kind is EventKind.COMPLETED


class TestDisposal:
    async def test_dispose_stops_everything(self, service, api) -> None:
        service.statuses = [(200, status_body("J1", "processing", 10))]
        coordinator, loops = make_coordinator(api, interval=0.05)

        task = asyncio.create_task(coordinator.monitor("J1"))
        await eventually(lambda: service.status_requests >= 1)

        coordinator.dispose()
        coordinator.dispose()

        with pytest.raises(asyncio.CancelledError):
            await task
        polls = service.status_requests
        await asyncio.sleep(0.1)

        assert coordinator.disposed
        assert loops[0].stopped
        assert service.status_requests == polls

    async def test_coordinator_is_single_use(self, service, api) -> None:
        service.statuses = [(200, status_body("J1", "completed", 100, result_id="R1"))]
        coordinator, _ = make_coordinator(api)
        await coordinator.monitor("J1")

        with pytest.raises(RuntimeError):
            await coordinator.monitor("J1")
