"""TaskGroup disposal tests."""

from __future__ import annotations

import asyncio

from assessment_orchestrator.utils.tasks import TaskGroup


class TestTaskGroup:
    async def test_dispose_cancels_pending_tasks(self) -> None:
        group = TaskGroup("test")
        task = group.spawn(asyncio.sleep(10))

        group.dispose()
        await group.wait_closed()

        assert task.cancelled()

    async def test_timer_does_not_fire_after_dispose(self) -> None:
        group = TaskGroup("test")
        fired = []
        group.call_later(0.01, lambda: fired.append(True))

        group.dispose()
        await asyncio.sleep(0.05)

        assert fired == []

    async def test_timer_fires_when_not_disposed(self) -> None:
        group = TaskGroup("test")
        fired = []

        async def callback() -> None:
            fired.append(True)

        group.call_later(0, callback)
        await group.wait_closed()

        assert fired == [True]

    async def test_spawn_after_dispose_is_refused(self) -> None:
        group = TaskGroup("test")
        group.dispose()
        group.dispose()

        coro = asyncio.sleep(0)
        assert group.spawn(coro) is None
        assert len(group) == 0
