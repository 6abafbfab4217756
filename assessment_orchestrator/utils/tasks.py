"""Disposable group of asyncio tasks and timers."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, Coroutine, Optional

from assessment_orchestrator.utils.logging import get_logger

logger = get_logger("utils.tasks")


class TaskGroup:
    """
    Owns every background task and timer of one monitoring session.

    ``dispose()`` cancels all of them synchronously, so no timer can fire
    after the owner has moved on. Once disposed, new tasks are refused.
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._tasks: set[asyncio.Task] = set()
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(
        self,
        coro: Coroutine[Any, Any, Any],
        name: Optional[str] = None,
    ) -> Optional[asyncio.Task]:
        """
        Schedule a coroutine as a task owned by this group.

        Returns:
            The task, or None if the group is already disposed
        """
        if self._disposed:
            coro.close()
            return None

        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def call_later(
        self,
        delay: float,
        callback: Callable[[], Any],
        name: Optional[str] = None,
    ) -> Optional[asyncio.Task]:
        """Run a callback after ``delay`` seconds unless disposed first."""

        async def _timer() -> None:
            await asyncio.sleep(delay)
            result = callback()
            if inspect.isawaitable(result):
                await result

        return self.spawn(_timer(), name=name)

    def dispose(self) -> None:
        """Cancel every owned task. Idempotent."""
        if self._disposed:
            return
        self._disposed = True

        pending = [t for t in self._tasks if not t.done()]
        for task in pending:
            task.cancel()

        logger.debug("task_group_disposed", group=self.name, cancelled=len(pending))

    async def wait_closed(self) -> None:
        """Wait until every cancelled task has actually finished."""
        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
