"""Pull transport: bounded polling of the job status endpoint."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional

from assessment_orchestrator.errors import (
    NetworkError,
    PollingExhausted,
    PollingTimeout,
    ServerError,
)
from assessment_orchestrator.models import TransportEvent
from assessment_orchestrator.utils.logging import get_logger

logger = get_logger("transport.polling")

EventListener = Callable[[TransportEvent], Any]


class PollingLoop:
    """
    Polls ``GET /assessment/status/{jobId}`` until the job is terminal.

    The first poll fires immediately and later polls are spaced by
    ``interval``. Up to ``max_retries`` transient failures in a row are
    retried, so the default of 3 allows four requests before
    PollingExhausted; any other error propagates at once. A completed
    status without a result id is not terminal yet and polling goes on.
    """

    def __init__(
        self,
        api: Any,
        interval: float = 2.0,
        max_attempts: int = 90,
        max_retries: int = 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the loop.

        Args:
            api: Object with ``async get_status(job_id) -> JobStatus``
            interval: Seconds between polls
            max_attempts: Total poll budget before PollingTimeout
            max_retries: Transient failures in a row that are retried
            sleep: Sleep function between polls
        """
        self.api = api
        self.interval = interval
        self.max_attempts = max_attempts
        self.max_retries = max_retries
        self._sleep = sleep

        self.attempts = 0
        self.consecutive_errors = 0
        self._stopped = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stopped(self) -> bool:
        return self._stopped

    def start(self, job_id: str, on_event: EventListener) -> asyncio.Task:
        """
        Run the loop in a background task.

        Returns:
            The polling task; its result is the terminal event
        """
        if self._task is not None:
            raise RuntimeError("Polling loop already started")
        self._task = asyncio.get_running_loop().create_task(
            self.run(job_id, on_event),
            name=f"poll-{job_id}",
        )
        return self._task

    async def wait(self) -> Optional[TransportEvent]:
        """
        Await the background task started by ``start()``.

        Returns:
            The terminal event, or None if the loop was stopped first

        Raises:
            PollingExhausted, PollingTimeout, or any non-transient API error
        """
        if self._task is None:
            raise RuntimeError("Polling loop not started")
        try:
            return await self._task
        except asyncio.CancelledError:
            if self._stopped:
                return None
            raise

    def stop(self) -> None:
        """Stop polling. Idempotent and safe at any point."""
        if self._stopped:
            return
        self._stopped = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        logger.debug("polling_stopped", attempts=self.attempts)

    async def run(self, job_id: str, on_event: EventListener) -> Optional[TransportEvent]:
        """
        Poll until a terminal status, then return its event.

        Every successfully parsed status, terminal or not, is passed to
        ``on_event`` first.
        """
        logger.info(
            "polling_started",
            job_id=job_id,
            interval=self.interval,
            max_attempts=self.max_attempts,
        )

        while not self._stopped:
            if self.attempts >= self.max_attempts:
                logger.warning("polling_timeout", job_id=job_id, attempts=self.attempts)
                raise PollingTimeout(details={"attempts": self.attempts})

            self.attempts += 1
            try:
                status = await self.api.get_status(job_id)
            except (NetworkError, ServerError) as e:
                self.consecutive_errors += 1
                logger.warning(
                    "polling_attempt_failed",
                    job_id=job_id,
                    attempt=self.attempts,
                    consecutive_errors=self.consecutive_errors,
                    error=e.kind.value,
                )
                if self.consecutive_errors > self.max_retries:
                    raise PollingExhausted(
                        details={
                            "attempts": self.attempts,
                            "last_error": e.message,
                        },
                    ) from e
                await self._sleep(self.interval)
                continue

            self.consecutive_errors = 0
            event = status.to_event()
            logger.debug(
                "polling_status",
                job_id=job_id,
                attempt=self.attempts,
                kind=event.kind.value,
                progress=event.progress,
            )

            if self._stopped:
                break

            if event.awaiting_result:
                logger.info("completed_without_result_id", job_id=job_id, attempt=self.attempts)
                await self._sleep(self.interval)
                continue

            on_event(event)

            if event.is_terminal:
                self._stopped = True
                return event

            await self._sleep(self.interval)

        return None
