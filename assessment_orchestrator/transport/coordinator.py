"""Hybrid transport coordination: socket preferred, polling as fallback.

One coordinator monitors one job. The socket channel is tried first; if it
is not subscribed within the grace period, or fails at any point, the
polling loop starts alongside it. Whichever transport delivers a terminal
event first wins and both are torn down.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Optional

from assessment_orchestrator.errors import AssessmentError, SocketChannelError
from assessment_orchestrator.models import TransportEvent, TransportSource
from assessment_orchestrator.transport.polling import PollingLoop
from assessment_orchestrator.transport.socket_channel import SocketChannel
from assessment_orchestrator.utils.logging import get_logger
from assessment_orchestrator.utils.tasks import TaskGroup

logger = get_logger("transport.coordinator")

ProgressListener = Callable[[TransportEvent], Any]


class TransportCoordinator:
    """
    Races the socket channel against the polling loop for one job.

    ``monitor()`` returns the first terminal event. Non-terminal events are
    forwarded to ``on_progress`` unless they move backwards in the job
    lifecycle or repeat the last forwarded event.
    """

    def __init__(
        self,
        polling_factory: Callable[[], PollingLoop],
        socket_factory: Optional[Callable[[], SocketChannel]] = None,
        grace_period: float = 10.0,
    ) -> None:
        """
        Initialize the coordinator.

        Args:
            polling_factory: Builds a fresh PollingLoop
            socket_factory: Builds a fresh SocketChannel; None disables the socket
            grace_period: Seconds the socket gets to subscribe before polling starts
        """
        self.polling_factory = polling_factory
        self.socket_factory = socket_factory
        self.grace_period = grace_period

        self.last_terminal_at: dict[str, float] = {}
        self.winner: Optional[TransportSource] = None

        self._tasks = TaskGroup("transport")
        self._job_id: Optional[str] = None
        self._outcome: Optional[asyncio.Future] = None
        self._on_progress: Optional[ProgressListener] = None
        self._last_forwarded: Optional[TransportEvent] = None
        self._winning: Optional[TransportEvent] = None

        self._channel: Optional[SocketChannel] = None
        self._remove_error_listener: Optional[Callable[[], None]] = None
        self._socket_used = False
        self._socket_ready = False
        self._socket_failed = False

        self._polling: Optional[PollingLoop] = None
        self._polling_error: Optional[AssessmentError] = None

    @property
    def disposed(self) -> bool:
        return self._tasks.disposed

    @property
    def polling(self) -> Optional[PollingLoop]:
        return self._polling

    @property
    def channel(self) -> Optional[SocketChannel]:
        return self._channel

    async def monitor(
        self,
        job_id: str,
        token: Optional[str] = None,
        on_progress: Optional[ProgressListener] = None,
    ) -> TransportEvent:
        """
        Watch a job until either transport reports a terminal event.

        Args:
            job_id: Accepted job to watch
            token: Credential for the socket; without one only polling runs
            on_progress: Receives forwarded non-terminal events

        Returns:
            The winning terminal TransportEvent

        Raises:
            AssessmentError: The polling error, once both transports are exhausted
        """
        if self._outcome is not None or self.disposed:
            raise RuntimeError("TransportCoordinator is single-use")

        self._job_id = job_id
        self._on_progress = on_progress
        self._outcome = asyncio.get_running_loop().create_future()

        try:
            if token and self.socket_factory is not None:
                self._socket_used = True
                self._tasks.spawn(self._run_socket(job_id, token), name=f"socket-{job_id}")
                self._tasks.call_later(
                    self.grace_period,
                    self._on_grace_expired,
                    name=f"grace-{job_id}",
                )
            else:
                reason = "socket_disabled" if self.socket_factory is None else "no_credential"
                self._start_polling(reason)

            return await self._outcome
        finally:
            await self.aclose()

    # -- socket ------------------------------------------------------------

    async def _run_socket(self, job_id: str, token: str) -> None:
        channel = self.socket_factory()
        self._channel = channel
        self._remove_error_listener = channel.add_error_listener(self._on_socket_error)

        try:
            await channel.connect(token)
            await channel.subscribe_to_job(job_id, self._on_event)
        except SocketChannelError as e:
            self._on_socket_error(e)
            return
        except Exception as e:
            logger.error("socket_transport_crashed", job_id=job_id, error=str(e), exc_info=True)
            self._on_socket_error(SocketChannelError(f"Realtime connection failed: {e}"))
            return

        self._socket_ready = True
        logger.info("socket_transport_ready", job_id=job_id)

    def _on_socket_error(self, error: SocketChannelError) -> None:
        if self._finished() or self._socket_failed:
            return
        self._socket_failed = True
        logger.warning(
            "socket_transport_failed",
            job_id=self._job_id,
            error=error.message,
        )

        if self._polling is None:
            self._start_polling("socket_error")
        elif self._polling_error is not None:
            self._fail(self._polling_error)

    def _on_grace_expired(self) -> None:
        if self._finished() or self._socket_ready:
            return
        logger.info(
            "socket_grace_expired",
            job_id=self._job_id,
            grace_period=self.grace_period,
        )
        self._start_polling("grace_period_expired")

    # -- polling -----------------------------------------------------------

    def _start_polling(self, reason: str) -> None:
        if self._polling is not None or self._finished():
            return
        self._polling = self.polling_factory()
        logger.info("polling_fallback_started", job_id=self._job_id, reason=reason)
        self._tasks.spawn(self._run_polling(self._polling), name=f"poll-{self._job_id}")

    async def _run_polling(self, polling: PollingLoop) -> None:
        try:
            await polling.run(self._job_id, self._on_event)
        except AssessmentError as e:
            self._on_polling_error(e)

    def _on_polling_error(self, error: AssessmentError) -> None:
        if self._finished():
            return
        self._polling_error = error
        logger.warning(
            "polling_transport_failed",
            job_id=self._job_id,
            error=error.kind.value,
        )
        if not self._socket_used or self._socket_failed:
            self._fail(error)

    # -- events ------------------------------------------------------------

    def _finished(self) -> bool:
        return self.disposed or self._outcome is None or self._outcome.done()

    def _fail(self, error: AssessmentError) -> None:
        logger.error("transports_exhausted", job_id=self._job_id, error=error.kind.value)
        self._outcome.set_exception(error)
        self._tasks.dispose()

    def _on_event(self, event: TransportEvent) -> None:
        if event.job_id != self._job_id:
            return

        if self._finished():
            self._drop_late(event)
            return

        if event.awaiting_result:
            # Polling picks the result id up once it is published
            logger.info(
                "completed_without_result_id",
                job_id=event.job_id,
                transport=event.source.value,
            )
            self._start_polling("completed_without_result_id")
            return

        if event.is_terminal:
            self._winning = event
            self.winner = event.source
            self.last_terminal_at[event.job_id] = time.time()
            logger.info(
                "transport_winner",
                job_id=event.job_id,
                transport=event.source.value,
                kind=event.kind.value,
            )
            self._outcome.set_result(event)
            # Stop the losing transport before any other coroutine runs
            self._tasks.dispose()
            return

        last = self._last_forwarded
        if last is not None:
            if event.kind.rank < last.kind.rank:
                logger.debug(
                    "event_regressed",
                    job_id=event.job_id,
                    kind=event.kind.value,
                    last_kind=last.kind.value,
                )
                return
            if event.kind is last.kind and event.progress == last.progress:
                return

        self._last_forwarded = event
        if self._on_progress is not None:
            try:
                self._on_progress(event)
            except Exception as e:
                logger.error("progress_listener_failed", error=str(e), exc_info=True)

    def _drop_late(self, event: TransportEvent) -> None:
        winning = self._winning
        if event.is_terminal and winning is not None and event.kind is not winning.kind:
            logger.warning(
                "conflicting_terminal_event",
                job_id=event.job_id,
                kept=winning.kind.value,
                kept_source=winning.source.value,
                dropped=event.kind.value,
                dropped_source=event.source.value,
            )
            return
        logger.debug(
            "late_event_dropped",
            job_id=event.job_id,
            kind=event.kind.value,
            transport=event.source.value,
        )

    # -- teardown ----------------------------------------------------------

    def dispose(self) -> None:
        """Cancel every timer and transport task synchronously. Idempotent."""
        self._tasks.dispose()
        if self._polling is not None:
            self._polling.stop()
        if self._outcome is not None and not self._outcome.done():
            self._outcome.cancel()

    async def aclose(self) -> None:
        """Dispose and wait for the socket to leave its room and disconnect."""
        self.dispose()
        await self._tasks.wait_closed()

        channel = self._channel
        self._channel = None
        if self._remove_error_listener is not None:
            self._remove_error_listener()
            self._remove_error_listener = None
        if channel is not None:
            if self._job_id is not None:
                await channel.unsubscribe_from_job(self._job_id)
            await channel.close()
