"""State machine driving one assessment from answers to result."""

from __future__ import annotations

import asyncio
import inspect
import time
from collections import deque
from typing import Any, Callable, Coroutine, Mapping, Optional, Protocol

from assessment_orchestrator.api.client import AssessmentApiClient
from assessment_orchestrator.api.results import ResultFetcher
from assessment_orchestrator.errors import (
    AssessmentError,
    Cancelled,
    DuplicateSubmission,
    JobFailed,
    NotFound,
    ValidationError,
    WorkflowTimeout,
    sanitize_backend_message,
)
from assessment_orchestrator.models import EventKind, TransportEvent
from assessment_orchestrator.submission.answers import (
    JOB_ID_KEY,
    Answers,
    ScoreCalculator,
    build_payload,
    clear_staged_answers,
    ensure_complete,
)
from assessment_orchestrator.submission.guard import SubmissionRegistry, fingerprint
from assessment_orchestrator.transport.coordinator import TransportCoordinator
from assessment_orchestrator.utils.logging import (
    clear_job_context,
    get_logger,
    log_transition,
    set_job_context,
)
from assessment_orchestrator.utils.store import KeyValueStore
from assessment_orchestrator.utils.tasks import TaskGroup
from assessment_orchestrator.workflow.states import (
    STATUS_MESSAGES,
    UNKNOWN_TRANSPORT,
    ErrorInfo,
    TransitionError,
    WorkflowState,
    WorkflowStatus,
)

logger = get_logger("workflow.machine")

StateListener = Callable[[WorkflowState], Any]


class TokenBalance(Protocol):
    """Token ledger hook refreshed after every accepted submission."""

    def refresh(self) -> Any:
        ...


class WorkflowStateMachine:
    """
    Drives a submission through validation, submission, monitoring and
    result retrieval.

    Every change is published as an immutable WorkflowState snapshot to
    subscribers through a single serialized dispatch queue. Terminal states
    are final until ``retry()`` or ``reset()``.
    """

    def __init__(
        self,
        api: AssessmentApiClient,
        registry: SubmissionRegistry,
        coordinator_factory: Callable[[], TransportCoordinator],
        scorer: Optional[ScoreCalculator] = None,
        fetcher: Optional[ResultFetcher] = None,
        token_balance: Optional[TokenBalance] = None,
        store: Optional[KeyValueStore] = None,
        assessment_name: str = "AI-Driven Talent Mapping",
        question_count: int = 200,
        overall_timeout: float = 180.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the state machine.

        Args:
            api: Assessment service client
            registry: Shared duplicate-submission registry
            coordinator_factory: Builds one TransportCoordinator per monitoring session
            scorer: Turns answers into ``{riasec, ocean, viaIs}`` score maps;
                required by submit(), not by resume()
            fetcher: Result fetcher (one is built on ``api`` if omitted)
            token_balance: Ledger whose ``refresh()`` runs once per accepted job
            store: Persistence for the active job id and staged answers
            assessment_name: Name sent with every submission
            question_count: Answers required before submitting
            overall_timeout: Seconds from submission to terminal state
            clock: Returns the current time in epoch seconds
        """
        self.api = api
        self.registry = registry
        self.coordinator_factory = coordinator_factory
        self.scorer = scorer
        self.fetcher = fetcher or ResultFetcher(api)
        self.token_balance = token_balance
        self.store = store
        self.assessment_name = assessment_name
        self.question_count = question_count
        self.overall_timeout = overall_timeout
        self.clock = clock

        self._state = WorkflowState()
        self._listeners: list[StateListener] = []
        self._pending: deque[WorkflowState] = deque()
        self._dispatching = False

        self._fingerprint: Optional[str] = None
        self._answers: Optional[dict[Any, Any]] = None
        self._payload: Optional[dict[str, Any]] = None

        self._task: Optional[asyncio.Task] = None
        self._coordinator: Optional[TransportCoordinator] = None
        self._cancel_requested = False

        self._refreshed_jobs: set[str] = set()
        self._background = TaskGroup("workflow-background")

    @property
    def state(self) -> WorkflowState:
        return self._state

    @property
    def answers(self) -> Optional[dict[Any, Any]]:
        """Answers of the current submission, kept for retry."""
        return self._answers

    # -- subscription ------------------------------------------------------

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """
        Receive every state snapshot from now on.

        Returns:
            Function that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, snapshot: WorkflowState) -> None:
        self._pending.append(snapshot)
        if self._dispatching:
            # A listener caused this change; the outer loop delivers it in order
            return

        self._dispatching = True
        try:
            while self._pending:
                current = self._pending.popleft()
                for listener in list(self._listeners):
                    try:
                        listener(current)
                    except Exception as e:
                        logger.error(
                            "state_listener_failed",
                            status=current.status.value,
                            error=str(e),
                            exc_info=True,
                        )
        finally:
            self._dispatching = False

    def _transition(self, status: WorkflowStatus, **changes: Any) -> WorkflowState:
        """
        Move to ``status`` and publish the snapshot.

        Staying in the same status publishes an updated snapshot.

        Raises:
            TransitionError: If the transition is not allowed
        """
        old = self._state
        if status is not old.status and not old.can_transition_to(status):
            raise TransitionError(old.status, status)

        changes.setdefault("message", STATUS_MESSAGES[status])
        new = old.evolve(status=status, **changes)
        self._state = new

        if status is not old.status:
            log_transition(
                old.status.value,
                status.value,
                new.progress,
                job_id=new.job_id,
            )
        self._emit(new)
        return new

    # -- operations --------------------------------------------------------

    async def submit(self, answers: Answers) -> WorkflowState:
        """
        Validate, submit and monitor an answer sheet until a terminal state.

        Returns:
            The terminal WorkflowState

        Raises:
            DuplicateSubmission: If identical content is in flight or in cooldown
            TransitionError: If another submission is already running
        """
        fp = fingerprint(answers)
        current = self._state.status
        if current is not WorkflowStatus.IDLE:
            if current.is_active() and fp == self._fingerprint:
                logger.warning("duplicate_submission_blocked", reason="same_workflow")
                raise DuplicateSubmission()
            raise TransitionError(current, WorkflowStatus.VALIDATING)

        entry = self.registry.begin(fp)
        self._fingerprint = fp
        self._answers = dict(answers)
        self._payload = None
        self._cancel_requested = False
        set_job_context(submission_id=entry.submission_id)

        self._transition(
            WorkflowStatus.VALIDATING,
            progress=0,
            started_at=self.clock(),
        )

        try:
            payload = await self._prepare_payload(answers)
        except ValidationError as e:
            self._finish_failed(e)
            return self._state
        except asyncio.CancelledError:
            if not self._cancel_requested:
                self._abandon()
            raise
        except Exception as e:
            # A broken score calculator must not leave the guard entry live
            logger.error("score_calculation_crashed", error=str(e), exc_info=True)
            self._finish_failed(AssessmentError(f"Could not calculate scores: {e}"))
            raise

        if self._state.status is not WorkflowStatus.VALIDATING:
            # Cancelled while scoring
            return self._state

        self._payload = payload
        self._transition(WorkflowStatus.SUBMITTING)
        return await self._drive(self._submit_and_monitor())

    async def retry(self) -> WorkflowState:
        """
        Resubmit the last validated payload after a retryable failure.

        Progress restarts at 0; the caller is not asked for answers again.

        Raises:
            TransitionError: If not failed or the failure is not retryable
        """
        state = self._state
        if (
            state.status is not WorkflowStatus.FAILED
            or not state.can_retry
            or self._payload is None
        ):
            raise TransitionError(state.status, WorkflowStatus.SUBMITTING)

        entry = self.registry.begin(self._fingerprint, respect_cooldown=False)
        self._cancel_requested = False
        set_job_context(submission_id=entry.submission_id)
        logger.info("submission_retry", submission_id=entry.submission_id)

        self._transition(
            WorkflowStatus.SUBMITTING,
            progress=0,
            job_id=None,
            result_id=None,
            error=None,
            can_retry=False,
            transport_used=UNKNOWN_TRANSPORT,
            estimated_time_remaining=None,
            result=None,
            started_at=self.clock(),
        )
        return await self._drive(self._submit_and_monitor())

    async def resume(self, job_id: str) -> WorkflowState:
        """
        Monitor a job the service already accepted, e.g. after a restart.

        Raises:
            TransitionError: If the machine is not idle
        """
        if self._state.status is not WorkflowStatus.IDLE:
            raise TransitionError(self._state.status, WorkflowStatus.QUEUED)

        self._fingerprint = None
        self._payload = None
        self._cancel_requested = False
        set_job_context(job_id=job_id)
        logger.info("workflow_resumed", job_id=job_id)

        self._transition(
            WorkflowStatus.QUEUED,
            job_id=job_id,
            progress=0,
            started_at=self.clock(),
        )
        self._store_job_id(job_id)
        return await self._drive(self._monitor(job_id))

    async def cancel(self) -> WorkflowState:
        """
        Stop the workflow. Idempotent; a no-op when idle or terminal.

        The state is cancelled before this coroutine first suspends, so no
        later transport event can produce another snapshot.
        """
        if not self._state.status.is_active():
            return self._state

        self._cancel_requested = True
        self._transition(
            WorkflowStatus.CANCELLED,
            error=ErrorInfo.from_error(Cancelled()),
            can_retry=False,
        )
        logger.info("workflow_cancelled", job_id=self._state.job_id)

        coordinator = self._coordinator
        if coordinator is not None:
            coordinator.dispose()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._release()

        if coordinator is not None:
            await coordinator.aclose()
        return self._state

    def reset(self) -> WorkflowState:
        """
        Return to idle from a terminal state.

        Raises:
            TransitionError: If the workflow is still running
        """
        if not self._state.is_terminal:
            raise TransitionError(self._state.status, WorkflowStatus.IDLE)

        self._fingerprint = None
        self._answers = None
        self._payload = None
        self._cancel_requested = False
        clear_job_context()

        logger.info("workflow_reset", from_state=self._state.status.value)
        self._state = WorkflowState(status=self._state.status)
        return self._transition(WorkflowStatus.IDLE)

    async def aclose(self) -> None:
        """Wait for background work such as the balance refresh, then release it."""
        await self._background.wait_closed()
        self._background.dispose()

    # -- internals ---------------------------------------------------------

    async def _prepare_payload(self, answers: Answers) -> dict[str, Any]:
        ensure_complete(answers, self.question_count)
        if self.scorer is None:
            raise ValidationError("No score calculator configured.")
        try:
            scores = self.scorer(answers)
            if inspect.isawaitable(scores):
                scores = await scores
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Could not calculate scores: {e}") from e
        if not isinstance(scores, Mapping):
            raise ValidationError("Score calculator returned no scores.")
        return build_payload(self.assessment_name, scores)

    async def _drive(self, flow: Coroutine[Any, Any, None]) -> WorkflowState:
        """Run ``flow`` as a cancellable task under the overall timeout."""
        task = asyncio.get_running_loop().create_task(flow)
        self._task = task
        try:
            await asyncio.wait_for(task, timeout=self.overall_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "workflow_timeout",
                job_id=self._state.job_id,
                timeout=self.overall_timeout,
            )
            self._finish_failed(WorkflowTimeout())
        except asyncio.CancelledError:
            if not self._cancel_requested:
                # The caller was cancelled; the job is abandoned the same way
                self._abandon()
                raise
        except Exception as e:
            logger.error("workflow_crashed", error=str(e), exc_info=True)
            self._finish_failed(AssessmentError(f"Unexpected error: {e}"))
            raise
        finally:
            self._task = None
        return self._state

    def _abandon(self) -> None:
        if self._state.status.is_active():
            self._cancel_requested = True
            self._transition(
                WorkflowStatus.CANCELLED,
                error=ErrorInfo.from_error(Cancelled()),
                can_retry=False,
            )
            self._release()

    async def _submit_and_monitor(self) -> None:
        try:
            receipt = await self.api.submit(self._payload)
        except AssessmentError as e:
            self._finish_failed(e)
            return

        job_id = receipt.job_id
        set_job_context(job_id=job_id)
        self.registry.mark_cooldown(self._fingerprint)
        self._store_job_id(job_id)
        self._refresh_balance_once(job_id)

        self._transition(
            WorkflowStatus.QUEUED,
            job_id=job_id,
            estimated_time_remaining=receipt.estimated_processing_time,
        )
        await self._monitor(job_id)

    async def _monitor(self, job_id: str) -> None:
        coordinator = self.coordinator_factory()
        self._coordinator = coordinator
        try:
            token = await self.api.get_token()
            event = await coordinator.monitor(
                job_id,
                token=token,
                on_progress=self._on_progress,
            )
        except AssessmentError as e:
            self._finish_failed(e)
            return
        finally:
            self._coordinator = None

        if event.kind is EventKind.FAILED:
            self._finish_failed(
                JobFailed(sanitize_backend_message(event.error)),
                transport_used=event.source.value,
            )
            return

        await self._complete(event)

    async def _complete(self, event: TransportEvent) -> None:
        if not event.result_id:
            self._finish_failed(
                NotFound("The analysis finished without a result id."),
                transport_used=event.source.value,
            )
            return

        try:
            document = await self.fetcher.fetch(event.result_id)
        except AssessmentError as e:
            self._finish_failed(e, transport_used=event.source.value)
            return

        if self._state.is_terminal:
            return

        self._transition(
            WorkflowStatus.COMPLETED,
            progress=100,
            result_id=event.result_id,
            result=document,
            transport_used=event.source.value,
            estimated_time_remaining=None,
            can_retry=False,
        )
        if self._fingerprint is not None:
            self.registry.complete(self._fingerprint)
        self._clear_job_id()
        if self.store is not None:
            clear_staged_answers(self.store)

    def _on_progress(self, event: TransportEvent) -> None:
        state = self._state
        if not state.status.is_active() or event.job_id != state.job_id:
            return

        if event.kind is EventKind.PROCESSING:
            status = WorkflowStatus.PROCESSING
        else:
            status = WorkflowStatus.QUEUED

        if status is WorkflowStatus.QUEUED and state.status is WorkflowStatus.PROCESSING:
            return

        # Progress never moves backwards across transports
        progress = max(state.progress, event.progress or 0)
        if status is state.status and progress == state.progress:
            return

        self._transition(
            status,
            progress=progress,
            transport_used=event.source.value,
        )

    def _finish_failed(self, error: AssessmentError, **changes: Any) -> None:
        if not self._state.status.is_active():
            return

        logger.warning(
            "workflow_failed",
            job_id=self._state.job_id,
            error=error.kind.value,
            message=error.message,
        )
        self._transition(
            WorkflowStatus.FAILED,
            error=ErrorInfo.from_error(error),
            message=error.message,
            can_retry=error.retryable and self._payload is not None,
            **changes,
        )
        self._release()

    def _release(self) -> None:
        if self._fingerprint is not None:
            self.registry.fail(self._fingerprint)
        self._clear_job_id()

    def _store_job_id(self, job_id: str) -> None:
        if self.store is not None:
            self.store.set(JOB_ID_KEY, job_id)

    def _clear_job_id(self) -> None:
        if self.store is not None:
            self.store.delete(JOB_ID_KEY)

    def _refresh_balance_once(self, job_id: str) -> None:
        if self.token_balance is None or job_id in self._refreshed_jobs:
            return
        self._refreshed_jobs.add(job_id)
        self._background.spawn(self._refresh_balance(job_id), name=f"balance-{job_id}")

    async def _refresh_balance(self, job_id: str) -> None:
        try:
            result = self.token_balance.refresh()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning("token_balance_refresh_failed", job_id=job_id, error=str(e))
        else:
            logger.debug("token_balance_refreshed", job_id=job_id)
