"""Composition root: builds the collaborators of one orchestrator process."""

from __future__ import annotations

import time
from typing import Any, Callable, Optional

import httpx

from assessment_orchestrator.api.client import AssessmentApiClient, TokenProvider
from assessment_orchestrator.api.results import ResultFetcher
from assessment_orchestrator.config.settings import OrchestratorConfig, get_env_token
from assessment_orchestrator.submission.answers import ScoreCalculator
from assessment_orchestrator.submission.guard import SubmissionRegistry
from assessment_orchestrator.transport.coordinator import TransportCoordinator
from assessment_orchestrator.transport.polling import PollingLoop
from assessment_orchestrator.transport.socket_channel import (
    SocketChannel,
    default_client_factory,
)
from assessment_orchestrator.utils.logging import get_logger
from assessment_orchestrator.utils.store import FileStore, KeyValueStore, MemoryStore
from assessment_orchestrator.workflow.machine import TokenBalance, WorkflowStateMachine

logger = get_logger("app")


class Application:
    """
    Owns the process-wide collaborators.

    The SubmissionRegistry, store, API client and result fetcher live here
    and are shared by every workflow the application creates, so duplicate
    protection spans all of them.
    """

    def __init__(
        self,
        config: Optional[OrchestratorConfig] = None,
        token_provider: Optional[TokenProvider] = None,
        token_balance: Optional[TokenBalance] = None,
        store: Optional[KeyValueStore] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        socket_client_factory: Callable[[], Any] = default_client_factory,
        on_balance_update: Optional[Callable[[Any], Any]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the application.

        Args:
            config: Orchestrator configuration (defaults if omitted)
            token_provider: Returns the bearer credential; defaults to the environment
            token_balance: Ledger refreshed after each accepted submission
            store: Key-value store; a FileStore under ``storage.state_dir`` if omitted
            http_client: Pre-built httpx client for the API
            socket_client_factory: Builds the low-level socket.io client
            on_balance_update: Receives balances pushed over the socket
            clock: Returns the current time in epoch seconds
        """
        self.config = config or OrchestratorConfig()
        self.token_balance = token_balance
        self.socket_client_factory = socket_client_factory
        self.on_balance_update = on_balance_update
        self.clock = clock

        if store is None:
            store_path = self.config.storage.store_path
            store = FileStore(store_path) if store_path else MemoryStore()
        self.store = store

        self.registry = SubmissionRegistry(
            store=self.store,
            clock=clock,
            entry_ttl=self.config.guard.entry_ttl,
            cooldown=self.config.guard.cooldown,
        )
        self.api = AssessmentApiClient(
            config=self.config.api,
            token_provider=token_provider or get_env_token,
            retry=self.config.retry,
            timeout=self.config.timeouts.request,
            client=http_client,
        )
        self.fetcher = ResultFetcher(self.api, config=self.config.results)

        logger.debug(
            "application_created",
            base_url=self.config.api.base_url,
            socket_enabled=self.config.socket.enabled,
            store=type(self.store).__name__,
        )

    async def __aenter__(self) -> "Application":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.api.aclose()

    def socket_channel(self) -> SocketChannel:
        socket = self.config.socket
        timeouts = self.config.timeouts
        return SocketChannel(
            url=socket.url,
            client_factory=self.socket_client_factory,
            auth_timeout=timeouts.socket_auth,
            connect_timeout=timeouts.socket_connect,
            heartbeat_interval=timeouts.heartbeat_interval,
            socketio_path=socket.socketio_path,
            transports=socket.transports,
            on_balance_update=self.on_balance_update,
        )

    def polling_loop(self) -> PollingLoop:
        polling = self.config.polling
        return PollingLoop(
            self.api,
            interval=polling.interval,
            max_attempts=polling.max_attempts,
            max_retries=polling.max_retries,
        )

    def coordinator(self) -> TransportCoordinator:
        return TransportCoordinator(
            polling_factory=self.polling_loop,
            socket_factory=self.socket_channel if self.config.socket.enabled else None,
            grace_period=self.config.timeouts.grace_period,
        )

    def workflow(self, scorer: Optional[ScoreCalculator] = None) -> WorkflowStateMachine:
        """Create a state machine sharing this application's registry and fetcher."""
        return WorkflowStateMachine(
            api=self.api,
            registry=self.registry,
            coordinator_factory=self.coordinator,
            scorer=scorer,
            fetcher=self.fetcher,
            token_balance=self.token_balance,
            store=self.store,
            assessment_name=self.config.assessment.name,
            question_count=self.config.assessment.question_count,
            overall_timeout=self.config.timeouts.overall,
            clock=self.clock,
        )
