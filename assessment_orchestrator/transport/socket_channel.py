"""Push transport: one authenticated socket.io connection.

Connection lifecycle::

    DISCONNECTED -> CONNECTING -> CONNECTED -> AUTHENTICATING -> AUTHENTICATED -> SUBSCRIBED

Any error or close returns the channel to DISCONNECTED. The channel never
reconnects on its own; whoever owns it decides whether to wait or fall back
to polling.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

import socketio

from assessment_orchestrator.errors import SocketAuthError, SocketChannelError
from assessment_orchestrator.models import (
    MalformedEvent,
    TransportEvent,
    parse_socket_event,
)
from assessment_orchestrator.models.events import SOCKET_EVENT_KINDS
from assessment_orchestrator.utils.logging import get_logger

logger = get_logger("transport.socket")

EventListener = Callable[[TransportEvent], Any]
ErrorListener = Callable[[SocketChannelError], Any]
BalanceListener = Callable[[Any], Any]

# Client to server room events
SUBSCRIBE_EVENT = "subscribe-assessment"
UNSUBSCRIBE_EVENT = "unsubscribe-assessment"


class ChannelState(Enum):
    """Connection lifecycle of the push channel."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    SUBSCRIBED = "subscribed"


@dataclass
class SubscriptionHandle:
    """Listeners for one job on one channel."""

    job_id: str
    listeners: list[EventListener] = field(default_factory=list)

    def dispatch(self, event: TransportEvent) -> None:
        for listener in list(self.listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(
                    "socket_listener_failed",
                    job_id=self.job_id,
                    error=str(e),
                    exc_info=True,
                )


def default_client_factory() -> socketio.AsyncClient:
    """Build a socket.io client with library-level reconnection disabled."""
    return socketio.AsyncClient(reconnection=False, logger=False, engineio_logger=False)


class SocketChannel:
    """
    Owns one socket.io connection and its per-job subscriptions.

    Job subscriptions requested before authentication are queued and joined
    as soon as the server acknowledges the credential.
    """

    def __init__(
        self,
        url: str,
        client_factory: Callable[[], Any] = default_client_factory,
        auth_timeout: float = 10.0,
        connect_timeout: float = 15.0,
        heartbeat_interval: float = 20.0,
        socketio_path: str = "socket.io",
        transports: Optional[list[str]] = None,
        on_balance_update: Optional[BalanceListener] = None,
    ) -> None:
        """
        Initialize the channel.

        Args:
            url: Socket server URL
            client_factory: Builds the low-level client (socketio.AsyncClient API)
            auth_timeout: Seconds to wait for the ``authenticated`` acknowledgment
            connect_timeout: Seconds to wait for the low-level connect
            heartbeat_interval: Seconds between ``ping`` emits while authenticated
            socketio_path: Server mount path
            transports: Engine.IO transports, in preference order
            on_balance_update: Called with the balance from ``token-balance-update``
        """
        self.url = url
        self.client_factory = client_factory
        self.auth_timeout = auth_timeout
        self.connect_timeout = connect_timeout
        self.heartbeat_interval = heartbeat_interval
        self.socketio_path = socketio_path
        self.transports = transports or ["websocket", "polling"]
        self.on_balance_update = on_balance_update

        self._state = ChannelState.DISCONNECTED
        self._client: Any = None
        self._auth_future: Optional[asyncio.Future] = None
        self._heartbeat: Optional[asyncio.Task] = None
        self._closing = False
        self._connect_lock = asyncio.Lock()

        self._subscriptions: dict[str, SubscriptionHandle] = {}
        # Insertion-ordered set of jobs waiting for authentication
        self._pending: dict[str, None] = {}
        self._joined: set[str] = set()
        self._error_listeners: list[ErrorListener] = []

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def is_authenticated(self) -> bool:
        return self._state in (ChannelState.AUTHENTICATED, ChannelState.SUBSCRIBED)

    def _set_state(self, new_state: ChannelState) -> None:
        if new_state is self._state:
            return
        logger.debug(
            "socket_state",
            from_state=self._state.value,
            to_state=new_state.value,
        )
        self._state = new_state

    # -- connection --------------------------------------------------------

    async def connect(self, token: str) -> None:
        """
        Open the channel and authenticate.

        Returns immediately if already authenticated.

        Raises:
            SocketChannelError: If the low-level connect fails
            SocketAuthError: If authentication is rejected or times out
        """
        async with self._connect_lock:
            if self.is_authenticated:
                return
            await self._connect(token)

    async def _connect(self, token: str) -> None:
        self._closing = False
        self._set_state(ChannelState.CONNECTING)

        client = self.client_factory()
        self._client = client
        self._bind(client)
        self._auth_future = asyncio.get_running_loop().create_future()

        logger.info("socket_connecting", url=self.url)
        try:
            await asyncio.wait_for(
                client.connect(
                    self.url,
                    transports=self.transports,
                    socketio_path=self.socketio_path,
                    wait_timeout=self.connect_timeout,
                ),
                timeout=self.connect_timeout,
            )
        except (socketio.exceptions.ConnectionError, asyncio.TimeoutError, OSError) as e:
            logger.warning("socket_connect_failed", url=self.url, error=str(e) or type(e).__name__)
            await self.close()
            raise SocketChannelError(f"Realtime connection failed: {e}") from e

        self._set_state(ChannelState.CONNECTED)
        await self._authenticate(token)

    async def _authenticate(self, token: str) -> None:
        self._set_state(ChannelState.AUTHENTICATING)
        auth_future = self._auth_future

        try:
            await self._client.emit("authenticate", {"token": token})
            user = await asyncio.wait_for(auth_future, timeout=self.auth_timeout)
        except asyncio.TimeoutError as e:
            logger.warning("socket_auth_timeout", timeout=self.auth_timeout)
            await self.close()
            raise SocketAuthError("Realtime authentication timed out") from e
        except SocketAuthError:
            await self.close()
            raise
        except socketio.exceptions.SocketIOError as e:
            logger.warning("socket_auth_emit_failed", error=str(e))
            await self.close()
            raise SocketChannelError(f"Realtime authentication failed: {e}") from e

        self._set_state(ChannelState.AUTHENTICATED)
        logger.info(
            "socket_authenticated",
            user_id=user.get("userId") if isinstance(user, dict) else None,
        )

        self._start_heartbeat()

        pending = list(self._pending)
        self._pending.clear()
        for job_id in pending:
            await self._join(job_id)

    def _bind(self, client: Any) -> None:
        """Register server event handlers on a fresh client."""
        client.on("connect", self._on_connect)
        client.on("disconnect", self._on_disconnect)
        client.on("connect_error", self._on_connect_error)
        client.on("authenticated", self._on_authenticated)
        client.on("auth_error", self._on_auth_error)
        client.on("token-balance-update", self._on_balance_update)
        client.on("error", self._on_server_error)
        client.on("pong", self._on_pong)
        for name in SOCKET_EVENT_KINDS:
            client.on(name, self._job_event_handler(name))

    # -- subscriptions -----------------------------------------------------

    async def subscribe_to_job(self, job_id: str, listener: EventListener) -> SubscriptionHandle:
        """
        Register a listener for one job and join its room.

        Before authentication the join is queued and flushed later.
        """
        handle = self._subscriptions.get(job_id)
        if handle is None:
            handle = SubscriptionHandle(job_id=job_id)
            self._subscriptions[job_id] = handle
        if listener not in handle.listeners:
            handle.listeners.append(listener)

        if self.is_authenticated:
            if job_id not in self._joined:
                await self._join(job_id)
        else:
            self._pending[job_id] = None
            logger.debug("socket_subscription_queued", job_id=job_id)

        return handle

    async def _join(self, job_id: str) -> None:
        try:
            await self._client.emit(SUBSCRIBE_EVENT, {"jobId": job_id})
        except socketio.exceptions.SocketIOError as e:
            logger.warning("socket_subscribe_failed", job_id=job_id, error=str(e))
            await self.close()
            raise SocketChannelError(f"Could not join the room for job {job_id}: {e}") from e
        self._joined.add(job_id)
        self._set_state(ChannelState.SUBSCRIBED)
        logger.info("socket_subscribed", job_id=job_id)

    async def unsubscribe_from_job(self, job_id: str) -> None:
        """Leave the job room and drop its listeners. Safe to repeat."""
        self._subscriptions.pop(job_id, None)
        self._pending.pop(job_id, None)

        if job_id not in self._joined:
            return
        self._joined.discard(job_id)

        if self._client is not None and self._state is not ChannelState.DISCONNECTED:
            try:
                await self._client.emit(UNSUBSCRIBE_EVENT, {"jobId": job_id})
            except socketio.exceptions.SocketIOError as e:
                logger.debug("socket_unsubscribe_failed", job_id=job_id, error=str(e))

        if not self._joined and self._state is ChannelState.SUBSCRIBED:
            self._set_state(ChannelState.AUTHENTICATED)
        logger.info("socket_unsubscribed", job_id=job_id)

    def add_error_listener(self, listener: ErrorListener) -> Callable[[], None]:
        """Register a callback for disconnects and connection errors."""
        self._error_listeners.append(listener)

        def remove() -> None:
            if listener in self._error_listeners:
                self._error_listeners.remove(listener)

        return remove

    # -- teardown ----------------------------------------------------------

    async def close(self) -> None:
        """Leave all rooms and disconnect. Idempotent."""
        self._closing = True
        self._stop_heartbeat()

        client = self._client
        self._client = None

        if self._auth_future is not None and not self._auth_future.done():
            self._auth_future.cancel()
        self._auth_future = None

        if client is not None:
            for job_id in list(self._joined):
                try:
                    await client.emit(UNSUBSCRIBE_EVENT, {"jobId": job_id})
                except socketio.exceptions.SocketIOError:
                    break
            try:
                await client.disconnect()
            except (socketio.exceptions.SocketIOError, OSError) as e:
                logger.debug("socket_disconnect_error", error=str(e))

        self._joined.clear()
        self._pending.clear()
        self._subscriptions.clear()
        self._set_state(ChannelState.DISCONNECTED)

    def status(self) -> dict[str, Any]:
        """Get a snapshot of the connection for diagnostics."""
        return {
            "state": self._state.value,
            "is_authenticated": self.is_authenticated,
            "subscribed_jobs": sorted(self._joined),
            "pending_jobs": list(self._pending),
            "socket_id": getattr(self._client, "sid", None),
        }

    # -- heartbeat ---------------------------------------------------------

    def _start_heartbeat(self) -> None:
        self._stop_heartbeat()
        self._heartbeat = asyncio.get_running_loop().create_task(self._heartbeat_loop())

    def _stop_heartbeat(self) -> None:
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            self._heartbeat = None

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if not self.is_authenticated or self._client is None:
                return
            try:
                await self._client.emit("ping")
            except socketio.exceptions.SocketIOError as e:
                logger.debug("socket_ping_failed", error=str(e))
                return

    # -- server event handlers ---------------------------------------------

    def _notify_error(self, error: SocketChannelError) -> None:
        for listener in list(self._error_listeners):
            try:
                listener(error)
            except Exception as e:
                logger.error("socket_error_listener_failed", error=str(e), exc_info=True)

    def _on_connect(self) -> None:
        if self._state is ChannelState.CONNECTING:
            self._set_state(ChannelState.CONNECTED)

    def _on_disconnect(self, *args: Any) -> None:
        if self._closing or self._state is ChannelState.DISCONNECTED:
            return
        reason = args[0] if args else None
        logger.warning("socket_disconnected", reason=str(reason) if reason else None)
        self._stop_heartbeat()
        self._joined.clear()
        self._set_state(ChannelState.DISCONNECTED)
        self._notify_error(SocketChannelError("Realtime connection closed"))

    def _on_connect_error(self, data: Any = None) -> None:
        logger.warning("socket_connect_error", error=str(data))
        if self._closing:
            return
        self._notify_error(SocketChannelError(f"Connection error: {data}"))

    def _on_authenticated(self, data: Any = None) -> None:
        if self._auth_future is not None and not self._auth_future.done():
            self._auth_future.set_result(data or {})

    def _on_auth_error(self, data: Any = None) -> None:
        message = data.get("message") if isinstance(data, dict) else data
        logger.warning("socket_auth_rejected", message=str(message))
        if self._auth_future is not None and not self._auth_future.done():
            self._auth_future.set_exception(
                SocketAuthError(f"Realtime authentication failed: {message}")
            )

    def _on_balance_update(self, data: Any = None) -> None:
        balance = data.get("balance") if isinstance(data, dict) else None
        logger.debug("socket_balance_update", balance=balance)
        if self.on_balance_update is not None:
            try:
                self.on_balance_update(balance)
            except Exception as e:
                logger.error("socket_balance_listener_failed", error=str(e), exc_info=True)

    def _on_server_error(self, data: Any = None) -> None:
        logger.error("socket_server_error", error=str(data))
        if not self._closing:
            self._notify_error(SocketChannelError(f"Server error: {data}"))

    def _on_pong(self, *args: Any) -> None:
        logger.debug("socket_pong")

    def _job_event_handler(self, name: str) -> Callable[..., None]:
        def handler(*args: Any) -> None:
            self._on_job_event(name, args[0] if args else None)

        return handler

    def _on_job_event(self, name: str, payload: Any) -> None:
        try:
            event = parse_socket_event(name, payload)
        except MalformedEvent as e:
            logger.warning("socket_event_dropped", event_name=name, reason=str(e))
            return

        handle = self._subscriptions.get(event.job_id)
        if handle is None:
            logger.debug("socket_event_unsubscribed", event_name=name, job_id=event.job_id)
            return

        logger.info(
            "socket_event",
            event_name=name,
            job_id=event.job_id,
            kind=event.kind.value,
        )
        handle.dispatch(event)
