"""Persistent WebSocket connection with an explicit state machine.

A connection moves through ``Disconnected -> Connecting -> Open -> Closing ->
Closed``. Every state change goes through :data:`TRANSITIONS`; a pair that is
not in the table is a bug and raises :class:`ConnectionStateError`.

The connection owns the pending-call table for request/reply pairs sent over
it (subscribe handshakes) and hands every other inbound frame to its
listener. It never sends a frame outside ``Open``.
"""
import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .config import DEFAULT_STREAM_TIMEOUT_MS, ReconnectPolicy, Timeout
from .jsonrpc.codec import IdCounter, decode_handshake, encode, parse_frame
from .jsonrpc.models import ErrorCode
from .models import CallError, CallResult, RequestContext
from .utils.errors import ConnectionStateError
from .utils.security import redact_url

logger = logging.getLogger(__name__)

Connector = Callable[[str], Awaitable[Any]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class ConnectionEvent(str, Enum):
    CONNECT = "connect"
    OPENED = "opened"
    FAILED = "failed"
    CLOSE = "close"
    DROPPED = "dropped"
    CLOSED = "closed"
    RETRY = "retry"


S = ConnectionState
E = ConnectionEvent

TRANSITIONS: Dict[Tuple[ConnectionState, ConnectionEvent], ConnectionState] = {
    (S.DISCONNECTED, E.CONNECT): S.CONNECTING,
    (S.DISCONNECTED, E.CLOSE): S.CLOSED,
    (S.CONNECTING, E.OPENED): S.OPEN,
    (S.CONNECTING, E.FAILED): S.CLOSED,
    (S.CONNECTING, E.CLOSE): S.CLOSED,
    (S.OPEN, E.CLOSE): S.CLOSING,
    (S.OPEN, E.DROPPED): S.CLOSING,
    (S.CLOSING, E.CLOSED): S.CLOSED,
    (S.CLOSED, E.RETRY): S.CONNECTING,
    (S.CLOSED, E.CLOSE): S.CLOSED,
}


@dataclass
class PendingCall:
    """A request sent over the connection that awaits its reply."""
    id: int
    context: RequestContext
    future: asyncio.Future
    created_at: float = field(default_factory=time.monotonic)
    timer: Optional[asyncio.TimerHandle] = None


class ConnectionListener:
    """Receives connection events. The default implementation ignores them."""

    def connection_opened(self, connection: "WebSocketConnection") -> None:
        pass

    def notification_received(self, connection: "WebSocketConnection", frame: Any) -> None:
        pass

    def malformed_frame(self, connection: "WebSocketConnection", error: CallError) -> None:
        pass

    def connection_lost(self, connection: "WebSocketConnection", error: CallError) -> None:
        """The connection dropped and a reconnect is scheduled."""
        pass

    def connection_failed(self, connection: "WebSocketConnection", error: CallError) -> None:
        """The connection closed for good without being asked to."""
        pass


async def default_connector(url: str) -> Any:
    return await websockets.connect(url)


class WebSocketConnection:
    """One persistent connection to a node's subscription endpoint."""

    def __init__(
        self,
        url: str,
        policy: Optional[ReconnectPolicy] = None,
        listener: Optional[ConnectionListener] = None,
        connector: Optional[Connector] = None,
    ):
        """Initialize the connection. Nothing is opened until :meth:`connect`.

        Args:
            url: ws:// or wss:// endpoint, credentials included
            policy: Reconnect policy, or None to close for good on the first drop
            listener: Receives notifications and lifecycle events
            connector: Coroutine function opening a socket (defaults to websockets.connect)
        """
        self.url = url
        self.policy = policy
        self.listener = listener or ConnectionListener()
        self.state = ConnectionState.DISCONNECTED
        self.reconnect_attempt = 0
        self._connector = connector or default_connector
        self._ids = IdCounter(start=1)
        self._pending: Dict[int, PendingCall] = {}
        self._socket: Any = None
        self._run_task: Optional[asyncio.Task] = None
        self._closing_task: Optional[asyncio.Task] = None
        self._retry_timer: Optional[asyncio.TimerHandle] = None
        self._open_waiter: Optional[asyncio.Future] = None
        self._explicitly_closed = False
        self._terminated = False

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.OPEN

    @property
    def terminated(self) -> bool:
        """True once the connection is closed for good."""
        return self._terminated

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _transition(self, event: ConnectionEvent) -> ConnectionState:
        key = (self.state, event)
        if key not in TRANSITIONS:
            raise ConnectionStateError(
                f"Illegal transition: {event.value} while {self.state.value}"
            )
        previous, self.state = self.state, TRANSITIONS[key]
        logger.debug(f"{redact_url(self.url)}: {previous.value} --{event.value}--> {self.state.value}")
        return self.state

    def _notify(self, name: str, *args: Any) -> None:
        try:
            getattr(self.listener, name)(self, *args)
        except Exception as e:
            logger.error(f"Connection listener {name} raised: {e}", exc_info=True)

    def _waiter(self) -> asyncio.Future:
        if self._open_waiter is None:
            self._open_waiter = asyncio.get_running_loop().create_future()
        return self._open_waiter

    def _settle_waiter(self, opened: bool) -> None:
        waiter, self._open_waiter = self._open_waiter, None
        if waiter is not None and not waiter.done():
            waiter.set_result(opened)

    async def connect(self) -> bool:
        """Open the connection, or wait for the attempt in progress.

        Waits across scheduled reconnects.

        Returns:
            True once the connection is open, False if it closed for good
        """
        if self.state is ConnectionState.OPEN:
            return True
        if self._terminated or self._explicitly_closed:
            return False
        waiter = self._waiter()
        if self.state is ConnectionState.DISCONNECTED:
            self._transition(ConnectionEvent.CONNECT)
            self._start_attempt()
        return await asyncio.shield(waiter)

    def _start_attempt(self) -> None:
        self._run_task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        url = redact_url(self.url)
        logger.info(f"Connecting to {url} (reconnect attempt {self.reconnect_attempt})")
        try:
            socket = await self._connector(self.url)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            if self.state is not ConnectionState.CONNECTING:
                return
            logger.warning(f"Failed to connect to {url}: {e}")
            self._transition(ConnectionEvent.FAILED)
            self._after_close(
                CallError(code=ErrorCode.SOCKET_ERROR, message=f"WebSocket connection failed: {e}")
            )
            return

        if self.state is not ConnectionState.CONNECTING:
            # close() was called while the opening handshake was in flight
            await socket.close()
            return

        self._socket = socket
        self._transition(ConnectionEvent.OPENED)
        self.reconnect_attempt = 0
        logger.info(f"Connected to {url}")
        self._settle_waiter(True)
        self._notify("connection_opened")

        reason = "WebSocket connection closed unexpectedly"
        try:
            async for raw in socket:
                self._handle_frame(raw)
        except (ConnectionClosed, OSError) as e:
            reason = f"WebSocket connection lost: {e}"
            logger.warning(f"Connection to {url} lost: {e}")

        self._socket = None
        if self.state is ConnectionState.OPEN:
            self._transition(ConnectionEvent.DROPPED)
        self._transition(ConnectionEvent.CLOSED)
        self._after_close(CallError(code=ErrorCode.SOCKET_ERROR, message=reason))

    def _after_close(self, error: CallError) -> None:
        self._fail_pending(error)
        if self._explicitly_closed:
            logger.info(f"Connection to {redact_url(self.url)} closed")
            self._terminate(None)
            return

        if self.policy is not None and self.policy.can_retry(self.reconnect_attempt):
            self.reconnect_attempt += 1
            logger.info(
                f"Reconnecting to {redact_url(self.url)} in {self.policy.delay_ms}ms "
                f"(attempt {self.reconnect_attempt})"
            )
            self._notify("connection_lost", error)
            self._retry_timer = asyncio.get_running_loop().call_later(
                self.policy.delay_ms / 1000, self._retry
            )
            return

        self._terminate(error)

    def _retry(self) -> None:
        self._retry_timer = None
        self._transition(ConnectionEvent.RETRY)
        self._start_attempt()

    def _terminate(self, error: Optional[CallError]) -> None:
        if self._terminated:
            return
        self._terminated = True
        self._settle_waiter(False)
        if error is None:
            return

        logger.warning(f"Connection to {redact_url(self.url)} closed for good: {error.message}")
        self._notify("connection_failed", error)
        if self.policy is not None and self.policy.on_failed is not None:
            try:
                self.policy.on_failed()
            except Exception as e:
                logger.error(f"Reconnect on_failed callback raised: {e}", exc_info=True)

    def close(self) -> None:
        """Close the connection for good.

        Idempotent. Timers and pending calls are released before returning;
        the socket's close frame is sent in the background (see :meth:`wait_closed`).
        """
        if self._explicitly_closed or self._terminated:
            return
        self._explicitly_closed = True

        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None
        self._fail_pending(
            CallError(code=ErrorCode.SOCKET_ERROR, message="WebSocket connection closed")
        )

        if self.state is ConnectionState.OPEN:
            self._transition(ConnectionEvent.CLOSE)
            self._closing_task = asyncio.get_running_loop().create_task(self._socket.close())
        elif self.state is not ConnectionState.CLOSING:
            self._transition(ConnectionEvent.CLOSE)
            self._terminate(None)

    def background_tasks(self) -> List[asyncio.Task]:
        """Socket close and reader tasks that have not exited yet."""
        return [t for t in (self._closing_task, self._run_task) if t is not None and not t.done()]

    @property
    def finished(self) -> bool:
        """True once the connection is closed for good and its tasks have exited."""
        return self._terminated and not self.background_tasks()

    async def wait_closed(self) -> None:
        """Wait until the socket is closed and the reader has exited."""
        tasks = self.background_tasks()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def send(self, frame: Dict[str, Any]) -> None:
        """Send one JSON frame.

        Raises:
            ConnectionStateError: If the connection is not open
        """
        if self.state is not ConnectionState.OPEN or self._socket is None:
            raise ConnectionStateError(f"Cannot send while {self.state.value}")
        await self._socket.send(json.dumps(frame))

    async def request(
        self,
        method: str,
        params: Optional[Sequence[Any]] = None,
        timeout_ms: Timeout = DEFAULT_STREAM_TIMEOUT_MS,
    ) -> CallResult:
        """Send a request over the connection and wait for its reply.

        The reply's bare ``result`` becomes ``CallResult.data``. Timeouts and
        connection loss are reported as errors, never raised.
        """
        request = encode(method, params, self._ids)
        context = RequestContext(
            method=method, params=request.params, id=request.id, url=redact_url(self.url)
        )
        if self.state is not ConnectionState.OPEN:
            return CallResult.failure(
                context, ErrorCode.SOCKET_ERROR, f"Connection is not open ({self.state.value})"
            )

        loop = asyncio.get_running_loop()
        pending = PendingCall(id=request.id, context=context, future=loop.create_future())
        if timeout_ms is not False:
            pending.timer = loop.call_later(timeout_ms / 1000, self._expire, request.id, timeout_ms)
        self._pending[request.id] = pending

        try:
            try:
                await self.send(request.model_dump())
            except (ConnectionClosed, OSError) as e:
                self._resolve(
                    request.id,
                    CallResult.failure(
                        context, ErrorCode.SOCKET_ERROR, f"Failed to send request: {e}"
                    ),
                )
            return await pending.future
        finally:
            self._discard_pending(request.id)

    def _discard_pending(self, request_id: int) -> Optional[PendingCall]:
        pending = self._pending.pop(request_id, None)
        if pending is not None and pending.timer is not None:
            pending.timer.cancel()
        return pending

    def _resolve(self, request_id: int, result: CallResult) -> None:
        pending = self._discard_pending(request_id)
        if pending is not None and not pending.future.done():
            pending.future.set_result(result)

    def _expire(self, request_id: int, timeout_ms: Timeout) -> None:
        pending = self._pending.get(request_id)
        if pending is None:
            return
        logger.warning(f"{pending.context.method} (id={request_id}) timed out after {timeout_ms}ms")
        self._resolve(
            request_id,
            CallResult.failure(
                pending.context, ErrorCode.REQUEST_TIMEOUT, f"Timeout after {timeout_ms}ms"
            ),
        )

    def _fail_pending(self, error: CallError) -> None:
        for request_id in list(self._pending):
            pending = self._pending[request_id]
            self._resolve(
                request_id, CallResult.failure(pending.context, error.code, error.message)
            )

    def _handle_frame(self, raw: Any) -> None:
        try:
            frame = parse_frame(raw)
        except ValueError as e:
            logger.warning(f"Dropping unparseable frame from {redact_url(self.url)}: {e}")
            self._notify(
                "malformed_frame",
                CallError(code=ErrorCode.UNEXPECTED_FORMAT, message=f"Unparseable frame: {e}"),
            )
            return

        if isinstance(frame, dict) and "method" not in frame:
            request_id = frame.get("id")
            if (
                isinstance(request_id, int)
                and not isinstance(request_id, bool)
                and request_id in self._pending
            ):
                self._resolve(request_id, decode_handshake(frame, self._pending[request_id].context))
                return

        self._notify("notification_received", frame)
