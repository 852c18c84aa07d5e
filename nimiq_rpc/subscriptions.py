"""Subscriptions over a shared WebSocket connection.

``SubscriptionManager.subscribe`` registers a subscription, sends the
subscribe handshake and returns a :class:`Subscription` handle. A
``SubscriptionRouter`` per connection demultiplexes push notifications by the
server-issued subscription id, which every push frame echoes in
``params.subscription``.
"""
import asyncio
import logging
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Set

from .config import ReconnectPolicy, StreamOptions
from .jsonrpc.codec import decode_notification, unexpected_format
from .jsonrpc.models import ErrorCode
from .models import CallError, StreamContext, StreamEvent
from .utils.security import redact_url
from .utils.validation import validate_method_name
from .ws_connection import Connector, ConnectionListener, WebSocketConnection

logger = logging.getLogger(__name__)

# Events kept for a subscription until a callback is registered
MAX_BACKLOG = 1000
# Notifications kept per unknown subscription id while a handshake is in flight
MAX_EARLY_NOTIFICATIONS = 100

EventCallback = Callable[[StreamEvent], Any]
ErrorCallback = Callable[[CallError], Any]


class Subscription:
    """Handle of one subscription.

    Events are delivered in the order the server sends them. Events that
    arrive before :meth:`next` is called are kept and replayed on registration.
    """

    def __init__(
        self,
        router: "SubscriptionRouter",
        method: str,
        params: Sequence[Any],
        options: StreamOptions,
    ):
        self._router = router
        self.method = method
        self.params = list(params)
        self.options = options
        self.context = StreamContext(
            method=method, params=self.params, url=redact_url(router.connection.url)
        )
        self.closed = False
        self.error: Optional[CallError] = None
        self._subscription_id: Optional[int] = None
        self._establishing = False
        self._callback: Optional[EventCallback] = None
        self._error_callback: Optional[ErrorCallback] = None
        self._backlog: Deque[StreamEvent] = deque(maxlen=MAX_BACKLOG)

    @property
    def once(self) -> bool:
        return self.options.once

    def get_subscription_id(self) -> Optional[int]:
        """Server-assigned subscription id, or None until the handshake completes."""
        return self._subscription_id

    def is_open(self) -> bool:
        return not self.closed and self._router.connection.is_open

    def next(self, callback: EventCallback, on_error: Optional[ErrorCallback] = None) -> None:
        """Register the callback receiving each :class:`StreamEvent`.

        Args:
            callback: Called with every delivered event
            on_error: Optional callback for delivery errors (see :meth:`on_error`)
        """
        self._callback = callback
        if on_error is not None:
            self._error_callback = on_error
        while self._backlog and not self.closed:
            self._deliver(self._backlog.popleft())

    def on_error(self, callback: ErrorCallback) -> None:
        """Register the callback receiving delivery errors.

        Errors are malformed push frames, a raising filter, a failed
        handshake, and the connection closing for good.
        """
        self._error_callback = callback

    def close(self) -> None:
        """Stop the subscription. Only the first call has any effect.

        The node has no unsubscribe call, so the subscription is only removed
        from the connection's routing table. Closing the last subscription on
        a connection closes the socket; otherwise the socket stays open for
        the others and later pushes for this id are dropped without a frame
        being sent.
        """
        if self.closed:
            return
        self.closed = True
        self._backlog.clear()
        self._router.discard(self)
        logger.info(f"Closed subscription {self._subscription_id} ({self.method})")

    def _invoke(self, callback: Callable[[Any], Any], argument: Any) -> None:
        try:
            callback(argument)
        except Exception as e:
            logger.error(f"Subscription callback for {self.method} raised: {e}", exc_info=True)

    def _deliver(self, event: StreamEvent) -> None:
        self._invoke(self._callback, event)
        if self.once:
            self.close()

    def _emit(self, event: StreamEvent) -> None:
        if self._callback is None:
            self._backlog.append(event)
        else:
            self._deliver(event)

    def _emit_error(self, error: CallError) -> None:
        if self._error_callback is None:
            logger.warning(f"Subscription {self._subscription_id} ({self.method}): {error.message}")
        else:
            self._invoke(self._error_callback, error)

    def _fail(self, error: CallError) -> None:
        if self.closed:
            return
        self.error = error
        self._emit_error(error)
        self.close()

    def _dispatch(self, frame: Dict[str, Any]) -> None:
        """Decode, filter and deliver one push notification."""
        if self.closed:
            return
        params = frame.get("params")
        if not isinstance(params, dict) or "result" not in params:
            self._emit_error(CallError(code=ErrorCode.NO_RESULT_IN_EVENT, message="No result in event"))
            return

        decoded = decode_notification(params["result"], self.options.with_metadata)
        if isinstance(decoded, CallError):
            self._emit_error(decoded)
            return

        if self.options.filter is not None:
            try:
                matched = self.options.filter(decoded.data)
            except Exception as e:
                logger.warning(f"Filter of subscription {self._subscription_id} raised: {e}")
                self._emit_error(
                    CallError(
                        code=ErrorCode.FILTER_ERROR,
                        message=f"Filter raised {type(e).__name__}: {e}",
                    )
                )
                return
            if not matched:
                return

        self._emit(decoded)


class SubscriptionRouter(ConnectionListener):
    """Routes the frames of one connection to its subscriptions."""

    def __init__(self, manager: "SubscriptionManager", connection: WebSocketConnection):
        self._manager = manager
        self.connection = connection
        connection.listener = self
        self._subscriptions: List[Subscription] = []
        self._live: Dict[int, Subscription] = {}
        self._early: Dict[int, Deque[Dict[str, Any]]] = {}
        self._in_flight = 0
        self._tasks: Set[asyncio.Task] = set()

    @property
    def subscriptions(self) -> List[Subscription]:
        return list(self._subscriptions)

    async def add(self, subscription: Subscription) -> None:
        self._subscriptions.append(subscription)
        await self._establish(subscription)

    async def _establish(self, subscription: Subscription) -> None:
        """Send the subscribe handshake and record the assigned id.

        Retries after a reconnect when the connection drops mid-handshake.
        """
        subscription._establishing = True
        self._in_flight += 1
        try:
            while not subscription.closed:
                if not await self.connection.connect():
                    subscription._fail(
                        CallError(
                            code=ErrorCode.SOCKET_ERROR,
                            message="WebSocket connection could not be established",
                        )
                    )
                    return
                if subscription.closed:
                    return

                result = await self.connection.request(
                    subscription.method, subscription.params, subscription.options.timeout_ms
                )
                if subscription.closed:
                    return
                if result.ok:
                    subscription_id = result.data
                    if isinstance(subscription_id, bool) or not isinstance(subscription_id, int):
                        subscription._fail(unexpected_format(subscription_id))
                        return
                    self._assign(subscription, subscription_id)
                    return
                if result.error.code == ErrorCode.SOCKET_ERROR and not self.connection.terminated:
                    logger.info(f"Handshake for {subscription.method} interrupted, waiting for reconnect")
                    continue

                logger.warning(f"Subscribe to {subscription.method} failed: {result.error.message}")
                subscription._fail(result.error)
                return
        finally:
            subscription._establishing = False
            self._in_flight -= 1
            if self._in_flight == 0:
                self._early.clear()

    def _assign(self, subscription: Subscription, subscription_id: int) -> None:
        subscription._subscription_id = subscription_id
        self._live[subscription_id] = subscription
        logger.info(f"Subscribed to {subscription.method} with id {subscription_id}")
        for frame in self._early.pop(subscription_id, ()):
            subscription._dispatch(frame)

    def discard(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
        subscription_id = subscription.get_subscription_id()
        if subscription_id is not None and self._live.get(subscription_id) is subscription:
            del self._live[subscription_id]
        if not self._subscriptions:
            self.close()

    def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.close()
        self.connection.close()
        self._manager._forget(self)

    def connection_opened(self, connection: WebSocketConnection) -> None:
        for subscription in self._subscriptions:
            if subscription.get_subscription_id() is None and not subscription._establishing:
                task = asyncio.get_running_loop().create_task(self._establish(subscription))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    def notification_received(self, connection: WebSocketConnection, frame: Any) -> None:
        if not isinstance(frame, dict):
            logger.debug(f"Dropping unmatched frame: {frame!r}")
            return
        params = frame.get("params")
        if "method" not in frame or not isinstance(params, dict) or "subscription" not in params:
            logger.debug(f"Dropping unmatched frame: {frame!r}")
            return

        subscription_id = params["subscription"]
        if isinstance(subscription_id, bool) or not isinstance(subscription_id, int):
            logger.debug(f"Dropping notification with invalid subscription id: {subscription_id!r}")
            return

        subscription = self._live.get(subscription_id)
        if subscription is not None:
            subscription._dispatch(frame)
        elif self._in_flight > 0:
            early = self._early.setdefault(subscription_id, deque(maxlen=MAX_EARLY_NOTIFICATIONS))
            early.append(frame)
        else:
            logger.debug(f"Dropping notification for unknown subscription {subscription_id}")

    def malformed_frame(self, connection: WebSocketConnection, error: CallError) -> None:
        for subscription in list(self._live.values()):
            subscription._emit_error(error)

    def connection_lost(self, connection: WebSocketConnection, error: CallError) -> None:
        # ids are per connection; every subscription is re-established on reopen
        self._live.clear()
        for subscription in self._subscriptions:
            subscription._subscription_id = None

    def connection_failed(self, connection: WebSocketConnection, error: CallError) -> None:
        self._live.clear()
        for subscription in list(self._subscriptions):
            subscription._fail(error)
        self._manager._forget(self)


class SubscriptionManager:
    """Opens subscriptions against one node endpoint.

    Subscriptions with the same reconnect policy share one connection.
    """

    def __init__(self, url: str, connector: Optional[Connector] = None):
        """Initialize the manager.

        Args:
            url: ws:// or wss:// subscription endpoint, credentials included
            connector: Coroutine function opening a socket (defaults to websockets.connect)
        """
        self.url = url
        self._connector = connector
        self._routers: Dict[Optional[ReconnectPolicy], SubscriptionRouter] = {}
        # Connections forgotten while their socket close or reader task still runs
        self._closing: Set[WebSocketConnection] = set()

    def get_connection(self, policy: Optional[ReconnectPolicy] = None) -> WebSocketConnection:
        """Return the live connection for a reconnect policy, creating it if needed."""
        return self._router_for(policy).connection

    def _router_for(self, policy: Optional[ReconnectPolicy]) -> SubscriptionRouter:
        router = self._routers.get(policy)
        if router is None or router.connection.terminated:
            connection = WebSocketConnection(self.url, policy, connector=self._connector)
            router = SubscriptionRouter(self, connection)
            self._routers[policy] = router
        return router

    def _forget(self, router: SubscriptionRouter) -> None:
        policy = router.connection.policy
        if self._routers.get(policy) is router:
            del self._routers[policy]
            self._track_closing(router.connection)

    def _track_closing(self, connection: WebSocketConnection) -> None:
        tasks = connection.background_tasks()
        if not tasks:
            return
        self._closing.add(connection)
        for task in tasks:
            task.add_done_callback(lambda _: self._release(connection))

    def _release(self, connection: WebSocketConnection) -> None:
        if connection.finished:
            self._closing.discard(connection)

    async def subscribe(
        self,
        method: str,
        params: Optional[Sequence[Any]] = None,
        options: Optional[StreamOptions] = None,
    ) -> Subscription:
        """Open a subscription and wait for the server to assign its id.

        A failed handshake does not raise: the returned subscription is
        closed and carries the failure in ``error``.

        Args:
            method: Subscription method (e.g., "subscribeForHeadBlock")
            params: Positional parameters
            options: once / filter / timeout / reconnect / metadata settings

        Raises:
            ValueError: If the method name is invalid
        """
        if not validate_method_name(method):
            raise ValueError(f"Invalid method name: {method!r}")
        options = options or StreamOptions()
        router = self._router_for(options.reconnect_policy())
        subscription = Subscription(router, method, params or [], options)
        await router.add(subscription)
        return subscription

    async def close_all(self) -> None:
        """Close every subscription and connection of this manager."""
        for router in list(self._routers.values()):
            router.close()
        closing, self._closing = list(self._closing), set()
        await asyncio.gather(*(c.wait_closed() for c in closing), return_exceptions=True)
