"""Client for a node's JSON-RPC interface over HTTP and WebSocket."""
import logging
from typing import Any, Optional, Sequence

import httpx

from .config import Auth, CallOptions, ClientConfig, StreamOptions
from .http_client import HttpClient
from .models import CallResult
from .streams import BlockchainStream
from .subscriptions import Subscription, SubscriptionManager
from .utils.errors import ConfigurationError
from .utils.security import redact_url
from .ws_connection import Connector

logger = logging.getLogger(__name__)


class Client:
    """Calls and subscriptions against one node.

    Example:
        >>> async with Client("http://localhost:8648") as client:
        ...     result = await client.call("getBlockNumber")
        ...     subscription = await client.subscribe("subscribeForHeadBlockHash")
        ...     subscription.next(lambda event: print(event.data))
    """

    def __init__(
        self,
        url: Optional[str] = None,
        auth: Optional[Auth] = None,
        config: Optional[ClientConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        connector: Optional[Connector] = None,
    ):
        """Initialize client.

        Args:
            url: Node URL (e.g., http://localhost:8648); ignored if config is given
            auth: Credentials for url
            config: Complete configuration
            transport: Optional httpx transport for the request/response channel
            connector: Optional socket factory for the subscription channel

        Raises:
            ConfigurationError: If neither url nor config is given
        """
        if config is None:
            if url is None:
                raise ConfigurationError("Client needs a node url or a ClientConfig")
            config = ClientConfig(url=url, auth=auth)
        self.config = config
        self.http = HttpClient(config, transport=transport)
        self.subscriptions = SubscriptionManager(config.websocket_url(), connector=connector)
        self.blockchain_streams = BlockchainStream(self.subscriptions)
        logger.info(f"Client configured for {redact_url(config.url)}")

    async def __aenter__(self) -> "Client":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def call(
        self,
        method: str,
        params: Optional[Sequence[Any]] = None,
        options: Optional[CallOptions] = None,
    ) -> CallResult:
        """Call a method over HTTP. See :meth:`HttpClient.call`."""
        return await self.http.call(method, params, options)

    async def subscribe(
        self,
        method: str,
        params: Optional[Sequence[Any]] = None,
        options: Optional[StreamOptions] = None,
    ) -> Subscription:
        """Open a subscription over WebSocket. See :meth:`SubscriptionManager.subscribe`."""
        return await self.subscriptions.subscribe(method, params, options)

    async def aclose(self) -> None:
        """Close all subscriptions and the HTTP client."""
        await self.subscriptions.close_all()
        await self.http.close()
