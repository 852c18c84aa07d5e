"""Client for the JSON-RPC interface of a Nimiq node."""
from .client import Client
from .config import (
    BasicAuth,
    SecretAuth,
    ClientConfig,
    CallOptions,
    StreamOptions,
    ReconnectPolicy,
    DEFAULT_RECONNECT_POLICY,
)
from .http_client import HttpClient
from .jsonrpc import ErrorCode, MISSING
from .models import CallError, CallResult, RequestContext, StreamContext, StreamEvent
from .streams import BlockchainStream, BlockSubscriptionType, RetrieveType
from .subscriptions import Subscription, SubscriptionManager
from .utils.errors import NimiqRPCError, ConfigurationError, ConnectionStateError
from .ws_connection import ConnectionState, WebSocketConnection

__version__ = "0.1.0"

__all__ = [
    "Client",
    "BasicAuth",
    "SecretAuth",
    "ClientConfig",
    "CallOptions",
    "StreamOptions",
    "ReconnectPolicy",
    "DEFAULT_RECONNECT_POLICY",
    "HttpClient",
    "ErrorCode",
    "MISSING",
    "CallError",
    "CallResult",
    "RequestContext",
    "StreamContext",
    "StreamEvent",
    "BlockchainStream",
    "BlockSubscriptionType",
    "RetrieveType",
    "Subscription",
    "SubscriptionManager",
    "NimiqRPCError",
    "ConfigurationError",
    "ConnectionStateError",
    "ConnectionState",
    "WebSocketConnection",
]
