"""JSON-RPC 2.0 request/response models."""
from pydantic import BaseModel, Field
from typing import Any, List, Optional, Literal

JSONRPC_VERSION = "2.0"


class JSONRPCRequest(BaseModel):
    """JSON-RPC 2.0 request model with positional params."""

    jsonrpc: Literal["2.0"] = JSONRPC_VERSION
    method: str
    params: List[Any] = Field(default_factory=list)
    id: int


class JSONRPCError(BaseModel):
    """JSON-RPC 2.0 error model."""

    code: int
    message: str
    data: Optional[Any] = None


class ErrorCode:
    """JSON-RPC 2.0 standard error codes and client-side transport codes."""

    # Standard JSON-RPC 2.0 error codes
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603

    # Decoding errors
    UNEXPECTED_FORMAT = -1
    FILTER_ERROR = -2

    # HTTP transport errors
    UNAUTHORIZED = 401
    REQUEST_TIMEOUT = 408
    SERVICE_UNAVAILABLE = 503

    # WebSocket transport errors
    NO_RESULT_IN_EVENT = 1000
    SOCKET_ERROR = 1006
