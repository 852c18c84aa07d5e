"""JSON-RPC 2.0 envelope models and codec."""
from .models import JSONRPCRequest, JSONRPCError, ErrorCode
from .codec import (
    MISSING,
    IdCounter,
    encode,
    decode_response,
    decode_handshake,
    decode_notification,
    parse_frame,
)

__all__ = [
    "JSONRPCRequest",
    "JSONRPCError",
    "ErrorCode",
    "MISSING",
    "IdCounter",
    "encode",
    "decode_response",
    "decode_handshake",
    "decode_notification",
    "parse_frame",
]
