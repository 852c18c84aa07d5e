"""Request envelope codec.

Builds JSON-RPC 2.0 requests and classifies raw replies. Every reply is
classified as data, a domain error, or malformed; there is no fallthrough.
"""
import json
import logging
from typing import Any, List, Optional, Sequence, Union

from pydantic import ValidationError

from ..models import CallError, CallResult, RequestContext, StreamEvent
from ..utils.validation import validate_method_name
from .models import ErrorCode, JSONRPCError, JSONRPCRequest

logger = logging.getLogger(__name__)


class _Missing:
    """Placeholder for an omitted optional positional parameter."""

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


class IdCounter:
    """Monotonically increasing request ids, owned by one transport instance."""

    def __init__(self, start: int = 0):
        self._next_id = start

    def next(self) -> int:
        """Return the next request id."""
        request_id = self._next_id
        self._next_id += 1
        return request_id

    def peek(self) -> int:
        return self._next_id


def encode(method: str, params: Optional[Sequence[Any]], counter: IdCounter) -> JSONRPCRequest:
    """Build a request envelope, assigning the next id from counter.

    Omitted parameters (``MISSING``) are sent as explicit nulls: the node
    tells an absent positional argument apart from a null one.

    Raises:
        ValueError: If the method name is not a valid identifier
    """
    if not validate_method_name(method):
        raise ValueError(f"Invalid method name: {method!r}")
    normalized: List[Any] = [None if param is MISSING else param for param in (params or [])]
    return JSONRPCRequest(method=method, params=normalized, id=counter.next())


def parse_frame(raw: Union[str, bytes]) -> Any:
    """Parse a raw text or binary frame into JSON.

    Raises:
        ValueError: If the frame is not valid JSON
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    return json.loads(raw)


def _dump(payload: Any) -> str:
    try:
        return json.dumps(payload, default=str)
    except (TypeError, ValueError):
        return repr(payload)


def unexpected_format(payload: Any) -> CallError:
    return CallError(
        code=ErrorCode.UNEXPECTED_FORMAT,
        message=f"Unexpected format of data {_dump(payload)}",
    )


def _render_error_data(raw_error: dict) -> str:
    if "data" not in raw_error:
        return "undefined"
    data = raw_error["data"]
    if isinstance(data, str):
        return data
    return _dump(data)


def decode_error(raw_error: Any) -> Optional[CallError]:
    """Decode a JSON-RPC error object, or None if it is malformed."""
    if not isinstance(raw_error, dict):
        return None
    try:
        error = JSONRPCError.model_validate(raw_error)
    except ValidationError:
        return None
    return CallError(
        code=error.code,
        message=f"{error.message}: {_render_error_data(raw_error)}",
    )


def decode_response(
    payload: Any, context: RequestContext, with_metadata: bool = False
) -> CallResult:
    """Classify a request/response reply of shape ``{result: {data, metadata?}}``."""
    if isinstance(payload, dict):
        if "result" in payload:
            result = payload["result"]
            if isinstance(result, dict) and "data" in result:
                metadata = result.get("metadata") if with_metadata else None
                return CallResult.success(context, result["data"], metadata)
        elif "error" in payload:
            error = decode_error(payload["error"])
            if error is not None:
                return CallResult(context=context, error=error)

    error = unexpected_format(payload)
    logger.debug(f"Malformed reply to {context.method} (id={context.id}): {error.message}")
    return CallResult(context=context, error=error)


def decode_handshake(payload: Any, context: RequestContext) -> CallResult:
    """Classify a subscribe reply, whose ``result`` is the bare subscription id."""
    if isinstance(payload, dict):
        if "result" in payload:
            return CallResult.success(context, payload["result"])
        if "error" in payload:
            error = decode_error(payload["error"])
            if error is not None:
                return CallResult(context=context, error=error)
    return CallResult(context=context, error=unexpected_format(payload))


def decode_notification(
    result: Any, with_metadata: bool = False
) -> Union[StreamEvent, CallError]:
    """Decode the ``params.result`` object of a push notification."""
    if isinstance(result, dict) and "data" in result:
        metadata = result.get("metadata") if with_metadata else None
        return StreamEvent(data=result["data"], metadata=metadata)
    return unexpected_format(result)
