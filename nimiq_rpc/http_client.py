"""Unary invoker over the HTTP request/response transport."""
import asyncio
import logging
from typing import Any, Optional, Sequence

import httpx

from .config import Auth, BasicAuth, CallOptions, ClientConfig, http_url
from .jsonrpc.codec import IdCounter, decode_response, encode, unexpected_format
from .jsonrpc.models import ErrorCode, JSONRPCRequest
from .models import CallResult, RequestContext
from .utils.errors import ConfigurationError
from .utils.security import redact_url
from .utils.validation import validate_endpoint_url

logger = logging.getLogger(__name__)


class HttpClient:
    """Issues JSON-RPC 2.0 calls over HTTP POST.

    Every call resolves to a :class:`CallResult`. Timeouts, network failures,
    HTTP status errors, node errors and malformed replies are all reported in
    ``CallResult.error``; nothing but programming errors is raised.
    """

    def __init__(self, config: ClientConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        """Initialize HTTP client.

        Args:
            config: Node URL, credentials and default timeout
            transport: Optional httpx transport (used by tests to mock the node)
        """
        self.config = config
        self._ids = IdCounter()
        # Timeouts are enforced per call by our own timer
        self.client = httpx.AsyncClient(timeout=None, transport=transport)

    async def __aenter__(self) -> "HttpClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()

    def _resolve_target(self, options: CallOptions) -> tuple[str, Optional[Auth]]:
        auth = options.auth if options.auth is not None else self.config.auth
        url = str(options.url) if options.url is not None else self.config.url
        if not validate_endpoint_url(url):
            raise ConfigurationError(f"Invalid node URL: {url!r}")
        return http_url(url, auth), auth

    async def _post(self, url: str, request: JSONRPCRequest, auth: Optional[Auth]) -> httpx.Response:
        return await self.client.post(
            url,
            json=request.model_dump(),
            headers={"Content-Type": "application/json"},
            auth=httpx.BasicAuth(auth.username, auth.password) if isinstance(auth, BasicAuth) else None,
        )

    async def call(
        self,
        method: str,
        params: Optional[Sequence[Any]] = None,
        options: Optional[CallOptions] = None,
    ) -> CallResult:
        """Make a JSON-RPC 2.0 call.

        Args:
            method: JSON-RPC method name (e.g., "getBlockNumber")
            params: Positional parameters
            options: Timeout, target and metadata overrides

        Returns:
            CallResult with either data (and metadata, if requested) or error

        Example:
            >>> result = await client.call("getBlockNumber")
            >>> if result.ok:
            ...     print(result.data)
        """
        options = options or CallOptions()
        url, auth = self._resolve_target(options)
        request = encode(method, params, self._ids)
        context = RequestContext(
            method=method, params=request.params, id=request.id, url=redact_url(url)
        )
        timeout_ms = self.config.timeout_ms if options.timeout_ms is None else options.timeout_ms

        task = asyncio.ensure_future(self._post(url, request, auth))
        timer: Optional[asyncio.TimerHandle] = None
        timed_out = False

        def abort() -> None:
            nonlocal timed_out
            timed_out = True
            task.cancel()

        if timeout_ms is not False:
            timer = asyncio.get_running_loop().call_later(timeout_ms / 1000, abort)

        try:
            response = await task
        except asyncio.CancelledError:
            if not timed_out:
                raise
            logger.warning(f"{method} (id={request.id}) timed out after {timeout_ms}ms")
            return CallResult.failure(
                context,
                ErrorCode.REQUEST_TIMEOUT,
                f"AbortError: Request timed out after {timeout_ms}ms",
            )
        except httpx.TimeoutException as e:
            logger.warning(f"{method} (id={request.id}) timed out: {e}")
            return CallResult.failure(
                context, ErrorCode.REQUEST_TIMEOUT, f"AbortError: Service Unavailable: {e}"
            )
        except httpx.TransportError as e:
            logger.warning(f"Network error calling {method} (id={request.id}): {e}")
            return CallResult.failure(
                context, ErrorCode.SERVICE_UNAVAILABLE, f"FetchError: Service Unavailable: {e}"
            )
        except httpx.HTTPError as e:
            logger.error(f"HTTP error calling {method} (id={request.id}): {e}")
            return CallResult.failure(
                context, ErrorCode.SERVICE_UNAVAILABLE, f"Service Unavailable: {e}"
            )
        finally:
            if timer is not None:
                timer.cancel()

        if not response.is_success:
            if response.status_code == ErrorCode.UNAUTHORIZED:
                message = "Server requires authorization."
            else:
                message = (
                    f"Response status code not OK: {response.status_code} {response.reason_phrase}"
                )
            return CallResult.failure(context, response.status_code, message)

        try:
            payload = response.json()
        except ValueError:
            error = unexpected_format(response.text)
            return CallResult(context=context, error=error)

        return decode_response(payload, context, options.with_metadata)
