"""Client configuration and per-call options."""
import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union, Literal
from urllib.parse import quote, urlencode, parse_qsl, urlsplit, urlunsplit

import yaml
from pydantic import BaseModel, field_validator

from .utils.errors import ConfigurationError
from .utils.validation import validate_endpoint_url, validate_timeout

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 10_000
DEFAULT_STREAM_TIMEOUT_MS = 5_000
DEFAULT_RECONNECT_DELAY_MS = 1_000
DEFAULT_RECONNECT_RETRIES = 3
DEFAULT_WS_PATH = "/ws"

Timeout = Union[Literal[False], int, float]


class BasicAuth(BaseModel):
    """Username/password credentials, sent as HTTP Basic authorization."""

    username: str
    password: str


class SecretAuth(BaseModel):
    """Shared secret, sent as the ``secret`` query parameter."""

    secret: str


Auth = Union[BasicAuth, SecretAuth]


def _with_query(url: str, extra: Dict[str, str]) -> str:
    parts = urlsplit(url)
    query = dict(parse_qsl(parts.query))
    query.update(extra)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def http_url(url: str, auth: Optional[Auth] = None) -> str:
    """Target URL for a request/response call."""
    if isinstance(auth, SecretAuth):
        return _with_query(url, {"secret": auth.secret})
    return url


def websocket_url(url: str, auth: Optional[Auth] = None, path: str = DEFAULT_WS_PATH) -> str:
    """Subscription endpoint for a node URL: ws(s) scheme, path rewritten."""
    parts = urlsplit(url)
    scheme = "wss" if parts.scheme == "https" else "ws"
    netloc = parts.netloc.rsplit("@", 1)[-1]
    if isinstance(auth, BasicAuth):
        user = quote(auth.username, safe="")
        password = quote(auth.password, safe="")
        netloc = f"{user}:{password}@{netloc}"
    ws = urlunsplit((scheme, netloc, path, parts.query, ""))
    if isinstance(auth, SecretAuth):
        ws = _with_query(ws, {"secret": auth.secret})
    return ws


class ClientConfig(BaseModel):
    """Connection settings for a node."""

    url: str
    auth: Optional[Auth] = None
    timeout_ms: Timeout = DEFAULT_TIMEOUT_MS
    ws_path: str = DEFAULT_WS_PATH

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        if not validate_endpoint_url(value):
            raise ValueError(f"Invalid node URL: {value!r} (expected http:// or https://)")
        return value

    @field_validator("timeout_ms", mode="before")
    @classmethod
    def _check_timeout(cls, value: Timeout) -> Timeout:
        if not validate_timeout(value):
            raise ValueError(f"Invalid timeout: {value!r}")
        return value

    def http_url(self) -> str:
        return http_url(self.url, self.auth)

    def websocket_url(self) -> str:
        return websocket_url(self.url, self.auth, self.ws_path)

    @classmethod
    def from_yaml(cls, config_path: Union[str, Path]) -> "ClientConfig":
        """Load configuration from a YAML file.

        The file holds either the settings at top level or under a ``node`` key::

            node:
              url: http://localhost:8648
              auth:
                username: user
                password: pass
              timeout_ms: 5000

        Raises:
            ConfigurationError: If the file is missing or does not hold a mapping
        """
        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}")
        with open(path) as f:
            data = yaml.safe_load(f)
        if isinstance(data, dict) and isinstance(data.get("node"), dict):
            data = data["node"]
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {path} must contain a mapping")
        logger.info(f"Loaded node configuration from {path}")
        return cls.model_validate(data)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "ClientConfig":
        """Build configuration from ``NIMIQ_RPC_*`` environment variables.

        Raises:
            ConfigurationError: If ``NIMIQ_RPC_URL`` is not set
        """
        env = os.environ if environ is None else environ
        url = env.get("NIMIQ_RPC_URL")
        if not url:
            raise ConfigurationError("NIMIQ_RPC_URL is not set")

        auth: Optional[Auth] = None
        if env.get("NIMIQ_RPC_USERNAME") and env.get("NIMIQ_RPC_PASSWORD"):
            auth = BasicAuth(username=env["NIMIQ_RPC_USERNAME"], password=env["NIMIQ_RPC_PASSWORD"])
        elif env.get("NIMIQ_SECRET"):
            auth = SecretAuth(secret=env["NIMIQ_SECRET"])

        data: Dict[str, Any] = {"url": url, "auth": auth}
        if env.get("NIMIQ_RPC_TIMEOUT_MS"):
            data["timeout_ms"] = int(env["NIMIQ_RPC_TIMEOUT_MS"])
        return cls(**data)


@dataclass(frozen=True)
class ReconnectPolicy:
    """Bounded retry for a dropped persistent connection.

    ``retries`` is either a maximum number of reconnect attempts (negative
    means unbounded) or a zero-argument predicate asked before every attempt.
    """

    retries: Union[int, Callable[[], bool]] = DEFAULT_RECONNECT_RETRIES
    delay_ms: int = DEFAULT_RECONNECT_DELAY_MS
    on_failed: Optional[Callable[[], Any]] = None

    def can_retry(self, attempts: int) -> bool:
        if callable(self.retries):
            return bool(self.retries())
        return self.retries < 0 or attempts < self.retries


DEFAULT_RECONNECT_POLICY = ReconnectPolicy()


@dataclass
class CallOptions:
    """Options of a single request/response call."""

    timeout_ms: Optional[Timeout] = None
    url: Optional[str] = None
    auth: Optional[Auth] = None
    with_metadata: bool = False


@dataclass
class StreamOptions:
    """Options of a subscription."""

    once: bool = False
    filter: Optional[Callable[[Any], bool]] = None
    timeout_ms: Timeout = DEFAULT_STREAM_TIMEOUT_MS
    auto_reconnect: Union[bool, ReconnectPolicy] = False
    with_metadata: bool = False

    def reconnect_policy(self) -> Optional[ReconnectPolicy]:
        if isinstance(self.auto_reconnect, ReconnectPolicy):
            return self.auto_reconnect
        return DEFAULT_RECONNECT_POLICY if self.auto_reconnect else None
