"""Input validation utilities."""
import re
from typing import Any
from urllib.parse import urlsplit

VALID_METHOD_NAME = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
HTTP_SCHEMES = {"http", "https"}


def validate_method_name(name: str) -> bool:
    """Validate a JSON-RPC method name."""
    return bool(VALID_METHOD_NAME.match(name))


def validate_endpoint_url(url: str) -> bool:
    """Validate that url is an absolute http(s) URL with a host."""
    parts = urlsplit(url)
    return parts.scheme in HTTP_SCHEMES and bool(parts.hostname)


def validate_timeout(timeout_ms: Any) -> bool:
    """Validate a timeout: a non-negative number of milliseconds, or False."""
    if timeout_ms is False:
        return True
    if isinstance(timeout_ms, bool):
        return False
    return isinstance(timeout_ms, (int, float)) and timeout_ms >= 0
