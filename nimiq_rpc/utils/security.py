"""Helpers that keep credentials out of diagnostics."""
from urllib.parse import urlsplit, urlunsplit


def redact_url(url: str) -> str:
    """Strip user-info, query string and fragment from a URL.

    Request contexts end up in logs and error reports, and both credential
    modes (user-info and ``?secret=``) live in those parts of the URL.
    """
    parts = urlsplit(url)
    netloc = parts.hostname or ""
    if ":" in netloc:
        netloc = f"[{netloc}]"
    if parts.port is not None:
        netloc = f"{netloc}:{parts.port}"
    return urlunsplit((parts.scheme, netloc, parts.path, "", ""))
