"""
canonicalize.py

Deterministic URL canonicalization used as the lookup key for stored analysis.

Public function:
    canonicalize(raw: str) -> str

The canonical form is ``scheme://host/path[?sorted-query]``:

    >>> canonicalize("  Example.COM/p?b=2&a=1#top ")
    'http://example.com/p?a=1&b=2'

Known limitation: query tokens are only reordered. Percent-encoding, value
case and duplicate parameters are left exactly as submitted.
"""

import re
from urllib.parse import urlsplit

DEFAULT_SCHEME = "http"

# characters that can never appear unescaped in a URI
_ILLEGAL_RE = re.compile(r'[\s\x00-\x1f\x7f<>"]')


class InvalidUrlError(ValueError):
    """Raised when a string cannot be turned into a canonical URL."""


def _ensure_scheme(url: str) -> str:
    if url.startswith("//"):
        return f"{DEFAULT_SCHEME}:{url}"
    if "://" not in url:
        return f"{DEFAULT_SCHEME}://{url}"
    return url


def _encode_host(host: str, raw: str) -> str:
    if ":" in host:
        # IPv6 literal, keep the brackets so the result parses again
        return f"[{host.lower()}]"
    try:
        return host.encode("idna").decode("ascii").lower()
    except UnicodeError:
        raise InvalidUrlError(f"Invalid URL: {raw}")


def _sort_query(query: str) -> str:
    return "&".join(sorted(query.split("&")))


def canonicalize(raw: str) -> str:
    if not isinstance(raw, str):
        raise InvalidUrlError(f"Invalid URL: {raw!r}")
    url = raw.strip()
    if not url or _ILLEGAL_RE.search(url):
        raise InvalidUrlError(f"Invalid URL: {raw}")

    try:
        parts = urlsplit(_ensure_scheme(url))
        parts.port  # raises ValueError on a malformed port
    except ValueError:
        raise InvalidUrlError(f"Invalid URL: {raw}")

    if not parts.hostname:
        raise InvalidUrlError(f"Invalid URL: {raw}")

    scheme = (parts.scheme or DEFAULT_SCHEME).lower()
    host = _encode_host(parts.hostname, raw)
    path = parts.path or "/"

    canon = f"{scheme}://{host}{path}"
    if parts.query:
        canon = f"{canon}?{_sort_query(parts.query)}"
    return canon


def host_of(canon: str) -> str:
    """Return the bare host of a canonical URL (no brackets for IPv6)."""
    return urlsplit(canon).hostname or ""
