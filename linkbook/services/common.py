from __future__ import annotations

import re
from collections.abc import Iterable, Iterator, Sequence
from typing import TypeVar
from urllib.parse import urlparse

_HTTP_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)

T = TypeVar("T")


def ensure_scheme(url: str) -> str:
    value = (url or "").strip()
    if not value:
        return ""
    if not _HTTP_SCHEME_RE.match(value):
        value = f"https://{value}"
    return value


def normalize_url(url: str) -> str:
    """Return the lookup key for ``url``.

    Adds ``https://`` when the scheme is missing, drops the fragment and any
    trailing slash, keeps the query string and lower-cases everything. Input
    that does not parse as a URL with a host is returned unchanged.
    """
    if not url or not url.strip():
        return url
    candidate = ensure_scheme(url)
    try:
        parsed = urlparse(candidate)
        host = parsed.hostname
        port = parsed.port
    except ValueError:
        return url
    if not host or any(ch.isspace() for ch in host):
        return url

    netloc = f"{host}:{port}" if port else host
    normalized = f"{parsed.scheme}://{netloc}{parsed.path.rstrip('/')}"
    if parsed.query:
        normalized += f"?{parsed.query}"
    return normalized.lower()


def extract_domain(url: str) -> str:
    try:
        return urlparse(url or "").hostname or ""
    except ValueError:
        return ""


def parse_tags(raw) -> list[str]:
    if not raw:
        return []
    if isinstance(raw, str):
        tokens = raw.split(",")
    elif isinstance(raw, Iterable):
        tokens = [str(item) for item in raw if item is not None]
    else:
        return []
    cleaned = (token.strip() for token in tokens)
    return list(dict.fromkeys(token for token in cleaned if token))


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    if size < 1:
        raise ValueError("chunk size must be positive")
    for i in range(0, len(items), size):
        yield items[i : i + size]
