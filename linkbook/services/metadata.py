from __future__ import annotations

import json
import logging
import threading
import time
import warnings
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from urllib.parse import urljoin, urlparse

import httpx
from bs4 import BeautifulSoup, Tag, XMLParsedAsHTMLWarning
from flask import Flask, current_app

from linkbook.models import isoformat, utcnow
from linkbook.services.cache import TTLCache
from linkbook.services.common import (
    chunked,
    ensure_scheme,
    extract_domain,
    normalize_url,
)

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; LinkBookBot/1.0; +https://linkbook.app)",
    "Accept": "text/html,application/xhtml+xml,application/xml",
    "Accept-Language": "en-US,en;q=0.9",
}

HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")
JSON_LD_TYPES = {"WebPage", "Article", "Product"}
FAVICON_SERVICE_URL = "https://www.google.com/s2/favicons?domain={domain}"
DEFAULT_MAX_BYTES = 2_500_000

# (rel, sizes) in order of preference; sizes=None matches any link with that rel.
FAVICON_PREFERENCE = (
    ("icon", "32x32"),
    ("icon", "48x48"),
    ("icon", "96x96"),
    ("shortcut icon", None),
    ("icon", None),
    ("apple-touch-icon", None),
)


class MetadataFetchError(Exception):
    pass


@dataclass
class PageMetadata:
    title: str = ""
    description: str = ""
    favicon: str = ""
    og_title: str = ""
    og_description: str = ""
    og_image: str = ""
    og_site_name: str = ""
    twitter_title: str = ""
    twitter_description: str = ""
    twitter_image: str = ""
    json_ld: dict = field(default_factory=dict)
    domain: str = ""
    last_updated: str | None = None
    error: str | None = None

    def as_dict(self) -> dict:
        return asdict(self)

    def as_bookmark_metadata(self) -> dict:
        return {
            "og": {
                "title": self.og_title,
                "description": self.og_description,
                "image": self.og_image,
            },
            "twitter": {
                "title": self.twitter_title,
                "description": self.twitter_description,
                "image": self.twitter_image,
            },
            "domain": self.domain,
        }


def get_metadata_cache(app: Flask | None = None) -> TTLCache:
    return (app or current_app).extensions["metadata_cache"]


def _normalize_error(exc: Exception) -> str:
    message = str(exc).strip()
    if message:
        return message
    return exc.__class__.__name__


def favicon_service_url(domain: str) -> str:
    return FAVICON_SERVICE_URL.format(domain=domain)


def make_absolute_url(value: str, base_url: str) -> str:
    if not value:
        return ""
    value = value.strip()
    if value.lower().startswith(("http://", "https://")):
        return value
    try:
        base = urlparse(base_url)
        if value.startswith("//"):
            return f"{base.scheme}:{value}"
        if value.startswith("/"):
            return f"{base.scheme}://{base.netloc}{value}"
        return urljoin(base_url, value)
    except ValueError:
        return value


def fallback_metadata(url: str, error: str) -> PageMetadata:
    domain = extract_domain(ensure_scheme(url))
    return PageMetadata(
        title=domain or url,
        description="",
        favicon=favicon_service_url(domain),
        domain=domain,
        error=error,
    )


def fetch_page(
    url: str, timeout: float, max_bytes: int = DEFAULT_MAX_BYTES
) -> tuple[str, str]:
    """Fetch ``url`` and return its HTML and final URL, reading at most ``max_bytes``."""
    with httpx.Client(
        follow_redirects=True, timeout=timeout, headers=DEFAULT_HEADERS
    ) as client:
        with client.stream("GET", url) as response:
            if not response.is_success:
                raise MetadataFetchError(
                    f"Failed to fetch URL: {response.status_code}"
                )
            content_type = response.headers.get("content-type", "").lower()
            if not any(kind in content_type for kind in HTML_CONTENT_TYPES):
                raise MetadataFetchError("URL does not point to HTML content")

            chunks = []
            total = 0
            for chunk in response.iter_bytes():
                remaining = max_bytes - total
                if len(chunk) >= remaining:
                    chunks.append(chunk[:remaining])
                    break
                chunks.append(chunk)
                total += len(chunk)
            data = b"".join(chunks)
            encoding = response.encoding or "utf-8"
            return data.decode(encoding, errors="ignore"), str(response.url)


def _build_soup(html: str) -> BeautifulSoup:
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", category=XMLParsedAsHTMLWarning)
        return BeautifulSoup(html, "lxml")


def _meta_content(soup: BeautifulSoup, *selectors: tuple[str, str]) -> str:
    for attr, value in selectors:
        tag = soup.find("meta", attrs={attr: value})
        if isinstance(tag, Tag):
            content = tag.get("content")
            if isinstance(content, str) and content.strip():
                return content.strip()
    return ""


def _iter_json_ld_items(payload):
    if isinstance(payload, list):
        for item in payload:
            yield from _iter_json_ld_items(item)
    elif isinstance(payload, dict):
        yield payload
        graph = payload.get("@graph")
        if isinstance(graph, list):
            yield from _iter_json_ld_items(graph)


def _json_ld_types(item: dict) -> set[str]:
    raw = item.get("@type")
    if isinstance(raw, str):
        return {raw}
    if isinstance(raw, list):
        return {value for value in raw if isinstance(value, str)}
    return set()


def _extract_json_ld(soup: BeautifulSoup) -> dict:
    found: dict = {}
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        raw = script.string or script.get_text()
        if not raw or not raw.strip():
            continue
        try:
            payload = json.loads(raw)
        except ValueError:
            continue
        for item in _iter_json_ld_items(payload):
            if _json_ld_types(item) & JSON_LD_TYPES:
                found = item
    return found


def _json_ld_text(data: dict, *keys: str) -> str:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _extract_favicon(soup: BeautifulSoup, base_url: str) -> str:
    links = []
    for link in soup.find_all("link"):
        rel = link.get("rel")
        if isinstance(rel, list):
            rel = " ".join(rel)
        href = link.get("href")
        if not rel or not isinstance(href, str) or not href.strip():
            continue
        sizes = link.get("sizes")
        links.append((rel.strip().lower(), (sizes or "").strip().lower(), href))

    for wanted_rel, wanted_sizes in FAVICON_PREFERENCE:
        for rel, sizes, href in links:
            if rel != wanted_rel:
                continue
            if wanted_sizes is not None and sizes != wanted_sizes:
                continue
            return make_absolute_url(href, base_url)

    return favicon_service_url(extract_domain(base_url))


def parse_metadata(html: str, base_url: str) -> PageMetadata:
    soup = _build_soup(html)

    title = soup.title.get_text(strip=True) if soup.title else ""
    description = _meta_content(soup, ("name", "description"))

    og_title = _meta_content(soup, ("property", "og:title"))
    og_description = _meta_content(soup, ("property", "og:description"))
    og_image = _meta_content(soup, ("property", "og:image"))
    og_site_name = _meta_content(soup, ("property", "og:site_name"))

    twitter_title = _meta_content(
        soup, ("name", "twitter:title"), ("property", "twitter:title")
    )
    twitter_description = _meta_content(
        soup, ("name", "twitter:description"), ("property", "twitter:description")
    )
    twitter_image = _meta_content(
        soup,
        ("name", "twitter:image"),
        ("name", "twitter:image:src"),
        ("property", "twitter:image"),
    )

    json_ld = _extract_json_ld(soup)

    return PageMetadata(
        title=og_title
        or twitter_title
        or _json_ld_text(json_ld, "headline", "name")
        or title
        or "",
        description=og_description
        or twitter_description
        or _json_ld_text(json_ld, "description")
        or description
        or "",
        favicon=_extract_favicon(soup, base_url),
        og_title=og_title,
        og_description=og_description,
        og_image=make_absolute_url(og_image, base_url),
        og_site_name=og_site_name,
        twitter_title=twitter_title,
        twitter_description=twitter_description,
        twitter_image=make_absolute_url(twitter_image, base_url),
        json_ld=json_ld,
        domain=extract_domain(base_url),
    )


def extract_metadata(
    url: str,
    cache: TTLCache,
    force_refresh: bool = False,
    timeout: float = 5.0,
    max_bytes: int = DEFAULT_MAX_BYTES,
) -> PageMetadata:
    """Best-effort page metadata for ``url``.

    Served from ``cache`` while fresh. Network failures, non-2xx responses and
    non-HTML content never raise: a fallback built from the domain is returned
    with ``error`` set, and it is not cached.
    """
    cache_key = normalize_url(url)
    if not force_refresh:
        cached = cache.get(cache_key)
        if cached is not None:
            return cached

    target = ensure_scheme(url)
    try:
        html, final_url = fetch_page(target, timeout=timeout, max_bytes=max_bytes)
    except (httpx.HTTPError, httpx.InvalidURL, MetadataFetchError) as exc:
        error = _normalize_error(exc)
        logger.warning("Metadata fetch failed for %s: %s", target, error)
        return fallback_metadata(url, error)

    metadata = parse_metadata(html, final_url or target)
    metadata.domain = extract_domain(target) or metadata.domain
    metadata.last_updated = isoformat(utcnow())
    cache.set(cache_key, metadata)
    return metadata


def preload_metadata(
    urls: list[str],
    cache: TTLCache,
    batch_size: int = 5,
    pause_seconds: float = 0.5,
    timeout: float = 5.0,
    max_bytes: int = DEFAULT_MAX_BYTES,
    sleep=time.sleep,
) -> None:
    urls = [url for url in urls if url]
    batches = list(chunked(urls, batch_size))
    for index, batch in enumerate(batches):
        with ThreadPoolExecutor(max_workers=len(batch)) as executor:
            futures = {
                executor.submit(
                    extract_metadata, url, cache, timeout=timeout, max_bytes=max_bytes
                ): url
                for url in batch
            }
            for future in as_completed(futures):
                try:
                    future.result()
                except Exception as exc:
                    logger.warning(
                        "Metadata preload failed for %s: %s", futures[future], exc
                    )
        if index < len(batches) - 1:
            sleep(pause_seconds)


def start_metadata_preload(app: Flask, urls: list[str]) -> threading.Thread | None:
    targets = list(dict.fromkeys(url for url in urls if url))
    if not targets or not app.config.get("METADATA_PRELOAD_ENABLED", True):
        return None

    worker = threading.Thread(
        target=preload_metadata,
        args=(targets, get_metadata_cache(app)),
        kwargs={
            "batch_size": int(app.config["METADATA_PRELOAD_BATCH_SIZE"]),
            "pause_seconds": float(app.config["METADATA_PRELOAD_PAUSE_SECONDS"]),
            "timeout": float(app.config["METADATA_FETCH_TIMEOUT"]),
            "max_bytes": int(app.config["METADATA_MAX_BYTES"]),
        },
        daemon=True,
        name="metadata-preload",
    )
    worker.start()
    return worker


def clear_metadata_cache(cache: TTLCache) -> int:
    cleared = len(cache)
    cache.clear()
    logger.info("Cleared %s metadata cache entries", cleared)
    return cleared
