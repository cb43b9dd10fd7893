"""Server-side fetch for Instagram preview images.

Instagram CDN thumbnails refuse hot-linking from other origins, so the web UI
loads them through this proxy. Only hosts on the allow-list are fetched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urljoin, urlparse

import anyio
import requests

from config.settings import (
    INSTAGRAM_REFERER,
    MOBILE_USER_AGENT,
    THUMBNAIL_ALLOWED_HOSTS,
    THUMBNAIL_TIMEOUT_SECONDS,
)
from engine.errors import FetchrError
from engine.json_utils import log_event

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "image/jpeg"
MAX_REDIRECTS = 3


class ThumbnailRejected(FetchrError):
    """Proxy request refused or failed; ``http_status`` is set per instance."""

    user_message = "Proxy error"
    http_status = 502

    def __init__(self, message: str, *, status: int, user_message: str) -> None:
        super().__init__(message, user_message=user_message)
        self.http_status = status


@dataclass
class Thumbnail:
    content: bytes
    content_type: str = DEFAULT_CONTENT_TYPE


def host_allowed(host: str, allowed_hosts=THUMBNAIL_ALLOWED_HOSTS) -> bool:
    host = (host or "").strip().lower().rstrip(".")
    if not host:
        return False
    return any(host == domain or host.endswith("." + domain) for domain in allowed_hosts)


def validate_thumbnail_url(raw_url: Optional[str], allowed_hosts=THUMBNAIL_ALLOWED_HOSTS) -> str:
    url = (raw_url or "").strip()
    if not url:
        raise ThumbnailRejected("thumbnail url missing", status=400, user_message="Missing url")
    try:
        parsed = urlparse(url)
        host = parsed.hostname
    except ValueError:
        raise ThumbnailRejected(f"unparseable thumbnail url {url!r}", status=400, user_message="Invalid url") from None
    if parsed.scheme not in {"http", "https"} or not host:
        raise ThumbnailRejected(f"unusable thumbnail url {url!r}", status=400, user_message="Invalid url")
    if not host_allowed(host, allowed_hosts):
        raise ThumbnailRejected(f"thumbnail host not allowed: {host}", status=403, user_message="Domain not allowed")
    return url


async def fetch_thumbnail(
    raw_url: Optional[str],
    *,
    session: Optional[requests.Session] = None,
    allowed_hosts=THUMBNAIL_ALLOWED_HOSTS,
    timeout: float = THUMBNAIL_TIMEOUT_SECONDS,
) -> Thumbnail:
    url = validate_thumbnail_url(raw_url, allowed_hosts)
    client = session or requests
    headers = {"User-Agent": MOBILE_USER_AGENT, "Referer": INSTAGRAM_REFERER}

    # Redirects are followed by hand so every hop is checked against the allow-list.
    for _ in range(MAX_REDIRECTS + 1):
        response = await _get(client, url, headers, timeout)
        location = response.headers.get("location")
        if not (300 <= response.status_code < 400 and location):
            break
        response.close()
        url = validate_thumbnail_url(urljoin(url, location), allowed_hosts)
    else:
        log_event(logging.WARNING, "thumbnail_too_many_redirects", logger=logger, url=url)
        raise ThumbnailRejected("thumbnail redirect limit reached", status=502, user_message="Failed to fetch thumbnail")

    if not response.ok:
        log_event(logging.WARNING, "thumbnail_upstream_rejected", logger=logger, url=url, status=response.status_code)
        raise ThumbnailRejected(
            f"thumbnail upstream returned {response.status_code}",
            status=response.status_code,
            user_message="Failed to fetch thumbnail",
        )
    content_type = response.headers.get("content-type") or DEFAULT_CONTENT_TYPE
    if not content_type.lower().startswith("image/"):
        log_event(logging.WARNING, "thumbnail_not_image", logger=logger, url=url, content_type=content_type)
        raise ThumbnailRejected(
            f"thumbnail upstream sent {content_type}",
            status=502,
            user_message="Failed to fetch thumbnail",
        )
    return Thumbnail(content=response.content, content_type=content_type)


async def _get(client, url: str, headers: dict, timeout: float) -> requests.Response:
    def _request() -> requests.Response:
        return client.get(url, headers=headers, timeout=timeout, allow_redirects=False)

    try:
        return await anyio.to_thread.run_sync(_request)
    except requests.RequestException as exc:
        log_event(logging.WARNING, "thumbnail_proxy_failed", logger=logger, url=url, error=str(exc))
        raise ThumbnailRejected(f"thumbnail fetch failed: {exc}", status=502, user_message="Proxy error") from exc
