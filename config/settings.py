"""Application settings constants, overridable through the environment."""

from __future__ import annotations

import os
import shlex


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.environ.get(name)
    if not raw:
        return default
    items = tuple(part.strip().lower() for part in raw.split(",") if part.strip())
    return items or default


def extractor_command() -> tuple[str, ...]:
    """Return the argv prefix used to invoke yt-dlp."""
    raw = os.environ.get("FETCHR_YTDLP_BINARY") or os.environ.get("YTDLP_BINARY_PATH") or "yt-dlp"
    parts = tuple(shlex.split(raw))
    return parts or ("yt-dlp",)


APP_VERSION = os.environ.get("FETCHR_VERSION", "0.1.0")

# Upper bound for the metadata-only (-J) extractor call.
METADATA_TIMEOUT_SECONDS = _env_float("FETCHR_METADATA_TIMEOUT", 45.0)

# Upper bound for the direct-locator (-g) extractor call.
LOCATOR_TIMEOUT_SECONDS = _env_float("FETCHR_LOCATOR_TIMEOUT", 20.0)

EXTRACTOR_RETRIES = _env_int("FETCHR_EXTRACTOR_RETRIES", 2)

STREAM_CHUNK_SIZE = _env_int("FETCHR_STREAM_CHUNK_SIZE", 64 * 1024)

CDN_CONNECT_TIMEOUT_SECONDS = _env_float("FETCHR_CDN_CONNECT_TIMEOUT", 10.0)
CDN_READ_TIMEOUT_SECONDS = _env_float("FETCHR_CDN_READ_TIMEOUT", 60.0)

THUMBNAIL_TIMEOUT_SECONDS = _env_float("FETCHR_THUMBNAIL_TIMEOUT", 15.0)
THUMBNAIL_ALLOWED_HOSTS = _env_list(
    "FETCHR_THUMBNAIL_HOSTS",
    ("fbcdn.net", "cdninstagram.com", "instagram.com"),
)
THUMBNAIL_CACHE_CONTROL = "public, max-age=3600"

# Send the browser straight to a single muxed YouTube locator instead of proxying it.
YOUTUBE_DIRECT_REDIRECT = _env_flag("FETCHR_YOUTUBE_DIRECT_REDIRECT")

TRUST_PROXY = _env_flag("FETCHR_TRUST_PROXY")

DESKTOP_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
CDN_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
MOBILE_USER_AGENT = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
TIKTOK_REFERER = "https://www.tiktok.com/"
INSTAGRAM_REFERER = "https://www.instagram.com/"
