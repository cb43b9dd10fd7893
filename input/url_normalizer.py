"""Per-platform canonicalization and shape validation of pasted links."""

from __future__ import annotations

import re
from enum import Enum
from typing import Optional
from urllib.parse import parse_qs, urlparse

from engine.errors import InvalidInput


class Platform(Enum):
    YOUTUBE = "youtube"
    TIKTOK = "tiktok"
    INSTAGRAM = "instagram"

    @property
    def label(self) -> str:
        return _PLATFORM_LABELS[self]


_PLATFORM_LABELS = {
    Platform.YOUTUBE: "YouTube",
    Platform.TIKTOK: "TikTok",
    Platform.INSTAGRAM: "Instagram",
}

_YOUTUBE_HOSTS = {"youtube.com", "www.youtube.com", "m.youtube.com", "music.youtube.com"}
_YOUTUBE_SHORT_HOST = "youtu.be"
_YOUTUBE_ID_RE = re.compile(r"^[\w-]{11}$")
_YOUTUBE_VALID_RE = re.compile(
    r"^(https?://)?(www\.|m\.)?(youtube\.com/(watch\?(?:[^#]*&)?v=|shorts/)|youtu\.be/)[\w-]{11}(?![\w-])"
)

_TIKTOK_SHORT_HOSTS = {"vm.tiktok.com", "vt.tiktok.com"}
_TIKTOK_PATH_RE = re.compile(r"^/(@[\w.-]+/video/\d+|v/\d+)")

_INSTAGRAM_PATH_RE = re.compile(r"^/(p|reel|reels|tv|stories)/[\w.-]+")


def platform_from_value(value: str | None) -> Platform:
    try:
        return Platform(str(value or "").strip().lower())
    except ValueError:
        raise InvalidInput(f"unknown platform: {value!r}", user_message="Unsupported platform") from None


def normalize(platform: Platform, raw_url: str) -> str:
    """Return the canonical form of ``raw_url``; unparseable input is returned unchanged."""
    try:
        if platform is Platform.YOUTUBE:
            return _normalize_youtube(raw_url)
        if platform is Platform.TIKTOK:
            return _normalize_tiktok(raw_url)
        if platform is Platform.INSTAGRAM:
            return _normalize_instagram(raw_url)
    except (ValueError, TypeError, AttributeError):
        pass
    return raw_url


def is_valid(platform: Platform, url: str) -> bool:
    if not url or not isinstance(url, str):
        return False
    if platform is Platform.YOUTUBE:
        return bool(_YOUTUBE_VALID_RE.match(url.strip()))
    try:
        parsed = urlparse(_with_scheme(url.strip()))
    except ValueError:
        return False
    host = (parsed.hostname or "").lower()
    if platform is Platform.TIKTOK:
        if host in _TIKTOK_SHORT_HOSTS:
            return True
        return _host_matches(host, "tiktok.com") and bool(_TIKTOK_PATH_RE.match(parsed.path or ""))
    if platform is Platform.INSTAGRAM:
        return _host_matches(host, "instagram.com") and bool(_INSTAGRAM_PATH_RE.match(parsed.path or ""))
    return False


def require_valid_url(platform: Platform, raw_url: str | None) -> str:
    """Normalize and validate, raising :class:`InvalidInput` for unusable input."""
    raw = (raw_url or "").strip()
    if not raw:
        raise InvalidInput("empty url", user_message="URL is required")
    url = normalize(platform, raw)
    if not is_valid(platform, url):
        raise InvalidInput(f"invalid {platform.value} url: {raw}", user_message=f"Invalid {platform.label} URL")
    return url


def infer_instagram_media_kind(url: str) -> str:
    if "/reel/" in url or "/reels/" in url:
        return "reel"
    if "/tv/" in url:
        return "igtv"
    if "/stories/" in url:
        return "story"
    return "post"


def _with_scheme(raw: str) -> str:
    return raw if "://" in raw else f"https://{raw}"


def _host_matches(host: str, domain: str) -> bool:
    return host == domain or host.endswith("." + domain)


def _normalize_youtube(raw: str) -> str:
    parsed = urlparse(_with_scheme(raw.strip()))
    host = (parsed.hostname or "").lower()
    video_id: Optional[str] = None
    if host in _YOUTUBE_HOSTS:
        values = parse_qs(parsed.query).get("v")
        if values:
            video_id = values[0]
        else:
            parts = [segment for segment in (parsed.path or "").split("/") if segment]
            if len(parts) >= 2 and parts[0] == "shorts":
                video_id = parts[1]
    elif host == _YOUTUBE_SHORT_HOST:
        parts = [segment for segment in (parsed.path or "").split("/") if segment]
        if parts:
            video_id = parts[0]
    if video_id and _YOUTUBE_ID_RE.match(video_id):
        return f"https://www.youtube.com/watch?v={video_id}"
    return raw


def _normalize_tiktok(raw: str) -> str:
    parsed = urlparse(_with_scheme(raw.strip()))
    host = (parsed.hostname or "").lower()
    if host in _TIKTOK_SHORT_HOSTS:
        # Redirect resolution is left to the extractor.
        return raw.split("?", 1)[0].split("#", 1)[0]
    if _host_matches(host, "tiktok.com"):
        return f"{parsed.scheme}://{parsed.netloc}{parsed.path}"
    return raw


def _normalize_instagram(raw: str) -> str:
    parsed = urlparse(_with_scheme(raw.strip()))
    host = (parsed.hostname or "").lower()
    if not _host_matches(host, "instagram.com"):
        return raw
    return f"https://www.instagram.com{parsed.path}"
