"""Download filename helpers for untrusted titles and captions."""

from __future__ import annotations

import re
from typing import Any

_INVALID_FS_CHARS_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f\x7f]')
_INSTAGRAM_EXTRA_RE = re.compile(r"#")
_INVALID_EXT_RE = re.compile(r"[^A-Za-z0-9]")
_MULTISPACE_RE = re.compile(r"\s+")

MAX_STEM_LENGTH = 80

_DEFAULT_STEMS = {
    "youtube": "video",
    "tiktok": "tiktok",
    "instagram": "instagram",
}


def _platform_key(platform: Any) -> str:
    value = getattr(platform, "value", platform)
    return str(value or "").strip().lower()


def default_stem(platform: Any = None) -> str:
    return _DEFAULT_STEMS.get(_platform_key(platform), "video")


def default_extension(platform: Any, choice: str | None) -> str:
    """Container extension for a quality preset or TikTok variant."""
    if (choice or "").strip().lower() != "audio":
        return "mp4"
    return "mp3" if _platform_key(platform) == "tiktok" else "m4a"


def sanitize_filename(raw_title: Any, ext: Any = "mp4", platform: Any = None) -> str:
    """Return ``<stem>.<ext>`` safe for a Content-Disposition header and any filesystem.

    Never raises: non-string titles are stringified and an empty result falls
    back to the platform's default stem.
    """
    try:
        text = "" if raw_title is None else str(raw_title)
    except Exception:
        text = ""
    stem = _INVALID_FS_CHARS_RE.sub("", text)
    if _platform_key(platform) == "instagram":
        stem = _INSTAGRAM_EXTRA_RE.sub("", stem)
    stem = _MULTISPACE_RE.sub(" ", stem).strip()
    stem = stem[:MAX_STEM_LENGTH].rstrip(" .").strip()
    if not stem:
        stem = default_stem(platform)

    suffix = _INVALID_EXT_RE.sub("", str(ext or "")) or "mp4"
    return f"{stem}.{suffix}"
