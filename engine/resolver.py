"""Metadata resolution: extractor JSON dump -> :mod:`metadata.types` model.

The extractor's JSON is untrusted and loosely shaped, so it is read field by
field with defaults (``_str``, ``_num``...) and never cast wholesale. This is
the only place raw extractor output enters the domain model.
"""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import quote

from config.settings import (
    EXTRACTOR_RETRIES,
    METADATA_TIMEOUT_SECONDS,
    MOBILE_USER_AGENT,
    TIKTOK_REFERER,
)
from engine.errors import ResolutionParseError, UnsupportedContent
from engine.extractor import build_extractor_argv
from engine.json_utils import log_event
from input.url_normalizer import Platform, infer_instagram_media_kind
from metadata.types import (
    NO_CODEC,
    FormatDescriptor,
    InstagramPost,
    InstagramSlide,
    MediaAsset,
    TikTokVideo,
    YouTubeVideo,
    sort_formats,
)

logger = logging.getLogger(__name__)

INSTAGRAM_PREVIEW_PATH = "/internal/preview/instagram"
STORY_UNSUPPORTED_MESSAGE = (
    "Stories require Instagram login (cookies). "
    "Only public posts and reels are supported without login."
)


def _str(value: Any, default: str = "") -> str:
    if value is None:
        return default
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return default


def _num(value: Any, default: float = 0) -> float:
    if isinstance(value, bool) or value is None:
        return default
    if isinstance(value, (int, float)):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _int(value: Any, default: int = 0) -> int:
    number = _num(value, default)
    try:
        return int(number)
    except (OverflowError, ValueError):
        return default


def _opt_num(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    number = _num(value, None)  # type: ignore[arg-type]
    return number


def _opt_int(value: Any) -> int | None:
    number = _opt_num(value)
    if number is None:
        return None
    try:
        return int(number)
    except (OverflowError, ValueError):
        return None


def _list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _codec(value: Any) -> str:
    text = _str(value).strip()
    return text or NO_CODEC


def _first_str(raw: dict, *keys: str, default: str = "") -> str:
    for key in keys:
        text = _str(raw.get(key)).strip()
        if text:
            return text
    return default


def proxied_thumbnail(url: Any) -> str:
    text = _str(url).strip()
    if not text:
        return ""
    return f"{INSTAGRAM_PREVIEW_PATH}?url={quote(text, safe='')}"


def parse_extractor_json(output: str, *, label: str) -> dict:
    try:
        raw = json.loads(output.strip())
    except (ValueError, TypeError) as exc:
        log_event(logging.ERROR, "extractor_output_unparseable", logger=logger, label=label, raw=output[:300])
        raise ResolutionParseError(f"{label}: extractor output is not JSON") from exc
    if not isinstance(raw, dict):
        log_event(logging.ERROR, "extractor_output_not_object", logger=logger, label=label, raw=output[:300])
        raise ResolutionParseError(f"{label}: extractor output is not a JSON object")
    return raw


def map_format(raw: Any, *, resolution_default: str = "unknown") -> FormatDescriptor | None:
    if not isinstance(raw, dict):
        return None
    width = _opt_int(raw.get("width"))
    height = _opt_int(raw.get("height"))
    resolution = _str(raw.get("resolution")).strip()
    if not resolution:
        resolution = f"{width}x{height}" if width and height else resolution_default
    filesize = _opt_int(raw.get("filesize"))
    if filesize is None:
        filesize = _opt_int(raw.get("filesize_approx"))
    return FormatDescriptor(
        format_id=_str(raw.get("format_id")),
        ext=_str(raw.get("ext")).strip() or "mp4",
        resolution=resolution,
        fps=_opt_num(raw.get("fps")),
        filesize=filesize,
        vcodec=_codec(raw.get("vcodec")),
        acodec=_codec(raw.get("acodec")),
        format_note=_str(raw.get("format_note")),
        quality=_num(raw.get("quality")),
    )


def _raw_has_video(raw_formats: list) -> bool:
    return any(isinstance(f, dict) and _codec(f.get("vcodec")) != NO_CODEC for f in raw_formats)


def _video_formats(raw_formats: list) -> list[FormatDescriptor]:
    mapped = (map_format(f) for f in raw_formats)
    return sort_formats([fmt for fmt in mapped if fmt is not None and fmt.has_video])


def build_youtube_asset(raw: dict) -> YouTubeVideo:
    formats = []
    for item in _list(raw.get("formats")):
        fmt = map_format(item, resolution_default="audio only")
        if fmt is None or not (fmt.has_video or fmt.has_audio):
            continue
        fmt.url = _str(item.get("url")).strip() or None
        formats.append(fmt)
    return YouTubeVideo(
        platform=Platform.YOUTUBE.value,
        id=_str(raw.get("id")),
        title=_first_str(raw, "title", default="Unknown"),
        thumbnail=_str(raw.get("thumbnail")),
        duration=_num(raw.get("duration")),
        uploader=_first_str(raw, "uploader", "channel", default="Unknown"),
        uploader_id=_first_str(raw, "uploader_id", "channel_id"),
        formats=sort_formats(formats),
        view_count=_int(raw.get("view_count")),
    )


def build_tiktok_asset(raw: dict) -> TikTokVideo:
    formats = _video_formats(_list(raw.get("formats")))
    for fmt in formats:
        # TikTok renditions are almost always muxed; this lets callers skip merging.
        fmt.has_both = fmt.has_audio
    return TikTokVideo(
        platform=Platform.TIKTOK.value,
        id=_str(raw.get("id")),
        title=_first_str(raw, "title", "description", default="TikTok Video"),
        thumbnail=_str(raw.get("thumbnail")),
        duration=_num(raw.get("duration")),
        uploader=_first_str(raw, "uploader", "creator", default="Unknown"),
        uploader_id=_first_str(raw, "uploader_id", "channel_id"),
        formats=formats,
        view_count=_int(raw.get("view_count")),
        like_count=_int(raw.get("like_count")),
    )


def _instagram_title(raw: dict, default: str) -> str:
    title = _str(raw.get("title")).strip()
    if title:
        return title
    description = _str(raw.get("description")).strip()
    if description:
        return description[:80]
    return default


def build_instagram_asset(raw: dict, media_type: str) -> InstagramPost:
    common = dict(
        platform=Platform.INSTAGRAM.value,
        id=_str(raw.get("id")),
        uploader=_first_str(raw, "uploader", "channel", default="Unknown"),
        uploader_id=_first_str(raw, "uploader_id", "channel_id"),
        description=_str(raw.get("description")),
        timestamp=_int(raw.get("timestamp")),
        like_count=_int(raw.get("like_count")),
        media_type=media_type,
    )

    if _str(raw.get("_type")) == "playlist" and isinstance(raw.get("entries"), list):
        slides = []
        for index, entry in enumerate(raw["entries"]):
            if not isinstance(entry, dict):
                continue
            raw_formats = _list(entry.get("formats"))
            slides.append(
                InstagramSlide(
                    platform=Platform.INSTAGRAM.value,
                    id=_str(entry.get("id")) or f"entry_{index}",
                    title=_str(entry.get("title")) or f"Slide {index + 1}",
                    thumbnail=proxied_thumbnail(entry.get("thumbnail")),
                    duration=_num(entry.get("duration")),
                    formats=_video_formats(raw_formats),
                    index=index,
                    is_video=_raw_has_video(raw_formats),
                )
            )
        thumbnail = proxied_thumbnail(raw.get("thumbnail")) or (slides[0].thumbnail if slides else "")
        return InstagramPost(
            title=_instagram_title(raw, "Instagram Post"),
            thumbnail=thumbnail,
            duration=0,
            formats=[],
            entries=slides,
            has_video=any(slide.is_video for slide in slides),
            **common,
        )

    formats = _video_formats(_list(raw.get("formats")))
    return InstagramPost(
        title=_instagram_title(raw, "Instagram Video"),
        thumbnail=proxied_thumbnail(raw.get("thumbnail")),
        duration=_num(raw.get("duration")),
        formats=formats,
        entries=[],
        has_video=bool(formats),
        **common,
    )


def metadata_args(platform: Platform, url: str) -> list[str]:
    opts: dict[str, Any] = {
        "dump_json": True,
        "skip_download": True,
        "no_warnings": True,
        "no_check_certificate": True,
        "extractor_retries": EXTRACTOR_RETRIES,
    }
    if platform is Platform.YOUTUBE:
        opts["noplaylist"] = True
    elif platform is Platform.TIKTOK:
        opts["headers"] = {"Referer": TIKTOK_REFERER}
    elif platform is Platform.INSTAGRAM:
        opts["headers"] = {"User-Agent": MOBILE_USER_AGENT}
    return build_extractor_argv(opts, url)


async def resolve(platform: Platform, url: str, runner, *, timeout: float = METADATA_TIMEOUT_SECONDS) -> MediaAsset:
    """Resolve ``url`` (already canonical) into a fresh :class:`MediaAsset`.

    Raises UnsupportedContent, TimedOut, ExtractionFailed or ResolutionParseError.
    """
    media_type = None
    if platform is Platform.INSTAGRAM:
        media_type = infer_instagram_media_kind(url)
        if media_type == "story":
            # Stories always need session cookies; do not spawn the extractor at all.
            raise UnsupportedContent(f"instagram story: {url}", user_message=STORY_UNSUPPORTED_MESSAGE)

    label = f"{platform.value}:metadata"
    output = await runner.capture(metadata_args(platform, url), timeout=timeout, label=label)
    raw = parse_extractor_json(output, label=label)

    if platform is Platform.YOUTUBE:
        asset: MediaAsset = build_youtube_asset(raw)
    elif platform is Platform.TIKTOK:
        asset = build_tiktok_asset(raw)
    else:
        asset = build_instagram_asset(raw, media_type or "post")

    logger.info(
        "Resolved %s media id=%s formats=%d",
        platform.value,
        asset.id or "?",
        len(asset.formats),
    )
    return asset
