"""Delivery strategy selection.

Format fallbacks are kept as ordered tuples of yt-dlp format expressions; the
extractor applies the first alternative that yields something usable. This
module only builds the expressions in the right order per platform/variant.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union

from config.settings import (
    DESKTOP_USER_AGENT,
    INSTAGRAM_REFERER,
    LOCATOR_TIMEOUT_SECONDS,
    MOBILE_USER_AGENT,
    TIKTOK_REFERER,
    YOUTUBE_DIRECT_REDIRECT,
)
from engine.errors import InvalidInput, NoLocatorsResolved, UnsupportedContent
from engine.extractor import build_extractor_argv
from engine.json_utils import log_event
from engine.resolver import STORY_UNSUPPORTED_MESSAGE
from input.url_normalizer import Platform, infer_instagram_media_kind

logger = logging.getLogger(__name__)

YOUTUBE_QUALITIES = ("best", "1080p", "720p", "480p", "360p", "audio")
TIKTOK_VARIANTS = ("nowatermark", "watermark", "audio")

YOUTUBE_FORMATS: dict[str, tuple[str, ...]] = {
    # 1080p is always split into separate video/audio streams on YouTube.
    "1080p": (
        "bestvideo[height<=1080][ext=mp4]+bestaudio[ext=m4a]",
        "bestvideo[height<=1080]+bestaudio",
    ),
    "720p": (
        "best[height<=720][ext=mp4]",
        "bestvideo[height<=720][ext=mp4]+bestaudio[ext=m4a]",
    ),
    "480p": (
        "best[height<=480][ext=mp4]",
        "bestvideo[height<=480]+bestaudio",
    ),
    "360p": (
        "best[height<=360][ext=mp4]",
        "best[height<=360]",
    ),
    "audio": (
        "bestaudio[ext=m4a]",
        "bestaudio",
    ),
    "best": (
        "best[ext=mp4]",
        "bestvideo[ext=mp4]+bestaudio[ext=m4a]",
    ),
}

TIKTOK_FORMATS: dict[str, tuple[str, ...]] = {
    # randomcover renditions are the raw upload without the overlay.
    "nowatermark": (
        "h264_1080p_randomcover",
        "h264_720p_randomcover",
        "h264_540p_randomcover",
        "h264_360p_randomcover",
        "best[ext=mp4]",
        "best",
    ),
    # download renditions are the in-app playback files carrying the overlay.
    "watermark": (
        "h264_540p_download",
        "h264_360p_download",
        "download",
        "best[ext=mp4]",
        "best",
    ),
    "audio": (
        "bestaudio",
        "best",
    ),
}

INSTAGRAM_FORMATS: tuple[str, ...] = (
    "bestvideo[ext=mp4]+bestaudio",
    "best[ext=mp4]",
    "best",
)


@dataclass(frozen=True)
class DirectSingle:
    """Redirect the client to a single muxed locator."""

    url: str
    content_type: str = "video/mp4"


@dataclass(frozen=True)
class DirectRangeable:
    """Proxy a single muxed locator, forwarding Range requests."""

    url: str
    content_type: str = "video/mp4"


@dataclass(frozen=True)
class ServerRelay:
    """Pipe extractor stdout to the client."""

    args: tuple[str, ...]
    content_type: str = "video/mp4"
    label: str = "relay"
    platform: str = ""
    format_expression: str = ""


Strategy = Union[DirectSingle, DirectRangeable, ServerRelay]


def format_expression(alternatives: tuple[str, ...] | list[str]) -> str:
    return "/".join(alt for alt in alternatives if alt)


def normalize_quality(quality: str | None) -> str:
    value = (quality or "best").strip().lower()
    return value if value in YOUTUBE_QUALITIES else "best"


def normalize_variant(variant: str | None) -> str:
    value = (variant or "nowatermark").strip().lower()
    return value if value in TIKTOK_VARIANTS else "nowatermark"


def youtube_format_alternatives(quality: str | None, format_id: str | None = None) -> tuple[str, ...]:
    preset = YOUTUBE_FORMATS[normalize_quality(quality)]
    chosen = (format_id or "").strip()
    if not chosen:
        return preset
    return (f"{chosen}+bestaudio[ext=m4a]", chosen, *preset)


def youtube_content_type(quality: str | None) -> str:
    return "audio/mp4" if normalize_quality(quality) == "audio" else "video/mp4"


def tiktok_content_type(variant: str | None) -> str:
    return "audio/mpeg" if normalize_variant(variant) == "audio" else "video/mp4"


def youtube_locator_args(url: str, expression: str) -> list[str]:
    return build_extractor_argv(
        {
            "get_url": True,
            "format": expression,
            "noplaylist": True,
            "no_warnings": True,
            "no_check_certificate": True,
        },
        url,
    )


def youtube_relay_args(url: str, expression: str) -> list[str]:
    return build_extractor_argv(
        {
            "format": expression,
            "noplaylist": True,
            "merge_output_format": "mp4",
            "output": "-",
        },
        url,
    )


def tiktok_relay_args(url: str, expression: str) -> list[str]:
    return build_extractor_argv(
        {
            "format": expression,
            "output": "-",
            "no_warnings": True,
            "no_check_certificate": True,
            "headers": {"Referer": TIKTOK_REFERER, "User-Agent": DESKTOP_USER_AGENT},
        },
        url,
    )


def instagram_relay_args(url: str, expression: str, slide_index: Optional[int] = None) -> list[str]:
    opts = {
        "format": expression,
        "output": "-",
        "no_warnings": True,
        "no_check_certificate": True,
        "headers": {"User-Agent": MOBILE_USER_AGENT, "Referer": INSTAGRAM_REFERER},
    }
    if slide_index is not None:
        if slide_index < 0:
            raise InvalidInput(f"negative slide index {slide_index}", user_message="Invalid slide index")
        # Extractor item selection is 1-based.
        opts["playlist_items"] = slide_index + 1
    return build_extractor_argv(opts, url)


def parse_locators(output: str) -> list[str]:
    return [line.strip() for line in (output or "").splitlines() if line.strip()]


async def select_youtube(
    url: str,
    quality: str | None,
    runner,
    *,
    format_id: str | None = None,
    timeout: float = LOCATOR_TIMEOUT_SECONDS,
    direct_redirect: bool = YOUTUBE_DIRECT_REDIRECT,
) -> Strategy:
    expression = format_expression(youtube_format_alternatives(quality, format_id))
    output = await runner.capture(
        youtube_locator_args(url, expression),
        timeout=timeout,
        label="youtube:locators",
        allow_empty=True,
    )
    locators = parse_locators(output)
    log_event(
        logging.INFO,
        "youtube_locators_resolved",
        logger=logger,
        quality=normalize_quality(quality),
        count=len(locators),
    )
    if not locators:
        raise NoLocatorsResolved(f"no locators for {url} ({expression})")
    if len(locators) == 1:
        # Already muxed: the client can take it straight from the CDN.
        if direct_redirect:
            return DirectSingle(url=locators[0], content_type=youtube_content_type(quality))
        return DirectRangeable(url=locators[0], content_type=youtube_content_type(quality))
    return ServerRelay(
        args=tuple(youtube_relay_args(url, expression)),
        content_type=youtube_content_type(quality),
        label="youtube:merge",
        platform=Platform.YOUTUBE.value,
        format_expression=expression,
    )


def select_tiktok(url: str, variant: str | None) -> ServerRelay:
    # TikTok CDN locators are not client-safe (403 without the extractor's
    # cookies), so TikTok always goes through the relay.
    expression = format_expression(TIKTOK_FORMATS[normalize_variant(variant)])
    return ServerRelay(
        args=tuple(tiktok_relay_args(url, expression)),
        content_type=tiktok_content_type(variant),
        label="tiktok:stream",
        platform=Platform.TIKTOK.value,
        format_expression=expression,
    )


def select_instagram(url: str, slide_index: Optional[int] = None) -> ServerRelay:
    if infer_instagram_media_kind(url) == "story":
        raise UnsupportedContent(f"instagram story: {url}", user_message=STORY_UNSUPPORTED_MESSAGE)
    expression = format_expression(INSTAGRAM_FORMATS)
    return ServerRelay(
        args=tuple(instagram_relay_args(url, expression, slide_index)),
        content_type="video/mp4",
        label="instagram:stream",
        platform=Platform.INSTAGRAM.value,
        format_expression=expression,
    )


async def select_strategy(
    platform: Platform,
    url: str,
    choice: str | None,
    runner,
    *,
    format_id: str | None = None,
    slide_index: Optional[int] = None,
    direct_redirect: bool = YOUTUBE_DIRECT_REDIRECT,
) -> Strategy:
    """Pick how the bytes for ``url`` reach the client.

    ``choice`` is a quality preset for YouTube and a variant for TikTok; it is
    ignored for Instagram, where ``slide_index`` (0-based) picks a carousel
    slide.
    """
    if platform is Platform.YOUTUBE:
        return await select_youtube(url, choice, runner, format_id=format_id, direct_redirect=direct_redirect)
    if platform is Platform.TIKTOK:
        return select_tiktok(url, choice)
    return select_instagram(url, slide_index)
