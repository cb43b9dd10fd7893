from .naming import sanitize_filename
from .types import (
    FormatDescriptor,
    InstagramPost,
    InstagramSlide,
    MediaAsset,
    TikTokVideo,
    YouTubeVideo,
)

__all__ = [
    "FormatDescriptor",
    "InstagramPost",
    "InstagramSlide",
    "MediaAsset",
    "TikTokVideo",
    "YouTubeVideo",
    "sanitize_filename",
]
