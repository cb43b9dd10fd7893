"""Uniform media model produced by the metadata resolver."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Optional


NO_CODEC = "none"


@dataclass
class FormatDescriptor:
    """One encoding reported by the extractor.

    ``quality`` is the ordering key (higher is better). ``url`` is only kept for
    YouTube and ``has_both`` only for TikTok; both are left out of the
    serialized form when unset.
    """

    format_id: str
    ext: str = "mp4"
    resolution: str = "unknown"
    fps: Optional[float] = None
    filesize: Optional[int] = None
    vcodec: str = NO_CODEC
    acodec: str = NO_CODEC
    format_note: str = ""
    quality: float = 0
    url: Optional[str] = None
    has_both: Optional[bool] = None

    @property
    def has_video(self) -> bool:
        return self.vcodec != NO_CODEC

    @property
    def has_audio(self) -> bool:
        return self.acodec != NO_CODEC

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if self.url is None:
            data.pop("url")
        if self.has_both is None:
            data.pop("has_both")
        return data


@dataclass
class MediaAsset:
    platform: str
    id: str
    title: str
    thumbnail: str = ""
    duration: float = 0
    uploader: str = "Unknown"
    uploader_id: str = ""
    formats: list[FormatDescriptor] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = {item.name: getattr(self, item.name) for item in fields(self)}
        data["formats"] = [fmt.to_dict() for fmt in self.formats]
        if "entries" in data:
            data["entries"] = [entry.to_dict() for entry in data["entries"]]
        return data


@dataclass
class YouTubeVideo(MediaAsset):
    view_count: int = 0


@dataclass
class TikTokVideo(MediaAsset):
    view_count: int = 0
    like_count: int = 0


@dataclass
class InstagramSlide(MediaAsset):
    index: int = 0
    is_video: bool = False


@dataclass
class InstagramPost(MediaAsset):
    """Instagram reel/post/igtv. Carousels carry ``entries`` and no ``formats``."""

    media_type: str = "post"
    description: str = ""
    timestamp: int = 0
    like_count: int = 0
    has_video: bool = False
    entries: list[InstagramSlide] = field(default_factory=list)

    @property
    def is_carousel(self) -> bool:
        return bool(self.entries)


def sort_formats(formats: list[FormatDescriptor]) -> list[FormatDescriptor]:
    """Order by quality descending; ``sorted`` is stable so ties keep extractor order."""
    return sorted(formats, key=lambda fmt: -fmt.quality)
