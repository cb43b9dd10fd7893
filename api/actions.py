"""Request-level actions behind the per-platform info/prepare endpoints.

Both actions return the uniform ``{"success": ...}`` shape and never raise:
pipeline errors are logged here and reduced to their client-safe message.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from engine.errors import FetchrError, InvalidInput
from engine.resolver import resolve
from engine.strategy import normalize_quality, normalize_variant
from input.url_normalizer import Platform, require_valid_url
from metadata.naming import default_extension, default_stem, sanitize_filename

DOWNLOAD_PATH_PREFIX = "/internal/download"


async def fetch_metadata(platform: Platform, raw_url: Optional[str], runner) -> Dict[str, Any]:
    """Validate ``raw_url`` and resolve it into a serialized media asset."""
    try:
        url = require_valid_url(platform, raw_url)
        asset = await resolve(platform, url, runner)
    except InvalidInput as exc:
        return _error_response(exc.user_message)
    except FetchrError as exc:
        logging.warning("Metadata resolution failed for %s url=%s: %s", platform.value, raw_url, exc)
        return _error_response(exc.user_message)
    except Exception:
        logging.exception("Unexpected metadata failure for %s url=%s", platform.value, raw_url)
        return _error_response("Unexpected error")
    return {"success": True, "data": asset.to_dict()}


def prepare_download(
    platform: Platform,
    raw_url: Optional[str],
    *,
    quality: Optional[str] = None,
    variant: Optional[str] = None,
    title: Optional[str] = None,
    format_id: Optional[str] = None,
    entry: Optional[int] = None,
) -> Dict[str, Any]:
    """Build the same-origin download locator and the filename it will carry.

    No extractor call happens here; format selection runs when the locator is
    requested.
    """
    try:
        url = require_valid_url(platform, raw_url)
        if entry is not None and entry < 0:
            raise InvalidInput(f"negative entry {entry}", user_message="Invalid slide index")
    except InvalidInput as exc:
        return _error_response(exc.user_message)

    params: Dict[str, Any] = {"url": url}
    choice = None
    if platform is Platform.YOUTUBE:
        choice = normalize_quality(quality)
        params["quality"] = choice
    elif platform is Platform.TIKTOK:
        choice = normalize_variant(variant)
        params["variant"] = choice

    filename = sanitize_filename(
        title or default_stem(platform),
        default_extension(platform, choice),
        platform,
    )
    params["filename"] = filename

    if platform is Platform.YOUTUBE and format_id and format_id.strip():
        params["format_id"] = format_id.strip()
    if platform is Platform.INSTAGRAM and entry is not None:
        params["entry"] = str(entry)

    return {
        "success": True,
        "downloadPath": f"{DOWNLOAD_PATH_PREFIX}/{platform.value}?{urlencode(params)}",
        "filename": filename,
    }


def _error_response(message: str) -> Dict[str, Any]:
    return {"success": False, "error": message}
