#!/usr/bin/env python3
"""HTTP surface: per-platform info/prepare, streamed downloads and the thumbnail proxy."""

import logging
import os
from typing import Optional

import requests
from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from pydantic import BaseModel
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from api.actions import fetch_metadata, prepare_download
from config.settings import THUMBNAIL_CACHE_CONTROL, TRUST_PROXY, YOUTUBE_DIRECT_REDIRECT
from engine.errors import FetchrError, InvalidInput
from engine.extractor import ExtractorRunner
from engine.json_utils import log_event, safe_json_dumps
from engine.paths import LOG_DIR, ensure_dir, log_file_path
from engine.relay import RelayStreamingResponse, open_stream
from engine.runtime import get_runtime_info
from engine.strategy import select_strategy
from engine.thumbnails import ThumbnailRejected, fetch_thumbnail
from input.url_normalizer import Platform, platform_from_value, require_valid_url
from metadata.naming import default_extension, sanitize_filename

APP_NAME = "Fetchr API"


def _setup_logging(log_dir):
    ensure_dir(log_dir)
    root = logging.getLogger("")
    log_path = log_file_path(log_dir)
    root.setLevel(logging.INFO)
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == os.path.abspath(log_path):
                return
    file_handler = logging.FileHandler(log_path)
    file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    file_handler.setLevel(logging.INFO)
    root.addHandler(file_handler)


class InfoRequest(BaseModel):
    url: str | None = None


class PrepareRequest(BaseModel):
    url: str | None = None
    quality: str | None = None
    variant: str | None = None
    title: str | None = None
    format_id: str | None = None
    entry: int | None = None


class SafeJSONResponse(JSONResponse):
    def render(self, content):
        return safe_json_dumps(
            content,
            allow_nan=False,
            separators=(",", ":"),
        ).encode("utf-8")


app = FastAPI(
    title=APP_NAME,
    description="Fetchr API for resolving and relaying YouTube, TikTok and Instagram media.",
    default_response_class=SafeJSONResponse,
)

if TRUST_PROXY:
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")


@app.on_event("startup")
async def startup():
    _setup_logging(LOG_DIR)
    app.state.runner = ExtractorRunner.from_settings()
    app.state.http_session = requests.Session()
    app.state.direct_redirect = YOUTUBE_DIRECT_REDIRECT
    logging.info("Fetchr started (extractor=%s)", " ".join(app.state.runner.command))


@app.on_event("shutdown")
async def shutdown():
    session = getattr(app.state, "http_session", None)
    if session is not None:
        session.close()
        app.state.http_session = None


def _runner():
    runner = getattr(app.state, "runner", None)
    if runner is None:
        runner = ExtractorRunner.from_settings()
        app.state.runner = runner
    return runner


def _http_session():
    session = getattr(app.state, "http_session", None)
    if session is None:
        session = requests.Session()
        app.state.http_session = session
    return session


def _error_json(message, status_code):
    return SafeJSONResponse({"success": False, "error": message}, status_code=status_code)


def _parse_entry(raw):
    if raw is None or raw == "":
        return None
    try:
        value = int(raw)
    except ValueError:
        raise InvalidInput(f"malformed entry {raw!r}", user_message="Invalid slide index") from None
    if value < 0:
        raise InvalidInput(f"negative entry {value}", user_message="Invalid slide index")
    return value


def _download_filename(platform, choice, raw_filename):
    fallback_ext = default_extension(platform, choice)
    text = (raw_filename or "").strip()
    if not text:
        return sanitize_filename(None, fallback_ext, platform)
    stem, dot, ext = text.rpartition(".")
    if not dot or not stem:
        return sanitize_filename(text, fallback_ext, platform)
    return sanitize_filename(stem, ext or fallback_ext, platform)


@app.get("/api/health")
async def api_health():
    return {"status": "ok"}


@app.get("/api/runtime")
async def api_runtime():
    return get_runtime_info(_runner().command)


@app.post("/api/{platform}/info")
async def api_info(platform: str, payload: InfoRequest):
    try:
        target = platform_from_value(platform)
    except InvalidInput as exc:
        return {"success": False, "error": exc.user_message}
    return await fetch_metadata(target, payload.url, _runner())


@app.post("/api/{platform}/prepare")
async def api_prepare(platform: str, payload: PrepareRequest):
    try:
        target = platform_from_value(platform)
    except InvalidInput as exc:
        return {"success": False, "error": exc.user_message}
    return prepare_download(
        target,
        payload.url,
        quality=payload.quality,
        variant=payload.variant,
        title=payload.title,
        format_id=payload.format_id,
        entry=payload.entry,
    )


@app.get("/internal/download/{platform}")
async def internal_download(
    platform: str,
    request: Request,
    url: Optional[str] = Query(None),
    quality: Optional[str] = Query(None),
    variant: Optional[str] = Query(None),
    filename: Optional[str] = Query(None),
    format_id: Optional[str] = Query(None),
    entry: Optional[str] = Query(None),
):
    runner = _runner()
    try:
        target = platform_from_value(platform)
        canonical = require_valid_url(target, url)
        slide_index = _parse_entry(entry) if target is Platform.INSTAGRAM else None
        choice = quality if target is Platform.YOUTUBE else variant if target is Platform.TIKTOK else None
        safe_name = _download_filename(target, choice, filename)
        strategy = await select_strategy(
            target,
            canonical,
            choice,
            runner,
            format_id=format_id if target is Platform.YOUTUBE else None,
            slide_index=slide_index,
            direct_redirect=getattr(app.state, "direct_redirect", YOUTUBE_DIRECT_REDIRECT),
        )
        result = await open_stream(
            strategy,
            filename=safe_name,
            runner=runner,
            session=_http_session(),
            range_header=request.headers.get("range"),
        )
    except InvalidInput as exc:
        return _error_json(exc.user_message, exc.http_status)
    except FetchrError as exc:
        log_event(
            logging.WARNING,
            "download_failed_before_stream",
            platform=platform,
            url=url,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _error_json(exc.user_message, exc.http_status)
    except Exception:
        logging.exception("Unexpected download failure for %s url=%s", platform, url)
        return _error_json("Unexpected error", 500)

    if result.redirect_url:
        return RedirectResponse(result.redirect_url, status_code=result.status_code)
    return RelayStreamingResponse(
        result.stream,
        label=f"{target.value}:download",
        status_code=result.status_code,
        headers=result.headers,
        media_type=result.media_type,
    )


@app.get("/internal/preview/instagram")
async def internal_preview_instagram(url: Optional[str] = Query(None)):
    try:
        thumbnail = await fetch_thumbnail(url, session=_http_session())
    except ThumbnailRejected as exc:
        return _error_json(exc.user_message, exc.http_status)
    return Response(
        content=thumbnail.content,
        media_type=thumbnail.content_type,
        headers={"Cache-Control": THUMBNAIL_CACHE_CONTROL},
    )
