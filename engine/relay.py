"""Byte delivery for a selected strategy.

Every stream handed out here owns an external resource (an extractor child
process or an open CDN response). :class:`RelayStreamingResponse` is the only
consumer and always awaits ``aclose`` once the response is over, however it
ended.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional
from urllib.parse import quote

import anyio
import requests
from fastapi.responses import StreamingResponse

from config.settings import (
    CDN_CONNECT_TIMEOUT_SECONDS,
    CDN_READ_TIMEOUT_SECONDS,
    CDN_USER_AGENT,
    STREAM_CHUNK_SIZE,
)
from engine.errors import StreamError
from engine.json_utils import log_event
from engine.strategy import DirectRangeable, DirectSingle, ServerRelay, Strategy

logger = logging.getLogger(__name__)

_FORWARDED_UPSTREAM_HEADERS = ("content-length", "content-range")


class UpstreamByteStream:
    """Body of a streamed ``requests`` response, read off the event loop."""

    def __init__(
        self,
        response: requests.Response,
        *,
        label: str,
        chunk_size: int = STREAM_CHUNK_SIZE,
        owned_session: Optional[requests.Session] = None,
    ) -> None:
        self.response = response
        self.label = label
        self.bytes_sent = 0
        self._chunks = response.iter_content(chunk_size=chunk_size)
        self._owned_session = owned_session
        self._closed = False

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        while True:
            try:
                chunk = await anyio.to_thread.run_sync(next, self._chunks, None)
            except (requests.RequestException, OSError) as exc:
                log_event(
                    logging.ERROR,
                    "upstream_read_failed",
                    logger=logger,
                    label=self.label,
                    bytes_sent=self.bytes_sent,
                    error=str(exc),
                )
                raise StreamError(f"{self.label}: upstream read failed after {self.bytes_sent} bytes") from exc
            if chunk is None:
                break
            if not chunk:
                continue
            self.bytes_sent += len(chunk)
            yield chunk

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self.iter_bytes()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await anyio.to_thread.run_sync(self.response.close)
        finally:
            if self._owned_session is not None:
                self._owned_session.close()


@dataclass
class RelayResult:
    stream: object = None
    status_code: int = 200
    headers: dict = field(default_factory=dict)
    media_type: Optional[str] = None
    redirect_url: Optional[str] = None


def content_disposition(filename: str) -> str:
    """``attachment`` header value with an ASCII fallback and an RFC 5987 name."""
    fallback = filename.encode("ascii", "ignore").decode("ascii")
    fallback = fallback.replace('"', "").replace("\\", "").strip()
    if not fallback or fallback.startswith("."):
        fallback = f"download{fallback}" if fallback.startswith(".") else "download"
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"


async def open_upstream(
    url: str,
    *,
    session: Optional[requests.Session] = None,
    range_header: Optional[str] = None,
    label: str = "cdn",
) -> UpstreamByteStream:
    """GET ``url`` with ``stream=True``; a session created here is owned by the returned stream."""
    headers = {"User-Agent": CDN_USER_AGENT}
    if range_header:
        headers["Range"] = range_header
    owned_session = requests.Session() if session is None else None
    client = owned_session if session is None else session

    def _get() -> requests.Response:
        return client.get(
            url,
            headers=headers,
            stream=True,
            timeout=(CDN_CONNECT_TIMEOUT_SECONDS, CDN_READ_TIMEOUT_SECONDS),
            allow_redirects=True,
        )

    try:
        response = await anyio.to_thread.run_sync(_get)
    except requests.RequestException as exc:
        if owned_session is not None:
            owned_session.close()
        log_event(logging.WARNING, "upstream_unreachable", logger=logger, label=label, error=str(exc))
        raise StreamError(f"{label}: upstream request failed") from exc

    if response.status_code >= 400:
        status = response.status_code
        response.close()
        if owned_session is not None:
            owned_session.close()
        log_event(logging.WARNING, "upstream_rejected", logger=logger, label=label, upstream_status=status)
        error = StreamError(f"{label}: upstream returned {status}", upstream_status=status)
        if status == 416:
            error.http_status = 416
            error.user_message = "Requested range not satisfiable"
        raise error
    return UpstreamByteStream(response, label=label, owned_session=owned_session)


async def open_stream(
    strategy: Strategy,
    *,
    filename: str,
    runner,
    session: Optional[requests.Session] = None,
    range_header: Optional[str] = None,
) -> RelayResult:
    """Open the byte source for ``strategy``.

    Failures surface here, before any response has started, as ``FetchrError``
    subclasses; the caller turns them into a structured error response.
    """
    if isinstance(strategy, DirectSingle):
        log_event(logging.INFO, "relay_redirect", logger=logger)
        return RelayResult(status_code=307, redirect_url=strategy.url)

    if isinstance(strategy, DirectRangeable):
        upstream = await open_upstream(
            strategy.url,
            session=session,
            range_header=range_header,
            label="youtube:cdn",
        )
        headers = {
            "Content-Disposition": content_disposition(filename),
            "Accept-Ranges": "bytes",
        }
        for name in _FORWARDED_UPSTREAM_HEADERS:
            value = upstream.response.headers.get(name)
            if value:
                headers[name.title()] = value
        log_event(
            logging.INFO,
            "relay_cdn_open",
            logger=logger,
            upstream_status=upstream.response.status_code,
            ranged=bool(range_header),
        )
        return RelayResult(
            stream=upstream,
            status_code=upstream.response.status_code,
            headers=headers,
            media_type=strategy.content_type,
        )

    if isinstance(strategy, ServerRelay):
        stream = await runner.open_stream(strategy.args, label=strategy.label)
        try:
            await stream.prime()
        except BaseException:
            with anyio.CancelScope(shield=True):
                await stream.aclose()
            raise
        return RelayResult(
            stream=stream,
            status_code=200,
            headers={
                "Content-Disposition": content_disposition(filename),
                "Transfer-Encoding": "chunked",
            },
            media_type=strategy.content_type,
        )

    raise TypeError(f"unknown strategy {strategy!r}")


class RelayStreamingResponse(StreamingResponse):
    """StreamingResponse that releases its byte source on every exit path."""

    def __init__(self, source, *, label: str = "relay", **kwargs) -> None:
        self.source = source
        self.label = label
        self._exhausted = False
        super().__init__(self._body(), **kwargs)

    async def _body(self) -> AsyncIterator[bytes]:
        async for chunk in self.source:
            yield chunk
        self._exhausted = True

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            with anyio.CancelScope(shield=True):
                await self.source.aclose()
            log_event(
                logging.INFO,
                "relay_complete" if self._exhausted else "relay_aborted",
                logger=logger,
                label=self.label,
                bytes_sent=getattr(self.source, "bytes_sent", None),
            )
