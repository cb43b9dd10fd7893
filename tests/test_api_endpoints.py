from __future__ import annotations

import importlib
import json
import sys
from typing import Any
from urllib.parse import parse_qs, urlparse

import pytest
import requests

fastapi = pytest.importorskip("fastapi")
from fastapi.testclient import TestClient

from engine.errors import ExtractionFailed, TimedOut
from engine.extractor import ExtractorRunner

YOUTUBE_URL = "https://www.youtube.com/watch?v=abc12345678"
TIKTOK_URL = "https://www.tiktok.com/@dancer/video/7234567890123456789"


class _FakeRunner:
    command = ("yt-dlp",)

    def __init__(self, output: str = "", error: Exception | None = None) -> None:
        self.output = output
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def capture(self, args, *, timeout, label, allow_empty=False):
        self.calls.append({"args": list(args), "label": label})
        if self.error is not None:
            raise self.error
        return self.output


class _CdnResponse:
    def __init__(self, status_code: int, headers: dict, chunks: list[bytes]) -> None:
        self.status_code = status_code
        self.headers = requests.structures.CaseInsensitiveDict(headers)
        self.content = b"".join(chunks)
        self._chunks = chunks
        self.closed = False

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def iter_content(self, chunk_size=1):
        yield from self._chunks

    def close(self) -> None:
        self.closed = True


class _FakeSession:
    def __init__(self, response: _CdnResponse) -> None:
        self.response = response
        self.calls: list[dict[str, Any]] = []

    def get(self, url, **kwargs):
        self.calls.append({"url": url, **kwargs})
        return self.response


def _build_client(monkeypatch, runner=None, session=None):
    sys.modules.pop("api.main", None)
    module = importlib.import_module("api.main")
    module.app.router.on_startup.clear()
    module.app.router.on_shutdown.clear()
    module.app.state.runner = runner or _FakeRunner()
    module.app.state.http_session = session
    module.app.state.direct_redirect = False
    return TestClient(module.app), module


def _script_runner(source: str) -> ExtractorRunner:
    return ExtractorRunner(command=(sys.executable, "-c", source))


def test_health_and_runtime(monkeypatch) -> None:
    client, _ = _build_client(monkeypatch)

    assert client.get("/api/health").json() == {"status": "ok"}
    runtime = client.get("/api/runtime").json()
    assert runtime["extractor_command"] == ["yt-dlp"]
    assert runtime["yt_dlp_version"]
    assert runtime["python_version"]


def test_info_returns_serialized_asset(monkeypatch) -> None:
    runner = _FakeRunner(json.dumps({
        "id": "abc12345678",
        "title": "Demo",
        "formats": [{"format_id": "18", "vcodec": "avc1", "acodec": "mp4a", "quality": 1, "url": "https://cdn/18"}],
    }))
    client, _ = _build_client(monkeypatch, runner=runner)

    response = client.post("/api/youtube/info", json={"url": "https://youtu.be/abc12345678?si=x"})

    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["data"]["title"] == "Demo"
    assert payload["data"]["formats"][0]["url"] == "https://cdn/18"
    assert runner.calls[0]["args"][-1] == YOUTUBE_URL


def test_info_invalid_url_never_calls_extractor(monkeypatch) -> None:
    runner = _FakeRunner("{}")
    client, _ = _build_client(monkeypatch, runner=runner)

    response = client.post("/api/youtube/info", json={"url": "https://vimeo.com/123"})
    assert response.status_code == 200
    assert response.json() == {"success": False, "error": "Invalid YouTube URL"}

    missing = client.post("/api/tiktok/info", json={})
    assert missing.json() == {"success": False, "error": "URL is required"}
    assert runner.calls == []


def test_info_story_is_unsupported(monkeypatch) -> None:
    runner = _FakeRunner("{}")
    client, _ = _build_client(monkeypatch, runner=runner)

    payload = client.post("/api/instagram/info", json={"url": "https://www.instagram.com/stories/someone/123/"}).json()

    assert payload["success"] is False
    assert "login" in payload["error"].lower()
    assert runner.calls == []


def test_info_extractor_failures_use_client_safe_messages(monkeypatch) -> None:
    client, module = _build_client(monkeypatch, runner=_FakeRunner(error=ExtractionFailed("exit 1 with secrets")))
    payload = client.post("/api/tiktok/info", json={"url": TIKTOK_URL}).json()
    assert payload == {"success": False, "error": "Failed to fetch media information"}

    module.app.state.runner = _FakeRunner(error=RuntimeError("boom"))
    payload = client.post("/api/tiktok/info", json={"url": TIKTOK_URL}).json()
    assert payload == {"success": False, "error": "Unexpected error"}


def test_info_unknown_platform(monkeypatch) -> None:
    client, _ = _build_client(monkeypatch)
    payload = client.post("/api/vimeo/info", json={"url": "https://vimeo.com/1"}).json()
    assert payload == {"success": False, "error": "Unsupported platform"}


def test_prepare_youtube_builds_download_path(monkeypatch) -> None:
    client, _ = _build_client(monkeypatch)

    payload = client.post(
        "/api/youtube/prepare",
        json={"url": YOUTUBE_URL + "&t=30", "quality": "audio", "title": "My: Song?", "format_id": "140"},
    ).json()

    assert payload["success"] is True
    assert payload["filename"] == "My Song.m4a"
    parsed = urlparse(payload["downloadPath"])
    assert parsed.path == "/internal/download/youtube"
    query = parse_qs(parsed.query)
    assert query["url"] == [YOUTUBE_URL]
    assert query["quality"] == ["audio"]
    assert query["filename"] == ["My Song.m4a"]
    assert query["format_id"] == ["140"]


def test_prepare_tiktok_and_instagram_defaults(monkeypatch) -> None:
    client, _ = _build_client(monkeypatch)

    tiktok = client.post("/api/tiktok/prepare", json={"url": TIKTOK_URL, "variant": "audio"}).json()
    assert tiktok["filename"] == "tiktok.mp3"
    assert parse_qs(urlparse(tiktok["downloadPath"]).query)["variant"] == ["audio"]

    instagram = client.post(
        "/api/instagram/prepare",
        json={"url": "https://www.instagram.com/p/Cabc123/?igsh=1", "title": "Beach #sun", "entry": 1},
    ).json()
    assert instagram["filename"] == "Beach sun.mp4"
    query = parse_qs(urlparse(instagram["downloadPath"]).query)
    assert query["entry"] == ["1"]
    assert query["url"] == ["https://www.instagram.com/p/Cabc123/"]

    missing = client.post("/api/instagram/prepare", json={"url": " "}).json()
    assert missing == {"success": False, "error": "URL is required"}


def test_download_rejects_invalid_input(monkeypatch) -> None:
    client, _ = _build_client(monkeypatch)

    bad_url = client.get("/internal/download/tiktok", params={"url": "https://vimeo.com/1"})
    assert bad_url.status_code == 400
    assert bad_url.json() == {"success": False, "error": "Invalid TikTok URL"}

    bad_entry = client.get(
        "/internal/download/instagram",
        params={"url": "https://www.instagram.com/p/Cabc123/", "entry": "two"},
    )
    assert bad_entry.status_code == 400

    story = client.get("/internal/download/instagram", params={"url": "https://www.instagram.com/stories/a/1/"})
    assert story.status_code == 422


def test_download_tiktok_streams_extractor_stdout(monkeypatch) -> None:
    runner = _script_runner("import sys; sys.stdout.buffer.write(b'tiktok-bytes' * 1000); sys.stdout.flush()")
    client, _ = _build_client(monkeypatch, runner=runner)

    response = client.get(
        "/internal/download/tiktok",
        params={"url": TIKTOK_URL, "variant": "nowatermark", "filename": "dance.mp4"},
    )

    assert response.status_code == 200
    assert response.content == b"tiktok-bytes" * 1000
    assert response.headers["content-type"] == "video/mp4"
    assert 'filename="dance.mp4"' in response.headers["content-disposition"]


def test_download_failure_before_first_byte_is_structured(monkeypatch) -> None:
    runner = _script_runner("import sys; sys.stderr.write('ERROR: Unsupported URL\\n'); sys.exit(1)")
    client, _ = _build_client(monkeypatch, runner=runner)

    response = client.get("/internal/download/tiktok", params={"url": TIKTOK_URL})

    assert response.status_code == 502
    assert response.json() == {"success": False, "error": "Failed to fetch media information"}


def test_download_youtube_single_locator_is_proxied_with_range(monkeypatch) -> None:
    cdn = _CdnResponse(206, {"Content-Length": "4", "Content-Range": "bytes 0-3/10"}, [b"ab", b"cd"])
    session = _FakeSession(cdn)
    client, _ = _build_client(monkeypatch, runner=_FakeRunner("https://rr1.googlevideo.com/videoplayback?id=1\n"), session=session)

    response = client.get(
        "/internal/download/youtube",
        params={"url": YOUTUBE_URL, "quality": "720p", "filename": "clip.mp4"},
        headers={"Range": "bytes=0-3"},
    )

    assert response.status_code == 206
    assert response.content == b"abcd"
    assert response.headers["accept-ranges"] == "bytes"
    assert response.headers["content-range"] == "bytes 0-3/10"
    assert session.calls[0]["headers"]["Range"] == "bytes=0-3"
    assert cdn.closed


def test_download_youtube_redirects_when_enabled(monkeypatch) -> None:
    client, module = _build_client(monkeypatch, runner=_FakeRunner("https://rr1.googlevideo.com/videoplayback?id=1"))
    module.app.state.direct_redirect = True

    response = client.get("/internal/download/youtube", params={"url": YOUTUBE_URL}, follow_redirects=False)

    assert response.status_code == 307
    assert response.headers["location"] == "https://rr1.googlevideo.com/videoplayback?id=1"


@pytest.mark.parametrize(
    "runner,status,message",
    [
        (_FakeRunner(""), 502, "No downloadable stream was found"),
        (_FakeRunner(error=TimedOut("slow")), 504, "Timed out while contacting the media service"),
    ],
)
def test_download_youtube_resolution_errors(monkeypatch, runner, status: int, message: str) -> None:
    client, _ = _build_client(monkeypatch, runner=runner)

    response = client.get("/internal/download/youtube", params={"url": YOUTUBE_URL})

    assert response.status_code == status
    assert response.json()["error"] == message


def test_download_youtube_cdn_rejection_maps_to_502(monkeypatch) -> None:
    session = _FakeSession(_CdnResponse(403, {}, []))
    client, _ = _build_client(monkeypatch, runner=_FakeRunner("https://rr1.googlevideo.com/x"), session=session)

    response = client.get("/internal/download/youtube", params={"url": YOUTUBE_URL})

    assert response.status_code == 502
    assert response.json() == {"success": False, "error": "Download failed"}


def test_preview_proxy_serves_allowed_thumbnail(monkeypatch) -> None:
    session = _FakeSession(_CdnResponse(200, {"Content-Type": "image/webp"}, [b"img"]))
    client, _ = _build_client(monkeypatch, session=session)

    response = client.get("/internal/preview/instagram", params={"url": "https://scontent.cdninstagram.com/a.webp"})

    assert response.status_code == 200
    assert response.content == b"img"
    assert response.headers["content-type"] == "image/webp"
    assert response.headers["cache-control"] == "public, max-age=3600"


def test_preview_proxy_rejections(monkeypatch) -> None:
    session = _FakeSession(_CdnResponse(200, {}, [b"img"]))
    client, _ = _build_client(monkeypatch, session=session)

    missing = client.get("/internal/preview/instagram")
    assert missing.status_code == 400
    assert missing.json()["error"] == "Missing url"

    foreign = client.get("/internal/preview/instagram", params={"url": "https://example.com/a.jpg"})
    assert foreign.status_code == 403
    assert foreign.json()["error"] == "Domain not allowed"
    assert session.calls == []
