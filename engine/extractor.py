"""yt-dlp subprocess invocation.

Three invocation shapes are used by the pipeline: a metadata-only JSON dump
(``-J``), direct-locator resolution (``-g``) and a payload streamed to stdout
(``-o -``). The first two are captured with a hard time bound; the last is
handed out as an owned :class:`ProcessByteStream`.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
import subprocess
import shlex
from collections import deque
from dataclasses import dataclass
from typing import Any, AsyncIterator, Iterable

from config.settings import STREAM_CHUNK_SIZE, extractor_command
from engine.errors import (
    LOGIN_REQUIRED_MESSAGE,
    ExtractionFailed,
    StreamError,
    TimedOut,
)
from engine.json_utils import log_event

logger = logging.getLogger(__name__)

_STDERR_TAIL_LINES = 40
_TERMINATE_GRACE_SECONDS = 2.0
_LOGIN_GATE_RE = re.compile(
    r"(login required|log in|login|sign in|private|requested content is not available|cookies)",
    re.IGNORECASE,
)


def build_extractor_argv(opts: dict[str, Any], url: str) -> list[str]:
    """Render an options dict as yt-dlp arguments (without the binary)."""
    argv: list[str] = []

    if opts.get("dump_json"):
        argv.append("-J")
    if opts.get("get_url"):
        argv.append("-g")
    if opts.get("format"):
        argv.extend(["-f", str(opts["format"])])
    if opts.get("noplaylist"):
        argv.append("--no-playlist")
    if opts.get("playlist_items") is not None:
        argv.extend(["--playlist-items", str(opts["playlist_items"])])
    if opts.get("skip_download"):
        argv.append("--skip-download")
    if opts.get("merge_output_format"):
        argv.extend(["--merge-output-format", str(opts["merge_output_format"])])
    if opts.get("output"):
        argv.extend(["-o", str(opts["output"])])
    if opts.get("no_warnings"):
        argv.append("--no-warnings")
    if opts.get("no_check_certificate"):
        argv.append("--no-check-certificate")
    if opts.get("extractor_retries") is not None:
        argv.extend(["--extractor-retries", str(opts["extractor_retries"])])

    headers = opts.get("headers")
    if isinstance(headers, dict):
        for name, value in headers.items():
            name = str(name or "").strip()
            if not name or value is None:
                continue
            argv.extend(["--add-header", f"{name}:{value}"])

    argv.append(str(url))
    return argv


def redact_argv(argv: Iterable[str]) -> str:
    """Shell-escaped argv with header values removed, for logging."""
    redacted = []
    hide_next = False
    for token in argv:
        if hide_next:
            name = str(token).split(":", 1)[0]
            redacted.append(f"{name}:<redacted>")
            hide_next = False
            continue
        redacted.append(str(token))
        hide_next = token == "--add-header"
    return shlex.join(redacted)


def classify_failure(stderr_text: str) -> str | None:
    if stderr_text and _LOGIN_GATE_RE.search(stderr_text):
        return LOGIN_REQUIRED_MESSAGE
    return None


def _spawn_kwargs() -> dict:
    if os.name == "nt":
        return {"creationflags": getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)}
    # Own session so teardown reaches ffmpeg children spawned for merges.
    return {"start_new_session": True}


def _signal_process(proc: asyncio.subprocess.Process, sig: int) -> None:
    if proc.returncode is not None:
        return
    if os.name != "nt":
        try:
            os.killpg(proc.pid, sig)
            return
        except (ProcessLookupError, PermissionError, OSError):
            pass
    try:
        proc.send_signal(sig)
    except ProcessLookupError:
        pass


async def terminate_process(proc: asyncio.subprocess.Process | None, *, grace_sec: float = _TERMINATE_GRACE_SECONDS) -> None:
    """Terminate and reap ``proc``; escalate to SIGKILL after ``grace_sec``."""
    if proc is None or proc.returncode is not None:
        return
    _signal_process(proc, signal.SIGTERM)
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace_sec)
        return
    except asyncio.TimeoutError:
        pass
    _signal_process(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
    await proc.wait()


@dataclass(frozen=True)
class ExtractorRunner:
    """Stateless handle on the extractor binary; safe to share across requests."""

    command: tuple[str, ...] = ()
    chunk_size: int = STREAM_CHUNK_SIZE

    @classmethod
    def from_settings(cls) -> "ExtractorRunner":
        return cls(command=extractor_command())

    def argv(self, args: Iterable[str]) -> list[str]:
        return [*(self.command or ("yt-dlp",)), *args]

    async def _spawn(self, argv: list[str], label: str) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **_spawn_kwargs(),
            )
        except OSError as exc:
            log_event(logging.ERROR, "extractor_not_runnable", logger=logger, label=label, error=str(exc))
            raise ExtractionFailed(f"{label}: extractor could not be started: {exc}") from exc

    async def capture(self, args: Iterable[str], *, timeout: float, label: str, allow_empty: bool = False) -> str:
        """Run to completion and return stdout, bounded by ``timeout`` seconds."""
        argv = self.argv(args)
        log_event(logging.INFO, "extractor_invoke", logger=logger, label=label, argv=redact_argv(argv))
        proc = await self._spawn(argv, label)
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            log_event(logging.WARNING, "extractor_timeout", logger=logger, label=label, timeout=timeout)
            raise TimedOut(f"{label} timed out after {timeout:g}s") from None
        finally:
            await terminate_process(proc, grace_sec=0.5)

        stderr_text = (stderr or b"").decode("utf-8", errors="replace").strip()
        stdout_text = (stdout or b"").decode("utf-8", errors="replace")
        if proc.returncode != 0:
            tail = "\n".join(stderr_text.splitlines()[-_STDERR_TAIL_LINES:])
            log_event(
                logging.WARNING,
                "extractor_failed",
                logger=logger,
                label=label,
                returncode=proc.returncode,
                stderr=tail,
            )
            raise ExtractionFailed(
                f"{label}: extractor exited with {proc.returncode}",
                user_message=classify_failure(tail),
                returncode=proc.returncode,
                stderr_tail=tail,
            )
        if not stdout_text.strip() and not allow_empty:
            log_event(logging.WARNING, "extractor_empty_output", logger=logger, label=label, stderr=stderr_text[-2000:])
            raise ExtractionFailed(f"{label}: extractor produced no output", returncode=proc.returncode, stderr_tail=stderr_text)
        return stdout_text

    async def open_stream(self, args: Iterable[str], *, label: str) -> "ProcessByteStream":
        argv = self.argv(args)
        log_event(logging.INFO, "extractor_stream_start", logger=logger, label=label, argv=redact_argv(argv))
        proc = await self._spawn(argv, label)
        return ProcessByteStream(proc, label=label, chunk_size=self.chunk_size)


class ProcessByteStream:
    """Extractor stdout exposed as an async byte iterator.

    The stream owns its child process. ``aclose`` must be awaited on every exit
    path; it kills the process if it is still running and reaps it.
    """

    def __init__(self, process: asyncio.subprocess.Process, *, label: str, chunk_size: int = STREAM_CHUNK_SIZE) -> None:
        self.process = process
        self.label = label
        self.chunk_size = chunk_size
        self.bytes_sent = 0
        self._stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        self._stderr_task = asyncio.ensure_future(self._drain_stderr())
        self._first_chunk: bytes | None = None
        self._closed = False

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    async def _drain_stderr(self) -> None:
        stream = self.process.stderr
        if stream is None:
            return
        # Drained continuously so a chatty extractor never blocks on a full pipe.
        while True:
            line = await stream.readline()
            if not line:
                break
            self._stderr_tail.append(line.decode("utf-8", errors="replace").rstrip())

    async def _read(self) -> bytes:
        stream = self.process.stdout
        if stream is None:
            return b""
        return await stream.read(self.chunk_size)

    async def _finish_stderr(self) -> None:
        try:
            await asyncio.wait_for(asyncio.shield(self._stderr_task), timeout=1.0)
        except asyncio.TimeoutError:
            pass

    async def prime(self) -> None:
        """Wait for the first chunk so failures before any byte can be reported cleanly."""
        chunk = await self._read()
        if chunk:
            self._first_chunk = chunk
            return
        returncode = await self.process.wait()
        await self._finish_stderr()
        tail = self.stderr_tail
        log_event(
            logging.WARNING,
            "extractor_stream_empty",
            logger=logger,
            label=self.label,
            returncode=returncode,
            stderr=tail,
        )
        raise ExtractionFailed(
            f"{self.label}: extractor produced no payload (exit {returncode})",
            user_message=classify_failure(tail),
            returncode=returncode,
            stderr_tail=tail,
        )

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        if self._first_chunk:
            chunk, self._first_chunk = self._first_chunk, None
            self.bytes_sent += len(chunk)
            yield chunk
        while True:
            chunk = await self._read()
            if not chunk:
                break
            self.bytes_sent += len(chunk)
            yield chunk
        returncode = await self.process.wait()
        if returncode != 0:
            await self._finish_stderr()
            log_event(
                logging.ERROR,
                "extractor_stream_failed",
                logger=logger,
                label=self.label,
                returncode=returncode,
                bytes_sent=self.bytes_sent,
                stderr=self.stderr_tail,
            )
            raise StreamError(f"{self.label}: extractor exited with {returncode} after {self.bytes_sent} bytes")

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self.iter_bytes()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        still_running = self.process.returncode is None
        await terminate_process(self.process)
        if not self._stderr_task.done():
            self._stderr_task.cancel()
        await asyncio.gather(self._stderr_task, return_exceptions=True)
        if still_running:
            log_event(
                logging.INFO,
                "extractor_stream_terminated",
                logger=logger,
                label=self.label,
                bytes_sent=self.bytes_sent,
            )
