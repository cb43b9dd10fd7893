"""Error taxonomy shared by the resolver, selector, relay and HTTP layer.

Every error carries a ``user_message`` that is safe to show to a client and an
``http_status`` used when the error is surfaced before any byte of a download
has been sent. The exception text itself is diagnostic and only ever logged.
"""

from __future__ import annotations


class FetchrError(Exception):
    """Base class for recoverable pipeline failures."""

    user_message = "Unexpected error"
    http_status = 500

    def __init__(self, message: str | None = None, *, user_message: str | None = None) -> None:
        super().__init__(message or self.user_message)
        if user_message:
            self.user_message = user_message


class InvalidInput(FetchrError):
    """Missing or malformed URL; raised before any external call."""

    user_message = "Invalid URL"
    http_status = 400


class UnsupportedContent(FetchrError):
    """Recognized content shape that this service cannot fetch (e.g. stories)."""

    user_message = "This content is not supported"
    http_status = 422


class TimedOut(FetchrError):
    user_message = "Timed out while contacting the media service"
    http_status = 504


class ExtractionFailed(FetchrError):
    """The extractor exited non-zero, could not start, or printed nothing."""

    user_message = "Failed to fetch media information"
    http_status = 502

    def __init__(
        self,
        message: str | None = None,
        *,
        user_message: str | None = None,
        returncode: int | None = None,
        stderr_tail: str = "",
    ) -> None:
        super().__init__(message, user_message=user_message)
        self.returncode = returncode
        self.stderr_tail = stderr_tail


class ResolutionParseError(FetchrError):
    """Extractor output could not be read as a JSON object."""

    user_message = "Failed to read media information"
    http_status = 502


class NoLocatorsResolved(FetchrError):
    user_message = "No downloadable stream was found"
    http_status = 502


class StreamError(FetchrError):
    """Failure while relaying bytes, either from the CDN or the extractor."""

    user_message = "Download failed"
    http_status = 502

    def __init__(
        self,
        message: str | None = None,
        *,
        user_message: str | None = None,
        upstream_status: int | None = None,
    ) -> None:
        super().__init__(message, user_message=user_message)
        self.upstream_status = upstream_status


LOGIN_REQUIRED_MESSAGE = "This content is private or requires login."
