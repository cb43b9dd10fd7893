from .errors import (
    ExtractionFailed,
    FetchrError,
    InvalidInput,
    NoLocatorsResolved,
    ResolutionParseError,
    StreamError,
    TimedOut,
    UnsupportedContent,
)
from .runtime import get_runtime_info

__all__ = [
    "ExtractionFailed",
    "FetchrError",
    "InvalidInput",
    "NoLocatorsResolved",
    "ResolutionParseError",
    "StreamError",
    "TimedOut",
    "UnsupportedContent",
    "get_runtime_info",
]
