"""ICS feed downloading and parsing module."""

from .exceptions import (
    FetchErrorKind,
    ICSContentError,
    ICSError,
    ICSFetchError,
    ICSHTTPStatusError,
    ICSNetworkError,
    ICSSchemeError,
    ICSTimeoutError,
    ICSTooLargeError,
)
from .fetcher import ICSFetcher, normalize_feed_url
from .models import FetchResponse, ICSParseResult, ParsedEvent, compute_fingerprint
from .parser import EventBlockSplitter, ICSParser

__all__ = [
    "EventBlockSplitter",
    "FetchErrorKind",
    "FetchResponse",
    "ICSContentError",
    "ICSError",
    "ICSFetchError",
    "ICSFetcher",
    "ICSHTTPStatusError",
    "ICSNetworkError",
    "ICSParseResult",
    "ICSParser",
    "ICSSchemeError",
    "ICSTimeoutError",
    "ICSTooLargeError",
    "ParsedEvent",
    "compute_fingerprint",
    "normalize_feed_url",
]
