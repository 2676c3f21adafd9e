"""ICS-specific exceptions for error handling."""

from enum import Enum
from typing import Optional


class FetchErrorKind(str, Enum):
    """Failure categories surfaced by the feed fetcher."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    HTTP_STATUS = "http_status"
    TOO_LARGE = "too_large"
    INVALID_SCHEME = "invalid_scheme"


class ICSError(Exception):
    """Base exception for ICS-related errors."""

    kind: Optional[FetchErrorKind] = None

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ICSFetchError(ICSError):
    """Exception raised when an ICS feed cannot be fetched."""


class ICSNetworkError(ICSFetchError):
    """Exception raised for network-related fetch errors."""

    kind = FetchErrorKind.NETWORK


class ICSTimeoutError(ICSFetchError):
    """Exception raised when the feed request times out."""

    kind = FetchErrorKind.TIMEOUT


class ICSHTTPStatusError(ICSFetchError):
    """Exception raised when the feed server answers with a non-2xx status."""

    kind = FetchErrorKind.HTTP_STATUS

    def __init__(self, message: str, status_code: int):
        super().__init__(message, status_code=status_code)


class ICSTooLargeError(ICSFetchError):
    """Exception raised when the feed body exceeds the configured size cap."""

    kind = FetchErrorKind.TOO_LARGE


class ICSSchemeError(ICSFetchError):
    """Exception raised for feed URLs with an unsupported scheme or no host."""

    kind = FetchErrorKind.INVALID_SCHEME


class ICSContentError(ICSError):
    """Exception raised when fetched content is not a calendar document."""
