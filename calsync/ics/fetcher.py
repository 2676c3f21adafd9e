"""HTTP client for downloading calendar feeds."""

import logging
from typing import Any, Optional
from urllib.parse import urlparse, urlunparse

import httpx

from .exceptions import (
    ICSFetchError,
    ICSHTTPStatusError,
    ICSNetworkError,
    ICSSchemeError,
    ICSTimeoutError,
    ICSTooLargeError,
)
from .models import FetchResponse

logger = logging.getLogger(__name__)

WEBCAL_SCHEMES = ("webcal", "webcals")
ALLOWED_SCHEMES = ("http", "https")

DEFAULT_HEADERS = {
    "Accept": "text/calendar, text/plain, */*",
    "Accept-Charset": "utf-8",
    "Cache-Control": "no-cache",
}


def normalize_feed_url(url: str) -> str:
    """Normalize a subscription URL for fetching.

    ``webcal://`` and ``webcals://`` are aliases for HTTPS calendar feeds and
    are rewritten to ``https://``. Plain ``http``/``https`` URLs pass through.

    Args:
        url: URL as entered by the user

    Returns:
        Normalized http(s) URL

    Raises:
        ICSSchemeError: If the scheme is not supported or the host is missing
    """
    if not url or not url.strip():
        raise ICSSchemeError("Feed URL is empty")

    parsed = urlparse(url.strip())
    scheme = parsed.scheme.lower()

    if scheme in WEBCAL_SCHEMES:
        parsed = parsed._replace(scheme="https")
    elif scheme in ALLOWED_SCHEMES:
        parsed = parsed._replace(scheme=scheme)
    else:
        raise ICSSchemeError(f"Unsupported feed URL scheme: {parsed.scheme or '(none)'}")

    if not parsed.hostname:
        raise ICSSchemeError(f"Feed URL has no host: {url}")

    return urlunparse(parsed)


class ICSFetcher:
    """Async HTTP client for downloading calendar feeds.

    The fetcher performs a single bounded GET per call. Retry policy belongs
    to the caller so scheduling and error accounting stay in one place.
    """

    def __init__(self, settings: Any, client: Optional[httpx.AsyncClient] = None):
        """Initialize feed fetcher.

        Args:
            settings: Application settings
            client: Optional shared HTTP client; it is not closed by the fetcher
        """
        self.settings = settings
        self.client: Optional[httpx.AsyncClient] = client
        self._owns_client = client is None

        logger.debug(f"Feed fetcher initialized (shared_client: {not self._owns_client})")

    async def __aenter__(self) -> "ICSFetcher":
        """Async context manager entry."""
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    @property
    def max_bytes(self) -> int:
        return int(getattr(self.settings, "max_feed_bytes", 5 * 1024 * 1024))

    @property
    def timeout_seconds(self) -> float:
        return float(getattr(self.settings, "request_timeout_seconds", 15.0))

    def _ensure_client(self) -> httpx.AsyncClient:
        """Ensure HTTP client exists."""
        if self.client is None or self.client.is_closed:
            user_agent = getattr(self.settings, "user_agent", "calsync/1.0")
            self.client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds),
                follow_redirects=True,
                verify=True,
                headers={**DEFAULT_HEADERS, "User-Agent": user_agent},
            )
            self._owns_client = True
        return self.client

    async def close(self) -> None:
        """Close the HTTP client if this fetcher created it."""
        if self.client is not None and self._owns_client and not self.client.is_closed:
            await self.client.aclose()
            logger.debug("Closed feed HTTP client")
        if self._owns_client:
            self.client = None

    async def fetch(
        self, url: str, conditional_headers: Optional[dict[str, str]] = None
    ) -> FetchResponse:
        """Download a feed with timeout and size limits.

        Args:
            url: Feed URL; ``webcal://`` is accepted and rewritten
            conditional_headers: Optional ``If-None-Match``/``If-Modified-Since``

        Returns:
            Fetch response; ``not_modified`` is set for HTTP 304

        Raises:
            ICSSchemeError: Unsupported URL scheme
            ICSTimeoutError: Request exceeded the timeout
            ICSNetworkError: Connection or transport failure
            ICSHTTPStatusError: Non-2xx response
            ICSTooLargeError: Body exceeded ``max_feed_bytes``
        """
        target = normalize_feed_url(url)
        client = self._ensure_client()
        headers = dict(conditional_headers or {})

        logger.debug(f"Fetching feed from {target}")

        try:
            async with client.stream(
                "GET", target, headers=headers, timeout=self.timeout_seconds
            ) as response:
                if response.status_code == 304:
                    logger.debug(f"Feed not modified (304): {target}")
                    return self._create_response(target, response, b"")

                if not response.is_success:
                    raise ICSHTTPStatusError(
                        f"HTTP {response.status_code}: {response.reason_phrase}",
                        status_code=response.status_code,
                    )

                content = await self._read_bounded(response, target)
                return self._create_response(target, response, content)

        except httpx.TimeoutException as e:
            logger.warning(f"Timeout fetching feed from {target}")
            raise ICSTimeoutError(f"Request timeout after {self.timeout_seconds:g}s") from e

        except httpx.TransportError as e:
            logger.warning(f"Network error fetching feed from {target}: {e}")
            raise ICSNetworkError(f"Network error: {e}") from e

        except httpx.HTTPError as e:
            logger.warning(f"HTTP client error fetching feed from {target}: {e}")
            raise ICSFetchError(f"HTTP client error: {e}") from e

    async def _read_bounded(self, response: httpx.Response, url: str) -> bytes:
        """Read the streamed body, stopping as soon as the size cap is crossed."""
        limit = self.max_bytes

        declared = response.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > limit:
            raise ICSTooLargeError(
                f"Feed declares {declared} bytes, limit is {limit} bytes"
            )

        chunks: list[bytes] = []
        received = 0
        async for chunk in response.aiter_bytes():
            received += len(chunk)
            if received > limit:
                logger.warning(f"Feed from {url} exceeded {limit} bytes, aborting download")
                raise ICSTooLargeError(f"Feed exceeds limit of {limit} bytes")
            chunks.append(chunk)

        return b"".join(chunks)

    def _create_response(
        self, url: str, http_response: httpx.Response, content: bytes
    ) -> FetchResponse:
        """Create feed response from HTTP response."""
        headers = dict(http_response.headers)
        content_type = headers.get("content-type", "").lower() or None

        if content_type and not any(ct in content_type for ct in ("text/calendar", "text/plain")):
            logger.debug(f"Unexpected content type for {url}: {content_type}")

        if http_response.status_code != 304:
            logger.debug(f"Fetched feed from {url} ({len(content)} bytes)")

        return FetchResponse(
            url=url,
            content=content,
            status_code=http_response.status_code,
            content_type=content_type,
            headers=headers,
            etag=headers.get("etag"),
            last_modified=headers.get("last-modified"),
        )

    def get_conditional_headers(
        self, etag: Optional[str] = None, last_modified: Optional[str] = None
    ) -> dict[str, str]:
        """Get conditional request headers for caching.

        Args:
            etag: ETag value from previous response
            last_modified: Last-Modified value from previous response

        Returns:
            Dictionary of conditional headers
        """
        headers = {}

        if etag:
            headers["If-None-Match"] = etag

        if last_modified:
            headers["If-Modified-Since"] = last_modified

        return headers
