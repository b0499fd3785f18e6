#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports. Callers at
task boundaries (feed sync, image proxy, summary worker) translate these into
recorded state or HTTP responses; none of them is meant to escape a loop.
"""

from typing import Dict, Any, Optional


class FeedKeeperError(Exception):
    """Base class for all application errors."""


class DatabaseError(FeedKeeperError):
    """Raised by DatabaseQueue.execute when a store operation fails."""


class FetchError(FeedKeeperError):
    """Transient network failure: DNS, timeout, reset, non-2xx status, oversize body.

    Attributes:
        url: The URL being fetched when the failure occurred.
        status: HTTP status code when the failure came from a response.
    """

    def __init__(self, message: str, url: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status = status


class SSRFError(FeedKeeperError):
    """Raised when a URL or one of its resolved addresses is not publicly routable."""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class SignatureError(FeedKeeperError):
    """Raised when an image proxy signature is malformed or does not match."""


class InvalidImageError(FeedKeeperError):
    """Raised when a proxied response is not an acceptable image (type or size)."""


class FeedParseError(FeedKeeperError):
    """Raised when a fetched document is neither RSS/Atom nor JSON Feed."""


class ExtractionError(FeedKeeperError):
    """Raised when readable article content cannot be extracted from a page."""


class ProviderError(FeedKeeperError):
    """Raised when the summary provider rejects a request or returns no result."""


class ContentFilterError(ProviderError):
    """Raised when Azure OpenAI content filtering blocks a response.

    Attributes:
        details: Optional provider-specific payload for diagnostics.
    """

    def __init__(self, message: str = "Content filtered by Azure OpenAI", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


__all__ = [
    "FeedKeeperError",
    "DatabaseError",
    "FetchError",
    "SSRFError",
    "SignatureError",
    "InvalidImageError",
    "FeedParseError",
    "ExtractionError",
    "ProviderError",
    "ContentFilterError",
]
