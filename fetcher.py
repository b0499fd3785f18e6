#!/usr/bin/env python3
"""
Guarded HTTP fetcher.

All outbound requests made on behalf of feed content go through
``HttpFetcher.fetch``: the URL is vetted by the SSRF guard, redirects are
followed by hand so every hop is vetted again, conditional validators are
sent back verbatim, and bodies are capped at a byte limit. Failures surface
as ``FetchError`` or ``SSRFError``; nothing is retried here, the next
scheduled attempt is the retry.
"""

from asyncio import TimeoutError
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from urllib.parse import urljoin

from aiohttp import ClientSession, ClientTimeout, ClientError, TCPConnector

from config import config, get_logger
from errors import FetchError, SSRFError
from ssrf import GuardedResolver, validate_url
from telemetry import trace_span

# Module-specific logger
logger = get_logger("fetcher")

# HTTP status codes
HTTP_OK = 200
HTTP_NOT_MODIFIED = 304
REDIRECT_STATUSES = {301, 302, 303, 307, 308}

READ_CHUNK_SIZE = 64 * 1024


@dataclass
class FetchResult:
    """Outcome of a successful (2xx or 304) fetch."""

    url: str
    status: int
    body: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)
    redirects: List[str] = field(default_factory=list)

    @property
    def not_modified(self) -> bool:
        return self.status == HTTP_NOT_MODIFIED

    @property
    def etag(self) -> Optional[str]:
        return self.headers.get("etag")

    @property
    def last_modified(self) -> Optional[str]:
        return self.headers.get("last-modified")

    @property
    def content_type(self) -> str:
        return (self.headers.get("content-type") or "").split(";", 1)[0].strip().lower()

    def text(self) -> str:
        """Decode the body using the declared charset, falling back to UTF-8."""
        charset = "utf-8"
        for part in (self.headers.get("content-type") or "").split(";")[1:]:
            key, _, value = part.strip().partition("=")
            if key.lower() == "charset" and value:
                charset = value.strip('"\' ')
        try:
            return self.body.decode(charset, errors="replace")
        except LookupError:
            return self.body.decode("utf-8", errors="replace")


def _format_client_error(error: ClientError) -> str:
    """Describe aiohttp client errors with any available status/errno."""
    parts: List[str] = [error.__class__.__name__]
    status = getattr(error, 'status', None)
    if status is not None:
        parts.append(f"status={status}")
    os_error = getattr(error, 'os_error', None)
    if os_error is not None:
        errno = getattr(os_error, 'errno', None)
        if errno is not None:
            parts.append(f"errno={errno}")
    message = str(error)
    if message:
        parts.append(message)
    return " ".join(parts)


class HttpFetcher:
    """Conditional, SSRF-guarded GET over a shared aiohttp session."""

    def __init__(self, session: Optional[ClientSession] = None, user_agent: Optional[str] = None):
        self._session = session
        self._owns_session = session is None
        self.user_agent = user_agent or config.USER_AGENT
        self.max_redirects = config.MAX_REDIRECTS
        self.default_max_bytes = config.MAX_FEED_SIZE_MB * 1024 * 1024

    @property
    def session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession(
                connector=TCPConnector(resolver=GuardedResolver(), limit=config.SYNC_CONCURRENCY * 4),
                timeout=ClientTimeout(total=config.HTTP_TIMEOUT),
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the session if this fetcher created it."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    def _build_headers(self, etag: Optional[str], last_modified: Optional[str], accept: Optional[str]) -> Dict[str, str]:
        headers = {'User-Agent': self.user_agent}
        if accept:
            headers['Accept'] = accept
        # Validators are echoed exactly as the origin sent them
        if etag:
            headers['If-None-Match'] = etag
        if last_modified:
            headers['If-Modified-Since'] = last_modified
        return headers

    async def _read_limited(self, response, url: str, max_bytes: int) -> bytes:
        declared = response.content_length
        if declared is not None and declared > max_bytes:
            raise FetchError(f"Response too large: {declared} bytes (limit {max_bytes})", url=url)
        chunks: List[bytes] = []
        total = 0
        async for chunk in response.content.iter_chunked(READ_CHUNK_SIZE):
            total += len(chunk)
            if total > max_bytes:
                raise FetchError(f"Response exceeded {max_bytes} bytes", url=url)
            chunks.append(chunk)
        return b"".join(chunks)

    @trace_span(
        "http.fetch",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, **kwargs: {"http.url": url},
    )
    async def fetch(
        self,
        url: str,
        *,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
        accept: Optional[str] = None,
        max_bytes: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> FetchResult:
        """Fetch a URL with optional conditional validators.

        Returns:
            FetchResult for a 2xx response or a 304.

        Raises:
            SSRFError: the URL or any redirect target is not publicly routable.
            FetchError: network failure, timeout, non-2xx status, too many
                redirects, or a body larger than ``max_bytes``.
        """
        limit = max_bytes or self.default_max_bytes
        headers = self._build_headers(etag, last_modified, accept)
        request_timeout = ClientTimeout(total=timeout or config.HTTP_TIMEOUT)
        current = url
        hops: List[str] = []

        try:
            while True:
                current = await validate_url(current)
                async with self.session.get(
                    current,
                    headers=headers,
                    allow_redirects=False,
                    timeout=request_timeout,
                ) as response:
                    if response.status in REDIRECT_STATUSES:
                        location = response.headers.get('Location')
                        if not location:
                            raise FetchError(f"HTTP {response.status} without Location", url=current, status=response.status)
                        if len(hops) >= self.max_redirects:
                            raise FetchError(f"Too many redirects (>{self.max_redirects})", url=url, status=response.status)
                        hops.append(current)
                        current = urljoin(current, location)
                        logger.debug(f"Following redirect {hops[-1]} -> {current}")
                        continue

                    response_headers = {k.lower(): v for k, v in response.headers.items()}
                    if response.status == HTTP_NOT_MODIFIED:
                        return FetchResult(url=current, status=response.status, headers=response_headers, redirects=hops)
                    if not 200 <= response.status < 300:
                        raise FetchError(f"HTTP {response.status}", url=current, status=response.status)

                    body = await self._read_limited(response, current, limit)
                    return FetchResult(
                        url=current,
                        status=response.status,
                        body=body,
                        headers=response_headers,
                        redirects=hops,
                    )
        except (FetchError, SSRFError):
            raise
        except TimeoutError as e:
            raise FetchError(f"Timed out after {request_timeout.total}s", url=current) from e
        except ClientError as e:
            raise FetchError(f"Network error: {_format_client_error(e)}", url=current) from e
        except (OSError, ValueError) as e:
            raise FetchError(f"Request failed: {e}", url=current) from e
