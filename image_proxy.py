#!/usr/bin/env python3
"""
Signed image proxy.

Image URLs found in feed content are rewritten to
``/api/proxy/image?url=<base64url target>&s=<signature>`` so that readers
never contact third-party image hosts directly. The signature is an
HMAC-SHA256 over the canonical target URL with the server secret; requests
with a bad signature are rejected before any network activity. Fetched
images are cached in the ``image`` table keyed by the target URL, so a
re-signed URL hits the same row.
"""

import base64
import binascii
import hashlib
import hmac
from dataclasses import dataclass
from enum import Enum
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from config import config, get_logger
from errors import FetchError, InvalidImageError, SignatureError
from ssrf import validate_url
from telemetry import trace_span
from utils import encode_int64, now_ts

logger = get_logger("image_proxy")

PROXY_PATH = "/api/proxy/image"
DEFAULT_PORTS = {"http": 80, "https": 443}
GENERIC_CONTENT_TYPES = {"application/octet-stream", "binary/octet-stream"}


class ImageKind(str, Enum):
    """Closed set of owners for rows in the image table."""

    FEED_ICON = "feed"
    ENTRY = "entry"
    PROXY = "proxy"


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def canonicalize_url(url: str) -> str:
    """Normalize a URL for signing and cache keys.

    Lowercases scheme and host, drops the fragment, user info and default
    port, and gives an empty path a single slash. Path and query are kept
    byte-for-byte.
    """
    parts = urlsplit(url.strip())
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    if ":" in host:
        host = f"[{host}]"
    port = parts.port
    netloc = host if port is None or DEFAULT_PORTS.get(scheme) == port else f"{host}:{port}"
    return urlunsplit((scheme, netloc, parts.path or "/", parts.query, ""))


def sign_url(url: str, secret: bytes) -> str:
    """HMAC-SHA256 of the canonical URL, base64url without padding."""
    digest = hmac.new(secret, canonicalize_url(url).encode("utf-8"), hashlib.sha256).digest()
    return _b64encode(digest)


def verify_signature(url: str, signature: Optional[str], secret: bytes) -> bool:
    """Constant-time signature check; malformed input is simply a mismatch."""
    if not signature or not isinstance(signature, str) or not signature.isascii():
        return False
    try:
        expected = sign_url(url, secret)
    except ValueError:
        return False
    return hmac.compare_digest(expected, signature)


def encode_target(url: str) -> str:
    return _b64encode(url.encode("utf-8"))


def decode_target(encoded: str) -> str:
    """Decode the ``url`` query parameter of a proxy URL."""
    if not encoded or not encoded.isascii():
        raise SignatureError("Malformed image URL parameter")
    try:
        return _b64decode(encoded).decode("utf-8")
    except (binascii.Error, ValueError) as e:
        raise SignatureError("Malformed image URL parameter") from e


def create_proxy_url(url: str, secret: Optional[bytes] = None) -> str:
    """Build the signed, relative proxy URL for an absolute image URL."""
    key = secret if secret is not None else config.IMAGE_PROXY_SECRET
    target = url.strip()
    return f"{PROXY_PATH}?url={encode_target(target)}&s={sign_url(target, key)}"


def proxy_object_id(url: str) -> int:
    """Cache key for a proxied URL: 64 bits of SHA-256 over the canonical URL."""
    digest = hashlib.sha256(canonicalize_url(url).encode("utf-8")).digest()
    return encode_int64(int.from_bytes(digest[:8], "big"))


def _normalize_content_type(value: Optional[str]) -> str:
    return (value or "").split(";", 1)[0].strip().lower()


@dataclass
class ProxiedImage:
    data: bytes
    content_type: str
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    from_cache: bool = False


class ImageProxy:
    """Verify, fetch, cache and serve proxied images."""

    def __init__(self, db, fetcher, secret: Optional[bytes] = None):
        self.db = db
        self.fetcher = fetcher
        self.secret = secret if secret is not None else config.IMAGE_PROXY_SECRET
        self.ttl_seconds = config.IMAGE_CACHE_TTL_HOURS * 3600
        self.max_bytes = config.IMAGE_MAX_SIZE_MB * 1024 * 1024

    def authenticate(self, encoded_url: Optional[str], signature: Optional[str]) -> str:
        """Return the target URL if the signature matches, else raise SignatureError."""
        if not encoded_url or not signature:
            raise SignatureError("Missing url or signature")
        url = decode_target(encoded_url)
        if not verify_signature(url, signature, self.secret):
            raise SignatureError("Invalid signature")
        return url

    @trace_span(
        "image_proxy.serve",
        tracer_name="image_proxy",
        attr_from_args=lambda self, encoded_url, signature: {"image.param.length": len(encoded_url or "")},
    )
    async def serve(self, encoded_url: Optional[str], signature: Optional[str]) -> ProxiedImage:
        """Resolve a proxy request to image bytes.

        Raises:
            SignatureError: missing, malformed or mismatched signature (no I/O performed).
            SSRFError: the target is not publicly routable.
            FetchError: the origin could not be fetched.
            InvalidImageError: the origin did not return an acceptable image.
        """
        url = self.authenticate(encoded_url, signature)
        await validate_url(url)

        object_id = proxy_object_id(url)
        cached = await self.db.execute('get_image', object_type=ImageKind.PROXY.value, object_id=object_id)
        now = now_ts()
        if cached and now - int(cached['fetched_at'] or 0) < self.ttl_seconds:
            return self._from_row(cached)

        result = await self.fetcher.fetch(
            url,
            etag=cached['etag'] if cached else None,
            last_modified=cached['last_modified'] if cached else None,
            accept="image/*",
            max_bytes=self.max_bytes,
        )

        if result.not_modified:
            if not cached:
                raise FetchError("Origin answered 304 to an unconditional request", url=url, status=304)
            await self.db.execute('touch_image', object_type=ImageKind.PROXY.value, object_id=object_id, fetched_at=now)
            logger.debug(f"Revalidated cached image {url}")
            return self._from_row(cached)

        content_type = result.content_type
        if not (content_type.startswith("image/") or content_type in GENERIC_CONTENT_TYPES):
            raise InvalidImageError(f"Unexpected content type '{content_type or 'none'}' for {url}")
        if not result.body:
            raise InvalidImageError(f"Empty image body for {url}")

        await self.db.execute(
            'upsert_image',
            object_type=ImageKind.PROXY.value,
            object_id=object_id,
            data=result.body,
            content_type=content_type,
            fetched_at=now,
            source_url=url,
            etag=result.etag,
            last_modified=result.last_modified,
        )
        return ProxiedImage(
            data=result.body,
            content_type=content_type,
            etag=result.etag,
            last_modified=result.last_modified,
        )

    def _from_row(self, row) -> ProxiedImage:
        return ProxiedImage(
            data=bytes(row['data']),
            content_type=_normalize_content_type(row['content_type']) or "application/octet-stream",
            etag=row.get('etag'),
            last_modified=row.get('last_modified'),
            from_cache=True,
        )
