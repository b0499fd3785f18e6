#!/usr/bin/env python3
"""
Feed sync engine.

Fetches one feed conditionally, parses it as RSS, Atom or JSON Feed, and
stores items it has not seen before. Identity of an entry is
``(feed_id, url)``; re-syncing unchanged content is a no-op apart from the
fetch timestamp. Failures are written to ``feed.fetch_error`` and never
raised to the caller, so a broken feed simply waits for its next turn.
"""

import json
import html as html_lib
from asyncio import Semaphore, gather, get_running_loop
from calendar import timegm
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from math import isfinite
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin, urlsplit

import feedparser
from feedparser.datetimes import _parse_date

from config import config, get_logger
from errors import DatabaseError, ExtractionError, FeedParseError, FetchError, SSRFError
from sanitizer import SanitizePolicy, sanitize_html
from telemetry import trace_span
from utils import RateLimiter, now_ts, truncate_string

logger = get_logger("feed_sync")

FEED_ACCEPT = (
    "application/rss+xml, application/atom+xml, application/feed+json, "
    "application/json;q=0.9, application/xml;q=0.9, text/xml;q=0.9, */*;q=0.5"
)
MAX_TITLE_LENGTH = 1024
MAX_URL_LENGTH = 2048
# 9999-12-31T23:59:59Z
MAX_TIMESTAMP = 253402300799


@dataclass
class ParsedItem:
    url: str
    guid: Optional[str] = None
    title: Optional[str] = None
    content: Optional[str] = None
    author: Optional[str] = None
    published_at: Optional[int] = None


@dataclass
class ParsedFeed:
    format: str
    title: Optional[str] = None
    description: Optional[str] = None
    site_url: Optional[str] = None
    items: List[ParsedItem] = field(default_factory=list)
    skipped: int = 0


@dataclass
class SyncResult:
    feed_id: int
    status: str  # updated | not_modified | error | missing
    new_entries: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in ("updated", "not_modified")


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------
def _http_url(value: Any, base_url: Optional[str]) -> Optional[str]:
    if not isinstance(value, str) or not value.strip():
        return None
    candidate = value.strip()
    if base_url:
        try:
            candidate = urljoin(base_url, candidate)
        except ValueError:
            return None
    try:
        parts = urlsplit(candidate)
    except ValueError:
        return None
    if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
        return None
    return candidate[:MAX_URL_LENGTH]


def _clean_text(value: Any, limit: int = MAX_TITLE_LENGTH) -> Optional[str]:
    if not isinstance(value, str):
        return None
    text = " ".join(value.split())
    return truncate_string(text, limit) if text else None


def _plausible_timestamp(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not isfinite(value) or not 0 < value <= MAX_TIMESTAMP:
        return None
    return int(value)


def _date_value_to_timestamp(value: Any) -> Optional[int]:
    """Convert assorted date representations into a Unix timestamp.

    Values outside 1970..9999 (or not finite) yield None so the caller falls
    back to the fetch time.
    """
    if value in (None, ''):
        return None
    if isinstance(value, (int, float)):
        return _plausible_timestamp(value)
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return _plausible_timestamp(dt.timestamp())
    if isinstance(value, (list, tuple)) or hasattr(value, 'tm_year'):
        # feedparser *_parsed values are struct_time in UTC
        try:
            return _plausible_timestamp(timegm(tuple(value)))
        except (OverflowError, ValueError, TypeError):
            return None
    if isinstance(value, str):
        text = value.strip()
        try:
            dt = datetime.fromisoformat(text.replace('Z', '+00:00'))
            return _date_value_to_timestamp(dt)
        except ValueError:
            pass
        try:
            return _date_value_to_timestamp(parsedate_to_datetime(text))
        except (TypeError, ValueError, IndexError):
            pass
        parsed = _parse_date(text)
        return _date_value_to_timestamp(parsed) if parsed else None
    return None


def _feedparser_timestamp(entry) -> Optional[int]:
    for name in ('published', 'updated', 'created'):
        for key in (f"{name}_parsed", name):
            timestamp = _date_value_to_timestamp(entry.get(key))
            if timestamp:
                return timestamp
    return None


def _feedparser_content(entry) -> Optional[str]:
    contents = entry.get('content') or []
    html_parts = [c for c in contents if 'html' in (c.get('type') or '')]
    for part in html_parts or contents:
        value = part.get('value')
        if value:
            return value
    return entry.get('summary') or entry.get('description') or None


def _parse_with_feedparser(body: bytes, base_url: str) -> ParsedFeed:
    feedparser_options = {
        'sanitize_html': True,
        'resolve_relative_uris': True,
        'response_headers': {'content-location': base_url} if base_url else None,
    }
    parsed = feedparser.parse(body, **feedparser_options)
    version = parsed.get('version') or ''
    entries = parsed.get('entries') or []
    if not version and not entries:
        reason = parsed.get('bozo_exception') or 'unrecognized document'
        raise FeedParseError(f"Not a feed document: {reason}")
    if parsed.get('bozo'):
        logger.warning(f"Feed parsing warning for {base_url}: {parsed.get('bozo_exception')}")

    meta = parsed.get('feed') or {}
    feed = ParsedFeed(
        format=version or 'unknown',
        title=_clean_text(meta.get('title')),
        description=_clean_text(meta.get('subtitle') or meta.get('description'), 4096),
        site_url=_http_url(meta.get('link'), base_url),
    )
    for entry in entries:
        url = _http_url(entry.get('link'), base_url)
        if not url:
            feed.skipped += 1
            logger.warning(f"Skipping entry without a usable link in {base_url}: {entry.get('title')!r}")
            continue
        feed.items.append(ParsedItem(
            url=url,
            guid=_clean_text(entry.get('id'), MAX_URL_LENGTH),
            title=_clean_text(entry.get('title')),
            content=_feedparser_content(entry),
            author=_clean_text(entry.get('author'), 255),
            published_at=_feedparser_timestamp(entry),
        ))
    return feed


def _json_feed_author(item: Dict[str, Any], feed: Dict[str, Any]) -> Optional[str]:
    for source in (item, feed):
        authors = source.get('authors')
        if isinstance(authors, list):
            names = [a.get('name') for a in authors if isinstance(a, dict) and a.get('name')]
            if names:
                return _clean_text(", ".join(names), 255)
        author = source.get('author')
        if isinstance(author, dict) and author.get('name'):
            return _clean_text(author['name'], 255)
    return None


def _parse_json_feed(document: Dict[str, Any], base_url: str) -> ParsedFeed:
    items = document.get('items')
    if not isinstance(items, list):
        raise FeedParseError("JSON Feed has no items list")
    feed_base = _http_url(document.get('feed_url'), base_url) or base_url
    feed = ParsedFeed(
        format=str(document.get('version') or 'jsonfeed'),
        title=_clean_text(document.get('title')),
        description=_clean_text(document.get('description'), 4096),
        site_url=_http_url(document.get('home_page_url'), base_url),
    )
    for item in items:
        if not isinstance(item, dict):
            feed.skipped += 1
            continue
        url = _http_url(item.get('url'), feed_base) or _http_url(item.get('external_url'), feed_base)
        if not url:
            feed.skipped += 1
            logger.warning(f"Skipping JSON Feed item without a usable url in {base_url}: {item.get('id')!r}")
            continue
        content = item.get('content_html')
        if not content and isinstance(item.get('content_text'), str):
            content = f"<p>{html_lib.escape(item['content_text'])}</p>"
        if not content and isinstance(item.get('summary'), str):
            content = f"<p>{html_lib.escape(item['summary'])}</p>"
        guid = item.get('id')
        feed.items.append(ParsedItem(
            url=url,
            guid=_clean_text(str(guid), MAX_URL_LENGTH) if guid is not None else None,
            title=_clean_text(item.get('title')),
            content=content if isinstance(content, str) else None,
            author=_json_feed_author(item, document),
            published_at=_date_value_to_timestamp(item.get('date_published'))
            or _date_value_to_timestamp(item.get('date_modified')),
        ))
    return feed


def parse_feed_document(body: bytes, base_url: str) -> ParsedFeed:
    """Parse a feed body, detecting JSON Feed versus RSS/Atom from the content.

    Raises:
        FeedParseError: the body is neither a JSON Feed nor an RSS/Atom document.
    """
    if not body or not body.strip():
        raise FeedParseError("Empty feed document")
    head = body.lstrip(b"\xef\xbb\xbf \t\r\n")[:1]
    if head in (b"{", b"["):
        try:
            document = json.loads(body.decode('utf-8-sig'))
        except (UnicodeDecodeError, ValueError) as e:
            raise FeedParseError(f"Invalid JSON document: {e}") from e
        if not isinstance(document, dict):
            raise FeedParseError("JSON document is not a feed object")
        version = str(document.get('version') or '')
        if 'jsonfeed' not in version and not isinstance(document.get('items'), list):
            raise FeedParseError("JSON document is not a JSON Feed")
        return _parse_json_feed(document, base_url)
    return _parse_with_feedparser(body, base_url)


# ----------------------------------------------------------------------
# Sync engine
# ----------------------------------------------------------------------
class FeedSyncEngine:
    """Synchronize feeds into the store."""

    def __init__(
        self,
        db,
        fetcher,
        extractor=None,
        executor: Optional[ThreadPoolExecutor] = None,
        proxy_secret: Optional[bytes] = None,
        policy: Optional[SanitizePolicy] = None,
    ):
        self.db = db
        self.fetcher = fetcher
        self.extractor = extractor
        self.executor = executor
        self.proxy_secret = proxy_secret
        self.policy = policy or SanitizePolicy.from_config()
        self.reader_rate_limiter = RateLimiter(config.READER_MODE_REQUESTS_PER_MINUTE)
        self.reader_semaphore = Semaphore(config.READER_MODE_CONCURRENCY)

    async def _record_error(self, feed_id: int, fetched_at: int, message: str) -> SyncResult:
        stored = await self.db.execute('record_fetch_error', feed_id=feed_id, fetched_at=fetched_at, error=message)
        if not stored:
            logger.info(f"Feed ID {feed_id} disappeared during sync; error not recorded")
            return SyncResult(feed_id=feed_id, status='missing', error=message)
        return SyncResult(feed_id=feed_id, status='error', error=message)

    async def _record_failure(self, feed_id: int, fetched_at: int, message: str) -> SyncResult:
        """Best-effort error bookkeeping once the sync itself has failed."""
        try:
            return await self._record_error(feed_id, fetched_at, message)
        except DatabaseError as e:
            logger.error(f"Could not record sync failure for feed {feed_id}: {e}")
            return SyncResult(feed_id=feed_id, status='error', error=message)

    async def _reader_mode_content(self, item: ParsedItem) -> Optional[str]:
        """Try full-article extraction for a new item; None keeps the feed body."""
        await self.reader_rate_limiter.acquire()
        async with self.reader_semaphore:
            try:
                extracted = await self.extractor.extract(item.url)
            except (FetchError, SSRFError, ExtractionError) as e:
                logger.info(f"Reader mode unavailable for {item.url}: {e}")
                return None
        if not item.title and extracted.title:
            item.title = _clean_text(extracted.title)
        return extracted.content

    @trace_span(
        "sync_feed",
        tracer_name="feed_sync",
        attr_from_args=lambda self, feed: {
            "feed.id": int(feed.get('id') or 0),
            "feed.url": feed.get('url') or "",
        },
    )
    async def sync_feed(self, feed: Dict[str, Any]) -> SyncResult:
        """Fetch, parse and store one feed. Never raises for fetch/parse/store failures."""
        feed_id = feed['id']
        url = feed['url']
        fetched_at = now_ts()
        try:
            try:
                result = await self.fetcher.fetch(
                    url,
                    etag=feed.get('etag'),
                    last_modified=feed.get('last_modified'),
                    accept=FEED_ACCEPT,
                )
            except (FetchError, SSRFError) as e:
                logger.warning(f"Fetch failed for feed {feed_id} ({url}): {e}")
                return await self._record_error(feed_id, fetched_at, str(e))

            if result.not_modified:
                if not await self.db.execute('record_not_modified', feed_id=feed_id, fetched_at=fetched_at):
                    return SyncResult(feed_id=feed_id, status='missing')
                logger.debug(f"Feed {feed_id} not modified")
                return SyncResult(feed_id=feed_id, status='not_modified')

            loop = get_running_loop()
            try:
                parsed = await loop.run_in_executor(self.executor, parse_feed_document, result.body, result.url)
            except FeedParseError as e:
                logger.warning(f"Parse failed for feed {feed_id} ({url}): {e}")
                return await self._record_error(feed_id, fetched_at, f"Parse error: {e}")

            inserted = await self._store_new_items(feed, parsed, fetched_at)

            stored = await self.db.execute(
                'record_fetch_success',
                feed_id=feed_id,
                fetched_at=fetched_at,
                etag=result.etag,
                last_modified=result.last_modified,
                title=parsed.title,
                description=parsed.description,
                site_url=parsed.site_url,
                new_entries=inserted,
            )
            if not stored:
                logger.info(f"Feed ID {feed_id} disappeared during sync")
                return SyncResult(feed_id=feed_id, status='missing', new_entries=inserted)

            logger.info(
                "Feed %s (%s): %d items, %d new, %d skipped",
                feed_id, parsed.format, len(parsed.items), inserted, parsed.skipped,
            )
            return SyncResult(feed_id=feed_id, status='updated', new_entries=inserted)
        except DatabaseError as e:
            logger.error(f"Store failure while syncing feed {feed_id}: {e}")
            return await self._record_failure(feed_id, fetched_at, f"Store error: {e}")
        except Exception as e:
            logger.error(f"💥 Unexpected error while syncing feed {feed_id} ({url}): {e}", exc_info=True)
            return await self._record_failure(feed_id, fetched_at, f"Sync error: {e}")

    async def _store_new_items(self, feed: Dict[str, Any], parsed: ParsedFeed, fetched_at: int) -> int:
        feed_id = feed['id']

        # First occurrence wins within a document
        unique: List[ParsedItem] = []
        seen = set()
        for item in parsed.items:
            if item.url in seen:
                continue
            seen.add(item.url)
            unique.append(item)
        if not unique:
            return 0

        existing = await self.db.execute('check_existing_urls', feed_id=feed_id, urls=[i.url for i in unique])
        new_items = [item for item in unique if item.url not in existing]
        if not new_items:
            return 0

        contents: List[Optional[str]] = [None] * len(new_items)
        if feed.get('reader_mode') and self.extractor is not None:
            contents = await gather(*(self._reader_mode_content(item) for item in new_items))

        rows = []
        for item, extracted in zip(new_items, contents):
            body = extracted if extracted is not None else sanitize_html(
                item.content, base_url=item.url, policy=self.policy, proxy_secret=self.proxy_secret
            )
            rows.append({
                'guid': item.guid,
                'url': item.url,
                'title': item.title,
                'content': body,
                'author': item.author,
                'published_at': item.published_at or fetched_at,
            })

        inserted_ids = await self.db.execute('insert_entries', feed_id=feed_id, entries=rows, fetched_at=fetched_at)
        return len(inserted_ids)

    async def refresh_feed(self, feed_id: int) -> SyncResult:
        """Sync a single feed by id."""
        feed = await self.db.execute('get_feed', feed_id=feed_id)
        if not feed:
            return SyncResult(feed_id=feed_id, status='missing')
        return await self.sync_feed(feed)

    async def sync_all(self, feeds: Optional[List[Dict[str, Any]]] = None) -> List[SyncResult]:
        """Sync every feed (or the given snapshot) with bounded concurrency."""
        if feeds is None:
            feeds = await self.db.execute('list_feeds')
        semaphore = Semaphore(config.SYNC_CONCURRENCY)

        async def _bounded(feed):
            async with semaphore:
                return await self.sync_feed(feed)

        outcomes = await gather(*(_bounded(feed) for feed in feeds), return_exceptions=True)
        results: List[SyncResult] = []
        for feed, outcome in zip(feeds, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Unexpected failure syncing feed {feed['id']}: {outcome!r}")
                results.append(SyncResult(feed_id=feed['id'], status='error', error=repr(outcome)))
            else:
                results.append(outcome)
        return results


async def seed_feeds(db, sources: Dict[str, Dict[str, Any]]) -> int:
    """Register feeds from configuration; existing feeds are left in place."""
    registered = 0
    for slug, source in sources.items():
        category_id = await db.execute('ensure_category', name=source['category'])
        if category_id is None:
            logger.warning(f"Could not create category for feed {slug}")
            continue
        feed_id = await db.execute(
            'register_feed',
            category_id=category_id,
            url=source['url'],
            reader_mode=source.get('reader_mode', False),
        )
        if feed_id is not None:
            registered += 1
    logger.info(f"Seeded {registered} feeds from configuration")
    return registered
