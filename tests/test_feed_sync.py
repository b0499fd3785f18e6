import json
from types import SimpleNamespace

import pytest

from conftest import FakeFetcher, make_feed, make_result
from errors import ExtractionError, FeedParseError, FetchError
from feed_sync import FeedSyncEngine, parse_feed_document, seed_feeds
from sanitizer import SanitizePolicy
from utils import now_ts

FEED_URL = "https://example.com/feed.xml"
POLICY = SanitizePolicy(tracking_params=["utm_*"], tracking_hosts=["pixel.*"])


def rss(*items, title="Example Blog"):
    body = "".join(
        f"<item><title>{t}</title><link>{link}</link><guid>{link}</guid>"
        f"<pubDate>Mon, 06 Jan 2025 10:00:00 GMT</pubDate>"
        f"<description><![CDATA[{content}]]></description></item>"
        for t, link, content in items
    )
    return (
        '<?xml version="1.0"?><rss version="2.0"><channel>'
        f"<title>{title}</title><link>https://example.com/</link><description>News</description>"
        f"{body}</channel></rss>"
    ).encode("utf-8")


FIRST = ("First post", "https://example.com/posts/1", "<p>one<script>bad()</script></p>")
SECOND = ("Second post", "https://example.com/posts/2", '<p>two <a href="/x?utm_source=rss">x</a></p>')
THIRD = ("Third post", "https://example.com/posts/3", "<p>three</p>")


def engine_for(db, fetcher, **kwargs):
    return FeedSyncEngine(db, fetcher, policy=POLICY, **kwargs)


@pytest.mark.asyncio
async def test_first_sync_stores_entries_in_document_order(db):
    feed = await make_feed(db, FEED_URL)
    fetcher = FakeFetcher({
        FEED_URL: make_result(FEED_URL, rss(FIRST, SECOND), headers={"ETag": '"abc"', "Last-Modified": "Mon, 06 Jan 2025 10:00:00 GMT"}),
    })

    result = await engine_for(db, fetcher).sync_feed(feed)

    assert result.status == "updated"
    assert result.new_entries == 2
    entries = await db.execute('list_entries', feed_id=feed['id'])
    assert [e['url'] for e in entries] == ["https://example.com/posts/1", "https://example.com/posts/2"]
    assert "script" not in entries[0]['content']
    assert 'href="https://example.com/x"' in entries[1]['content']
    assert entries[0]['published_at'] == 1736157600

    stored = await db.execute('get_feed', feed_id=feed['id'])
    assert stored['etag'] == '"abc"'
    assert stored['last_modified'] == "Mon, 06 Jan 2025 10:00:00 GMT"
    assert stored['title'] == "Example Blog"
    assert stored['fetch_error'] is None
    assert stored['feed_updated_at'] is not None


@pytest.mark.asyncio
async def test_resync_of_unchanged_document_adds_nothing(db):
    feed = await make_feed(db, FEED_URL)
    fetcher = FakeFetcher({FEED_URL: make_result(FEED_URL, rss(FIRST, SECOND))})
    engine = engine_for(db, fetcher)

    await engine.sync_feed(feed)
    again = await engine.refresh_feed(feed['id'])

    assert again.status == "updated"
    assert again.new_entries == 0
    assert await db.execute('count_entries', feed_id=feed['id']) == 2


@pytest.mark.asyncio
async def test_not_modified_sends_validators_and_keeps_state(db):
    feed = await make_feed(db, FEED_URL)
    fetcher = FakeFetcher({
        FEED_URL: make_result(FEED_URL, rss(FIRST), headers={"ETag": '"v1"'}),
    })
    engine = engine_for(db, fetcher)
    await engine.sync_feed(feed)
    before = await db.execute('get_feed', feed_id=feed['id'])

    def _conditional(url, etag=None, **kwargs):
        assert etag == '"v1"'
        return make_result(url, status=304)
    fetcher.responses[FEED_URL] = _conditional

    result = await engine.refresh_feed(feed['id'])

    assert result.status == "not_modified"
    after = await db.execute('get_feed', feed_id=feed['id'])
    assert after['etag'] == before['etag']
    assert after['title'] == before['title']
    assert after['parsed_at'] == before['parsed_at']
    assert await db.execute('count_entries', feed_id=feed['id']) == 1


@pytest.mark.asyncio
async def test_only_unseen_items_are_inserted(db):
    feed = await make_feed(db, FEED_URL)
    fetcher = FakeFetcher({FEED_URL: make_result(FEED_URL, rss(FIRST))})
    engine = engine_for(db, fetcher)
    await engine.sync_feed(feed)

    fetcher.responses[FEED_URL] = make_result(FEED_URL, rss(THIRD, FIRST))
    result = await engine.sync_feed(feed)

    assert result.new_entries == 1
    entries = await db.execute('list_entries', feed_id=feed['id'])
    assert [e['url'] for e in entries] == ["https://example.com/posts/1", "https://example.com/posts/3"]


@pytest.mark.asyncio
async def test_duplicate_urls_within_document_keep_first_occurrence(db):
    feed = await make_feed(db, FEED_URL)
    duplicate = ("Repost", FIRST[1], "<p>again</p>")
    fetcher = FakeFetcher({FEED_URL: make_result(FEED_URL, rss(FIRST, duplicate))})

    result = await engine_for(db, fetcher).sync_feed(feed)

    assert result.new_entries == 1
    entries = await db.execute('list_entries', feed_id=feed['id'])
    assert entries[0]['title'] == "First post"


@pytest.mark.asyncio
async def test_fetch_failure_is_recorded_and_entries_survive(db):
    feed = await make_feed(db, FEED_URL)
    fetcher = FakeFetcher({FEED_URL: make_result(FEED_URL, rss(FIRST))})
    engine = engine_for(db, fetcher)
    await engine.sync_feed(feed)

    fetcher.responses[FEED_URL] = FetchError("Timed out after 30s", url=FEED_URL)
    result = await engine.sync_feed(feed)

    assert result.status == "error"
    assert not result.ok
    stored = await db.execute('get_feed', feed_id=feed['id'])
    assert stored['fetch_error'] == "Timed out after 30s"
    assert await db.execute('count_entries', feed_id=feed['id']) == 1


@pytest.mark.asyncio
async def test_unparseable_document_records_parse_error(db):
    feed = await make_feed(db, FEED_URL)
    fetcher = FakeFetcher({FEED_URL: make_result(FEED_URL, b"this is not a feed at all")})

    result = await engine_for(db, fetcher).sync_feed(feed)

    assert result.status == "error"
    stored = await db.execute('get_feed', feed_id=feed['id'])
    assert stored['fetch_error'].startswith("Parse error")


@pytest.mark.asyncio
async def test_feed_deleted_mid_sync_reports_missing(db):
    feed = await make_feed(db, FEED_URL)
    fetcher = FakeFetcher({FEED_URL: make_result(FEED_URL, rss(FIRST))})
    await db.execute('delete_feed', feed_id=feed['id'])

    result = await engine_for(db, fetcher).sync_feed(feed)

    assert result.status == "missing"
    assert await db.execute('count_entries') == 0


JSON_FEED_WITH_BAD_DATES = b"""{
  "version": "https://jsonfeed.org/version/1.1",
  "title": "Dates",
  "items": [
    {"id": "a", "url": "https://example.com/a", "content_html": "<p>a</p>", "date_published": "2025-01-06T10:00:00Z"},
    {"id": "b", "url": "https://example.com/b", "content_html": "<p>b</p>", "date_published": 1e30},
    {"id": "c", "url": "https://example.com/c", "content_html": "<p>c</p>", "date_published": 1e999}
  ]
}"""


@pytest.mark.asyncio
async def test_out_of_range_dates_fall_back_to_fetch_time(db):
    feed = await make_feed(db, FEED_URL)
    fetcher = FakeFetcher({FEED_URL: make_result(FEED_URL, JSON_FEED_WITH_BAD_DATES)})

    before = now_ts()
    result = await engine_for(db, fetcher).sync_feed(feed)
    after = now_ts()

    assert result.status == "updated"
    assert result.new_entries == 3
    entries = await db.execute('list_entries', feed_id=feed['id'])
    assert [e['url'] for e in entries] == [f"https://example.com/{k}" for k in "abc"]
    assert entries[0]['published_at'] == 1736157600
    assert all(before <= e['published_at'] <= after for e in entries[1:])
    stored = await db.execute('get_feed', feed_id=feed['id'])
    assert stored['fetch_error'] is None


@pytest.mark.asyncio
async def test_unstorable_row_does_not_drop_its_siblings(db):
    feed = await make_feed(db, FEED_URL)
    rows = [
        {'url': "https://example.com/ok-1", 'published_at': 1736157600},
        {'url': "https://example.com/huge", 'published_at': 10 ** 30},
        {'url': "https://example.com/ok-2", 'published_at': 1736157600},
    ]

    inserted = await db.execute('insert_entries', feed_id=feed['id'], entries=rows, fetched_at=1736157600)

    assert len(inserted) == 2
    entries = await db.execute('list_entries', feed_id=feed['id'])
    assert [e['url'] for e in entries] == ["https://example.com/ok-1", "https://example.com/ok-2"]


@pytest.mark.asyncio
async def test_unexpected_failure_is_recorded_on_the_feed(db):
    feed = await make_feed(db, FEED_URL, reader_mode=True)
    fetcher = FakeFetcher({FEED_URL: make_result(FEED_URL, rss(FIRST))})

    class BrokenExtractor:
        async def extract(self, url):
            raise RuntimeError("extractor exploded")

    result = await engine_for(db, fetcher, extractor=BrokenExtractor()).sync_feed(feed)

    assert result.status == "error"
    assert "extractor exploded" in result.error
    stored = await db.execute('get_feed', feed_id=feed['id'])
    assert stored['fetched_at'] is not None
    assert "extractor exploded" in stored['fetch_error']

@pytest.mark.asyncio
async def test_reader_mode_replaces_content_and_falls_back_on_failure(db):
    feed = await make_feed(db, FEED_URL, reader_mode=True)
    fetcher = FakeFetcher({FEED_URL: make_result(FEED_URL, rss(FIRST, SECOND))})

    class FakeExtractor:
        async def extract(self, url):
            if url.endswith("/2"):
                raise ExtractionError("too short")
            return SimpleNamespace(content="<p>full article</p>", title="Full")

    result = await engine_for(db, fetcher, extractor=FakeExtractor()).sync_feed(feed)

    assert result.new_entries == 2
    entries = await db.execute('list_entries', feed_id=feed['id'])
    assert entries[0]['content'] == "<p>full article</p>"
    assert "two" in entries[1]['content']


@pytest.mark.asyncio
async def test_seed_feeds_is_idempotent(db):
    sources = {
        "a": {"url": "https://a.example.com/rss", "category": "Tech"},
        "b": {"url": "https://b.example.com/rss", "category": "Tech", "reader_mode": True},
    }
    assert await seed_feeds(db, sources) == 2
    assert await seed_feeds(db, sources) == 2
    feeds = await db.execute('list_feeds')
    assert len(feeds) == 2
    assert {f['category'] for f in feeds} == {"Tech"}


def test_json_feed_is_detected_and_parsed():
    document = {
        "version": "https://jsonfeed.org/version/1.1",
        "title": "JSON Blog",
        "home_page_url": "https://json.example.com/",
        "items": [
            {"id": "1", "url": "https://json.example.com/1", "title": "One",
             "content_html": "<p>html</p>", "date_published": "2025-01-06T10:00:00Z",
             "authors": [{"name": "Sam"}]},
            {"id": "2", "url": "/2", "content_text": "a < b"},
            {"id": "3", "title": "no url"},
        ],
    }
    parsed = parse_feed_document(json.dumps(document).encode(), "https://json.example.com/feed.json")

    assert parsed.title == "JSON Blog"
    assert parsed.site_url == "https://json.example.com/"
    assert [i.url for i in parsed.items] == ["https://json.example.com/1", "https://json.example.com/2"]
    assert parsed.items[0].published_at == 1736157600
    assert parsed.items[0].author == "Sam"
    assert parsed.items[1].content == "<p>a &lt; b</p>"
    assert parsed.skipped == 1


def test_atom_feed_is_parsed():
    atom = b"""<?xml version="1.0" encoding="utf-8"?>
    <feed xmlns="http://www.w3.org/2005/Atom">
      <title>Atom Blog</title>
      <link href="https://atom.example.com/"/>
      <id>urn:uuid:feed</id>
      <updated>2025-01-06T10:00:00Z</updated>
      <entry>
        <title>Entry</title>
        <link href="https://atom.example.com/e1"/>
        <id>urn:uuid:e1</id>
        <updated>2025-01-06T10:00:00Z</updated>
        <content type="html">&lt;p&gt;body&lt;/p&gt;</content>
      </entry>
    </feed>"""
    parsed = parse_feed_document(atom, "https://atom.example.com/atom.xml")
    assert parsed.format.startswith("atom")
    assert parsed.title == "Atom Blog"
    assert parsed.items[0].url == "https://atom.example.com/e1"
    assert parsed.items[0].guid == "urn:uuid:e1"
    assert "body" in parsed.items[0].content


@pytest.mark.parametrize("body", [b"", b"   ", b"[1, 2]", b'{"foo": "bar"}', b"{not json"])
def test_non_feed_documents_raise_parse_error(body):
    with pytest.raises(FeedParseError):
        parse_feed_document(body, FEED_URL)
