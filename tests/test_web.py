from urllib.parse import parse_qs, urlsplit

import pytest
from aiohttp.test_utils import TestClient, TestServer

from conftest import FakeFetcher, make_feed, make_result
from errors import DatabaseError
from image_proxy import ImageProxy, create_proxy_url
from summary_cache import SummaryCache
from summary_worker import SummaryService
from utils import now_ts
from web import create_app

SECRET = b"w" * 32
IMAGE_URL = "https://cdn.example.com/pic.jpg"
JPEG = b"\xff\xd8\xff\xe0" + b"\x00" * 64


class StaticProvider:
    async def summarize(self, url, text):
        return "summary"

    async def close(self):
        return None


def build_app(db, fetcher=None):
    fetcher = fetcher or FakeFetcher({
        IMAGE_URL: make_result(IMAGE_URL, JPEG, headers={"Content-Type": "image/jpeg", "ETag": '"img1"'}),
    })
    proxy = ImageProxy(db, fetcher, secret=SECRET)
    summaries = SummaryService(db, StaticProvider(), SummaryCache(max_entries=10))
    return create_app(db, proxy, summaries), summaries


async def add_entry(db):
    feed = await make_feed(db)
    ids = await db.execute(
        'insert_entries',
        feed_id=feed['id'],
        entries=[{'url': "https://example.com/a", 'title': "A", 'content': "<p>Body text</p>"}],
        fetched_at=now_ts(),
    )
    return ids[0]


@pytest.mark.asyncio
async def test_health_reports_counts(db):
    await add_entry(db)
    app, _ = build_app(db)
    async with TestClient(TestServer(app)) as client:
        resp = await client.get("/health")
        assert resp.status == 200
        assert await resp.json() == {"status": "ok", "feeds": 1, "entries": 1}


@pytest.mark.asyncio
async def test_health_fails_when_store_is_down():
    class BrokenDB:
        async def execute(self, operation_name, **params):
            raise DatabaseError("worker stopped")

    app = create_app(BrokenDB(), None, None)
    async with TestClient(TestServer(app)) as client:
        resp = await client.get("/health")
        assert resp.status == 503


@pytest.mark.asyncio
async def test_image_proxy_serves_signed_image_with_safe_headers(db, public_dns):
    app, _ = build_app(db)
    async with TestClient(TestServer(app)) as client:
        resp = await client.get(create_proxy_url(IMAGE_URL, SECRET))
        assert resp.status == 200
        assert await resp.read() == JPEG
        assert resp.headers["Content-Type"] == "image/jpeg"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert "default-src 'none'" in resp.headers["Content-Security-Policy"]
        assert resp.headers["Cache-Control"] == "public, max-age=86400"
        assert resp.headers["ETag"] == '"img1"'

        again = await client.get(create_proxy_url(IMAGE_URL, SECRET), headers={"If-None-Match": '"img1"'})
        assert again.status == 304


@pytest.mark.asyncio
async def test_image_proxy_rejects_bad_signature(db, public_dns):
    fetcher = FakeFetcher()
    app, _ = build_app(db, fetcher)
    query = parse_qs(urlsplit(create_proxy_url(IMAGE_URL, b"other-secret-value-123")).query)
    async with TestClient(TestServer(app)) as client:
        resp = await client.get("/api/proxy/image", params={"url": query["url"][0], "s": query["s"][0]})
        assert resp.status == 403
        missing = await client.get("/api/proxy/image")
        assert missing.status == 403
    assert fetcher.calls == []


@pytest.mark.asyncio
async def test_image_proxy_maps_upstream_failures(db, public_dns):
    html_url = "https://cdn.example.com/page.html"
    fetcher = FakeFetcher({html_url: make_result(html_url, b"<html/>", headers={"Content-Type": "text/html"})})
    app, _ = build_app(db, fetcher)
    async with TestClient(TestServer(app)) as client:
        not_image = await client.get(create_proxy_url(html_url, SECRET))
        assert not_image.status == 400
        upstream = await client.get(create_proxy_url("https://cdn.example.com/gone.png", SECRET))
        assert upstream.status == 502
        private = await client.get(create_proxy_url("http://10.0.0.1/x.png", SECRET))
        assert private.status == 403


@pytest.mark.asyncio
async def test_summary_lifecycle_over_http(db):
    entry_id = await add_entry(db)
    app, summaries = build_app(db)
    path = f"/api/entries/{entry_id}/summary"
    async with TestClient(TestServer(app)) as client:
        assert (await client.get(path)).status == 404

        created = await client.post(path)
        assert created.status == 202
        body = await created.json()
        assert body["status"] == "pending"
        assert body["entry_id"] == entry_id

        await summaries.process(entry_id)

        done = await client.get(path)
        assert done.status == 200
        assert (await done.json())["summary_text"] == "summary"

        again = await client.post(path)
        assert again.status == 200

        forced = await client.post(path, params={"force": "1"})
        assert forced.status == 202

        deleted = await client.delete(path)
        assert deleted.status == 204
        assert (await client.delete(path)).status == 404


@pytest.mark.asyncio
async def test_summary_routes_validate_entry(db):
    app, _ = build_app(db)
    async with TestClient(TestServer(app)) as client:
        assert (await client.post("/api/entries/999/summary")).status == 404
        assert (await client.get("/api/entries/abc/summary")).status == 400
        assert (await client.post("/api/entries/0/summary")).status == 400
