import os

os.environ.setdefault("DISABLE_TELEMETRY", "true")

import pytest
import pytest_asyncio

from config import config
from fetcher import FetchResult
from models import DatabaseQueue
import ssrf


@pytest_asyncio.fixture
async def db(tmp_path, monkeypatch):
    """Started DatabaseQueue on an isolated temp database."""
    db_path = tmp_path / "test.db"
    monkeypatch.setattr(config, 'DATABASE_PATH', str(db_path))
    queue = DatabaseQueue(str(db_path))
    await queue.start()
    yield queue
    await queue.stop()


@pytest.fixture
def public_dns(monkeypatch):
    """Resolve every host name to a public documentation-free address."""
    async def _resolve(host, port):
        return ["93.184.216.34"]
    monkeypatch.setattr(ssrf, 'resolve_addresses', _resolve)


class FakeFetcher:
    """Returns canned FetchResults per URL and records every call."""

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []

    async def fetch(self, url, **kwargs):
        self.calls.append((url, kwargs))
        response = self.responses.get(url)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(url, **kwargs)
        if response is None:
            from errors import FetchError
            raise FetchError("HTTP 404", url=url, status=404)
        return response

    async def close(self):
        return None


def make_result(url, body=b"", status=200, headers=None):
    lowered = {k.lower(): v for k, v in (headers or {}).items()}
    return FetchResult(url=url, status=status, body=body, headers=lowered)


async def make_feed(db, url="https://example.com/feed.xml", category="News", reader_mode=False):
    category_id = await db.execute('ensure_category', name=category)
    feed_id = await db.execute('register_feed', category_id=category_id, url=url, reader_mode=reader_mode)
    return await db.execute('get_feed', feed_id=feed_id)
