import pytest

from config import config
from conftest import make_feed
from summary_cache import SummaryCache
from summary_cleanup import cleanup_once
from utils import now_ts

HOUR = 3600


async def add_entries(db, count):
    feed = await make_feed(db)
    return await db.execute(
        'insert_entries',
        feed_id=feed['id'],
        entries=[{'url': f"https://example.com/p/{i}", 'title': f"P{i}"} for i in range(count)],
        fetched_at=now_ts(),
    )


async def finish(db, entry_id, status, at):
    await db.execute('request_summary', entry_id=entry_id, now=at)
    await db.execute('claim_summary', entry_id=entry_id, claim_token="t", now=at, lease_seconds=60)
    if status == 'completed':
        await db.execute('complete_summary', entry_id=entry_id, claim_token="t", summary_text=f"s{entry_id}", now=at)
    else:
        await db.execute('fail_summary', entry_id=entry_id, claim_token="t", error_message="boom", now=at)


@pytest.mark.asyncio
async def test_old_failed_and_orphaned_records_are_removed(db, monkeypatch):
    monkeypatch.setattr(config, 'SUMMARY_FAILED_RETENTION_HOURS', 24)
    monkeypatch.setattr(config, 'SUMMARY_COMPLETED_TTL_HOURS', 0)
    now = now_ts()
    old_failed, recent_failed, orphan, done = await add_entries(db, 4)
    await finish(db, old_failed, 'failed', now - 48 * HOUR)
    await finish(db, recent_failed, 'failed', now - HOUR)
    await finish(db, orphan, 'completed', now)
    await finish(db, done, 'completed', now - 1000 * HOUR)
    await db.execute('delete_entry', entry_id=orphan)

    cache = SummaryCache(max_entries=10, ttl_seconds=HOUR)
    cache.set_completed(orphan, "stale")
    cache.set_completed(done, "kept")

    counts = await cleanup_once(db, cache, now=now)

    assert counts == {"failed": 1, "orphaned": 1, "expired": 0}
    assert await db.execute('get_summary', entry_id=old_failed) is None
    assert await db.execute('get_summary', entry_id=orphan) is None
    assert (await db.execute('get_summary', entry_id=recent_failed))['status'] == 'failed'
    assert (await db.execute('get_summary', entry_id=done))['status'] == 'completed'
    assert orphan not in cache
    assert cache.get(done) == "kept"


@pytest.mark.asyncio
async def test_completed_ttl_expires_old_summaries(db, monkeypatch):
    monkeypatch.setattr(config, 'SUMMARY_COMPLETED_TTL_HOURS', 24)
    now = now_ts()
    old, fresh = await add_entries(db, 2)
    await finish(db, old, 'completed', now - 25 * HOUR)
    await finish(db, fresh, 'completed', now - HOUR)
    cache = SummaryCache(max_entries=10, ttl_seconds=HOUR)
    cache.set_completed(old, "s-old")

    counts = await cleanup_once(db, cache, now=now)

    assert counts["expired"] == 1
    assert await db.execute('get_summary', entry_id=old) is None
    assert await db.execute('get_summary', entry_id=fresh) is not None
    assert old not in cache


@pytest.mark.asyncio
async def test_cleanup_on_empty_store_is_a_no_op(db):
    assert await cleanup_once(db) == {"failed": 0, "orphaned": 0, "expired": 0}
