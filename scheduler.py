#!/usr/bin/env python3
"""
Bucketed feed scheduler.

Feeds are spread over the 60 minutes of an hour: a feed's bucket is
``fnv1a32(url) % 60`` and, once per wall-clock minute, the feeds whose bucket
equals ``(unix_seconds // 60) % 60`` are synced. Every feed is therefore
fetched about once an hour, always in the same minute slot, and each tick
only touches roughly 1/60 of the catalog.

Bucket selection is a pure function of the current time and a snapshot of
the feed list. A tick that is missed (process paused, slow previous tick)
is not made up; the next tick handles its own bucket only.
"""

import asyncio
from collections import Counter
from datetime import datetime, timezone
from time import time
from typing import Any, Dict, Iterable, List, Optional

from config import config, get_logger
from telemetry import trace_span
from utils import format_duration

# Module-specific logger
logger = get_logger("scheduler")

FNV32_OFFSET_BASIS = 2166136261
FNV32_PRIME = 16777619
BUCKET_COUNT = 60


def fnv1a32(text: str) -> int:
    """32-bit FNV-1a hash over the UTF-8 bytes of ``text``."""
    value = FNV32_OFFSET_BASIS
    for byte in text.encode("utf-8"):
        value ^= byte
        value = (value * FNV32_PRIME) & 0xFFFFFFFF
    return value


def bucket_for_url(url: str) -> int:
    """Minute slot (0-59) in which a feed URL is synced."""
    return fnv1a32(url) % BUCKET_COUNT


def current_bucket(now: Optional[float] = None) -> int:
    """Bucket for a Unix timestamp (defaults to now)."""
    ts = time() if now is None else now
    return (int(ts) // 60) % BUCKET_COUNT


def feeds_due(feeds: Iterable[Dict[str, Any]], now: Optional[float] = None) -> List[Dict[str, Any]]:
    """Select the feeds of a snapshot whose bucket matches the minute of ``now``."""
    bucket = current_bucket(now)
    return [feed for feed in feeds if bucket_for_url(feed['url']) == bucket]


def seconds_until_next_minute(now: Optional[float] = None) -> float:
    ts = time() if now is None else now
    return 60.0 - (ts % 60.0)


class FeedScheduler:
    """Runs one bucket of feed syncs per minute."""

    def __init__(self, db, sync_engine, concurrency: Optional[int] = None):
        self.db = db
        self.sync_engine = sync_engine
        self.concurrency = concurrency or config.SYNC_CONCURRENCY
        self.tick_seconds = config.SCHEDULER_TICK_SECONDS

    @trace_span(
        "scheduler.tick",
        tracer_name="scheduler",
        attr_from_args=lambda self, now=None: {"scheduler.bucket": current_bucket(now)},
    )
    async def tick(self, now: Optional[float] = None) -> Dict[str, int]:
        """Sync every feed in the current bucket.

        A failing sync never aborts its siblings; failures are counted and
        logged. Returns counts of dispatched, succeeded and failed syncs.
        """
        ts = time() if now is None else now
        bucket = current_bucket(ts)
        feeds = await self.db.execute('list_feeds')
        due = feeds_due(feeds, ts)
        if not due:
            logger.debug(f"Bucket {bucket}: no feeds due ({len(feeds)} total)")
            return {"bucket": bucket, "dispatched": 0, "succeeded": 0, "failed": 0}

        logger.info(f"⏰ Bucket {bucket}: syncing {len(due)} of {len(feeds)} feeds")
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _bounded(feed):
            async with semaphore:
                return await self.sync_engine.sync_feed(feed)

        started = time()
        outcomes = await asyncio.gather(*(_bounded(feed) for feed in due), return_exceptions=True)

        succeeded = 0
        failed = 0
        for feed, outcome in zip(due, outcomes):
            if isinstance(outcome, BaseException):
                failed += 1
                logger.error(f"💥 Sync of feed {feed['id']} ({feed['url']}) crashed: {outcome!r}")
            elif outcome.ok:
                succeeded += 1
            else:
                failed += 1
        logger.info(
            f"✅ Bucket {bucket} done in {format_duration(time() - started)}: "
            f"{succeeded} ok, {failed} failed"
        )
        return {"bucket": bucket, "dispatched": len(due), "succeeded": succeeded, "failed": failed}

    async def _sleep_until_next_tick(self) -> None:
        if self.tick_seconds == 60:
            await asyncio.sleep(seconds_until_next_minute())
        else:
            await asyncio.sleep(self.tick_seconds)

    @trace_span("scheduler.main_loop", tracer_name="scheduler")
    async def run(self) -> None:
        """Tick forever on minute boundaries until cancelled."""
        logger.info("🚀 Scheduler started")
        if config.SCHEDULER_RUN_IMMEDIATELY:
            logger.info("🎬 Running current bucket immediately on startup")
            await self._safe_tick()
        while True:
            try:
                await self._sleep_until_next_tick()
                await self._safe_tick()
            except asyncio.CancelledError:
                logger.info("📶 Scheduler cancelled - shutting down")
                raise

    async def _safe_tick(self) -> None:
        try:
            await self.tick()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"💥 Error in scheduler tick: {e}", exc_info=True)

    async def get_schedule_status(self, now: Optional[float] = None) -> Dict[str, Any]:
        """Describe the current bucket and how feeds are distributed over buckets."""
        ts = time() if now is None else now
        feeds = await self.db.execute('list_feeds')
        distribution = Counter(bucket_for_url(feed['url']) for feed in feeds)
        bucket = current_bucket(ts)
        return {
            'current_time': datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(),
            'current_bucket': bucket,
            'feeds_total': len(feeds),
            'feeds_due_now': distribution.get(bucket, 0),
            'seconds_until_next_tick': round(seconds_until_next_minute(ts), 1),
            'busiest_bucket_size': max(distribution.values()) if distribution else 0,
            'buckets': {b: distribution.get(b, 0) for b in range(BUCKET_COUNT)},
        }


def print_schedule_status(status: Dict[str, Any]) -> None:
    """Print formatted schedule status."""
    print("\n🕐 Scheduler Status")
    print(f"⏰ Current time: {status['current_time']}")
    print(f"🎯 Current bucket: {status['current_bucket']} ({status['feeds_due_now']} feeds due)")
    print(f"📚 Feeds: {status['feeds_total']} (busiest bucket holds {status['busiest_bucket_size']})")
    print(f"⏳ Next tick in {status['seconds_until_next_tick']}s")
    occupied = {b: n for b, n in status['buckets'].items() if n}
    if occupied:
        print("🗂️ Buckets: " + ", ".join(f"{b}:{n}" for b, n in sorted(occupied.items())))
