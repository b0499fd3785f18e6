#!/usr/bin/env python3
"""
Feed keeper orchestrator.

Wires the store, fetcher, sync engine, scheduler, image proxy and summary
subsystem together and exposes them as command line modes:

  serve            scheduler + summary worker + cleanup + HTTP server
  sync             sync every feed (or --feed-id) once
  tick             run the scheduler bucket for the current minute once
  status           print store counts
  schedule-status  print bucket distribution
  cleanup          run one summary cleanup pass

Feeds listed in feeds.yaml are registered on startup.
"""

import asyncio
import argparse
import signal
import sys
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from config import config, get_logger
from extractor import ContentExtractor
from feed_sync import FeedSyncEngine, seed_feeds
from fetcher import HttpFetcher
from image_proxy import ImageProxy
from models import DatabaseQueue
from scheduler import FeedScheduler, print_schedule_status
from summary_cache import SummaryCache
from summary_cleanup import cleanup_once, run_cleanup_loop
from summary_providers import build_provider
from summary_worker import SummaryService
from telemetry import init_telemetry, trace_span
from web import create_app, start_site

# Module-specific logger
logger = get_logger("orchestrator")


class FeedKeeper:
    """Owns the long-lived services shared by every mode."""

    def __init__(self) -> None:
        self.db = DatabaseQueue(config.DATABASE_PATH)
        self.executor = ThreadPoolExecutor(max_workers=4)
        self.fetcher = HttpFetcher()
        secret = config.IMAGE_PROXY_SECRET if config.REWRITE_IMAGES else None
        self.extractor = ContentExtractor(self.fetcher, executor=self.executor, proxy_secret=secret)
        self.sync_engine = FeedSyncEngine(
            self.db, self.fetcher, extractor=self.extractor, executor=self.executor, proxy_secret=secret
        )
        self.scheduler = FeedScheduler(self.db, self.sync_engine)
        self.cache = SummaryCache()
        self._summaries: Optional[SummaryService] = None

    @property
    def summaries(self) -> SummaryService:
        if self._summaries is None:
            self._summaries = SummaryService(self.db, build_provider(), self.cache)
        return self._summaries

    async def initialize(self) -> None:
        await self.db.start()
        await seed_feeds(self.db, config.FEED_SOURCES)

    async def close(self) -> None:
        if self._summaries is not None:
            await self._summaries.stop()
        await self.fetcher.close()
        await self.db.stop()
        self.executor.shutdown(wait=False, cancel_futures=True)

    @trace_span("orchestrator.sync", tracer_name="orchestrator",
                attr_from_args=lambda self, feed_id=None: {"feed.id": feed_id or 0})
    async def run_sync(self, feed_id: Optional[int] = None) -> bool:
        """Sync all feeds, or one feed by id."""
        if feed_id is not None:
            result = await self.sync_engine.refresh_feed(feed_id)
            logger.info(f"Feed {feed_id}: {result.status} ({result.new_entries} new)")
            return result.ok
        results = await self.sync_engine.sync_all()
        failed = [r for r in results if not r.ok]
        new_entries = sum(r.new_entries for r in results)
        logger.info(f"✅ Synced {len(results)} feeds: {new_entries} new entries, {len(failed)} failed")
        return True

    async def run_tick(self) -> bool:
        counts = await self.scheduler.tick()
        return counts['failed'] == 0

    async def check_status(self) -> Dict[str, Any]:
        counts = await self.db.execute('get_status_counts')
        return {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'counts': counts,
            'config': config.get_config_summary(),
        }

    @staticmethod
    def print_status(status: Dict[str, Any]) -> None:
        """Print formatted status information."""
        counts = status['counts']
        print("\n📊 Feed Keeper Status")
        print(f"⏰ {status['timestamp']}")
        print(f"💾 Database: {status['config']['database_path']}")
        print(f"   📂 Categories: {counts.get('category', 0)}")
        print(f"   📡 Feeds: {counts.get('feed', 0)} ({counts.get('feeds_with_errors', 0)} with errors)")
        print(f"   📰 Entries: {counts.get('entry', 0)}")
        print(f"   🖼️ Cached images: {counts.get('image', 0)}")
        summaries = counts.get('summaries', {})
        if summaries:
            print("   📝 Summaries: " + ", ".join(f"{k}={v}" for k, v in summaries.items()))

    async def run_cleanup(self) -> bool:
        counts = await cleanup_once(self.db, self.cache)
        logger.info(f"Cleanup: {counts}")
        return True

    async def serve(self) -> None:
        """Run every background task and the HTTP server until interrupted."""
        image_proxy = ImageProxy(self.db, self.fetcher)
        await self.summaries.start()
        runner = await start_site(create_app(self.db, image_proxy, self.summaries))

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                # Not available on every platform; KeyboardInterrupt still applies
                pass

        tasks = [
            asyncio.create_task(self.scheduler.run(), name="scheduler"),
            asyncio.create_task(run_cleanup_loop(self.db, self.cache), name="summary-cleanup"),
        ]
        logger.info("🚀 Feed keeper serving")
        try:
            await stop_event.wait()
        finally:
            logger.info("👋 Shutting down")
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await runner.cleanup()


async def _run_mode(args) -> int:
    keeper = FeedKeeper()
    await keeper.initialize()
    try:
        if args.mode == 'serve':
            await keeper.serve()
            return 0
        if args.mode == 'sync':
            return 0 if await keeper.run_sync(args.feed_id) else 1
        if args.mode == 'tick':
            return 0 if await keeper.run_tick() else 1
        if args.mode == 'status':
            keeper.print_status(await keeper.check_status())
            return 0
        if args.mode == 'schedule-status':
            print_schedule_status(await keeper.scheduler.get_schedule_status())
            return 0
        if args.mode == 'cleanup':
            return 0 if await keeper.run_cleanup() else 1
        return 2
    finally:
        await keeper.close()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Feed Keeper')
    parser.add_argument('mode', choices=['serve', 'sync', 'tick', 'status', 'schedule-status', 'cleanup'],
                        help='Operation mode')
    parser.add_argument('--feed-id', type=int, help='Limit sync to a single feed id')
    args = parser.parse_args()

    init_telemetry("feedkeeper")
    try:
        sys.exit(asyncio.run(_run_mode(args)))
    except KeyboardInterrupt:
        logger.info("👋 Feed keeper shutting down")
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
