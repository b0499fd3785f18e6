#!/usr/bin/env python3
"""
Periodic cleanup of summary records.

Removes failed records past their retention window, records whose entry
no longer exists and, when SUMMARY_COMPLETED_TTL_HOURS is set, completed
records older than that TTL. Cached text for every removed record is
evicted so the cache never outlives the store.
"""

from asyncio import CancelledError, sleep
from typing import Dict, Optional

from config import config, get_logger
from telemetry import trace_span
from utils import now_ts

logger = get_logger("summary_cleanup")


@trace_span("summary.cleanup", tracer_name="summary_cleanup")
async def cleanup_once(db, cache=None, now: Optional[int] = None) -> Dict[str, int]:
    """Run one cleanup pass and return counts of deleted records by reason."""
    ts = now if now is not None else now_ts()
    failed_cutoff = ts - config.SUMMARY_FAILED_RETENTION_HOURS * 3600

    failed = await db.execute('delete_failed_summaries', older_than=failed_cutoff)
    orphans = await db.execute('delete_orphan_summaries')
    completed = []
    if config.SUMMARY_COMPLETED_TTL_HOURS > 0:
        completed_cutoff = ts - config.SUMMARY_COMPLETED_TTL_HOURS * 3600
        completed = await db.execute('delete_completed_summaries', older_than=completed_cutoff)

    if cache is not None:
        cache.remove_many([*failed, *orphans, *completed])
        cache.purge_expired()

    counts = {"failed": len(failed), "orphaned": len(orphans), "expired": len(completed)}
    if any(counts.values()):
        logger.info(
            f"🧹 Summary cleanup removed {counts['failed']} failed, "
            f"{counts['orphaned']} orphaned and {counts['expired']} expired records"
        )
    else:
        logger.debug("Summary cleanup found nothing to remove")
    return counts


async def run_cleanup_loop(db, cache=None, interval_hours: Optional[float] = None) -> None:
    """Run cleanup_once every interval until cancelled; failures are logged and retried next time."""
    interval = (interval_hours or config.SUMMARY_CLEANUP_INTERVAL_HOURS) * 3600
    logger.info(f"Summary cleanup scheduled every {interval / 3600:g}h")
    while True:
        try:
            await cleanup_once(db, cache)
        except CancelledError:
            raise
        except Exception as e:
            logger.error(f"Summary cleanup failed: {e}")
        await sleep(interval)
