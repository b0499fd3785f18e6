#!/usr/bin/env python3
"""
Summary request path, work queue and worker.

Each entry has at most one summary record, moving through
``pending -> processing -> completed | failed``. Requests create or attach
to that record and put the entry id on an in-memory queue; the worker
claims the record in the store with a lease, calls the provider and writes
the outcome back only while it still holds the claim. Records whose lease
ran out (a crashed or stalled worker) are picked up again by the sweeper.

The store is the source of truth. The queue and the cache are rebuilt from
it on startup (``sweep`` and ``warm_cache``).
"""

from asyncio import CancelledError, Queue, QueueFull, TimeoutError, create_task, gather, sleep, wait_for
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Set
from uuid import uuid4

from config import config, get_logger
from errors import DatabaseError, ProviderError
from summary_cache import SummaryCache
from telemetry import trace_span
from utils import html_to_text, now_ts

logger = get_logger("summary_worker")

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"


@dataclass
class SummaryView:
    """What a reader sees of a summary record."""

    entry_id: int
    status: str
    summary_text: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "SummaryView":
        return cls(
            entry_id=record['entry_id'],
            status=record['status'],
            summary_text=record.get('summary_text'),
            error_message=record.get('error_message'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SummaryService:
    """Accepts summary requests and runs the summarization worker."""

    def __init__(
        self,
        db,
        provider,
        cache: Optional[SummaryCache] = None,
        queue_size: Optional[int] = None,
        lease_seconds: Optional[int] = None,
        provider_timeout: Optional[float] = None,
    ):
        self.db = db
        self.provider = provider
        self.cache = cache if cache is not None else SummaryCache()
        self.queue: Queue = Queue(maxsize=queue_size or config.SUMMARY_QUEUE_SIZE)
        self.lease_seconds = lease_seconds or config.SUMMARY_LEASE_SECONDS
        self.provider_timeout = provider_timeout or config.SUMMARIZER_HTTP_TIMEOUT
        # Entry ids that are queued or being processed
        self._in_flight: Set[int] = set()
        self._tasks: List[Any] = []

    # ------------------------------------------------------------------
    # Request path
    # ------------------------------------------------------------------
    def enqueue(self, entry_id: int) -> bool:
        """Queue an entry unless it is already queued or in flight."""
        if entry_id in self._in_flight:
            return False
        try:
            self.queue.put_nowait(entry_id)
        except QueueFull:
            logger.warning(f"Summary queue full; entry {entry_id} left for the next sweep")
            return False
        self._in_flight.add(entry_id)
        return True

    @trace_span(
        "summary.request",
        tracer_name="summary_worker",
        attr_from_args=lambda self, entry_id, force=False: {"entry.id": entry_id, "summary.force": force},
    )
    async def request(self, entry_id: int, force: bool = False) -> Optional[SummaryView]:
        """Request a summary for an entry.

        Returns the current view of the record (``pending`` for new work),
        or None when the entry does not exist.
        """
        if not force:
            cached = self.cache.get(entry_id)
            if cached is not None:
                return SummaryView(entry_id=entry_id, status=COMPLETED, summary_text=cached)
        else:
            self.cache.remove(entry_id)

        result = await self.db.execute('request_summary', entry_id=entry_id, now=now_ts(), force=force)
        record = result['record']
        if record is None:
            return None
        if result['enqueue']:
            self.enqueue(entry_id)
        elif record['status'] == COMPLETED and record.get('summary_text'):
            self.cache.set_completed(entry_id, record['summary_text'])
        return SummaryView.from_record(record)

    async def get(self, entry_id: int) -> Optional[SummaryView]:
        """Read the summary state without creating work."""
        cached = self.cache.get(entry_id)
        if cached is not None:
            return SummaryView(entry_id=entry_id, status=COMPLETED, summary_text=cached)
        record = await self.db.execute('get_summary', entry_id=entry_id)
        if record is None:
            return None
        if record['status'] == COMPLETED and record.get('summary_text'):
            self.cache.set_completed(entry_id, record['summary_text'])
        return SummaryView.from_record(record)

    async def delete(self, entry_id: int) -> bool:
        """Remove the record and any cached text for an entry."""
        self.cache.remove(entry_id)
        return await self.db.execute('delete_summary', entry_id=entry_id)

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------
    @trace_span(
        "summary.process",
        tracer_name="summary_worker",
        attr_from_args=lambda self, entry_id: {"entry.id": entry_id},
    )
    async def process(self, entry_id: int) -> Optional[str]:
        """Claim and summarize one entry.

        Returns the status written back, or None when the record could not be
        claimed (already done, deleted, or leased by someone else).
        """
        token = uuid4().hex
        claimed = await self.db.execute(
            'claim_summary', entry_id=entry_id, claim_token=token, now=now_ts(), lease_seconds=self.lease_seconds
        )
        if claimed is None:
            logger.debug(f"Summary for entry {entry_id} not claimable; skipping")
            return None

        entry = await self.db.execute('get_entry', entry_id=entry_id)
        if entry is None:
            logger.info(f"Entry {entry_id} disappeared; dropping its summary record")
            await self.db.execute('delete_summary', entry_id=entry_id)
            self.cache.remove(entry_id)
            return None

        text = html_to_text(entry.get('content')) or (entry.get('title') or "")
        try:
            summary = await wait_for(self.provider.summarize(entry.get('url'), text), timeout=self.provider_timeout)
        except TimeoutError:
            logger.warning(f"⏱️ Summary provider timed out for entry {entry_id}; returning it to pending")
            await self.db.execute('release_summary', entry_id=entry_id, claim_token=token, now=now_ts())
            return PENDING
        except ProviderError as e:
            logger.warning(f"Summary failed for entry {entry_id}: {e}")
            await self.db.execute(
                'fail_summary', entry_id=entry_id, claim_token=token, error_message=str(e) or type(e).__name__, now=now_ts()
            )
            return FAILED

        stored = await self.db.execute(
            'complete_summary', entry_id=entry_id, claim_token=token, summary_text=summary, now=now_ts()
        )
        if not stored:
            logger.warning(f"Lost claim on entry {entry_id} before completion; discarding result")
            return None
        self.cache.set_completed(entry_id, summary)
        logger.debug(f"Summary completed for entry {entry_id}: {len(summary)} chars")
        return COMPLETED

    async def run_worker(self) -> None:
        """Process queued entry ids until cancelled."""
        logger.info("🧠 Summary worker started")
        while True:
            entry_id = await self.queue.get()
            try:
                await self.process(entry_id)
            except CancelledError:
                raise
            except DatabaseError as e:
                logger.error(f"Store error while summarizing entry {entry_id}: {e}")
            except Exception as e:
                logger.error(f"💥 Unexpected error summarizing entry {entry_id}: {e}", exc_info=True)
            finally:
                self._in_flight.discard(entry_id)
                self.queue.task_done()

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------
    async def sweep(self) -> int:
        """Queue every pending or lease-expired record once; returns how many were queued."""
        entry_ids = await self.db.execute('list_incomplete_summaries', now=now_ts())
        queued = sum(1 for entry_id in entry_ids if self.enqueue(entry_id))
        if queued:
            logger.info(f"🧹 Summary sweep queued {queued} of {len(entry_ids)} incomplete records")
        return queued

    async def run_sweeper(self, interval: Optional[float] = None) -> None:
        """Sweep periodically until cancelled."""
        interval = interval or config.SUMMARY_SWEEP_SECONDS
        while True:
            await sleep(interval)
            try:
                await self.sweep()
            except CancelledError:
                raise
            except Exception as e:
                logger.error(f"Summary sweep failed: {e}")

    async def warm_cache(self) -> int:
        """Load the most recent completed summaries into the cache."""
        rows = await self.db.execute('list_completed_summaries', limit=self.cache.max_entries)
        # Oldest first so the newest end up most recently used
        for row in reversed(rows):
            if row.get('summary_text'):
                self.cache.set_completed(row['entry_id'], row['summary_text'])
        logger.info(f"Summary cache warmed with {len(self.cache)} entries")
        return len(self.cache)

    async def start(self) -> None:
        """Warm the cache, recover incomplete records and start the background tasks."""
        await self.warm_cache()
        await self.sweep()
        self._tasks = [
            create_task(self.run_worker(), name="summary-worker"),
            create_task(self.run_sweeper(), name="summary-sweeper"),
        ]

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.provider.close()
        logger.info("Summary worker stopped")
