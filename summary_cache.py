#!/usr/bin/env python3
"""
In-memory cache of completed summaries.

The cache is derived state: it only ever holds ``completed`` summary text,
is consulted before the store on reads, and can be dropped and rebuilt from
the store at any time. Entries expire after a TTL and the least recently
used entry is evicted when the cache is full.
"""

from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock
from time import monotonic
from typing import Callable, Iterable, Optional

from config import config, get_logger

logger = get_logger("summary_cache")


@dataclass
class SummaryCacheEntry:
    summary_text: str
    expires_at: float


class SummaryCache:
    """Bounded LRU + TTL cache mapping entry id to summary text."""

    def __init__(
        self,
        max_entries: Optional[int] = None,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = monotonic,
    ):
        self.max_entries = max_entries or config.SUMMARY_CACHE_MAX_ENTRIES
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else config.SUMMARY_CACHE_TTL_HOURS * 3600
        self._clock = clock
        self._entries: "OrderedDict[int, SummaryCacheEntry]" = OrderedDict()
        self._lock = Lock()
        self.hits = 0
        self.misses = 0

    def get(self, entry_id: int) -> Optional[str]:
        """Return cached text, or None on a miss or an expired entry."""
        with self._lock:
            item = self._entries.get(entry_id)
            if item is None:
                self.misses += 1
                return None
            if item.expires_at <= self._clock():
                del self._entries[entry_id]
                self.misses += 1
                return None
            self._entries.move_to_end(entry_id)
            self.hits += 1
            return item.summary_text

    def set_completed(self, entry_id: int, summary_text: str) -> None:
        with self._lock:
            self._entries[entry_id] = SummaryCacheEntry(summary_text, self._clock() + self.ttl_seconds)
            self._entries.move_to_end(entry_id)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Evicted summary for entry {evicted}")

    def remove(self, entry_id: int) -> bool:
        with self._lock:
            return self._entries.pop(entry_id, None) is not None

    def remove_many(self, entry_ids: Iterable[int]) -> int:
        removed = 0
        with self._lock:
            for entry_id in entry_ids:
                if self._entries.pop(entry_id, None) is not None:
                    removed += 1
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def purge_expired(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, v in self._entries.items() if v.expires_at <= now]
            for k in expired:
                del self._entries[k]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, entry_id: int) -> bool:
        return self.get(entry_id) is not None
