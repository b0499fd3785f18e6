#!/usr/bin/env python3
"""
Utility classes and functions for the feed keeper.

This module contains shared utilities used by the sync engine, the image
proxy and the summary worker: rate limiting, time helpers, signed-int64
encoding for SQLite keys and HTML-to-text conversion for summary input.
"""

from asyncio import Lock, sleep
from time import time
from typing import Optional
import re

from bs4 import BeautifulSoup
from markdownify import markdownify as md

from config import get_logger

# Module-specific logger
logger = get_logger("utils")


class RateLimiter:
    """A simple interval rate limiter for controlling request rates.

    Ensures requests don't exceed a specified rate by introducing delays
    when necessary. Shared by concurrent callers through an asyncio lock.
    """

    def __init__(self, requests_per_minute: int):
        """Initialize the rate limiter.

        Args:
            requests_per_minute: Maximum number of requests allowed per minute.
                                If 0 or negative, no rate limiting is applied.
        """
        self.requests_per_minute = requests_per_minute
        self.min_interval = 60.0 / requests_per_minute if requests_per_minute > 0 else 0
        self.last_request_time = 0
        self._lock = Lock()

    async def acquire(self):
        """Acquire permission to make a request, waiting if necessary to respect rate limits."""
        if self.min_interval <= 0:
            return  # No rate limiting

        async with self._lock:
            current_time = time()
            time_since_last = current_time - self.last_request_time

            if time_since_last < self.min_interval:
                wait_time = self.min_interval - time_since_last
                logger.debug(f"Rate limiting: waiting {wait_time:.2f} seconds")
                await sleep(wait_time)

            self.last_request_time = time()


def now_ts() -> int:
    """Current Unix time in whole seconds, the timestamp unit used by the store."""
    return int(time())


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "1h 23m 45s")
    """
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:  # Always show seconds if nothing else
        parts.append(f"{secs}s")

    return " ".join(parts)


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Truncate a string to a maximum length, adding a suffix if truncated."""
    if not text or len(text) <= max_length:
        return text

    if len(suffix) >= max_length:
        return text[:max_length]

    return text[:max_length - len(suffix)] + suffix


def html_to_text(html_content: Optional[str], max_length: Optional[int] = None) -> str:
    """Convert (already sanitized) HTML into compact Markdown text.

    Used to build provider input for summaries and to measure how much
    readable text an extracted article carries. Images are dropped and
    runs of blank lines collapsed.
    """
    if not html_content:
        return ""
    soup = BeautifulSoup(html_content, 'html.parser')
    for img in soup.find_all('img'):
        img.decompose()
    # wrap_width=0 keeps URLs on a single line
    text = md(str(soup), heading_style="ATX", wrap_width=0)
    text = re.sub(r'\n{3,}', '\n\n', text).strip()
    if max_length:
        text = truncate_string(text, max_length)
    return text


INT64_MASK = (1 << 64) - 1


def encode_int64(value: Optional[int]) -> Optional[int]:
    """Encode an unsigned 64-bit value into SQLite-compatible signed range."""
    if value is None:
        return None
    masked = value & INT64_MASK
    if masked >= (1 << 63):
        masked -= 1 << 64
    return masked
