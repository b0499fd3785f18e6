#!/usr/bin/env python3
"""
Full-article extraction ("reader mode").

Fetches an article page through the guarded fetcher, isolates the main
content with readability-lxml and sanitizes the result. Pages whose
extracted text is shorter than MIN_ARTICLE_LENGTH are treated as having
no article body.
"""

from asyncio import get_running_loop
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional, Tuple

from bs4 import BeautifulSoup
from lxml.etree import ParserError as LxmlParserError
from readability import Document
from readability.readability import Unparseable

from config import config, get_logger
from errors import ExtractionError
from sanitizer import SanitizePolicy, sanitize_html
from telemetry import trace_span

logger = get_logger("extractor")

ARTICLE_ACCEPT = "text/html,application/xhtml+xml;q=0.9,*/*;q=0.5"


@dataclass
class ExtractedContent:
    url: str
    title: Optional[str]
    content: str


def _run_readability(html: str) -> Tuple[Optional[str], str]:
    """Parse with readability (CPU-bound; runs in an executor)."""
    document = Document(html)
    return document.short_title(), document.summary(html_partial=True)


def text_length(html: str) -> int:
    """Length of the visible text with whitespace collapsed."""
    text = BeautifulSoup(html, "html.parser").get_text(" ", strip=True)
    return len(" ".join(text.split()))


class ContentExtractor:
    """Extract readable article content from a URL."""

    def __init__(
        self,
        fetcher,
        executor: Optional[ThreadPoolExecutor] = None,
        min_length: Optional[int] = None,
        proxy_secret: Optional[bytes] = None,
    ):
        self.fetcher = fetcher
        self.executor = executor
        self.min_length = config.MIN_ARTICLE_LENGTH if min_length is None else min_length
        self.proxy_secret = proxy_secret

    @trace_span(
        "extract_article",
        tracer_name="extractor",
        attr_from_args=lambda self, url: {"http.url": url},
    )
    async def extract(self, url: str) -> ExtractedContent:
        """Fetch and extract an article.

        Raises:
            SSRFError: the guard rejected the URL or a redirect target.
            FetchError: the page could not be fetched.
            ExtractionError: the page has no extractable article body.
        """
        result = await self.fetcher.fetch(url, accept=ARTICLE_ACCEPT)
        if result.not_modified or not result.body:
            raise ExtractionError(f"Empty response for {url}")
        content_type = result.content_type
        if content_type and "html" not in content_type and "xml" not in content_type:
            raise ExtractionError(f"Not an HTML page ({content_type}): {url}")

        html = result.text()
        loop = get_running_loop()
        try:
            title, summary = await loop.run_in_executor(self.executor, _run_readability, html)
        except (Unparseable, LxmlParserError, ValueError) as e:
            raise ExtractionError(f"Readability failed for {url}: {e}") from e

        content = sanitize_html(summary, base_url=result.url, policy=SanitizePolicy.from_config(), proxy_secret=self.proxy_secret)
        length = text_length(content)
        if length < self.min_length:
            raise ExtractionError(f"Extracted text too short ({length} < {self.min_length} chars): {url}")

        logger.debug(f"Extracted {length} chars from {url}")
        return ExtractedContent(url=result.url, title=(title or "").strip() or None, content=content)
