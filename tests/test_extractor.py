import pytest

from conftest import FakeFetcher, make_result
from errors import ExtractionError, FetchError
from extractor import ContentExtractor, text_length

ARTICLE_URL = "https://news.example.com/2025/01/story"

PARAGRAPH = (
    "The city council met on Tuesday evening to discuss the new transit plan, "
    "which would add three bus lines and extend service hours on weekends. "
    "Residents spoke for and against the proposal for more than two hours."
)

ARTICLE_PAGE = f"""
<html>
  <head><title>Council approves transit plan | Example News</title></head>
  <body>
    <nav><a href="/">Home</a> <a href="/sports">Sports</a></nav>
    <article>
      <h1>Council approves transit plan</h1>
      <p>{PARAGRAPH}</p>
      <p>{PARAGRAPH} <a href="/related?utm_campaign=feed">Related coverage</a>.</p>
      <p>{PARAGRAPH}<script>track()</script></p>
      <p><img src="/images/bus.jpg" alt="A bus"></p>
      <p>{PARAGRAPH}</p>
    </article>
    <footer>Copyright Example News</footer>
  </body>
</html>
""".encode("utf-8")


@pytest.mark.asyncio
async def test_article_body_is_extracted_and_sanitized():
    fetcher = FakeFetcher({
        ARTICLE_URL: make_result(ARTICLE_URL, ARTICLE_PAGE, headers={"Content-Type": "text/html; charset=utf-8"}),
    })
    extractor = ContentExtractor(fetcher, min_length=200)

    extracted = await extractor.extract(ARTICLE_URL)

    assert "transit plan" in extracted.content
    assert "script" not in extracted.content
    assert "utm_campaign" not in extracted.content
    assert extracted.title
    assert fetcher.calls[0][1]["accept"].startswith("text/html")


@pytest.mark.asyncio
async def test_short_pages_are_not_articles():
    page = b"<html><body><p>Tiny.</p></body></html>"
    fetcher = FakeFetcher({ARTICLE_URL: make_result(ARTICLE_URL, page, headers={"Content-Type": "text/html"})})
    with pytest.raises(ExtractionError):
        await ContentExtractor(fetcher, min_length=250).extract(ARTICLE_URL)


@pytest.mark.asyncio
async def test_non_html_responses_are_rejected():
    fetcher = FakeFetcher({
        ARTICLE_URL: make_result(ARTICLE_URL, b"%PDF-1.7", headers={"Content-Type": "application/pdf"}),
    })
    with pytest.raises(ExtractionError, match="Not an HTML page"):
        await ContentExtractor(fetcher).extract(ARTICLE_URL)


@pytest.mark.asyncio
async def test_fetch_failures_propagate():
    with pytest.raises(FetchError):
        await ContentExtractor(FakeFetcher()).extract(ARTICLE_URL)


def test_text_length_collapses_whitespace():
    assert text_length("<p>a   b</p>\n\n<p>c</p>") == len("a b c")
