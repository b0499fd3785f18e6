from urllib.parse import parse_qs, urlsplit

from bs4 import BeautifulSoup

from image_proxy import decode_target, verify_signature
from sanitizer import SanitizePolicy, is_tracking_image, sanitize_html, strip_tracking_params

POLICY = SanitizePolicy(
    tracking_params=["utm_*", "fbclid"],
    tracking_hosts=["pixel.*", "*.doubleclick.net"],
)
BASE = "https://example.com/articles/1"


def test_scripts_handlers_and_javascript_urls_are_removed():
    html = (
        '<p onclick="steal()" style="color:red">Hello<script>alert(1)</script>'
        '<a href="javascript:alert(2)">bad</a><iframe src="https://evil.example/"></iframe></p>'
    )
    out = sanitize_html(html, base_url=BASE, policy=POLICY)
    assert "script" not in out
    assert "alert" not in out
    assert "onclick" not in out
    assert "style" not in out
    assert "iframe" not in out
    assert "javascript" not in out
    assert "Hello" in out
    assert "bad" in out


def test_tracking_params_are_stripped_and_links_made_absolute():
    html = '<a href="/post?utm_source=rss&amp;id=3&amp;fbclid=abc">read</a>'
    out = sanitize_html(html, base_url=BASE, policy=POLICY)
    link = BeautifulSoup(out, "html.parser").a
    assert link["href"] == "https://example.com/post?id=3"
    assert link["rel"] == ["noopener", "noreferrer"]


def test_strip_tracking_params_leaves_clean_urls_untouched():
    url = "https://example.com/a?b=1&c=2#frag"
    assert strip_tracking_params(url, POLICY) == url
    assert strip_tracking_params("https://example.com/?utm_medium=x", POLICY) == "https://example.com/"


def test_strip_tracking_params_keeps_other_pieces_verbatim():
    assert strip_tracking_params("https://example.com/p?foo&utm_source=x", POLICY) == "https://example.com/p?foo"
    assert (
        strip_tracking_params("https://example.com/s?q=a%20b+c&fbclid=1&tag=%7Ex#top", POLICY)
        == "https://example.com/s?q=a%20b+c&tag=%7Ex#top"
    )
    assert strip_tracking_params("https://example.com/?utm%5Fsource=x&id=3", POLICY) == "https://example.com/?id=3"


def test_tracking_pixels_are_removed_and_real_images_kept():
    html = (
        '<img src="https://pixel.example.com/open.gif">'
        '<img src="https://ad.doubleclick.net/x.png">'
        '<img src="/spacer.gif" width="1" height="1">'
        '<img src="/photo.jpg" alt="photo" width="640">'
    )
    out = sanitize_html(html, base_url=BASE, policy=POLICY)
    images = BeautifulSoup(out, "html.parser").find_all("img")
    assert [img["src"] for img in images] == ["https://example.com/photo.jpg"]


def test_is_tracking_image_matches_bare_domain_for_wildcard_pattern():
    tag = BeautifulSoup('<img src="https://doubleclick.net/p.gif">', "html.parser").img
    assert is_tracking_image(tag, POLICY)


def test_relative_image_without_base_is_dropped():
    out = sanitize_html('<p>x<img src="/rel.png"></p>', base_url=None, policy=POLICY)
    assert "img" not in out


def test_data_images_allowed_but_svg_rejected():
    png = '<img src="data:image/png;base64,iVBORw0KGgo=">'
    svg = '<img src="data:image/svg+xml;base64,PHN2Zz4=">'
    assert "data:image/png" in sanitize_html(png, policy=POLICY)
    assert "img" not in sanitize_html(svg, policy=POLICY)


def test_images_rewritten_to_signed_proxy_urls():
    secret = b"s" * 32
    out = sanitize_html('<img src="https://cdn.example.com/a.png?utm_source=x">', policy=POLICY, proxy_secret=secret)
    src = BeautifulSoup(out, "html.parser").img["src"]
    assert src.startswith("/api/proxy/image?")
    query = parse_qs(urlsplit(src).query)
    target = decode_target(query["url"][0])
    assert target == "https://cdn.example.com/a.png"
    assert verify_signature(target, query["s"][0], secret)


def test_output_is_deterministic_and_empty_input_is_empty():
    html = '<div><h2>Title</h2><ul><li>a</li></ul><unknown>kept text</unknown></div>'
    first = sanitize_html(html, base_url=BASE, policy=POLICY)
    assert first == sanitize_html(html, base_url=BASE, policy=POLICY)
    assert "unknown" not in first
    assert "kept text" in first
    assert sanitize_html("", policy=POLICY) == ""
    assert sanitize_html(None, policy=POLICY) == ""
