#!/usr/bin/env python3
"""
HTML sanitizer for feed and article content.

``sanitize_html`` turns untrusted HTML into markup that is safe to render
and carries as little tracking surface as possible. Passes run in a fixed
order:

1. allow-list elements and attributes (scripts, event handlers, inline
   styles and non-http(s) URLs are removed)
2. strip tracking query parameters from link and image URLs
3. drop images served from tracking hosts or declared as 1x1 pixels
4. make relative link and image URLs absolute against the base URL
5. optionally point images at the signed image proxy

The function performs no I/O and gives identical output for identical input.
"""

from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import List, Optional
from urllib.parse import unquote_plus, urljoin, urlsplit, urlunsplit

from bs4 import BeautifulSoup, Comment, Doctype, ProcessingInstruction, Declaration, CData

from config import config, get_logger
from image_proxy import create_proxy_url

logger = get_logger("sanitizer")

# Removed together with everything inside them
DROP_WITH_CONTENT = {
    "script", "style", "iframe", "frame", "frameset", "object", "embed", "applet",
    "form", "input", "button", "select", "textarea", "noscript", "template",
    "svg", "math", "meta", "base", "link", "head", "title", "audio", "video", "canvas",
}

ALLOWED_TAGS = {
    "p", "br", "hr", "a", "strong", "em", "b", "i", "u", "s", "sub", "sup", "small",
    "ul", "ol", "li", "dl", "dt", "dd", "blockquote", "q", "cite", "pre", "code", "kbd",
    "img", "h1", "h2", "h3", "h4", "h5", "h6", "div", "span", "figure", "figcaption",
    "table", "thead", "tbody", "tfoot", "tr", "th", "td", "caption", "abbr", "time", "mark",
}

ALLOWED_ATTRIBUTES = {
    "a": {"href", "title"},
    "img": {"src", "alt", "title", "width", "height"},
    "th": {"colspan", "rowspan"},
    "td": {"colspan", "rowspan"},
    "abbr": {"title"},
    "time": {"datetime"},
    "blockquote": {"cite"},
    "q": {"cite"},
}

URL_ATTRIBUTES = {("a", "href"), ("img", "src"), ("blockquote", "cite"), ("q", "cite")}
SAFE_LINK_SCHEMES = {"http", "https", "mailto"}
SAFE_IMAGE_SCHEMES = {"http", "https"}
LINK_REL = "noopener noreferrer"


@dataclass
class SanitizePolicy:
    """Tracking patterns applied by the sanitizer.

    Parameter patterns match query parameter names; host patterns match image
    host names. Both use shell-style wildcards and are compared lowercase. A
    host pattern ``*.example.com`` also matches ``example.com`` itself.
    """

    tracking_params: List[str] = field(default_factory=list)
    tracking_hosts: List[str] = field(default_factory=list)

    @classmethod
    def from_config(cls) -> "SanitizePolicy":
        return cls(
            tracking_params=list(config.TRACKING_PARAM_PATTERNS),
            tracking_hosts=list(config.TRACKING_HOST_PATTERNS),
        )

    def is_tracking_param(self, name: str) -> bool:
        lowered = name.lower()
        return any(fnmatchcase(lowered, pattern) for pattern in self.tracking_params)

    def is_tracking_host(self, host: str) -> bool:
        lowered = host.lower().rstrip(".")
        for pattern in self.tracking_hosts:
            if fnmatchcase(lowered, pattern):
                return True
            if pattern.startswith("*.") and lowered == pattern[2:]:
                return True
        return False


def strip_tracking_params(url: str, policy: SanitizePolicy) -> str:
    """Remove tracking query parameters, leaving the rest of the URL untouched."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.query:
        return url
    # Kept pieces stay byte-for-byte; only the name is decoded for matching
    pieces = parts.query.split("&")
    kept = [p for p in pieces if not (p and policy.is_tracking_param(unquote_plus(p.partition("=")[0])))]
    if len(kept) == len(pieces):
        return url
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "&".join(p for p in kept if p), parts.fragment))


def _scheme(value: str) -> Optional[str]:
    head, sep, _ = value.partition(":")
    if not sep or "/" in head or "?" in head or "#" in head:
        return None
    return head.strip().lower()


def _is_data_image(value: str) -> bool:
    return value.lower().startswith("data:image/") and not value.lower().startswith("data:image/svg")


def _parse_dimension(value) -> Optional[int]:
    if value is None:
        return None
    digits = str(value).strip().lower().removesuffix("px").strip()
    try:
        return int(float(digits))
    except ValueError:
        return None


def is_tracking_image(tag, policy: SanitizePolicy) -> bool:
    """True for pixels: tracking hosts, or every declared dimension at most 1."""
    src = tag.get("src") or ""
    if src and not _is_data_image(src):
        try:
            host = urlsplit(src).hostname
        except ValueError:
            host = None
        if host and policy.is_tracking_host(host):
            return True
    dims = [d for d in (_parse_dimension(tag.get("width")), _parse_dimension(tag.get("height"))) if d is not None]
    return bool(dims) and all(d <= 1 for d in dims)


def _absolutize(value: str, base_url: Optional[str]) -> Optional[str]:
    """Return an absolute http(s) URL, or None when the value cannot be resolved."""
    scheme = _scheme(value)
    if scheme in SAFE_IMAGE_SCHEMES:
        return value
    if scheme is not None:
        return None
    if not base_url:
        return None
    try:
        resolved = urljoin(base_url, value)
    except ValueError:
        return None
    return resolved if _scheme(resolved) in SAFE_IMAGE_SCHEMES else None


def _apply_allow_list(soup: BeautifulSoup) -> None:
    for node in soup.find_all(string=lambda s: isinstance(s, (Comment, Doctype, ProcessingInstruction, Declaration, CData))):
        node.extract()

    for tag in soup.find_all(DROP_WITH_CONTENT):
        tag.decompose()

    for tag in soup.find_all(True):
        if tag.name not in ALLOWED_TAGS:
            tag.unwrap()
            continue
        allowed = ALLOWED_ATTRIBUTES.get(tag.name, set())
        for attr in list(tag.attrs):
            if attr.lower() not in allowed:
                del tag[attr]
                continue
            if (tag.name, attr) not in URL_ATTRIBUTES:
                continue
            value = str(tag[attr]).strip()
            scheme = _scheme(value)
            if tag.name == "img":
                ok = scheme is None or scheme in SAFE_IMAGE_SCHEMES or _is_data_image(value)
            else:
                ok = scheme is None or scheme in SAFE_LINK_SCHEMES
            if ok and value:
                tag[attr] = value
            else:
                del tag[attr]
        if tag.name == "img" and not tag.get("src"):
            tag.decompose()


def sanitize_html(
    html: Optional[str],
    base_url: Optional[str] = None,
    policy: Optional[SanitizePolicy] = None,
    proxy_secret: Optional[bytes] = None,
) -> str:
    """Sanitize untrusted HTML.

    Args:
        html: Raw HTML fragment or document.
        base_url: URL of the entry or article, used to resolve relative URLs.
        policy: Tracking patterns; defaults to the configured policy.
        proxy_secret: When given, image sources are rewritten to signed
            image proxy URLs (``data:`` images are left inline).

    Returns:
        Sanitized HTML fragment ('' for empty input).
    """
    if not html:
        return ""
    policy = policy or SanitizePolicy.from_config()
    soup = BeautifulSoup(html, "html.parser")

    # 1. allow-list
    _apply_allow_list(soup)

    # 2. tracking parameters
    for tag in soup.find_all(["a", "img"]):
        attr = "href" if tag.name == "a" else "src"
        value = tag.get(attr)
        if value and not value.lower().startswith(("data:", "mailto:")):
            tag[attr] = strip_tracking_params(value, policy)

    # 3. tracking images
    for img in soup.find_all("img"):
        if is_tracking_image(img, policy):
            img.decompose()

    # 4. absolute URLs
    for tag in soup.find_all(["a", "img", "blockquote", "q"]):
        attr = "src" if tag.name == "img" else ("href" if tag.name == "a" else "cite")
        value = tag.get(attr)
        if not value or value.lower().startswith(("data:", "mailto:")):
            continue
        resolved = _absolutize(value, base_url)
        if resolved:
            tag[attr] = resolved
        elif tag.name == "img":
            tag.decompose()
        else:
            del tag[attr]

    for link in soup.find_all("a"):
        if link.get("href"):
            link["rel"] = LINK_REL

    # 5. image proxy
    if proxy_secret:
        for img in soup.find_all("img"):
            src = img.get("src")
            if not src or _is_data_image(src):
                continue
            try:
                img["src"] = create_proxy_url(src, proxy_secret)
            except ValueError:
                logger.debug(f"Dropping image with unparseable URL {src!r}")
                img.decompose()

    return str(soup).strip()
