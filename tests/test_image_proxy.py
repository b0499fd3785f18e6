from urllib.parse import parse_qs, urlsplit

import pytest

import ssrf
from conftest import FakeFetcher, make_result
from errors import FetchError, InvalidImageError, SignatureError, SSRFError
from image_proxy import (
    ImageProxy,
    canonicalize_url,
    create_proxy_url,
    encode_target,
    proxy_object_id,
    sign_url,
    verify_signature,
)

SECRET = b"k" * 32
IMAGE_URL = "https://cdn.example.com/img/cat.png"
PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


def _params(url, secret=SECRET):
    query = parse_qs(urlsplit(create_proxy_url(url, secret)).query)
    return query["url"][0], query["s"][0]


def test_signature_verifies_only_with_same_secret_and_url():
    signature = sign_url(IMAGE_URL, SECRET)
    assert verify_signature(IMAGE_URL, signature, SECRET)
    assert not verify_signature(IMAGE_URL, signature, b"x" * 32)
    assert not verify_signature(IMAGE_URL + "?v=2", signature, SECRET)
    assert not verify_signature(IMAGE_URL, "", SECRET)
    assert not verify_signature(IMAGE_URL, "sïgnature", SECRET)


def test_canonicalization_is_shared_by_equivalent_urls():
    assert canonicalize_url("HTTPS://CDN.Example.com:443/img/cat.png#frag") == IMAGE_URL
    assert canonicalize_url("http://example.com") == "http://example.com/"
    assert canonicalize_url("http://example.com:8080/a") == "http://example.com:8080/a"
    assert proxy_object_id("HTTPS://cdn.example.com/img/cat.png") == proxy_object_id(IMAGE_URL)
    assert proxy_object_id(IMAGE_URL) != proxy_object_id(IMAGE_URL + "?size=2")
    assert verify_signature("https://CDN.example.com/img/cat.png", sign_url(IMAGE_URL, SECRET), SECRET)


def test_proxy_url_shape():
    url = create_proxy_url(IMAGE_URL, SECRET)
    assert url.startswith("/api/proxy/image?url=")
    assert "&s=" in url
    assert "=" not in url.split("url=", 1)[1].split("&", 1)[0]


@pytest.mark.asyncio
async def test_bad_signature_is_rejected_without_any_io(db, monkeypatch):
    async def _no_dns(host, port):
        raise AssertionError("DNS must not be consulted")
    monkeypatch.setattr(ssrf, 'resolve_addresses', _no_dns)
    fetcher = FakeFetcher()
    proxy = ImageProxy(db, fetcher, secret=SECRET)
    encoded, signature = _params(IMAGE_URL)

    tampered = ("A" if signature[0] != "A" else "B") + signature[1:]
    with pytest.raises(SignatureError):
        await proxy.serve(encoded, tampered)
    with pytest.raises(SignatureError):
        await proxy.serve(encode_target("https://evil.example.com/x.png"), signature)
    with pytest.raises(SignatureError):
        await proxy.serve(None, signature)
    with pytest.raises(SignatureError):
        await proxy.serve("!!not-base64!!", signature)
    assert fetcher.calls == []


@pytest.mark.asyncio
async def test_image_is_fetched_once_then_served_from_cache(db, public_dns):
    fetcher = FakeFetcher({
        IMAGE_URL: make_result(IMAGE_URL, PNG, headers={"Content-Type": "image/png", "ETag": '"v1"'}),
    })
    proxy = ImageProxy(db, fetcher, secret=SECRET)
    encoded, signature = _params(IMAGE_URL)

    first = await proxy.serve(encoded, signature)
    second = await proxy.serve(encoded, signature)

    assert first.data == PNG
    assert first.content_type == "image/png"
    assert first.etag == '"v1"'
    assert not first.from_cache
    assert second.from_cache
    assert second.data == PNG
    assert len(fetcher.calls) == 1
    assert fetcher.calls[0][1]["accept"] == "image/*"


@pytest.mark.asyncio
async def test_expired_cache_revalidates_with_stored_validators(db, public_dns):
    fetcher = FakeFetcher({
        IMAGE_URL: make_result(IMAGE_URL, PNG, headers={"Content-Type": "image/png", "ETag": '"v1"'}),
    })
    proxy = ImageProxy(db, fetcher, secret=SECRET)
    proxy.ttl_seconds = 0
    encoded, signature = _params(IMAGE_URL)

    await proxy.serve(encoded, signature)
    fetcher.responses[IMAGE_URL] = make_result(IMAGE_URL, status=304)
    revalidated = await proxy.serve(encoded, signature)

    assert revalidated.from_cache
    assert revalidated.data == PNG
    assert fetcher.calls[1][1]["etag"] == '"v1"'


@pytest.mark.asyncio
async def test_non_image_content_is_rejected(db, public_dns):
    fetcher = FakeFetcher({
        IMAGE_URL: make_result(IMAGE_URL, b"<html></html>", headers={"Content-Type": "text/html; charset=utf-8"}),
    })
    proxy = ImageProxy(db, fetcher, secret=SECRET)
    with pytest.raises(InvalidImageError):
        await proxy.serve(*_params(IMAGE_URL))
    assert await db.execute('get_image', object_type='proxy', object_id=proxy_object_id(IMAGE_URL)) is None


@pytest.mark.asyncio
async def test_signed_private_target_is_still_refused(db, public_dns):
    target = "http://169.254.169.254/latest/meta-data"
    fetcher = FakeFetcher()
    proxy = ImageProxy(db, fetcher, secret=SECRET)
    with pytest.raises(SSRFError):
        await proxy.serve(*_params(target))
    assert fetcher.calls == []


@pytest.mark.asyncio
async def test_origin_failure_surfaces_as_fetch_error(db, public_dns):
    proxy = ImageProxy(db, FakeFetcher(), secret=SECRET)
    with pytest.raises(FetchError):
        await proxy.serve(*_params(IMAGE_URL))
