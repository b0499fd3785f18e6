#!/usr/bin/env python3
"""
HTTP surface built on aiohttp.web.

Routes:
  GET    /api/proxy/image?url=<b64url>&s=<sig>   signed image proxy
  GET    /api/entries/{entry_id}/summary         summary state
  POST   /api/entries/{entry_id}/summary         request (``?force=1`` re-requests)
  DELETE /api/entries/{entry_id}/summary         remove the summary record
  GET    /health                                 store round trip
"""

from typing import Optional

from aiohttp import web

from config import config, get_logger
from errors import DatabaseError, FetchError, InvalidImageError, SignatureError, SSRFError

logger = get_logger("web")

DB_KEY = web.AppKey("db", object)
IMAGE_PROXY_KEY = web.AppKey("image_proxy", object)
SUMMARIES_KEY = web.AppKey("summaries", object)

IMAGE_CACHE_CONTROL = "public, max-age=86400"
IMAGE_CSP = "default-src 'none'; style-src 'unsafe-inline'; sandbox"


def _json_error(status: int, message: str) -> web.Response:
    return web.json_response({"error": message}, status=status)


def _entry_id(request: web.Request) -> Optional[int]:
    try:
        value = int(request.match_info["entry_id"])
    except (KeyError, ValueError):
        return None
    return value if value > 0 else None


async def proxy_image(request: web.Request) -> web.StreamResponse:
    proxy = request.app[IMAGE_PROXY_KEY]
    try:
        image = await proxy.serve(request.query.get("url"), request.query.get("s"))
    except SignatureError as e:
        logger.info(f"Rejected image proxy request: {e}")
        return _json_error(403, "Invalid signature")
    except SSRFError as e:
        logger.warning(f"Blocked image proxy target: {e}")
        return _json_error(403, "Target not allowed")
    except InvalidImageError as e:
        logger.info(f"Invalid proxied image: {e}")
        return _json_error(400, "Not an image")
    except FetchError as e:
        logger.info(f"Image fetch failed: {e}")
        return _json_error(502, "Upstream fetch failed")

    headers = {
        "Cache-Control": IMAGE_CACHE_CONTROL,
        "X-Content-Type-Options": "nosniff",
        "Content-Security-Policy": IMAGE_CSP,
    }
    if image.etag:
        headers["ETag"] = image.etag
    if image.last_modified:
        headers["Last-Modified"] = image.last_modified

    if image.etag and request.headers.get("If-None-Match") == image.etag:
        return web.Response(status=304, headers=headers)
    return web.Response(body=image.data, content_type=image.content_type, headers=headers)


async def get_summary(request: web.Request) -> web.Response:
    entry_id = _entry_id(request)
    if entry_id is None:
        return _json_error(400, "Invalid entry id")
    view = await request.app[SUMMARIES_KEY].get(entry_id)
    if view is None:
        return _json_error(404, "No summary for this entry")
    return web.json_response(view.to_dict())


async def request_summary(request: web.Request) -> web.Response:
    entry_id = _entry_id(request)
    if entry_id is None:
        return _json_error(400, "Invalid entry id")
    force = request.query.get("force", "").lower() in ("1", "true", "yes")
    view = await request.app[SUMMARIES_KEY].request(entry_id, force=force)
    if view is None:
        return _json_error(404, "Entry not found")
    status = 200 if view.status == "completed" else 202
    return web.json_response(view.to_dict(), status=status)


async def delete_summary(request: web.Request) -> web.Response:
    entry_id = _entry_id(request)
    if entry_id is None:
        return _json_error(400, "Invalid entry id")
    deleted = await request.app[SUMMARIES_KEY].delete(entry_id)
    if not deleted:
        return _json_error(404, "No summary for this entry")
    return web.Response(status=204)


async def health(request: web.Request) -> web.Response:
    try:
        counts = await request.app[DB_KEY].execute('get_status_counts')
    except DatabaseError as e:
        logger.error(f"Health check failed: {e}")
        return web.json_response({"status": "error"}, status=503)
    return web.json_response({"status": "ok", "feeds": counts.get("feed", 0), "entries": counts.get("entry", 0)})


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except DatabaseError as e:
        logger.error(f"Store error on {request.method} {request.path}: {e}")
        return _json_error(503, "Storage unavailable")
    except Exception as e:
        logger.error(f"💥 Unhandled error on {request.method} {request.path}: {e}", exc_info=True)
        return _json_error(500, "Internal error")


def create_app(db, image_proxy, summaries) -> web.Application:
    """Build the aiohttp application around already-started services."""
    app = web.Application(middlewares=[error_middleware])
    app[DB_KEY] = db
    app[IMAGE_PROXY_KEY] = image_proxy
    app[SUMMARIES_KEY] = summaries
    app.router.add_get("/api/proxy/image", proxy_image)
    app.router.add_get("/api/entries/{entry_id}/summary", get_summary)
    app.router.add_post("/api/entries/{entry_id}/summary", request_summary)
    app.router.add_delete("/api/entries/{entry_id}/summary", delete_summary)
    app.router.add_get("/health", health)
    return app


async def start_site(app: web.Application, host: Optional[str] = None, port: Optional[int] = None) -> web.AppRunner:
    """Start serving the app; returns the runner for cleanup."""
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host or config.SERVER_HOST, port or config.SERVER_PORT)
    await site.start()
    logger.info(f"🌐 Listening on http://{host or config.SERVER_HOST}:{port or config.SERVER_PORT}")
    return runner
