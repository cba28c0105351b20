"""Streaming proxy for CDN video URLs that clients cannot fetch directly."""

from __future__ import annotations

import logging
from typing import Optional

import httpx
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from config import settings
from services.errors import ProxyOverloaded
from services.stream_proxy import downstream_headers, get_proxy_limiter, upstream_headers

logger = logging.getLogger(__name__)

router = APIRouter()

CHUNK_SIZE = 64 * 1024


def _build_upstream_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.PROXY_UPSTREAM_TIMEOUT_SECONDS),
        follow_redirects=True,
    )


@router.get("/stream")
async def proxy_stream(request: Request, url: Optional[str] = None):
    """Relay a video URL with browser-like headers, honouring Range requests."""
    try:
        lease = get_proxy_limiter().acquire()
    except ProxyOverloaded as exc:
        return JSONResponse(
            status_code=503,
            content={
                "error": str(exc),
                "hint": "Fetch the directUrl from the client with a browser User-Agent and Referer header.",
            },
        )

    if not url:
        lease.release()
        return JSONResponse(status_code=400, content={"error": "Missing url parameter"})

    client = _build_upstream_client()
    try:
        upstream_request = client.build_request(
            "GET",
            url,
            headers=upstream_headers(request.headers.get("range")),
        )
        upstream = await client.send(upstream_request, stream=True)
    except httpx.HTTPError as exc:
        logger.warning("Proxy upstream request failed: %s", exc)
        await client.aclose()
        lease.release()
        return JSONResponse(status_code=500, content={"error": "Failed to proxy video stream"})

    if upstream.status_code >= 400:
        logger.warning("Proxy upstream returned %s", upstream.status_code)
        await upstream.aclose()
        await client.aclose()
        lease.release()
        return JSONResponse(status_code=upstream.status_code, content={"error": "Failed to proxy video stream"})

    closed = False

    async def _cleanup():
        nonlocal closed
        if closed:
            return
        closed = True
        lease.release()
        await upstream.aclose()
        await client.aclose()

    async def _relay():
        try:
            async for chunk in upstream.aiter_raw(CHUNK_SIZE):
                yield chunk
        except httpx.HTTPError as exc:
            logger.warning("Proxy stream interrupted: %s", exc)
        finally:
            await _cleanup()

    status_code = 206 if upstream.headers.get("content-range") else upstream.status_code
    return StreamingResponse(
        _relay(),
        status_code=status_code,
        headers=downstream_headers(upstream.headers),
        # Client disconnects before the body starts never enter _relay.
        background=BackgroundTask(_cleanup),
    )
