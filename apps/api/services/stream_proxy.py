"""Connection accounting and header shaping for the video streaming proxy."""

from __future__ import annotations

import logging
from typing import Dict, Mapping, Optional

from config import settings
from services.errors import ProxyOverloaded

logger = logging.getLogger(__name__)

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)
FORWARDED_RESPONSE_HEADERS = ("content-type", "content-length", "content-range", "accept-ranges")
OVERLOADED_MESSAGE = "Proxy server overloaded. Use directUrl with proper headers instead."


class ProxyLease:
    """One counted proxy connection. Releasing twice is a no-op."""

    def __init__(self, limiter: "ProxyConnectionLimiter"):
        self._limiter = limiter
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._limiter._release()


class ProxyConnectionLimiter:
    def __init__(self, max_connections: Optional[int] = None):
        self.max_connections = int(max_connections or settings.MAX_PROXY_CONNECTIONS)
        self.active = 0

    def acquire(self) -> ProxyLease:
        if self.active >= self.max_connections:
            raise ProxyOverloaded(OVERLOADED_MESSAGE)
        self.active += 1
        return ProxyLease(self)

    def _release(self) -> None:
        self.active = max(self.active - 1, 0)


def upstream_headers(range_header: Optional[str] = None) -> Dict[str, str]:
    """Browser-like request headers the video CDN expects."""
    headers = {
        "User-Agent": BROWSER_USER_AGENT,
        "Accept": "*/*",
        "Accept-Language": "en-US,en;q=0.9",
        "Accept-Encoding": "identity",
        "Referer": "https://www.youtube.com/watch",
        "Origin": "https://www.youtube.com",
        "Sec-Fetch-Dest": "video",
        "Sec-Fetch-Mode": "cors",
        "Sec-Fetch-Site": "cross-site",
        "Connection": "keep-alive",
    }
    if range_header:
        headers["Range"] = range_header
    return headers


def downstream_headers(upstream: Mapping[str, str]) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for name in FORWARDED_RESPONSE_HEADERS:
        value = upstream.get(name)
        if value:
            headers[name.title()] = value
    headers.setdefault("Content-Type", "video/mp4")
    headers.setdefault("Accept-Ranges", "bytes")
    headers["Cache-Control"] = "public, max-age=3600"
    return headers


_limiter: Optional[ProxyConnectionLimiter] = None


def get_proxy_limiter() -> ProxyConnectionLimiter:
    global _limiter
    if _limiter is None:
        _limiter = ProxyConnectionLimiter()
    return _limiter


def reset_proxy_limiter(limiter: Optional[ProxyConnectionLimiter] = None) -> None:
    global _limiter
    _limiter = limiter
