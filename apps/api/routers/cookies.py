"""Cookie health, forced refresh and the operator cookie override endpoints."""

from __future__ import annotations

import hmac
import json
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import HTMLResponse
from pydantic import BaseModel, ConfigDict, Field

from config import settings
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.cookie_admin import cookie_status, run_cookie_test, update_cookies
from services.cookie_refresh import get_cookie_manager
from services.errors import CredentialRefreshFailed
from services.notifications import get_operator_notifier

router = APIRouter()
admin_router = APIRouter()

MAX_COOKIE_BODY_BYTES = 1024 * 1024


class CookieHealthResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str
    state: str
    needs_refresh: bool = Field(alias="needsRefresh")
    cookies_work: bool = Field(alias="cookiesWork")
    error: Optional[str] = None


async def require_admin_secret(
    secret: Optional[str] = None,
    x_admin_secret: Optional[str] = Header(default=None),
) -> None:
    expected = (settings.ADMIN_SECRET or "").strip()
    supplied = (x_admin_secret or secret or "").strip()
    if not expected:
        raise HTTPException(status_code=503, detail="ADMIN_SECRET is not configured.")
    if not supplied or not hmac.compare_digest(supplied, expected):
        raise HTTPException(status_code=401, detail="Invalid admin secret.")


@router.get("/cookie-health", response_model=CookieHealthResponse, response_model_by_alias=True)
async def cookie_health(_auth: AuthContext = Depends(get_auth_context)):
    manager = get_cookie_manager()
    probe = await manager.probe()
    return CookieHealthResponse(
        status="healthy" if probe.valid else "unhealthy",
        state=manager.state,
        needs_refresh=manager.needs_refresh(),
        cookies_work=probe.valid,
        error=probe.error,
    )


@router.post("/cookie-refresh")
async def cookie_refresh(
    _rate_limit: None = Depends(rate_limit("cookie_refresh", limit=6, window_seconds=3600)),
    _auth: AuthContext = Depends(get_auth_context),
):
    """Force an automated login and rewrite the cookie file."""
    try:
        await get_cookie_manager().ensure_fresh(force_refresh=True)
    except CredentialRefreshFailed as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return {"success": True}


async def _read_cookie_body(request: Request) -> str:
    raw = await request.body()
    if len(raw) > MAX_COOKIE_BODY_BYTES:
        raise HTTPException(status_code=413, detail="Cookie file too large")
    text = raw.decode("utf-8", errors="replace")
    if request.headers.get("content-type", "").startswith("application/json"):
        try:
            text = str(json.loads(text).get("cookies") or "")
        except (ValueError, AttributeError) as exc:
            raise HTTPException(status_code=400, detail="Expected JSON body with a 'cookies' field") from exc
    return text


def _update_or_400(content: str) -> dict:
    result = update_cookies(content)
    if not result.get("success"):
        raise HTTPException(status_code=400, detail=result.get("message"))
    return result


@admin_router.get("/status", dependencies=[Depends(require_admin_secret)])
async def admin_cookie_status():
    return cookie_status()


@admin_router.get("/test", dependencies=[Depends(require_admin_secret)])
async def admin_cookie_test():
    return await run_cookie_test()


@admin_router.post(
    "/update",
    dependencies=[
        Depends(require_admin_secret),
        Depends(rate_limit("cookie_update", limit=30, window_seconds=3600)),
    ],
)
async def admin_cookie_update(request: Request):
    """Replace cookies from a pasted cookies.txt (text/plain or JSON {cookies})."""
    return _update_or_400(await _read_cookie_body(request))


@admin_router.post(
    "/upload",
    dependencies=[
        Depends(require_admin_secret),
        Depends(rate_limit("cookie_update", limit=30, window_seconds=3600)),
    ],
)
async def admin_cookie_upload(request: Request):
    """Replace cookies from an uploaded cookies.txt sent as the raw request body."""
    raw = await request.body()
    if len(raw) > MAX_COOKIE_BODY_BYTES:
        raise HTTPException(status_code=413, detail="Cookie file too large")
    return _update_or_400(raw.decode("utf-8", errors="replace"))


@admin_router.post("/notify-test", dependencies=[Depends(require_admin_secret)])
async def admin_notify_test():
    sent = await get_operator_notifier().notify("Test alert from the cookie admin endpoint", force=True)
    return {"success": sent}


COOKIE_FORM_HTML = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>Update YouTube cookies</title>
  <style>
    body { font-family: sans-serif; max-width: 820px; margin: 40px auto; }
    textarea { width: 100%; height: 320px; font-family: monospace; font-size: 12px; }
    #result { margin-top: 16px; white-space: pre-wrap; }
  </style>
</head>
<body>
  <h1>Update YouTube cookies</h1>
  <p>Export cookies.txt (Netscape format) from a browser logged into YouTube and paste it below.</p>
  <label>Admin secret <input type="password" id="secret"></label>
  <textarea id="cookies" placeholder="# Netscape HTTP Cookie File"></textarea>
  <button id="submit">Update cookies</button>
  <div id="result"></div>
  <script>
    document.getElementById('secret').value = new URLSearchParams(location.search).get('secret') || '';
    document.getElementById('submit').onclick = async () => {
      const resp = await fetch('update', {
        method: 'POST',
        headers: {
          'Content-Type': 'text/plain',
          'X-Admin-Secret': document.getElementById('secret').value,
        },
        body: document.getElementById('cookies').value,
      });
      document.getElementById('result').textContent = JSON.stringify(await resp.json(), null, 2);
    };
  </script>
</body>
</html>
"""


@admin_router.get("/form", response_class=HTMLResponse, dependencies=[Depends(require_admin_secret)])
async def admin_cookie_form():
    return HTMLResponse(COOKIE_FORM_HTML)
