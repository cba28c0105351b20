"""YouTube cookie freshness: staleness checks, cross-process refresh lock, automated login."""

from __future__ import annotations

import asyncio
import json
import logging
import math
import os
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from config import settings
from services.errors import CredentialRefreshFailed, LockTimeout
from services.ytdlp_cli import run_tool

logger = logging.getLogger(__name__)

NETSCAPE_HEADER = (
    "# Netscape HTTP Cookie File\n"
    "# This file is generated automatically. Do not edit.\n\n"
)
LOGIN_URL = "https://accounts.google.com/ServiceLogin?service=youtube"
YOUTUBE_HOME_URL = "https://www.youtube.com"
LOGIN_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)
VERIFICATION_URL_MARKERS = ("challenge", "verify")
PROBE_FAILURE_MARKERS = ("ERROR", "Sign in to confirm")

STATUS_FRESH = "fresh"
STATUS_STALE = "stale"
STATUS_REFRESHING = "refreshing"

LoginFlow = Callable[[str, str], Awaitable[List[Dict[str, Any]]]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user.
        return True
    return True


class CookieFileLock:
    """Exclusive lock file holding the owner's pid.

    Created with O_EXCL so only one process can hold it. Waiters poll until
    ``timeout_seconds`` and clear the file if its owner pid is gone.
    """

    def __init__(
        self,
        path: Path,
        timeout_seconds: float,
        poll_seconds: float = 2.0,
        pid_alive: Callable[[int], bool] = _pid_alive,
    ):
        self.path = Path(path)
        self.timeout_seconds = timeout_seconds
        self.poll_seconds = poll_seconds
        self._pid_alive = pid_alive
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def _try_create(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w") as fh:
            fh.write(str(os.getpid()))
        return True

    def owner_pid(self) -> Optional[int]:
        try:
            raw = self.path.read_text().strip()
        except FileNotFoundError:
            return None
        try:
            return int(raw)
        except ValueError:
            return None

    def _clear_if_abandoned(self) -> bool:
        try:
            age = time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return True
        pid = self.owner_pid()
        if pid is None:
            # Owner may not have written its pid yet.
            if age < self.poll_seconds:
                return False
        elif self._pid_alive(pid):
            return False
        logger.warning("Removing abandoned lock file %s (owner pid %s)", self.path, pid)
        self.path.unlink(missing_ok=True)
        return True

    def try_acquire(self) -> bool:
        """Take the lock without waiting; False while a live owner holds it."""
        if self._try_create() or (self._clear_if_abandoned() and self._try_create()):
            self._held = True
        return self._held

    async def acquire(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_seconds
        while True:
            if self._try_create():
                self._held = True
                return
            if self._clear_if_abandoned():
                continue
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise LockTimeout(
                    f"Timed out after {self.timeout_seconds:.0f}s waiting for cookie refresh lock {self.path}"
                )
            await asyncio.sleep(min(self.poll_seconds, remaining))

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        if self.owner_pid() == os.getpid():
            self.path.unlink(missing_ok=True)

    async def __aenter__(self) -> "CookieFileLock":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


def to_netscape(cookies: List[Dict[str, Any]]) -> str:
    """Serialize browser cookies to the Netscape format yt-dlp reads."""
    lines = []
    for cookie in cookies:
        name = cookie.get("name")
        if not name:
            continue
        domain = str(cookie.get("domain") or "")
        include_subdomains = "TRUE" if domain.startswith(".") else "FALSE"
        if not domain.startswith("."):
            domain = f".{domain}"
        expires = cookie.get("expires")
        expiry = int(math.floor(expires)) if isinstance(expires, (int, float)) and expires > 0 else 0
        lines.append(
            "\t".join(
                [
                    domain,
                    include_subdomains,
                    str(cookie.get("path") or "/"),
                    "TRUE" if cookie.get("secure") else "FALSE",
                    str(expiry),
                    str(name),
                    str(cookie.get("value") or ""),
                ]
            )
        )
    return NETSCAPE_HEADER + "\n".join(lines) + ("\n" if lines else "")


def count_cookie_lines(text: str) -> int:
    return sum(1 for line in text.splitlines() if line.strip() and not line.startswith("#"))


async def playwright_login(email: str, password: str) -> List[Dict[str, Any]]:
    """Sign in with headless Chromium and return the YouTube session cookies."""
    timeout_ms = int(settings.LOGIN_TIMEOUT_SECONDS * 1000)
    try:
        async with async_playwright() as p:
            browser = await p.chromium.launch(
                headless=True,
                args=["--no-sandbox", "--disable-blink-features=AutomationControlled"],
            )
            try:
                context = await browser.new_context(
                    user_agent=LOGIN_USER_AGENT,
                    viewport={"width": 1920, "height": 1080},
                    locale="en-US",
                )
                page = await context.new_page()
                await page.goto(LOGIN_URL, timeout=timeout_ms, wait_until="domcontentloaded")
                await page.fill('input[type="email"]', email, timeout=timeout_ms)
                await page.keyboard.press("Enter")
                await page.wait_for_selector('input[type="password"]', state="visible", timeout=timeout_ms)
                await page.fill('input[type="password"]', password, timeout=timeout_ms)
                async with page.expect_navigation(timeout=timeout_ms):
                    await page.keyboard.press("Enter")

                if any(marker in page.url for marker in VERIFICATION_URL_MARKERS):
                    raise CredentialRefreshFailed("2FA or additional verification required")

                await page.goto(YOUTUBE_HOME_URL, timeout=timeout_ms, wait_until="domcontentloaded")
                return await context.cookies()
            finally:
                await browser.close()
    except PlaywrightError as exc:
        raise CredentialRefreshFailed(f"Automated login failed: {exc}") from exc


@dataclass
class CredentialProbe:
    valid: bool
    error: Optional[str] = None
    video_title: Optional[str] = None


class CookieFreshnessManager:
    """Keeps the shared cookie file usable for yt-dlp."""

    def __init__(
        self,
        cookie_path: Optional[str] = None,
        *,
        email: Optional[str] = None,
        password: Optional[str] = None,
        login_flow: Optional[LoginFlow] = None,
        runner: Callable[..., Any] = run_tool,
        clock: Callable[[], datetime] = _utcnow,
        lock_timeout_seconds: Optional[float] = None,
        lock_poll_seconds: Optional[float] = None,
        pid_alive: Callable[[int], bool] = _pid_alive,
    ):
        self.cookie_path = Path(cookie_path or settings.YOUTUBE_COOKIE_PATH)
        self.meta_path = Path(f"{self.cookie_path}.meta.json")
        self.lock_path = Path(f"{self.cookie_path}.lock")
        self.email = settings.YOUTUBE_EMAIL if email is None else email
        self.password = settings.YOUTUBE_PASSWORD if password is None else password
        self._login_flow = login_flow or playwright_login
        self._runner = runner
        self._clock = clock
        self._lock_timeout = (
            settings.COOKIE_LOCK_TIMEOUT_SECONDS if lock_timeout_seconds is None else lock_timeout_seconds
        )
        self._lock_poll = settings.COOKIE_LOCK_POLL_SECONDS if lock_poll_seconds is None else lock_poll_seconds
        self._pid_alive = pid_alive
        self._local_lock = asyncio.Lock()
        self._refreshing = False

    @property
    def refresh_after(self) -> timedelta:
        hours = float(settings.COOKIE_HARD_EXPIRY_HOURS) * float(settings.COOKIE_REFRESH_FRACTION)
        return timedelta(hours=hours)

    @property
    def credentials_configured(self) -> bool:
        return bool((self.email or "").strip() and (self.password or "").strip())

    def read_meta(self) -> Dict[str, Any]:
        try:
            return json.loads(self.meta_path.read_text())
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            logger.warning("Unreadable cookie metadata %s: %s", self.meta_path, exc)
            return {}

    def last_updated(self) -> Optional[datetime]:
        raw = self.read_meta().get("lastUpdated")
        if raw is None:
            return None
        try:
            if isinstance(raw, (int, float)):
                return datetime.fromtimestamp(float(raw) / 1000.0, tz=timezone.utc)
            parsed = datetime.fromisoformat(str(raw))
        except (TypeError, ValueError, OverflowError):
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    def write_meta(self, cookie_count: int) -> None:
        self.meta_path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"lastUpdated": self._clock().isoformat(), "cookieCount": int(cookie_count)}
        self.meta_path.write_text(json.dumps(payload, indent=2))

    def needs_refresh(self) -> bool:
        if not self.cookie_path.exists():
            return True
        updated = self.last_updated()
        if updated is None:
            return True
        return self._clock() - updated > self.refresh_after

    @property
    def state(self) -> str:
        if self._refreshing:
            return STATUS_REFRESHING
        return STATUS_STALE if self.needs_refresh() else STATUS_FRESH

    async def probe(self) -> CredentialProbe:
        """Ask yt-dlp to resolve a known public video with the current cookies."""
        if not self.cookie_path.exists():
            return CredentialProbe(valid=False, error="Cookie file not found")
        cmd = [
            settings.YTDLP_BINARY,
            "--skip-download",
            "--print",
            "%(.{id,title})j",
            "--no-playlist",
            "--cookies",
            str(self.cookie_path),
            settings.COOKIE_PROBE_URL,
        ]
        result = await self._runner(cmd, settings.COOKIE_PROBE_TIMEOUT_SECONDS, None)
        stderr = result.stderr or ""
        if not result.ok or any(marker in stderr for marker in PROBE_FAILURE_MARKERS):
            return CredentialProbe(valid=False, error=result.error_text())
        title = None
        try:
            title = json.loads(result.stdout.splitlines()[0]).get("title")
        except (IndexError, ValueError, AttributeError):
            pass
        return CredentialProbe(valid=True, video_title=title)

    async def test_credential(self) -> bool:
        return (await self.probe()).valid

    async def refresh(self) -> None:
        """Log in and rewrite the cookie file. Caller must hold the refresh lock."""
        if not self.credentials_configured:
            raise CredentialRefreshFailed("YOUTUBE_EMAIL and YOUTUBE_PASSWORD must be configured for cookie refresh")
        self._refreshing = True
        try:
            logger.info("Refreshing YouTube cookies via automated login")
            try:
                cookies = await self._login_flow(self.email, self.password)
            except CredentialRefreshFailed:
                raise
            except Exception as exc:
                raise CredentialRefreshFailed(f"Automated login failed: {exc}") from exc
            if not cookies:
                raise CredentialRefreshFailed("Login finished without any cookies")

            self.cookie_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.cookie_path.with_name(f"{self.cookie_path.name}.tmp")
            tmp_path.write_text(to_netscape(cookies))
            os.replace(tmp_path, self.cookie_path)
            self.write_meta(len(cookies))
            logger.info("Wrote %d cookies to %s", len(cookies), self.cookie_path)
        finally:
            self._refreshing = False

    async def _usable_without_refresh(self) -> bool:
        return not self.needs_refresh() and await self.test_credential()

    async def ensure_fresh(self, force_refresh: bool = False) -> str:
        """Return a usable cookie path, refreshing it first when stale, rejected or forced.

        Age alone is not enough: a recent file the service has already
        rejected (bot check, revoked session) is refreshed as well.
        """
        if not force_refresh and await self._usable_without_refresh():
            return str(self.cookie_path)
        if not self.credentials_configured:
            raise CredentialRefreshFailed("YOUTUBE_EMAIL and YOUTUBE_PASSWORD must be configured for cookie refresh")

        requested_at = self._clock()
        async with self._local_lock:
            lock = CookieFileLock(
                self.lock_path,
                timeout_seconds=self._lock_timeout,
                poll_seconds=self._lock_poll,
                pid_alive=self._pid_alive,
            )
            await lock.acquire()
            try:
                # Another worker or process may have refreshed while we waited.
                updated = self.last_updated()
                if updated is not None and updated > requested_at:
                    logger.info("Cookies refreshed by another worker, skipping login")
                    return str(self.cookie_path)
                if not force_refresh and await self._usable_without_refresh():
                    logger.info("Cookies passed the credential check under lock, skipping login")
                    return str(self.cookie_path)
                await self.refresh()
            finally:
                lock.release()
        return str(self.cookie_path)


_manager: Optional[CookieFreshnessManager] = None


def get_cookie_manager() -> CookieFreshnessManager:
    global _manager
    if _manager is None:
        _manager = CookieFreshnessManager()
    return _manager


def reset_cookie_manager(manager: Optional[CookieFreshnessManager] = None) -> None:
    global _manager
    _manager = manager
