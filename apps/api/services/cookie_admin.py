"""Manual cookie override: operators paste an exported cookies.txt."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from config import settings
from services.cookie_refresh import CookieFreshnessManager, count_cookie_lines, get_cookie_manager
from services.notifications import OperatorNotifier, get_operator_notifier

logger = logging.getLogger(__name__)

REQUIRED_MARKERS = (".youtube.com", ".google.com", "# Netscape", "# HTTP Cookie")


def validate_cookie_text(content: str) -> Optional[str]:
    """Return an error message, or None when the text looks like a Netscape cookie file."""
    text = (content or "").strip()
    if not text:
        return "Cookie content is empty"
    if not any(marker in text for marker in REQUIRED_MARKERS):
        return "Invalid cookie format. Expected Netscape cookies.txt with YouTube or Google cookies."
    if count_cookie_lines(text) == 0:
        return "No cookie entries found"
    return None


def _rotate_backups(cookie_path: Path, keep: int) -> None:
    backups = sorted(
        cookie_path.parent.glob(f"{cookie_path.name}.backup.*"),
        key=lambda p: p.stat().st_mtime,
        reverse=True,
    )
    for stale in backups[max(keep, 0):]:
        stale.unlink(missing_ok=True)


def update_cookies(
    content: str,
    manager: Optional[CookieFreshnessManager] = None,
    notifier: Optional[OperatorNotifier] = None,
) -> Dict[str, Any]:
    """Replace the cookie file, keeping timestamped backups of the previous one."""
    error = validate_cookie_text(content)
    if error:
        return {"success": False, "message": error}

    manager = manager or get_cookie_manager()
    notifier = notifier or get_operator_notifier()
    cookie_path = manager.cookie_path
    cookie_path.parent.mkdir(parents=True, exist_ok=True)

    if cookie_path.exists():
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")
        backup = cookie_path.with_name(f"{cookie_path.name}.backup.{stamp}")
        suffix = 1
        while backup.exists():
            backup = cookie_path.with_name(f"{cookie_path.name}.backup.{stamp}-{suffix}")
            suffix += 1
        backup.write_bytes(cookie_path.read_bytes())
        _rotate_backups(cookie_path, settings.COOKIE_BACKUP_KEEP)

    text = content.strip() + "\n"
    cookie_path.write_text(text)
    line_count = count_cookie_lines(text)
    manager.write_meta(line_count)
    notifier.reset_cooldown()
    logger.info("Cookie file replaced manually (%d entries)", line_count)
    return {
        "success": True,
        "message": "Cookies updated successfully",
        "path": str(cookie_path),
        "linesCount": line_count,
    }


def cookie_status(
    manager: Optional[CookieFreshnessManager] = None,
    notifier: Optional[OperatorNotifier] = None,
) -> Dict[str, Any]:
    manager = manager or get_cookie_manager()
    notifier = notifier or get_operator_notifier()
    path = manager.cookie_path
    last_sent = (
        datetime.fromtimestamp(notifier.last_sent_at, tz=timezone.utc).isoformat()
        if notifier.last_sent_at
        else None
    )
    if not path.exists():
        return {
            "exists": False,
            "path": str(path),
            "state": manager.state,
            "lastNotificationSent": last_sent,
        }
    stat = path.stat()
    return {
        "exists": True,
        "path": str(path),
        "size": stat.st_size,
        "modifiedAt": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
        "cookieCount": count_cookie_lines(path.read_text(errors="replace")),
        "state": manager.state,
        "lastNotificationSent": last_sent,
    }


async def run_cookie_test(manager: Optional[CookieFreshnessManager] = None) -> Dict[str, Any]:
    manager = manager or get_cookie_manager()
    probe = await manager.probe()
    if probe.valid:
        return {"success": True, "message": "Cookies are working", "videoTitle": probe.video_title}
    return {"success": False, "message": "Cookies are not working", "error": probe.error}
