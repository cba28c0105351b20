"""Operator alerts when YouTube starts rejecting our cookies."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from config import settings

logger = logging.getLogger(__name__)

AUTH_ERROR_MARKERS = (
    "sign in to confirm you're not a bot",
    "cookies",
    "authentication",
    "sign in",
    "login required",
    "please sign in",
    "bot detection",
)


def is_auth_error(message: Optional[str]) -> bool:
    text = str(message or "").lower()
    return any(marker in text for marker in AUTH_ERROR_MARKERS)


def _ses_send(subject: str, body: str) -> None:
    client = boto3.client(
        "ses",
        region_name=settings.AWS_REGION,
        aws_access_key_id=settings.AWS_ACCESS_KEY_ID or None,
        aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY or None,
    )
    client.send_email(
        Source=settings.EMAIL_FROM,
        Destination={"ToAddresses": [settings.ADMIN_NOTIFICATION_EMAIL]},
        Message={
            "Subject": {"Data": subject, "Charset": "UTF-8"},
            "Body": {"Text": {"Data": body, "Charset": "UTF-8"}},
        },
    )


def _alert_body(error_message: str, context: Dict[str, Any]) -> str:
    base = settings.SERVER_URL.rstrip("/")
    lines = [
        "YouTube downloads are failing with what looks like an authentication problem.",
        "",
        f"Error: {error_message}",
    ]
    for key, value in context.items():
        lines.append(f"{key}: {value}")
    lines += [
        "",
        "Export fresh cookies from a logged-in browser and either:",
        f"  - POST the cookies.txt contents to {base}/youtube-cookies/update",
        f"  - or paste them into {base}/youtube-cookies/form",
        "",
        f"Further alerts are suppressed for {int(settings.NOTIFICATION_COOLDOWN_SECONDS // 60)} minutes.",
    ]
    return "\n".join(lines)


class OperatorNotifier:
    """Sends at most one alert per cooldown window."""

    def __init__(
        self,
        sender: Callable[[str, str], None] = _ses_send,
        cooldown_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._sender = sender
        self._cooldown = settings.NOTIFICATION_COOLDOWN_SECONDS if cooldown_seconds is None else cooldown_seconds
        self._clock = clock
        self.last_sent_at: Optional[float] = None

    @property
    def configured(self) -> bool:
        return bool(settings.ADMIN_NOTIFICATION_EMAIL and settings.EMAIL_FROM)

    def in_cooldown(self) -> bool:
        return self.last_sent_at is not None and self._clock() - self.last_sent_at < self._cooldown

    def reset_cooldown(self) -> None:
        self.last_sent_at = None

    async def notify(self, error_message: str, context: Optional[Dict[str, Any]] = None, force: bool = False) -> bool:
        """Send the cookie alert. Returns True when an alert went out."""
        if not force and self.in_cooldown():
            logger.info("Cookie alert suppressed (cooldown active)")
            return False
        if self._sender is _ses_send and not self.configured:
            logger.warning("Cookie alert not sent: ADMIN_NOTIFICATION_EMAIL/EMAIL_FROM not configured")
            return False
        subject = "[VR Content] YouTube cookies need attention"
        body = _alert_body(error_message, context or {})
        try:
            await asyncio.to_thread(self._sender, subject, body)
        except (BotoCoreError, ClientError) as exc:
            logger.error("Failed to send cookie alert: %s", exc)
            return False
        self.last_sent_at = self._clock()
        logger.info("Cookie alert sent to operator")
        return True

    async def handle_download_error(self, error_message: str, context: Optional[Dict[str, Any]] = None) -> bool:
        if not is_auth_error(error_message):
            return False
        return await self.notify(error_message, context)


_notifier: Optional[OperatorNotifier] = None


def get_operator_notifier() -> OperatorNotifier:
    global _notifier
    if _notifier is None:
        _notifier = OperatorNotifier()
    return _notifier


def reset_operator_notifier(notifier: Optional[OperatorNotifier] = None) -> None:
    global _notifier
    _notifier = notifier
