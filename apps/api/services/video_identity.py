"""Video identity store: dedup of external videos by canonical id."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urlparse

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.video_identity import VideoIdentity
from services.errors import InvalidSourceUrl, InvalidStatusTransition

logger = logging.getLogger(__name__)

YOUTUBE_HOSTS = {
    "youtube.com",
    "www.youtube.com",
    "m.youtube.com",
    "music.youtube.com",
    "youtube-nocookie.com",
    "www.youtube-nocookie.com",
}
SHORT_HOSTS = {"youtu.be", "www.youtu.be"}
PATH_ID_PREFIXES = ("embed", "shorts", "live", "v")
VIDEO_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{11}$")

CLAIMABLE_STATUSES = ("pending",)
ALLOWED_TRANSITIONS = {
    "pending": {"downloading", "failed"},
    "downloading": {"uploading", "failed"},
    "uploading": {"completed", "failed"},
    "failed": {"pending"},
    "completed": set(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_external_id(url: str) -> str:
    """Return the canonical YouTube video id for any supported URL shape."""
    raw = str(url or "").strip()
    if not raw:
        raise InvalidSourceUrl("Source URL is empty")
    if "://" not in raw:
        raw = f"https://{raw}"

    parsed = urlparse(raw)
    host = (parsed.hostname or "").lower()
    segments = [segment for segment in parsed.path.split("/") if segment]

    candidate: Optional[str] = None
    if host in SHORT_HOSTS:
        candidate = segments[0] if segments else None
    elif host in YOUTUBE_HOSTS:
        if segments[:1] == ["watch"]:
            candidate = (parse_qs(parsed.query).get("v") or [None])[0]
        elif len(segments) >= 2 and segments[0] in PATH_ID_PREFIXES:
            candidate = segments[1]

    if not candidate or not VIDEO_ID_PATTERN.match(candidate):
        raise InvalidSourceUrl(f"Not a recognizable YouTube video URL: {url}")
    return candidate


def _check_transition(identity: VideoIdentity, target: str) -> None:
    current = identity.download_status or "pending"
    if target not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidStatusTransition(current, target)


async def get_by_external_id(db: AsyncSession, external_id: str) -> Optional[VideoIdentity]:
    result = await db.execute(select(VideoIdentity).where(VideoIdentity.external_id == external_id))
    return result.scalar_one_or_none()


async def get_identity(db: AsyncSession, identity_id: str) -> Optional[VideoIdentity]:
    result = await db.execute(select(VideoIdentity).where(VideoIdentity.id == identity_id))
    return result.scalar_one_or_none()


async def find_or_create(db: AsyncSession, source_url: str) -> VideoIdentity:
    """Return the identity for ``source_url``, creating a pending one if missing.

    Concurrent creators race on the unique external id; the loser rolls back
    and reads the winner's row.
    """
    external_id = parse_external_id(source_url)
    existing = await get_by_external_id(db, external_id)
    if existing:
        return existing

    identity = VideoIdentity(
        external_id=external_id,
        source_url=str(source_url).strip(),
        download_status="pending",
        download_progress=0,
        usage_count=0,
    )
    db.add(identity)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        existing = await get_by_external_id(db, external_id)
        if existing is None:
            raise
        logger.info("Video identity %s created concurrently, reusing existing row", external_id)
        return existing
    await db.refresh(identity)
    return identity


async def claim_download(db: AsyncSession, identity: VideoIdentity) -> bool:
    """Atomically move a pending identity to downloading.

    Returns False when another worker already owns the download.
    """
    now = _utcnow()
    result = await db.execute(
        update(VideoIdentity)
        .where(
            VideoIdentity.id == identity.id,
            VideoIdentity.download_status.in_(CLAIMABLE_STATUSES),
        )
        .values(
            download_status="downloading",
            download_progress=0,
            download_error=None,
            download_started_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(identity)
    return bool(result.rowcount)


async def mark_uploading(db: AsyncSession, identity: VideoIdentity) -> VideoIdentity:
    _check_transition(identity, "uploading")
    identity.download_status = "uploading"
    await db.commit()
    return identity


async def mark_completed(
    db: AsyncSession,
    identity: VideoIdentity,
    storage_url: str,
    storage_key: str,
    downloaded_format: Optional[Dict[str, Any]] = None,
) -> VideoIdentity:
    if not storage_url:
        raise ValueError("storage_url is required to complete a download")
    _check_transition(identity, "completed")
    identity.download_status = "completed"
    identity.storage_url = storage_url
    identity.storage_key = storage_key
    identity.download_progress = 100
    identity.download_error = None
    identity.download_completed_at = _utcnow()
    if downloaded_format is not None:
        identity.downloaded_format = downloaded_format
    await db.commit()
    return identity


async def mark_failed(db: AsyncSession, identity: VideoIdentity, error: str) -> VideoIdentity:
    _check_transition(identity, "failed")
    identity.download_status = "failed"
    identity.download_error = (str(error or "") or "Unknown download error")[:4000]
    identity.download_progress = 0
    await db.commit()
    return identity


async def reset_for_retry(db: AsyncSession, identity: VideoIdentity) -> bool:
    """Explicit retry: the only backward transition (failed -> pending).

    Conditional so a concurrent retry cannot knock a claimed download back
    to pending. Returns False when the identity was not failed.
    """
    result = await db.execute(
        update(VideoIdentity)
        .where(VideoIdentity.id == identity.id, VideoIdentity.download_status == "failed")
        .values(download_status="pending", download_progress=0)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(identity)
    return bool(result.rowcount)


async def update_progress(db: AsyncSession, identity: VideoIdentity, progress: int) -> None:
    identity.download_progress = max(0, min(int(progress), 99))
    await db.commit()


async def update_metadata(db: AsyncSession, identity: VideoIdentity, metadata: Dict[str, Any]) -> None:
    identity.video_metadata = metadata
    await db.commit()


async def increment_usage(db: AsyncSession, identity: VideoIdentity) -> VideoIdentity:
    await db.execute(
        update(VideoIdentity)
        .where(VideoIdentity.id == identity.id)
        .values(usage_count=VideoIdentity.usage_count + 1, last_accessed_at=_utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(identity)
    return identity
