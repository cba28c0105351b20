"""End-to-end YouTube acquisition for a content item.

The stored file is always the full-length video. It is cached per video and
shared by every content item that points at it, so start/end trim markers are
not passed to yt-dlp. They stay on the content row and are returned with the
playback URL for the player to apply.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.content import Content
from models.video_identity import VideoIdentity
from services import video_identity as identity_store
from services.best_effort import best_effort
from services.cookie_refresh import CookieFileLock, get_cookie_manager
from services.download_queue import DownloadJob, enqueue_content_download
from services.errors import (
    ExtractionFailed,
    InvalidSourceUrl,
    InvalidStatusTransition,
    MediaPipelineError,
    UploadFailed,
)
from services.extraction import (
    MIN_OUTPUT_BYTES,
    ExtractionRequest,
    cleanup_partial_outputs,
    fetch_video_metadata,
    run_extraction_chain,
    scratch_path,
)
from services.media_probe import probe_downloaded_format
from services.notifications import get_operator_notifier
from services.storage import upload_file, video_key

logger = logging.getLogger(__name__)

IN_FLIGHT_STATUSES = ("downloading", "uploading")
RESUMABLE_CONTENT_STATUSES = ("pending", "downloading", "uploading")
PROGRESS_STEP = 5


async def _get_content(content_id: str) -> Optional[Content]:
    async with async_session_maker() as db:
        result = await db.execute(select(Content).where(Content.id == content_id))
        return result.scalar_one_or_none()


async def _update_content(
    content_id: str,
    *,
    status: Optional[str] = None,
    progress: Optional[int] = None,
    downloaded_url: Optional[str] = None,
    error: Optional[str] = None,
    clear_error: bool = False,
    video_identity_id: Optional[str] = None,
) -> None:
    async with async_session_maker() as db:
        result = await db.execute(select(Content).where(Content.id == content_id))
        content = result.scalar_one_or_none()
        if not content:
            return
        if status is not None:
            content.download_status = status
        if progress is not None:
            content.download_progress = max(0, min(int(progress), 100))
        if downloaded_url is not None:
            content.downloaded_url = downloaded_url
        if clear_error:
            content.download_error = None
        if error is not None:
            content.download_error = error[:4000]
        if video_identity_id is not None:
            content.video_identity_id = video_identity_id
        await db.commit()


async def _link_completed(db: AsyncSession, identity: VideoIdentity, content_id: str) -> None:
    await identity_store.increment_usage(db, identity)
    await _update_content(
        content_id,
        status="completed",
        progress=100,
        downloaded_url=identity.storage_url,
        clear_error=True,
        video_identity_id=identity.id,
    )


async def _await_inflight(identity_id: str, content_id: str) -> Optional[VideoIdentity]:
    """Poll an identity owned by another job until it completes or fails."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + settings.INFLIGHT_WAIT_TIMEOUT_SECONDS
    while loop.time() < deadline:
        async with async_session_maker() as db:
            identity = await identity_store.get_identity(db, identity_id)
        if identity is None or identity.download_status in ("completed", "failed"):
            return identity
        await _update_content(content_id, progress=int(identity.download_progress or 0))
        await asyncio.sleep(settings.INFLIGHT_POLL_SECONDS)
    return None


async def _prepare_cookies() -> Optional[str]:
    """Fresh cookie path if possible; a stale file or nothing otherwise."""
    manager = get_cookie_manager()
    result = await best_effort("cookie refresh", manager.ensure_fresh, None)
    if not result.fallback_used:
        return result.value
    await best_effort(
        "operator alert",
        lambda: get_operator_notifier().notify(
            f"Automatic cookie refresh failed: {result.error}",
            {"cookiePath": str(manager.cookie_path)},
        ),
        False,
    )
    if manager.cookie_path.exists():
        return str(manager.cookie_path)
    return None


async def _mark_failed(db: AsyncSession, identity: VideoIdentity, content_id: str, message: str) -> None:
    await db.rollback()
    await db.refresh(identity)
    try:
        await identity_store.mark_failed(db, identity, message)
    except InvalidStatusTransition as exc:
        logger.warning("Could not mark identity %s failed: %s", identity.external_id, exc)
    await _update_content(content_id, status="failed", progress=0, error=message)


def _progress_reporter(db: AsyncSession, identity: VideoIdentity, content_id: str):
    last = {"value": 0}

    async def _report(value: int) -> None:
        if value < 100 and value - last["value"] < PROGRESS_STEP:
            return
        last["value"] = value
        await identity_store.update_progress(db, identity, value)
        await _update_content(content_id, progress=min(value, 99))

    return _report


async def _download_and_upload(db: AsyncSession, identity: VideoIdentity, content: Content) -> None:
    content_id = content.id
    scratch = scratch_path(content_id, identity.external_id)
    keep_scratch = False
    try:
        await _update_content(content_id, status="downloading", progress=0, clear_error=True)

        if scratch.exists() and scratch.stat().st_size > MIN_OUTPUT_BYTES:
            logger.info("Reusing %s left by a failed upload", scratch)
            downloaded, strategy = scratch, "previous-attempt"
        else:
            info = await fetch_video_metadata(identity.source_url, str(get_cookie_manager().cookie_path))
            if info.value.get("metadata"):
                await identity_store.update_metadata(db, identity, info.value["metadata"])

            cookie_path = await _prepare_cookies()
            # The cached file is shared by every content item for this video, so it is never trimmed here.
            outcome = await run_extraction_chain(
                ExtractionRequest(
                    url=identity.source_url,
                    content_id=content_id,
                    external_id=identity.external_id,
                    output_path=scratch,
                    formats=info.value.get("formats") or [],
                ),
                cookie_path=cookie_path,
                on_progress=_progress_reporter(db, identity, content_id),
            )
            downloaded, strategy = outcome.path, outcome.strategy

        probe = await probe_downloaded_format(downloaded)
        await identity_store.mark_uploading(db, identity)
        await _update_content(content_id, status="uploading")

        key = video_key(identity.external_id)
        storage_url = await upload_file(downloaded, key)

        await identity_store.mark_completed(db, identity, storage_url, key, probe.value)
        await identity_store.increment_usage(db, identity)
        await _update_content(
            content_id,
            status="completed",
            progress=100,
            downloaded_url=storage_url,
            clear_error=True,
        )
        logger.info(
            "Content %s downloaded %s via %s (%s)",
            content_id,
            identity.external_id,
            strategy,
            probe.value.get("resolution"),
        )
    except UploadFailed as exc:
        # Keep the merged file so a retry can skip re-downloading it.
        keep_scratch = True
        await _mark_failed(db, identity, content_id, str(exc))
        raise
    except ExtractionFailed as exc:
        await _mark_failed(db, identity, content_id, str(exc))
        await best_effort(
            "operator alert",
            lambda: get_operator_notifier().handle_download_error(
                exc.last_error,
                {"videoId": identity.external_id, "contentId": content_id},
            ),
            False,
        )
        raise
    except Exception as exc:
        await _mark_failed(db, identity, content_id, str(exc) or exc.__class__.__name__)
        raise
    finally:
        if not keep_scratch:
            cleanup_partial_outputs(Path(scratch))


async def process_content_download(content_id: str) -> None:
    """Download, dedup and upload the external video referenced by a content item."""
    content = await _get_content(content_id)
    if not content:
        logger.warning("Content %s not found for download", content_id)
        return
    if not content.source_url:
        logger.warning("Content %s has no source URL", content_id)
        return

    async with async_session_maker() as db:
        try:
            identity = await identity_store.find_or_create(db, content.source_url)
        except InvalidSourceUrl as exc:
            await _update_content(content_id, status="failed", progress=0, error=str(exc))
            raise
        await _update_content(content_id, video_identity_id=identity.id)

        if identity.download_status == "completed":
            logger.info("Cache hit for %s (content %s)", identity.external_id, content_id)
            await _link_completed(db, identity, content_id)
            return

        if identity.download_status == "failed":
            await identity_store.reset_for_retry(db, identity)

        if not await identity_store.claim_download(db, identity):
            logger.info(
                "Video %s already downloading for another content item, waiting (content %s)",
                identity.external_id,
                content_id,
            )
            settled = await _await_inflight(identity.id, content_id)
            if settled is not None and settled.download_status == "completed":
                await db.refresh(identity)
                await _link_completed(db, identity, content_id)
                return
            message = (
                settled.download_error
                if settled is not None and settled.download_error
                else "Timed out waiting for in-flight download of the same video"
            )
            await _update_content(content_id, status="failed", progress=0, error=message)
            raise MediaPipelineError(message)

        await _download_and_upload(db, identity, content)


async def request_retry(db: AsyncSession, content: Content) -> DownloadJob:
    """Reset a failed content item (and its identity) and queue it again."""
    if content.video_identity_id:
        identity = await identity_store.get_identity(db, content.video_identity_id)
        if identity is not None and identity.download_status == "failed":
            await identity_store.reset_for_retry(db, identity)
    content.download_status = "pending"
    content.download_progress = 0
    content.download_error = None
    await db.commit()
    return enqueue_content_download(content.id)


def claim_recovery_lock(path: Optional[str] = None) -> Optional[CookieFileLock]:
    """Elect one worker process to run startup recovery.

    Returns the held lock, or None when another live worker already owns it.
    The owner keeps it until shutdown so workers started later never sweep
    downloads that are in flight elsewhere.
    """
    lock = CookieFileLock(Path(path or settings.RECOVERY_LOCK_PATH), timeout_seconds=0)
    if not lock.try_acquire():
        logger.info("Startup recovery owned by pid %s, skipping", lock.owner_pid())
        return None
    return lock


async def recover_interrupted_downloads() -> Dict[str, Any]:
    """Fail identities orphaned by a restart and re-queue unfinished content."""
    async with async_session_maker() as db:
        result = await db.execute(
            select(VideoIdentity).where(VideoIdentity.download_status.in_(IN_FLIGHT_STATUSES))
        )
        orphaned = result.scalars().all()
        for identity in orphaned:
            await identity_store.mark_failed(db, identity, "Download interrupted by server restart")

        result = await db.execute(
            select(Content.id)
            .where(
                Content.source_url.isnot(None),
                Content.download_status.in_(RESUMABLE_CONTENT_STATUSES),
            )
            .order_by(Content.created_at)
        )
        content_ids = [row[0] for row in result.all()]

    for content_id in content_ids:
        enqueue_content_download(content_id)
    return {"identities_failed": len(orphaned), "requeued": len(content_ids)}
