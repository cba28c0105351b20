"""Content entry points that feed the YouTube download pipeline."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import get_db
from models.content import Content
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.download_queue import enqueue_content_download, get_download_queue
from services.errors import InvalidSourceUrl
from services.storage import issue_signed_url
from services.video_identity import parse_external_id
from services.youtube_download import request_retry

router = APIRouter()


class CreateContentRequest(BaseModel):
    title: Optional[str] = Field(default=None, max_length=500)
    source_url: str = Field(min_length=8, max_length=2000)
    start_time: Optional[int] = Field(default=None, ge=0)
    end_time: Optional[int] = Field(default=None, ge=0)


class ContentResponse(BaseModel):
    content_id: str
    title: Optional[str] = None
    source_url: Optional[str] = None
    external_id: Optional[str] = None
    start_time: Optional[int] = None
    end_time: Optional[int] = None
    download_status: Optional[str] = None
    downloaded_url: Optional[str] = None
    download_progress: int = 0
    download_error: Optional[str] = None
    video_identity_id: Optional[str] = None
    created_at: Optional[str] = None


class PlaybackResponse(BaseModel):
    content_id: str
    url: str
    signed: bool
    expires_in: Optional[int] = None
    start_time: Optional[int] = None
    end_time: Optional[int] = None


def _external_id_or_none(url: Optional[str]) -> Optional[str]:
    try:
        return parse_external_id(url) if url else None
    except InvalidSourceUrl:
        return None


def _serialize_content(content: Content) -> ContentResponse:
    return ContentResponse(
        content_id=content.id,
        title=content.title,
        source_url=content.source_url,
        external_id=_external_id_or_none(content.source_url),
        start_time=content.start_time,
        end_time=content.end_time,
        download_status=content.download_status,
        downloaded_url=content.downloaded_url,
        download_progress=int(content.download_progress or 0),
        download_error=content.download_error,
        video_identity_id=content.video_identity_id,
        created_at=content.created_at.isoformat() if content.created_at else None,
    )


async def _get_content_or_404(db: AsyncSession, content_id: str) -> Content:
    result = await db.execute(select(Content).where(Content.id == content_id))
    content = result.scalar_one_or_none()
    if not content:
        raise HTTPException(status_code=404, detail="Content not found")
    return content


@router.post("", response_model=ContentResponse)
async def create_content(
    request: CreateContentRequest,
    _rate_limit: None = Depends(rate_limit("content_create", limit=120, window_seconds=3600)),
    _auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Create a content item and queue its YouTube download."""
    source_url = request.source_url.strip()
    try:
        parse_external_id(source_url)
    except InvalidSourceUrl as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    if request.start_time is not None and request.end_time is not None and request.end_time <= request.start_time:
        raise HTTPException(status_code=422, detail="end_time must be greater than start_time")

    content = Content(
        title=request.title,
        source_url=source_url,
        start_time=request.start_time,
        end_time=request.end_time,
        download_status="pending",
        download_progress=0,
    )
    db.add(content)
    await db.commit()
    await db.refresh(content)

    try:
        enqueue_content_download(content.id)
    except Exception as exc:
        content.download_status = "failed"
        content.download_error = f"Download queue unavailable: {exc}"
        await db.commit()
        raise HTTPException(status_code=503, detail="Download queue unavailable. Retry shortly.") from exc

    return _serialize_content(content)


@router.get("/{content_id}", response_model=ContentResponse)
async def get_content(
    content_id: str,
    _auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return _serialize_content(await _get_content_or_404(db, content_id))


@router.post("/{content_id}/retry-download", response_model=ContentResponse)
async def retry_content_download(
    content_id: str,
    _auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Re-queue a failed download. No-op while the content is already queued or processing."""
    content = await _get_content_or_404(db, content_id)
    if not content.source_url:
        raise HTTPException(status_code=422, detail="Content has no source URL to download")
    if content.download_status == "completed":
        raise HTTPException(status_code=409, detail="Content video is already downloaded")
    if get_download_queue().get_job(content_id) is None:
        await request_retry(db, content)
        await db.refresh(content)
    return _serialize_content(content)


@router.get("/{content_id}/playback", response_model=PlaybackResponse)
async def get_playback_url(
    content_id: str,
    _auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Signed storage URL for players; unsigned URL if signing is unavailable."""
    content = await _get_content_or_404(db, content_id)
    if content.download_status != "completed" or not content.downloaded_url:
        raise HTTPException(status_code=409, detail="Video is not ready for playback yet")
    signed = await issue_signed_url(content.downloaded_url)
    return PlaybackResponse(
        content_id=content.id,
        url=signed.value,
        signed=not signed.fallback_used,
        expires_in=None if signed.fallback_used else settings.SIGNED_URL_TTL_SECONDS,
        start_time=content.start_time,
        end_time=content.end_time,
    )
