"""Download queue and per-content status endpoints."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.content import Content
from services.download_queue import get_download_queue

router = APIRouter()


class QueuedJob(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    content_id: str = Field(alias="contentId")
    queued_at: str = Field(alias="queuedAt")


class QueueStatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    queued: int
    processing: int
    jobs: List[QueuedJob]
    processing_jobs: List[str] = Field(alias="processingJobs")


class DownloadStatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    content_id: str = Field(alias="contentId")
    source_url: Optional[str] = Field(default=None, alias="sourceUrl")
    download_status: Optional[str] = Field(default=None, alias="downloadStatus")
    downloaded_url: Optional[str] = Field(default=None, alias="downloadedUrl")
    progress: int = 0
    error: Optional[str] = None


def serialize_download_status(content: Content) -> DownloadStatusResponse:
    return DownloadStatusResponse(
        content_id=content.id,
        source_url=content.source_url,
        download_status=content.download_status,
        downloaded_url=content.downloaded_url,
        progress=int(content.download_progress or 0),
        error=content.download_error,
    )


@router.get("/queue-status", response_model=QueueStatusResponse, response_model_by_alias=True)
async def queue_status():
    """Snapshot of queued and processing download jobs."""
    return QueueStatusResponse.model_validate(get_download_queue().status())


@router.get(
    "/download-status/{content_id}",
    response_model=DownloadStatusResponse,
    response_model_by_alias=True,
)
async def download_status(content_id: str, db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(Content).where(Content.id == content_id))
    content = result.scalar_one_or_none()
    if not content:
        raise HTTPException(status_code=404, detail="Content not found")
    return serialize_download_status(content)
