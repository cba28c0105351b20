"""
Health check endpoints.
"""

import shutil

from fastapi import APIRouter
from fastapi.responses import JSONResponse
import redis.asyncio as redis

from config import settings
from services.download_queue import get_download_queue
from services.stream_proxy import get_proxy_limiter

router = APIRouter()


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Returns overall system health status plus queue and proxy load.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "yt_dlp": "found" if shutil.which(settings.YTDLP_BINARY) else "missing",
        "ffprobe": "found" if shutil.which(settings.FFPROBE_BINARY) else "missing",
        "storage_bucket": "configured" if settings.S3_BUCKET else "missing",
    }

    # Check database connection
    try:
        from database import engine
        from sqlalchemy import text
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    # Redis only backs rate limiting, so an outage degrades but does not fail.
    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    if health_status["yt_dlp"] == "missing":
        health_status["status"] = "degraded"

    queue = get_download_queue().status()
    health_status["download_queue"] = {"queued": queue["queued"], "processing": queue["processing"]}
    limiter = get_proxy_limiter()
    health_status["proxy_connections"] = {"active": limiter.active, "max": limiter.max_connections}
    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = []
    if not settings.S3_BUCKET:
        missing.append("S3_BUCKET")
    if not shutil.which(settings.YTDLP_BINARY):
        missing.append("yt-dlp")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
