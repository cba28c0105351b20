"""
VR Content Media API - FastAPI Backend
YouTube acquisition pipeline: download queue, dedup store, signed playback and streaming proxy.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import content, cookies, downloads, health, proxy
from services.download_queue import get_download_queue
from services.youtube_download import claim_recovery_lock, recover_interrupted_downloads


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting VR Content Media API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")

    queue = get_download_queue()
    queue.start()
    print(
        f"📥 Download queue started (max {queue.max_concurrent} concurrent, "
        f"tick every {queue.tick_seconds:.0f}s)."
    )
    recovery_lock = None
    if settings.RECOVER_DOWNLOADS_ON_STARTUP:
        recovery_lock = claim_recovery_lock()
        if recovery_lock is None:
            print("⏭️ Download recovery left to the worker that holds the recovery lock.")
        else:
            try:
                recovered = await recover_interrupted_downloads()
                if recovered["identities_failed"] or recovered["requeued"]:
                    print(
                        f"♻️ Recovered downloads after startup: failed={recovered['identities_failed']} "
                        f"requeued={recovered['requeued']}"
                    )
            except Exception as exc:
                print(f"⚠️ Download recovery skipped: {exc}")
    yield
    # Shutdown
    await queue.stop()
    if recovery_lock is not None:
        recovery_lock.release()
    print("👋 Shutting down API...")


app = FastAPI(
    title="VR Content Media API",
    description="Acquire YouTube videos for VR content and serve them to classroom headsets",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(downloads.router, tags=["Downloads"])
app.include_router(content.router, prefix="/content", tags=["Content"])
app.include_router(proxy.router, prefix="/proxy", tags=["Proxy"])
app.include_router(cookies.router, tags=["Cookies"])
app.include_router(cookies.admin_router, prefix="/youtube-cookies", tags=["Cookie Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "VR Content Media API",
        "version": "0.1.0",
        "status": "running"
    }
