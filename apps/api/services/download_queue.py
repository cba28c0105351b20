"""In-process FIFO download queue with a bounded worker pool."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

from config import settings

logger = logging.getLogger(__name__)

Processor = Callable[[str], Awaitable[Any]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class DownloadJob:
    content_id: str
    status: str = "queued"
    queued_at: datetime = field(default_factory=_utcnow)
    started_at: Optional[datetime] = None


class DownloadQueue:
    """At most one job per content id is queued or processing at any time.

    Jobs start in enqueue order while fewer than ``max_concurrent`` run. A
    finished job frees its slot before the next dispatch, and a periodic tick
    re-runs dispatch in case a job was enqueued without a running loop.
    """

    def __init__(
        self,
        processor: Processor,
        max_concurrent: Optional[int] = None,
        tick_seconds: Optional[float] = None,
    ):
        self._processor = processor
        self.max_concurrent = max(int(max_concurrent or settings.MAX_CONCURRENT_JOBS), 1)
        self.tick_seconds = float(tick_seconds or settings.QUEUE_SAFETY_TICK_SECONDS)
        self._queue: Deque[DownloadJob] = deque()
        self._processing: Dict[str, DownloadJob] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._ticker: Optional[asyncio.Task] = None
        self._stopping = False

    def enqueue(self, content_id: str) -> DownloadJob:
        """Add a job, or return the existing one if the content is already queued/processing."""
        running = self._processing.get(content_id)
        if running is not None:
            logger.info("Content %s already processing, not re-queued", content_id)
            return running
        for job in self._queue:
            if job.content_id == content_id:
                logger.info("Content %s already queued", content_id)
                return job

        job = DownloadJob(content_id=content_id)
        self._queue.append(job)
        logger.info("Queued download for content %s (queue=%d)", content_id, len(self._queue))
        self._dispatch()
        return job

    def get_job(self, content_id: str) -> Optional[DownloadJob]:
        if content_id in self._processing:
            return self._processing[content_id]
        return next((job for job in self._queue if job.content_id == content_id), None)

    def status(self) -> Dict[str, Any]:
        return {
            "queued": len(self._queue),
            "processing": len(self._processing),
            "jobs": [
                {"contentId": job.content_id, "queuedAt": job.queued_at.isoformat()}
                for job in self._queue
            ],
            "processingJobs": list(self._processing.keys()),
        }

    def _dispatch(self) -> None:
        if self._stopping:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Picked up by the next tick.
            return
        while self._queue and len(self._processing) < self.max_concurrent:
            job = self._queue.popleft()
            job.status = "processing"
            job.started_at = _utcnow()
            self._processing[job.content_id] = job
            self._tasks[job.content_id] = loop.create_task(self._run(job))

    async def _run(self, job: DownloadJob) -> None:
        logger.info("Processing download for content %s", job.content_id)
        try:
            await self._processor(job.content_id)
        except asyncio.CancelledError:
            logger.warning("Download for content %s cancelled", job.content_id)
            raise
        except Exception:
            logger.exception("Download job for content %s failed", job.content_id)
        finally:
            self._processing.pop(job.content_id, None)
            self._tasks.pop(job.content_id, None)
            self._dispatch()

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(self.tick_seconds)
            self._dispatch()

    def start(self) -> None:
        self._stopping = False
        if self._ticker is None or self._ticker.done():
            self._ticker = asyncio.create_task(self._tick())
        self._dispatch()

    async def stop(self) -> None:
        """Stop the ticker and cancel running jobs; interrupted jobs are recovered on next startup."""
        self._stopping = True
        if self._ticker is not None:
            self._ticker.cancel()
            try:
                await self._ticker
            except asyncio.CancelledError:
                pass
            self._ticker = None
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def drain(self) -> None:
        """Wait until nothing is queued or processing."""
        while True:
            tasks = list(self._tasks.values())
            if not tasks:
                if not self._queue or self._stopping:
                    return
                self._dispatch()
                continue
            await asyncio.gather(*tasks, return_exceptions=True)


async def _process_content(content_id: str) -> None:
    from services.youtube_download import process_content_download

    await process_content_download(content_id)


_queue: Optional[DownloadQueue] = None


def get_download_queue() -> DownloadQueue:
    global _queue
    if _queue is None:
        _queue = DownloadQueue(_process_content)
    return _queue


def reset_download_queue(queue: Optional[DownloadQueue] = None) -> None:
    global _queue
    _queue = queue


def enqueue_content_download(content_id: str) -> DownloadJob:
    return get_download_queue().enqueue(content_id)
