import asyncio

import pytest

from services.download_queue import DownloadQueue


class GatedProcessor:
    """Records start order and concurrency; each job waits for its gate."""

    def __init__(self, fail_for=()):
        self.started = []
        self.finished = []
        self.active = 0
        self.max_active = 0
        self.fail_for = set(fail_for)
        self.gates = {}

    def gate(self, content_id):
        return self.gates.setdefault(content_id, asyncio.Event())

    def open_all(self):
        for content_id in ("a", "b", "c", "d", "e", "bad", "good"):
            self.gate(content_id).set()

    async def __call__(self, content_id):
        self.started.append(content_id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await self.gate(content_id).wait()
            if content_id in self.fail_for:
                raise RuntimeError(f"download of {content_id} exploded")
            self.finished.append(content_id)
        finally:
            self.active -= 1


@pytest.mark.asyncio
async def test_enqueue_is_idempotent_while_queued_or_processing():
    processor = GatedProcessor()
    queue = DownloadQueue(processor, max_concurrent=1)

    first = queue.enqueue("a")
    again = queue.enqueue("a")
    queued = queue.enqueue("b")
    queued_again = queue.enqueue("b")
    await asyncio.sleep(0)

    assert first is again
    assert first.status == "processing"
    assert queued is queued_again
    assert queued.status == "queued"
    assert queue.status()["processing"] == 1
    assert queue.status()["queued"] == 1

    processor.open_all()
    await queue.drain()
    assert processor.started == ["a", "b"]


@pytest.mark.asyncio
async def test_concurrency_cap_and_fifo_dispatch():
    processor = GatedProcessor()
    queue = DownloadQueue(processor, max_concurrent=2)

    for content_id in ("a", "b", "c", "d", "e"):
        queue.enqueue(content_id)
    await asyncio.sleep(0)

    status = queue.status()
    assert status["processing"] == 2
    assert status["queued"] == 3
    assert [job["contentId"] for job in status["jobs"]] == ["c", "d", "e"]
    assert set(status["processingJobs"]) == {"a", "b"}

    processor.gate("a").set()
    await asyncio.sleep(0.01)
    assert processor.started == ["a", "b", "c"]
    assert queue.status()["processing"] == 2

    processor.open_all()
    await queue.drain()

    assert processor.started == ["a", "b", "c", "d", "e"]
    assert processor.max_active == 2
    assert queue.status() == {"queued": 0, "processing": 0, "jobs": [], "processingJobs": []}


@pytest.mark.asyncio
async def test_failed_job_frees_slot_and_queue_keeps_running():
    processor = GatedProcessor(fail_for={"bad"})
    queue = DownloadQueue(processor, max_concurrent=1)

    queue.enqueue("bad")
    queue.enqueue("good")
    processor.open_all()
    await queue.drain()

    assert processor.started == ["bad", "good"]
    assert processor.finished == ["good"]
    assert queue.get_job("bad") is None


@pytest.mark.asyncio
async def test_content_can_be_requeued_after_completion():
    processor = GatedProcessor()
    processor.open_all()
    queue = DownloadQueue(processor, max_concurrent=1)

    first = queue.enqueue("a")
    await queue.drain()
    second = queue.enqueue("a")
    await queue.drain()

    assert first is not second
    assert processor.started == ["a", "a"]


@pytest.mark.asyncio
async def test_stop_cancels_running_jobs_and_ticker():
    processor = GatedProcessor()
    queue = DownloadQueue(processor, max_concurrent=1, tick_seconds=0.01)
    queue.start()
    queue.enqueue("a")
    queue.enqueue("b")
    await asyncio.sleep(0.02)

    await queue.stop()

    assert processor.started == ["a"]
    assert queue.status()["processing"] == 0
    assert queue.status()["queued"] == 1
