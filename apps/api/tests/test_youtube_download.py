import asyncio
import functools
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.future import select

from models.content import Content
from models.video_identity import VideoIdentity
from services import video_identity as identity_store
from services.best_effort import BestEffort
from services.cookie_refresh import CookieFreshnessManager, NETSCAPE_HEADER, reset_cookie_manager
from services.download_queue import DownloadQueue, reset_download_queue
from services.errors import ExtractionFailed, InvalidSourceUrl, MediaPipelineError, UploadFailed
from services.extraction import ExtractionStrategy, run_extraction_chain
from services.notifications import OperatorNotifier, reset_operator_notifier
from services.youtube_download import (
    claim_recovery_lock,
    process_content_download,
    recover_interrupted_downloads,
    request_retry,
)
from services.ytdlp_cli import ToolResult


VIDEO_URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
SHORT_URL = "https://youtu.be/dQw4w9WgXcQ"
STORAGE_BASE = "https://vr-media-test.s3.us-east-1.amazonaws.com"


class FakeYtDlp:
    def __init__(self, succeed=True, error="ERROR: Sign in to confirm you're not a bot"):
        self.succeed = succeed
        self.error = error
        self.commands = []

    async def __call__(self, cmd, timeout, on_line=None):
        self.commands.append(list(cmd))
        output = Path(cmd[cmd.index("-o") + 1])
        if on_line is not None:
            await on_line("[download]  50.0% of 10.00MiB at 1.00MiB/s ETA 00:05")
        if self.succeed:
            output.write_bytes(b"\x00" * 4096)
            return ToolResult(returncode=0)
        output.with_name(output.name + ".part").write_bytes(b"partial")
        return ToolResult(returncode=1, stderr=self.error)


class FakeUploader:
    def __init__(self, failures=0):
        self.failures = failures
        self.keys = []

    async def __call__(self, local_path, key, content_type="video/mp4"):
        if self.failures:
            self.failures -= 1
            raise UploadFailed("Upload to object storage failed: connection reset")
        self.keys.append(key)
        Path(local_path).unlink()
        return f"{STORAGE_BASE}/{key}"


class RecordingSender:
    def __init__(self):
        self.sent = []

    def __call__(self, subject, body):
        self.sent.append((subject, body))


@pytest.fixture
def pipeline(tmp_path, session_maker):
    ytdlp = FakeYtDlp()
    uploader = FakeUploader()
    sender = RecordingSender()
    queued = []

    async def record(content_id):
        queued.append(content_id)

    cookie_path = tmp_path / "cookies" / "youtube_cookies.txt"
    cookie_path.parent.mkdir(parents=True)
    cookie_path.write_text(NETSCAPE_HEADER + ".youtube.com\tTRUE\t/\tTRUE\t0\tSID\tabc\n")

    async def cookies_accepted(cmd, timeout, on_line=None):
        return ToolResult(returncode=0, stdout='{"id": "jNQXAC9IVRw", "title": "Me at the zoo"}')

    manager = CookieFreshnessManager(str(cookie_path), email="", password="", runner=cookies_accepted)
    manager.write_meta(1)
    reset_cookie_manager(manager)
    reset_operator_notifier(OperatorNotifier(sender=sender, cooldown_seconds=3600))
    reset_download_queue(DownloadQueue(record, max_concurrent=1))

    scratch_dir = tmp_path / "scratch"
    chain = functools.partial(
        run_extraction_chain,
        strategies=[ExtractionStrategy("ios-1080", player_client="ios", max_height=1080)],
        runner=ytdlp,
    )
    metadata = AsyncMock(
        return_value=BestEffort.ok({"metadata": {"title": "Never Gonna Give You Up", "duration": 213}, "formats": []})
    )
    probe = AsyncMock(
        return_value=BestEffort.ok({"width": 1920, "height": 1080, "resolution": "1920x1080", "ext": "mp4"})
    )

    with patch("services.youtube_download.async_session_maker", session_maker), \
         patch("services.extraction.settings.DOWNLOAD_SCRATCH_DIR", str(scratch_dir)), \
         patch("services.youtube_download.settings.INFLIGHT_POLL_SECONDS", 0.01), \
         patch("services.youtube_download.run_extraction_chain", chain), \
         patch("services.youtube_download.fetch_video_metadata", metadata), \
         patch("services.youtube_download.probe_downloaded_format", probe), \
         patch("services.youtube_download.upload_file", uploader):
        yield SimpleNamespace(
            session_maker=session_maker,
            ytdlp=ytdlp,
            uploader=uploader,
            sender=sender,
            queued=queued,
            scratch_dir=scratch_dir,
        )


async def _create_content(session_maker, source_url=VIDEO_URL, status="pending", **fields):
    async with session_maker() as db:
        content = Content(title="Lesson clip", source_url=source_url, download_status=status, **fields)
        db.add(content)
        await db.commit()
        await db.refresh(content)
        return content.id


async def _load(session_maker, model, row_id):
    async with session_maker() as db:
        result = await db.execute(select(model).where(model.id == row_id))
        return result.scalar_one()


async def _identity_for(session_maker, external_id="dQw4w9WgXcQ"):
    async with session_maker() as db:
        return await identity_store.get_by_external_id(db, external_id)


@pytest.mark.asyncio
async def test_new_video_is_downloaded_uploaded_and_linked(pipeline):
    content_id = await _create_content(pipeline.session_maker)

    await process_content_download(content_id)

    content = await _load(pipeline.session_maker, Content, content_id)
    identity = await _identity_for(pipeline.session_maker)
    assert content.download_status == "completed"
    assert content.download_progress == 100
    assert content.download_error is None
    assert content.downloaded_url == f"{STORAGE_BASE}/youtube-videos/dQw4w9WgXcQ/dQw4w9WgXcQ.mp4"
    assert content.video_identity_id == identity.id

    assert identity.download_status == "completed"
    assert identity.storage_url == content.downloaded_url
    assert identity.storage_key == "youtube-videos/dQw4w9WgXcQ/dQw4w9WgXcQ.mp4"
    assert identity.usage_count == 1
    assert identity.downloaded_format["resolution"] == "1920x1080"
    assert identity.video_metadata["title"] == "Never Gonna Give You Up"
    assert identity.download_completed_at is not None

    cmd = pipeline.ytdlp.commands[0]
    assert "--cookies" not in cmd
    assert "--download-sections" not in cmd
    assert list(pipeline.scratch_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_second_content_for_same_video_is_a_cache_hit(pipeline):
    first = await _create_content(pipeline.session_maker, VIDEO_URL)
    second = await _create_content(pipeline.session_maker, SHORT_URL, start_time=30, end_time=60)

    await process_content_download(first)
    await process_content_download(second)

    assert len(pipeline.ytdlp.commands) == 1
    assert len(pipeline.uploader.keys) == 1
    identity = await _identity_for(pipeline.session_maker)
    assert identity.usage_count == 2
    second_content = await _load(pipeline.session_maker, Content, second)
    assert second_content.download_status == "completed"
    assert second_content.downloaded_url == identity.storage_url
    assert second_content.start_time == 30


@pytest.mark.asyncio
async def test_exhausted_chain_fails_both_records_and_alerts_operator(pipeline):
    pipeline.ytdlp.succeed = False
    content_id = await _create_content(pipeline.session_maker)

    with pytest.raises(ExtractionFailed):
        await process_content_download(content_id)

    content = await _load(pipeline.session_maker, Content, content_id)
    identity = await _identity_for(pipeline.session_maker)
    assert content.download_status == "failed"
    assert content.download_progress == 0
    assert content.download_error.startswith("All download methods failed.")
    assert identity.download_status == "failed"
    assert identity.download_progress == 0
    assert "Sign in to confirm" in identity.download_error
    assert list(pipeline.scratch_dir.iterdir()) == []
    assert len(pipeline.sender.sent) == 1


@pytest.mark.asyncio
async def test_non_auth_failure_does_not_alert(pipeline):
    pipeline.ytdlp.succeed = False
    pipeline.ytdlp.error = "ERROR: Video unavailable. This video is private"
    content_id = await _create_content(pipeline.session_maker)

    with pytest.raises(ExtractionFailed):
        await process_content_download(content_id)

    assert pipeline.sender.sent == []


@pytest.mark.asyncio
async def test_upload_failure_keeps_scratch_file_for_retry(pipeline):
    pipeline.uploader.failures = 1
    content_id = await _create_content(pipeline.session_maker)

    with pytest.raises(UploadFailed):
        await process_content_download(content_id)

    identity = await _identity_for(pipeline.session_maker)
    assert identity.download_status == "failed"
    kept = list(pipeline.scratch_dir.iterdir())
    assert len(kept) == 1
    assert kept[0].stat().st_size == 4096

    await process_content_download(content_id)

    assert len(pipeline.ytdlp.commands) == 1
    identity = await _identity_for(pipeline.session_maker)
    assert identity.download_status == "completed"
    content = await _load(pipeline.session_maker, Content, content_id)
    assert content.download_status == "completed"
    assert list(pipeline.scratch_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_waits_for_in_flight_download_instead_of_duplicating(pipeline):
    async with pipeline.session_maker() as db:
        identity = await identity_store.find_or_create(db, VIDEO_URL)
        assert await identity_store.claim_download(db, identity)
        identity_id = identity.id
    content_id = await _create_content(pipeline.session_maker)

    async def finish_elsewhere():
        await asyncio.sleep(0.05)
        async with pipeline.session_maker() as db:
            owned = await identity_store.get_identity(db, identity_id)
            await identity_store.mark_uploading(db, owned)
            await identity_store.mark_completed(db, owned, f"{STORAGE_BASE}/elsewhere.mp4", "elsewhere.mp4")

    await asyncio.gather(process_content_download(content_id), finish_elsewhere())

    assert pipeline.ytdlp.commands == []
    content = await _load(pipeline.session_maker, Content, content_id)
    assert content.download_status == "completed"
    assert content.downloaded_url == f"{STORAGE_BASE}/elsewhere.mp4"
    assert (await _identity_for(pipeline.session_maker)).usage_count == 1


@pytest.mark.asyncio
async def test_in_flight_failure_fails_waiting_content(pipeline):
    async with pipeline.session_maker() as db:
        identity = await identity_store.find_or_create(db, VIDEO_URL)
        await identity_store.claim_download(db, identity)
        identity_id = identity.id
    content_id = await _create_content(pipeline.session_maker)

    async def fail_elsewhere():
        await asyncio.sleep(0.05)
        async with pipeline.session_maker() as db:
            owned = await identity_store.get_identity(db, identity_id)
            await identity_store.mark_failed(db, owned, "ERROR: Video unavailable")

    outcome, _ = await asyncio.gather(
        process_content_download(content_id), fail_elsewhere(), return_exceptions=True
    )

    assert isinstance(outcome, MediaPipelineError)
    assert "Video unavailable" in str(outcome)
    content = await _load(pipeline.session_maker, Content, content_id)
    assert content.download_status == "failed"
    assert content.download_error == "ERROR: Video unavailable"


@pytest.mark.asyncio
async def test_unrecognized_url_fails_content(pipeline):
    content_id = await _create_content(pipeline.session_maker, "https://vimeo.com/123456")

    with pytest.raises(InvalidSourceUrl):
        await process_content_download(content_id)

    content = await _load(pipeline.session_maker, Content, content_id)
    assert content.download_status == "failed"
    assert content.download_error
    assert pipeline.ytdlp.commands == []


@pytest.mark.asyncio
async def test_retry_resets_failed_records_and_queues(pipeline):
    pipeline.ytdlp.succeed = False
    content_id = await _create_content(pipeline.session_maker)
    with pytest.raises(ExtractionFailed):
        await process_content_download(content_id)

    async with pipeline.session_maker() as db:
        result = await db.execute(select(Content).where(Content.id == content_id))
        content = result.scalar_one()
        job = await request_retry(db, content)
    await asyncio.sleep(0)

    assert job.content_id == content_id
    assert pipeline.queued == [content_id]
    identity = await _identity_for(pipeline.session_maker)
    assert identity.download_status == "pending"
    content = await _load(pipeline.session_maker, Content, content_id)
    assert content.download_status == "pending"
    assert content.download_error is None


@pytest.mark.asyncio
async def test_recovery_fails_orphans_and_requeues_unfinished_content(pipeline):
    async with pipeline.session_maker() as db:
        identity = await identity_store.find_or_create(db, VIDEO_URL)
        await identity_store.claim_download(db, identity)
    interrupted = await _create_content(pipeline.session_maker, status="downloading")
    waiting = await _create_content(pipeline.session_maker, status="pending")
    await _create_content(pipeline.session_maker, status="completed")
    await _create_content(pipeline.session_maker, source_url=None, status="pending")

    summary = await recover_interrupted_downloads()
    await asyncio.sleep(0.01)

    assert summary == {"identities_failed": 1, "requeued": 2}
    assert sorted(pipeline.queued) == sorted([interrupted, waiting])
    orphan = await _identity_for(pipeline.session_maker)
    assert orphan.download_status == "failed"
    assert orphan.download_error == "Download interrupted by server restart"


def test_only_one_worker_claims_startup_recovery(tmp_path):
    lock_path = str(tmp_path / "recovery.lock")

    owner = claim_recovery_lock(lock_path)
    assert owner is not None
    assert owner.held
    assert claim_recovery_lock(lock_path) is None

    owner.release()
    successor = claim_recovery_lock(lock_path)
    assert successor is not None
    successor.release()
    assert not Path(lock_path).exists()


@pytest.mark.asyncio
async def test_identity_rows_are_never_duplicated_across_url_forms(pipeline):
    await process_content_download(await _create_content(pipeline.session_maker, VIDEO_URL))
    await process_content_download(await _create_content(pipeline.session_maker, SHORT_URL))
    await process_content_download(
        await _create_content(pipeline.session_maker, "https://www.youtube.com/embed/dQw4w9WgXcQ")
    )

    async with pipeline.session_maker() as db:
        rows = (await db.execute(select(VideoIdentity))).scalars().all()
    assert len(rows) == 1
    assert rows[0].usage_count == 3
