from datetime import datetime, timezone
from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from main import app
from services import cookie_admin
from services.cookie_refresh import CookieFreshnessManager, reset_cookie_manager
from services.notifications import OperatorNotifier, is_auth_error, reset_operator_notifier
from services.session_token import create_session_token
from services.ytdlp_cli import ToolResult


ADMIN_SECRET = "test-admin-secret"
AUTH_HEADER = {"Authorization": f"Bearer {create_session_token('ops-user')['token']}"}
VALID_COOKIES = (
    "# Netscape HTTP Cookie File\n"
    ".youtube.com\tTRUE\t/\tTRUE\t1893456000\tSID\tabc\n"
    ".youtube.com\tTRUE\t/\tTRUE\t1893456000\tHSID\tdef\n"
    ".google.com\tTRUE\t/\tTRUE\t1893456000\tSSID\tghi\n"
)


class RecordingSender:
    def __init__(self):
        self.sent = []

    def __call__(self, subject, body):
        self.sent.append((subject, body))


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def manager(tmp_path):
    instance = CookieFreshnessManager(
        str(tmp_path / "cookies" / "youtube_cookies.txt"),
        email="",
        password="",
        clock=lambda: datetime(2026, 10, 19, tzinfo=timezone.utc),
    )
    reset_cookie_manager(instance)
    return instance


@pytest.fixture
def notifier():
    instance = OperatorNotifier(sender=RecordingSender(), cooldown_seconds=3600, clock=FakeClock())
    reset_operator_notifier(instance)
    return instance


@pytest_asyncio.fixture
async def admin_client(manager, notifier):
    with patch("routers.cookies.settings.ADMIN_SECRET", ADMIN_SECRET):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            yield client


def test_update_rejects_non_cookie_text(manager, notifier):
    result = cookie_admin.update_cookies("hello world", manager, notifier)
    assert result["success"] is False
    assert not manager.cookie_path.exists()


def test_update_writes_file_meta_and_resets_cooldown(manager, notifier):
    notifier.last_sent_at = notifier._clock()

    result = cookie_admin.update_cookies(VALID_COOKIES, manager, notifier)

    assert result["success"] is True
    assert result["linesCount"] == 3
    assert result["path"] == str(manager.cookie_path)
    assert manager.cookie_path.read_text().startswith("# Netscape HTTP Cookie File")
    assert manager.read_meta()["cookieCount"] == 3
    assert notifier.last_sent_at is None


def test_update_keeps_only_latest_backups(manager, notifier):
    for _ in range(8):
        cookie_admin.update_cookies(VALID_COOKIES, manager, notifier)

    backups = list(manager.cookie_path.parent.glob(f"{manager.cookie_path.name}.backup.*"))
    assert len(backups) == 5


def test_cookie_status_reports_file_details(manager, notifier):
    assert cookie_admin.cookie_status(manager, notifier)["exists"] is False

    cookie_admin.update_cookies(VALID_COOKIES, manager, notifier)
    status = cookie_admin.cookie_status(manager, notifier)
    assert status["exists"] is True
    assert status["cookieCount"] == 3
    assert status["size"] > 0
    assert status["lastNotificationSent"] is None


@pytest.mark.parametrize(
    "message,expected",
    [
        ("ERROR: Sign in to confirm you're not a bot. Use --cookies", True),
        ("This video requires login required access", True),
        ("Bot detection triggered", True),
        ("ERROR: Video unavailable", False),
        ("", False),
    ],
)
def test_is_auth_error(message, expected):
    assert is_auth_error(message) is expected


@pytest.mark.asyncio
async def test_notifier_respects_cooldown():
    sender = RecordingSender()
    clock = FakeClock()
    notifier = OperatorNotifier(sender=sender, cooldown_seconds=3600, clock=clock)

    assert await notifier.handle_download_error("ERROR: Sign in to confirm you're not a bot") is True
    assert await notifier.handle_download_error("ERROR: Sign in to confirm you're not a bot") is False
    assert await notifier.handle_download_error("ERROR: Video unavailable") is False
    assert len(sender.sent) == 1
    assert "/youtube-cookies/update" in sender.sent[0][1]

    clock.now += 3601
    assert await notifier.notify("cookies expired") is True
    notifier.reset_cooldown()
    assert await notifier.notify("cookies expired again") is True
    assert len(sender.sent) == 3


@pytest.mark.asyncio
async def test_admin_routes_require_secret(admin_client):
    resp = await admin_client.get("/youtube-cookies/status")
    assert resp.status_code == 401

    resp = await admin_client.get("/youtube-cookies/status", headers={"X-Admin-Secret": "wrong"})
    assert resp.status_code == 401

    resp = await admin_client.get("/youtube-cookies/status", headers={"X-Admin-Secret": ADMIN_SECRET})
    assert resp.status_code == 200
    assert resp.json()["exists"] is False


@pytest.mark.asyncio
async def test_admin_update_upload_and_form(admin_client, manager):
    resp = await admin_client.post(
        "/youtube-cookies/update",
        content=VALID_COOKIES,
        headers={"X-Admin-Secret": ADMIN_SECRET, "Content-Type": "text/plain"},
    )
    assert resp.status_code == 200
    assert resp.json()["linesCount"] == 3

    resp = await admin_client.post(
        f"/youtube-cookies/upload?secret={ADMIN_SECRET}",
        content=b"not cookies",
        headers={"Content-Type": "application/octet-stream"},
    )
    assert resp.status_code == 400

    resp = await admin_client.get(f"/youtube-cookies/form?secret={ADMIN_SECRET}")
    assert resp.status_code == 200
    assert "text/html" in resp.headers["content-type"]
    assert "<textarea" in resp.text


@pytest.mark.asyncio
async def test_admin_notify_test_bypasses_cooldown(admin_client, notifier):
    notifier.last_sent_at = notifier._clock()
    resp = await admin_client.post("/youtube-cookies/notify-test", headers={"X-Admin-Secret": ADMIN_SECRET})
    assert resp.status_code == 200
    assert resp.json() == {"success": True}
    assert len(notifier._sender.sent) == 1


@pytest.mark.asyncio
async def test_cookie_health_reports_probe_result(admin_client, manager):
    async def working_runner(cmd, timeout, on_line=None):
        return ToolResult(returncode=0, stdout='{"title": "probe"}')

    cookie_admin.update_cookies(VALID_COOKIES, manager)
    manager._runner = working_runner

    resp = await admin_client.get("/cookie-health", headers=AUTH_HEADER)
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["status"] == "healthy"
    assert payload["cookiesWork"] is True
    assert payload["needsRefresh"] is False


@pytest.mark.asyncio
async def test_cookie_refresh_without_credentials_returns_502(admin_client):
    resp = await admin_client.post("/cookie-refresh", headers=AUTH_HEADER)
    assert resp.status_code == 502
