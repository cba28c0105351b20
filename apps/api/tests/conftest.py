import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
from routers import rate_limit
from services import cookie_refresh, download_queue, notifications, stream_proxy


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def reset_process_singletons():
    """Queue, limiter, cookie manager and notifier are process-wide; start each test clean."""
    download_queue.reset_download_queue()
    stream_proxy.reset_proxy_limiter()
    cookie_refresh.reset_cookie_manager()
    notifications.reset_operator_notifier()
    yield
    download_queue.reset_download_queue()
    stream_proxy.reset_proxy_limiter()
    cookie_refresh.reset_cookie_manager()
    notifications.reset_operator_notifier()


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "pipeline.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield maker
    await engine.dispose()
