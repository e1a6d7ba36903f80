"""Shared test fixtures for backend tests."""

import asyncio
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from pipewatch.config import Settings
from pipewatch.main import create_app
from pipewatch.services.engine import PipelineEngine
from pipewatch.services.events import EventBus
from pipewatch.services.scheduler import Scheduler
from pipewatch.services.store import Store
from pipewatch.startup import MonitoringSystem

CI_API = "https://ci.test"
CI_REPO_API = f"{CI_API}/repos/acme/site"
WEBHOOK_SECRET = "shared-secret"


async def _no_wait(seconds: float) -> None:
    await asyncio.sleep(0)


class RecordingBus(EventBus):
    """EventBus that also keeps every published event for assertions."""

    def __init__(self):
        super().__init__()
        self.published: list[tuple[str, dict]] = []

    async def publish(self, event_type: str, data: dict) -> None:
        self.published.append((event_type, data))
        await super().publish(event_type, data)

    def types(self) -> list[str]:
        return [event_type for event_type, _ in self.published]


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'pipewatch.db'}",
        environment="test",
        ci_api_url=CI_API,
        ci_token="ci-test-token",
        ci_owner="acme",
        ci_repo="site",
        webhook_secret=WEBHOOK_SECRET,
        repo_path=str(tmp_path),
        enable_git_monitor=False,
        enable_marker_monitor=False,
        enable_ci_monitor=False,
    )


@pytest_asyncio.fixture
async def store(tmp_path) -> AsyncGenerator[Store, None]:
    """A fresh SQLite-backed Store per test."""
    s = Store(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def bus() -> RecordingBus:
    return RecordingBus()


@pytest_asyncio.fixture
async def engine(store: Store, bus: RecordingBus) -> PipelineEngine:
    e = PipelineEngine(store, bus)
    await e.initialize()
    return e


@pytest_asyncio.fixture
async def scheduler() -> AsyncGenerator[Scheduler, None]:
    """Scheduler whose waits return immediately."""
    s = Scheduler(sleep=_no_wait)
    yield s
    await s.cancel_all()


@pytest_asyncio.fixture
async def system(test_settings: Settings) -> AsyncGenerator[MonitoringSystem, None]:
    s = MonitoringSystem(test_settings)
    await s.start()
    yield s
    await s.stop()


@pytest_asyncio.fixture
async def client(system: MonitoringSystem, test_settings: Settings) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to an app whose monitoring system is already running."""
    app = create_app(test_settings)
    app.state.system = system
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _drain_background(system_or_scheduler, prefix: str = "") -> None:
    """Wait for spawned one-off tasks (optionally only those whose name starts with ``prefix``)."""
    scheduler = getattr(system_or_scheduler, "scheduler", system_or_scheduler)
    while True:
        pending = [
            handle.task
            for name, handle in scheduler.jobs.items()
            if handle.interval is None and name.startswith(prefix)
        ]
        if not pending:
            return
        await asyncio.gather(*pending, return_exceptions=True)


@pytest.fixture
def drain():
    return _drain_background
