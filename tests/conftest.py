"""Pytest configuration and fixtures for the chunk_uploader tests."""

from collections.abc import AsyncGenerator, Callable, Generator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from fakes import EventRecorder, FakeUploadServer

from chunk_uploader.config import (
    ENV_LOG_DIRECTORY,
    ENV_MAX_CONCURRENT,
    ENV_SERVER_URL,
    ENV_STORE_PATH,
    Settings,
)
from chunk_uploader.services import log_service as log_service_module
from chunk_uploader.services.events import EventEmitter
from chunk_uploader.services.log_service import LogService
from chunk_uploader.services.upload_api import UploadApiClient
from chunk_uploader.services.upload_manager import UploadManager
from chunk_uploader.services.upload_store import UploadStore

SERVER_URL = "http://testserver/api"


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Point settings, the store and the JSONL log at a temporary directory."""
    monkeypatch.setenv(ENV_SERVER_URL, SERVER_URL)
    monkeypatch.setenv(ENV_STORE_PATH, str(tmp_path / "store.db"))
    monkeypatch.setenv(ENV_LOG_DIRECTORY, str(tmp_path / "logs"))
    monkeypatch.setenv(ENV_MAX_CONCURRENT, "3")
    # Reset singletons so they pick up the patched environment
    monkeypatch.setattr(Settings, "_instance", None)
    monkeypatch.setattr(log_service_module, "_log_service", None)
    yield


@pytest.fixture
def log_service(tmp_path: Path) -> LogService:
    """Create a log service with a temporary log directory."""
    return LogService(tmp_path / "logs")


@pytest.fixture
def fake_server() -> FakeUploadServer:
    return FakeUploadServer()


@pytest.fixture
def events() -> EventEmitter:
    return EventEmitter()


@pytest.fixture
def recorder(events: EventEmitter) -> EventRecorder:
    return EventRecorder(events)


@pytest.fixture
def store_path(tmp_path: Path) -> Path:
    return tmp_path / "store.db"


@pytest_asyncio.fixture
async def upload_store(store_path: Path) -> AsyncGenerator[UploadStore, None]:
    """An initialized Durable Store in a temporary SQLite file."""
    store = UploadStore(store_path)
    await store.init()
    yield store
    store.close()


@pytest_asyncio.fixture
async def api_client(fake_server: FakeUploadServer) -> AsyncGenerator[UploadApiClient, None]:
    client = UploadApiClient(SERVER_URL, auth_token="secret", transport=fake_server.transport)
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def make_manager(
    fake_server: FakeUploadServer,
    events: EventEmitter,
    log_service: LogService,
    store_path: Path,
) -> AsyncGenerator[Callable[..., UploadManager], None]:
    """Factory for managers talking to the fake server; all are shut down afterwards.

    Defaults use 4-byte chunks so small in-memory files span several chunks.
    """
    managers: list[UploadManager] = []

    def factory(store: UploadStore | None = None, **options: Any) -> UploadManager:
        settings: dict[str, Any] = {
            "chunk_size": 4,
            "max_concurrent": 3,
            "checkpoint_interval": 20,
            "progress_interval": 0.0,
            "slot_poll_interval": 0.05,
            "watchdog_interval": 3600.0,
        }
        settings.update(options)
        api = UploadApiClient(SERVER_URL, transport=fake_server.transport)
        manager = UploadManager(api, store or UploadStore(store_path), events, log=log_service, **settings)
        managers.append(manager)
        return manager

    yield factory

    for manager in managers:
        await manager.shutdown()


@pytest_asyncio.fixture
async def manager(make_manager: Callable[..., UploadManager]) -> UploadManager:
    """An initialized manager with default test options."""
    upload_manager = make_manager()
    await upload_manager.init()
    return upload_manager
