"""Test fixtures using a throwaway SQLite database per test."""

import pytest
import pytest_asyncio

from atelier.config import Settings
from atelier.events import FileWatcher
from atelier.storage import ConversationStore, Database
from atelier.workspace import Workspace


class RecordingClient:
    """Stands in for a WebSocket; records every JSON payload sent."""

    def __init__(self, fail: bool = False) -> None:
        self.sent: list[dict] = []
        self.fail = fail

    async def send_json(self, data) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings isolated from the environment and pointed at tmp_path."""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return make_settings(tmp_path, WORKSPACE_ROOT=str(workspace))


def make_settings(tmp_path, **overrides) -> Settings:
    values = {
        "ANTHROPIC_API_KEY": "test-key",
        "WORDPRESS_API_URL": "",
        "WORDPRESS_USERNAME": "",
        "WORDPRESS_APP_PASSWORD": "",
        "WORKSPACE_ROOT": str(tmp_path),
        "database_path": str(tmp_path / "data" / "conversations.db"),
        "max_rounds": 5,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest_asyncio.fixture
async def db(settings):
    """Function-scoped database with the schema created."""
    database = Database(settings)
    await database.connect()
    yield database
    await database.disconnect()


@pytest_asyncio.fixture
async def store(db):
    """ConversationStore without the background sweep running."""
    return ConversationStore(db)


@pytest.fixture
def watcher() -> FileWatcher:
    return FileWatcher()


@pytest.fixture
def workspace(settings, watcher) -> Workspace:
    return Workspace(settings.workspace_root, watcher=watcher)


@pytest.fixture
def make_client():
    """Factory for RecordingClient instances."""
    return RecordingClient


@pytest.fixture
def settings_factory(tmp_path):
    """Build Settings rooted at tmp_path with per-test overrides."""

    def factory(**overrides) -> Settings:
        return make_settings(tmp_path, **overrides)

    return factory
