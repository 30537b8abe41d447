"""
Pytest fixtures and test configuration for the todosync client tests.
"""

import os
import secrets
from unittest.mock import MagicMock

import pytest

# The end-to-end tests run the backend in-process
os.environ.setdefault("JWT_SECRET_KEY", f"test-only-{secrets.token_urlsafe(32)}")
os.environ.setdefault("STORAGE_BACKEND", "sqlite")
os.environ["RATE_LIMIT_ENABLED"] = "false"

from todosync.client import ApiClient  # noqa: E402
from todosync.storage import LocalStorage  # noqa: E402


@pytest.fixture
def todosync_home(tmp_path, monkeypatch):
    """Point TODOSYNC_HOME at a temp directory."""
    home = tmp_path / "home"
    monkeypatch.setenv("TODOSYNC_HOME", str(home))
    monkeypatch.delenv("TODOSYNC_BACKEND_URL", raising=False)
    monkeypatch.delenv("TODOSYNC_AUTH_TOKEN", raising=False)
    return home


@pytest.fixture
def storage(tmp_path):
    """A fresh local replica."""
    return LocalStorage(tmp_path / "local.db")


@pytest.fixture
def api():
    """An ApiClient double that is online and has nothing to sync."""
    client = MagicMock(spec=ApiClient)
    client.is_online.return_value = True
    client.upload_sync.return_value = {
        "success": True,
        "processed": [],
        "conflicts": [],
        "timestamp": "2024-03-01T00:00:00+00:00",
    }
    client.download_sync.return_value = {"todos": [], "timestamp": "2024-03-01T00:00:00+00:00"}
    client.resolve_conflict.return_value = {"success": True, "message": "Conflict resolved"}
    return client


@pytest.fixture
def backend(tmp_path):
    """The real backend app on a throwaway SQLite store.

    Yields a factory returning an ApiClient logged in as a fresh user that
    talks to the app in-process.
    """
    from app.database import get_db
    from app.main import app
    from app.stores.sqlite import SQLiteTaskStore
    from fastapi.testclient import TestClient

    server_store = SQLiteTaskStore(tmp_path / "server.db")
    app.dependency_overrides[get_db] = lambda: server_store
    clients = []

    def connect(email="device@example.com", register=True):
        client = ApiClient("http://testserver", http_client=TestClient(app))
        if register:
            client.register(email, "secret123", "Device User")
        else:
            client.login(email, "secret123")
        clients.append(client)
        return client

    connect.store = server_store
    yield connect

    for client in clients:
        client.close()
    app.dependency_overrides.pop(get_db, None)

