"""Pytest configuration and fixtures."""

import os
import secrets

import pytest

# Generate a unique test secret for this test run to prevent token forgery
_TEST_JWT_SECRET = f"test-only-{secrets.token_urlsafe(32)}"

os.environ.setdefault("JWT_SECRET_KEY", _TEST_JWT_SECRET)
os.environ.setdefault("STORAGE_BACKEND", "sqlite")
os.environ["RATE_LIMIT_ENABLED"] = "false"

from app.auth import create_access_token  # noqa: E402
from app.config import get_settings  # noqa: E402
from app.database import get_db  # noqa: E402
from app.main import app  # noqa: E402
from app.stores.sqlite import SQLiteTaskStore  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

# A syntactically valid bcrypt hash; fixtures never log in with it
FAKE_PASSWORD_HASH = "$2b$04$" + "a" * 53


@pytest.fixture
def store(tmp_path):
    """A fresh SQLite task store per test."""
    return SQLiteTaskStore(tmp_path / "todos.db")


@pytest.fixture
def user(store):
    return store.create_user("test@example.com", "Test User", FAKE_PASSWORD_HASH)


@pytest.fixture
def other_user(store):
    return store.create_user("other@example.com", "Other User", FAKE_PASSWORD_HASH)


@pytest.fixture
def client(store):
    """Test client wired to the per-test store."""
    app.dependency_overrides[get_db] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def auth_headers(user):
    """Bearer headers for ``user``."""
    token = create_access_token(user.id, get_settings(), email=user.email, name=user.name)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def other_auth_headers(other_user):
    token = create_access_token(other_user.id, get_settings())
    return {"Authorization": f"Bearer {token}"}
