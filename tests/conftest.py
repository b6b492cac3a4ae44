import os
import tempfile

# Configure the environment before any application module is imported
_TMP = tempfile.mkdtemp(prefix="logdeck-tests-")
os.environ.setdefault("JWT_SECRET", "test-secret-key-that-is-at-least-32-bytes-long")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP, 'logdeck.db')}"
os.environ["BACKUP_DIR"] = os.path.join(_TMP, "backups")
os.environ["INGESTION_ENABLED"] = "false"
os.environ["RETENTION_ENABLED"] = "false"
os.environ["ADMIN_USERNAME"] = "admin"
os.environ["ADMIN_PASSWORD"] = "AdminPass123!"
os.environ["RATE_LIMIT_WHITELIST"] = "testclient"

import pytest
from fastapi.testclient import TestClient

from apps.api.main import app
from auth.auth_manager import auth_manager
from auth.cache_manager import cache_manager
from auth.rate_limiter import rate_limiter
from tracing.engine import tracing_engine


@pytest.fixture(scope="session")
def client():
    with TestClient(app) as c:
        yield c


def _login(client, username, password):
    response = client.post("/api/auth/login", json={"username": username, "password": password})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['token']}"}


@pytest.fixture(scope="session")
def admin_headers(client):
    return _login(client, "admin", "AdminPass123!")


def _user_headers(client, username, role):
    result = auth_manager.create_user(username, f"{username}@example.com", "UserPass123!", role=role)
    assert "error" not in result or result["error"] == "Username already exists"
    return _login(client, username, "UserPass123!")


@pytest.fixture(scope="session")
def analyst_headers(client):
    return _user_headers(client, "analyst1", "analyst")


@pytest.fixture(scope="session")
def viewer_headers(client):
    return _user_headers(client, "viewer1", "viewer")


@pytest.fixture(autouse=True)
def reset_limits():
    rate_limiter.clear()
    cache_manager.delete("settings:all")
    yield
    rate_limiter.clear()


@pytest.fixture
def clean_tracing():
    tracing_engine.clear()
    yield tracing_engine
    tracing_engine.clear()
