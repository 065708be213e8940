import os
import tempfile
import uuid
from pathlib import Path

import pytest

# Point the app at a throwaway SQLite file before `studyapp` is imported.
_DB_DIR = Path(tempfile.mkdtemp(prefix="studyapp-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR / 'test.db'}"
os.environ["AUTH_RATE_LIMIT_PER_MIN"] = "1000"
os.environ.setdefault("ENV", "dev")

from fastapi.testclient import TestClient  # noqa: E402
from studyapp.main import app  # noqa: E402


@pytest.fixture(scope="session")
def client():
    return TestClient(app)


@pytest.fixture
def make_user(client):
    """Register and log in a fresh user; return `(user_json, auth_headers)`."""
    def _make(prefix: str = "user", password: str = "secret123"):
        tag = uuid.uuid4().hex[:8]
        email = f"{prefix}-{tag}@example.com"
        username = f"{prefix}_{tag}"
        r = client.post('/auth/register', json={'email': email, 'username': username, 'password': password})
        assert r.status_code == 200, r.text
        login = client.post('/auth/login', json={'email': email, 'password': password})
        assert login.status_code == 200, login.text
        body = login.json()
        return body['user'], {'Authorization': f"Bearer {body['access_token']}"}
    return _make
