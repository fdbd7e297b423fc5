import importlib
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

TEST_JWT_SECRET = "test-secret"

# core.exceptions goes first: every later module must raise the reloaded error classes.
MODULE_ORDER = [
    "video_uploader.config",
    "video_uploader.core.exceptions",
    "video_uploader.core.metrics",
    "video_uploader.db",
    "video_uploader.storage.base",
    "video_uploader.storage.local",
    "video_uploader.storage.s3",
    "video_uploader.storage.factory",
    "video_uploader.schemas",
    "video_uploader.sessions",
    "video_uploader.auth",
    "video_uploader.services.recorder",
    "video_uploader.services.coordinator",
    "video_uploader.services.direct",
    "video_uploader.services.notifier",
    "video_uploader.cleaner",
    "video_uploader.api.routes",
    "video_uploader.main",
]


def _prepare_client(tmp_path, monkeypatch, **overrides):
    project_root = Path(__file__).resolve().parents[1]
    project_root_str = str(project_root)
    if project_root_str not in sys.path:
        sys.path.insert(0, project_root_str)

    env = {
        "DB_URL": f"sqlite:///{tmp_path / 'test.db'}",
        "UPLOAD_DIR": str(tmp_path / "storage"),
        "STORAGE_BACKEND": "local",
        "STORAGE_MIN_PART_SIZE": "0",
        "REDIS_URL": "",
        "ENABLE_CLEANER": "false",
        "JWT_SECRET": TEST_JWT_SECRET,
        "UPLOAD_AUTH_REQUIRED": "false",
        "ADMIN_EMAILS": "",
        "ADMIN_EMAIL": "",
        "SMTP_HOST": "",
        "SESSION_TTL_SECONDS": str(24 * 60 * 60),
        "DIRECT_UPLOAD_LIMIT_BYTES": str(95 * 1024 * 1024),
    }
    env.update(overrides)
    for key, value in env.items():
        monkeypatch.setenv(key, value)

    # Reload modules so configuration changes take effect cleanly.
    for module_name in MODULE_ORDER:
        module = importlib.import_module(module_name)
        importlib.reload(module)

    main = sys.modules["video_uploader.main"]
    test_client = TestClient(main.app)
    test_client.storage_dir = tmp_path / "storage"  # type: ignore[attr-defined]
    return test_client


@pytest.fixture
def make_client(tmp_path, monkeypatch):
    def _make(**overrides):
        return _prepare_client(tmp_path, monkeypatch, **overrides)

    return _make


@pytest.fixture
def client(make_client):
    with make_client() as c:
        yield c


@pytest.fixture
def tokens():
    from video_uploader.auth import create_access_token

    return {
        "admin": create_access_token("admin-1", email="admin@example.com", role="admin", secret=TEST_JWT_SECRET),
        "user": create_access_token("user-1", email="user@example.com", secret=TEST_JWT_SECRET),
    }
