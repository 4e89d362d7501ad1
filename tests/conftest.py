from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from backend.app.dependencies import reset_cached_dependencies
from backend.app.main import create_app

ADMIN_SESSION_TOKEN = "test-admin-session"
CRON_SECRET = "test-cron-secret"


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:  # pyright: ignore[reportUnusedFunction]
    for name in (
        "MANGAN_YOUTUBE_API_KEY",
        "MANGAN_YTDLP_COOKIES_PATH",
        "MANGAN_DB_PATH",
        "MANGAN_LOG_DIR",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("MANGAN_ENABLE_SCHEDULER", "0")


@pytest.fixture
def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    runtime_dir = tmp_path / "runtime-data"
    runtime_dir.mkdir(parents=True, exist_ok=True)
    monkeypatch.setenv("MANGAN_DATA_DIR", str(runtime_dir))
    monkeypatch.setenv("MANGAN_ADMIN_SESSION_TOKEN", ADMIN_SESSION_TOKEN)
    monkeypatch.setenv("MANGAN_CRON_SECRET", CRON_SECRET)
    return runtime_dir


@pytest.fixture
def client(data_dir: Path) -> Iterator[TestClient]:
    _ = data_dir
    reset_cached_dependencies()

    app = create_app()
    with TestClient(app) as test_client:
        yield test_client

    reset_cached_dependencies()


@pytest.fixture
def admin_client(client: TestClient) -> TestClient:
    client.cookies.set("mangan_admin_session", ADMIN_SESSION_TOKEN)
    return client
