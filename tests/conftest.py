from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from contentpulse.dependencies import reset_cached_dependencies
from contentpulse.main import create_app
from contentpulse.repositories.database import Database


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:  # pyright: ignore[reportUnusedFunction]
    for name in (
        "CONTENT_PULSE_YOUTUBE_API_KEY",
        "CONTENT_PULSE_INSTAGRAM_RAPIDAPI_KEY",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "state.db")
    db.initialize()
    return db


@pytest.fixture
def client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[TestClient]:
    data_dir = tmp_path / "runtime-data"
    data_dir.mkdir(parents=True, exist_ok=True)

    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CONTENT_PULSE_DATA_DIR", str(data_dir))
    monkeypatch.setenv("CONTENT_PULSE_SCHEDULER_ENABLED", "0")
    monkeypatch.setenv("CONTENT_PULSE_SYNC_INTER_REQUEST_DELAY_SECONDS", "0")
    monkeypatch.setenv("CONTENT_PULSE_CHAT_DAILY_LIMIT", "3")
    reset_cached_dependencies()

    app = create_app()
    with TestClient(app) as test_client:
        yield test_client

    reset_cached_dependencies()
