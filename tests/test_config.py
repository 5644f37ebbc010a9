"""
Tests for settings, events and data paths.
"""

from pathlib import Path

import pytest

from scene_pipeline.infra.config import (
    DEFAULT_DEDUP_THRESHOLD,
    SECONDS_PER_HOUR,
    Settings,
)
from scene_pipeline.infra.data_paths import (
    ensure_data_directories,
    get_data_root,
    get_job_store_db_path,
    get_local_store_dir,
    get_project_root,
)
from scene_pipeline.infra.events import JOB_UPDATED, SYNC_FAILED, JobEventBus

ENV_KEYS = [
    "SCENE_DEDUP_THRESHOLD", "REMOTE_STORE_URL", "DATABASE_KEY", "DATABASE_KEYS",
    "SYNC_MAX_RETRY_ATTEMPTS", "DELETE_GRACE_HOURS", "LOG_LEVEL",
    "SCENE_DATA_DIR", "LOCAL_STORE_DIR", "JOB_STORE_DB_PATH",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


class TestSettings:
    """Tests for Settings.from_env."""

    def test_defaults(self):
        settings = Settings.from_env()

        assert settings.dedup_threshold == DEFAULT_DEDUP_THRESHOLD
        assert settings.remote_enabled is False
        assert settings.accepted_database_keys == []
        assert settings.log_level == "INFO"

    def test_remote_needs_url_and_key(self, monkeypatch):
        monkeypatch.setenv("REMOTE_STORE_URL", "https://store.example.com")
        assert Settings.from_env().remote_enabled is False

        monkeypatch.setenv("DATABASE_KEY", "secret")
        assert Settings.from_env().remote_enabled is True

        monkeypatch.setenv("DATABASE_KEY", "   ")
        assert Settings.from_env().remote_enabled is False

    def test_invalid_numbers_fall_back(self, monkeypatch, caplog):
        monkeypatch.setenv("SYNC_MAX_RETRY_ATTEMPTS", "lots")
        monkeypatch.setenv("SCENE_DEDUP_THRESHOLD", "1.5")

        settings = Settings.from_env()

        assert settings.sync_max_retry_attempts == 3
        assert settings.dedup_threshold == DEFAULT_DEDUP_THRESHOLD
        assert "SYNC_MAX_RETRY_ATTEMPTS" in caplog.text

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("SCENE_DEDUP_THRESHOLD", "0.6")
        monkeypatch.setenv("DELETE_GRACE_HOURS", "2")
        monkeypatch.setenv("DATABASE_KEYS", "a, b,,c ")
        monkeypatch.setenv("LOG_LEVEL", "debug")

        settings = Settings.from_env()

        assert settings.dedup_threshold == 0.6
        assert settings.delete_grace == 2 * SECONDS_PER_HOUR
        assert settings.accepted_database_keys == ["a", "b", "c"]
        assert settings.log_level == "DEBUG"


class TestJobEventBus:
    """Tests for JobEventBus."""

    def test_emit_to_subscribers(self):
        bus = JobEventBus()
        received = []
        bus.subscribe(JOB_UPDATED, lambda event, detail: received.append((event, detail)))

        bus.emit(JOB_UPDATED, job_id="job-1")
        bus.emit(SYNC_FAILED, job_id="job-1")

        assert received == [(JOB_UPDATED, {"job_id": "job-1"})]

    def test_unsubscribe(self):
        bus = JobEventBus()
        unsubscribe = bus.subscribe(JOB_UPDATED, lambda event, detail: None)
        assert bus.subscriber_count(JOB_UPDATED) == 1

        unsubscribe()
        unsubscribe()

        assert bus.subscriber_count(JOB_UPDATED) == 0

    def test_failing_subscriber_does_not_block_others(self, caplog):
        bus = JobEventBus()
        received = []

        def broken(event, detail):
            raise RuntimeError("subscriber bug")

        bus.subscribe(JOB_UPDATED, broken)
        bus.subscribe(JOB_UPDATED, lambda event, detail: received.append(detail))

        bus.emit(JOB_UPDATED, job_id=None)

        assert received == [{"job_id": None}]
        assert "subscriber bug" in caplog.text


class TestDataPaths:
    """Tests for data path helpers."""

    def test_project_root_contains_package(self):
        assert (get_project_root() / "scene_pipeline").is_dir()

    def test_defaults_under_data_root(self):
        assert get_data_root() == get_project_root() / "data"
        assert get_local_store_dir() == get_data_root() / "local_store"
        assert get_job_store_db_path() == get_data_root() / "job_store.sqlite"

    def test_env_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SCENE_DATA_DIR", str(tmp_path / "data"))
        assert get_local_store_dir() == tmp_path / "data" / "local_store"

        monkeypatch.setenv("LOCAL_STORE_DIR", str(tmp_path / "elsewhere"))
        monkeypatch.setenv("JOB_STORE_DB_PATH", str(tmp_path / "db.sqlite"))
        assert get_local_store_dir() == tmp_path / "elsewhere"
        assert get_job_store_db_path() == tmp_path / "db.sqlite"

    def test_ensure_data_directories(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SCENE_DATA_DIR", str(tmp_path / "data"))

        ensure_data_directories()

        assert Path(tmp_path / "data" / "local_store").is_dir()
