"""
Configuration tests: SYNC_* environment parsing, .env loading and session
wiring from settings.
"""

import asyncio
import logging

import pytest

from connectivity import HttpHealthProbe, StaticProbe, TcpProbe
from connectors.cloud import CloudRecordStore
from connectors.memory import InMemoryRecordStore
from core.config import DEFAULT_LOCAL_DB_PATH, SyncSettings, load_settings
from sync_engine.session import build_probe, build_remote_store, build_session


SYNC_VARS = [
    "SYNC_LOCAL_DB_PATH",
    "SYNC_REMOTE_STORE",
    "SYNC_REMOTE_BASE_URL",
    "SYNC_REMOTE_API_KEY",
    "SYNC_REMOTE_TIMEOUT_SECONDS",
    "SYNC_REMOTE_MAX_RETRIES",
    "SYNC_PROBE_HOST",
    "SYNC_PROBE_PORT",
    "SYNC_PROBE_URL",
    "SYNC_PROBE_TIMEOUT_SECONDS",
    "SYNC_PROBE_CACHE_SECONDS",
    "SYNC_FORCE_OFFLINE",
    "SYNC_PULL_ON_LOGIN",
    "SYNC_LOG_LEVEL",
    "SYNC_LOG_JSON",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Unset every SYNC_* variable; values loaded from a .env are removed on teardown."""
    for name in SYNC_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    return tmp_path / "missing.env"


class TestLoadSettings:
    def test_defaults(self, clean_env):
        settings = load_settings(env_path=clean_env)

        assert settings.local_db_path == DEFAULT_LOCAL_DB_PATH
        assert settings.remote_store == "cloud"
        assert settings.remote_timeout_seconds == 30.0
        assert settings.force_offline is False
        assert settings.pull_on_login is True
        assert settings.log_level_value == logging.INFO

    def test_environment_overrides(self, clean_env, monkeypatch, tmp_path):
        monkeypatch.setenv("SYNC_LOCAL_DB_PATH", str(tmp_path / "local.db"))
        monkeypatch.setenv("SYNC_REMOTE_STORE", "memory")
        monkeypatch.setenv("SYNC_REMOTE_TIMEOUT_SECONDS", "2.5")
        monkeypatch.setenv("SYNC_REMOTE_MAX_RETRIES", "0")
        monkeypatch.setenv("SYNC_FORCE_OFFLINE", "yes")
        monkeypatch.setenv("SYNC_PULL_ON_LOGIN", "false")
        monkeypatch.setenv("SYNC_LOG_LEVEL", "debug")
        monkeypatch.setenv("SYNC_REMOTE_API_KEY", "")

        settings = load_settings(env_path=clean_env)

        assert settings.local_db_path == tmp_path / "local.db"
        assert settings.remote_store == "memory"
        assert settings.remote_timeout_seconds == 2.5
        assert settings.remote_max_retries == 0
        assert settings.force_offline is True
        assert settings.pull_on_login is False
        assert settings.remote_api_key is None
        assert settings.log_level_value == logging.DEBUG

    def test_dotenv_file(self, clean_env, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("SYNC_REMOTE_BASE_URL=https://sync.example.com/api/v1\nSYNC_PROBE_PORT=443\n")

        settings = load_settings(env_path=env_file)

        assert settings.remote_base_url == "https://sync.example.com/api/v1"
        assert settings.probe_port == 443

    def test_unknown_log_level_falls_back_to_info(self):
        assert SyncSettings(log_level="chatty").log_level_value == logging.INFO


class TestWiring:
    def test_probe_selection(self):
        assert isinstance(build_probe(SyncSettings()), TcpProbe)
        assert isinstance(build_probe(SyncSettings(probe_url="http://localhost/health")), HttpHealthProbe)

    def test_remote_store_selection(self):
        cloud = build_remote_store(SyncSettings(remote_base_url="https://sync.example.com", remote_max_retries=1))
        assert isinstance(cloud, CloudRecordStore)
        assert cloud.client.api_config.base_url == "https://sync.example.com"
        assert cloud.client.api_config.retry_config.max_retries == 1

        assert isinstance(build_remote_store(SyncSettings(remote_store="memory")), InMemoryRecordStore)

    def test_build_session(self, tmp_path):
        settings = SyncSettings(
            local_db_path=tmp_path / "local.db",
            remote_timeout_seconds=4.0,
            force_offline=True,
            pull_on_login=False,
        )
        remote = InMemoryRecordStore()

        session = build_session(settings, remote=remote, probe=StaticProbe())

        assert session.remote is remote
        assert session.gate.force_offline is True
        assert session.gate.default_timeout == 4.0
        assert asyncio.run(session.on_login("user-1")) is None
        assert asyncio.run(session.local.test_connection()) is True
