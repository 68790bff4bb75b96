"""Runtime configuration for the sync engine.

Settings are read from environment variables (prefix ``SYNC_``). A ``.env``
file at the repository root is loaded first if it exists, so local development
does not need exported variables.

Usage:
    from core.config import load_settings

    settings = load_settings()
    store = LocalStore(settings.local_db_path)
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


REPO_ROOT = Path(__file__).resolve().parents[1]
ENV_PATH = REPO_ROOT / ".env"

DEFAULT_LOCAL_DB_PATH = REPO_ROOT / "invoice_sync.db"
DEFAULT_REMOTE_TIMEOUT_SECONDS = 30.0


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return float(value)


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


@dataclass
class SyncSettings:
    """Configuration for the local store, remote API and sync behaviour.

    Attributes:
        local_db_path: SQLite file backing the LocalStore
        remote_store: Registered RecordStore type used as the remote ("cloud", "memory")
        remote_base_url: Base URL of the cloud records API
        remote_api_key: Bearer token for the cloud API (optional)
        remote_timeout_seconds: Bound applied to every remote call
        remote_max_retries: Retries for 429/5xx responses in the HTTP client
        probe_host / probe_port: TCP endpoint used as the OS connectivity signal
        probe_url: If set, an HTTP health URL is probed instead of TCP
        probe_timeout_seconds: Timeout for a single probe
        probe_cache_seconds: How long a probe result is reused
        force_offline: Start with the manual offline switch on
        pull_on_login: Start a pull cycle in the background after login
        log_level: Root logging level name
        log_json: Emit JSON log lines instead of human-readable ones
    """
    local_db_path: Path = DEFAULT_LOCAL_DB_PATH
    remote_store: str = "cloud"
    remote_base_url: str = "http://localhost:8080/api/v1"
    remote_api_key: Optional[str] = None
    remote_timeout_seconds: float = DEFAULT_REMOTE_TIMEOUT_SECONDS
    remote_max_retries: int = 3
    probe_host: str = "1.1.1.1"
    probe_port: int = 53
    probe_url: Optional[str] = None
    probe_timeout_seconds: float = 3.0
    probe_cache_seconds: float = 5.0
    force_offline: bool = False
    pull_on_login: bool = True
    log_level: str = "INFO"
    log_json: bool = False

    @property
    def log_level_value(self) -> int:
        """Numeric logging level for ``log_level``."""
        level = logging.getLevelName(self.log_level.upper())
        return level if isinstance(level, int) else logging.INFO


def load_settings(env_path: Optional[Path] = None) -> SyncSettings:
    """Build SyncSettings from the environment.

    Args:
        env_path: Optional .env file to load (defaults to repo root .env)

    Returns:
        Populated SyncSettings
    """
    path = env_path or ENV_PATH
    if path.exists():
        load_dotenv(path)

    db_path = os.getenv("SYNC_LOCAL_DB_PATH")

    return SyncSettings(
        local_db_path=Path(db_path) if db_path else DEFAULT_LOCAL_DB_PATH,
        remote_store=os.getenv("SYNC_REMOTE_STORE", SyncSettings.remote_store),
        remote_base_url=os.getenv("SYNC_REMOTE_BASE_URL", SyncSettings.remote_base_url),
        remote_api_key=os.getenv("SYNC_REMOTE_API_KEY") or None,
        remote_timeout_seconds=_env_float("SYNC_REMOTE_TIMEOUT_SECONDS", DEFAULT_REMOTE_TIMEOUT_SECONDS),
        remote_max_retries=_env_int("SYNC_REMOTE_MAX_RETRIES", SyncSettings.remote_max_retries),
        probe_host=os.getenv("SYNC_PROBE_HOST", SyncSettings.probe_host),
        probe_port=_env_int("SYNC_PROBE_PORT", SyncSettings.probe_port),
        probe_url=os.getenv("SYNC_PROBE_URL") or None,
        probe_timeout_seconds=_env_float("SYNC_PROBE_TIMEOUT_SECONDS", SyncSettings.probe_timeout_seconds),
        probe_cache_seconds=_env_float("SYNC_PROBE_CACHE_SECONDS", SyncSettings.probe_cache_seconds),
        force_offline=_env_bool("SYNC_FORCE_OFFLINE", False),
        pull_on_login=_env_bool("SYNC_PULL_ON_LOGIN", True),
        log_level=os.getenv("SYNC_LOG_LEVEL", "INFO"),
        log_json=_env_bool("SYNC_LOG_JSON", False),
    )
