"""Configuration helpers for the scrape-session persistence pipeline."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parents[1]
ENV_PATH = PROJECT_ROOT / ".env"

# Load environment variables early so downstream modules can rely on them.
load_dotenv(ENV_PATH, override=False)

LOCAL_DATA_PATH_ENV = "LOCAL_DATA_PATH"
TEMP_STORAGE_PATH_ENV = "TEMP_STORAGE_PATH"
STORE_BACKEND_ENV = "STORE_BACKEND"
SHARE_DATA_ENV = "SHARE_DATA"
SHARED_DB_URL_ENV = "SHARED_DB_URL"
LOCK_POLL_INTERVAL_ENV = "LOCK_POLL_INTERVAL_MS"
LOCK_LEASE_ENV = "LOCK_LEASE_SECONDS"
LOCK_TIMEOUT_ENV = "LOCK_TIMEOUT_SECONDS"
API_HOST_ENV = "API_HOST"
API_PORT_ENV = "API_PORT"
API_LOG_LEVEL_ENV = "API_LOG_LEVEL"

DEFAULT_LOCAL_DATA_DIR = PROJECT_ROOT / "data" / "sessions"
DEFAULT_STAGING_DIR = PROJECT_ROOT / "data" / "staging"
DEFAULT_SHARED_DB = PROJECT_ROOT / "data" / "shared.db"
DEFAULT_LOCK_POLL_INTERVAL_MS = 100
DEFAULT_LOCK_LEASE_SECONDS = 30.0
DEFAULT_API_HOST = "127.0.0.1"
DEFAULT_API_PORT = 3000

STORE_BACKENDS = ("local", "shared")
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class StorageSettings:
    """Where sessions are staged and committed, and which backend owns them."""

    local_data_dir: Path
    staging_dir: Path
    backend: str
    share_data: bool
    shared_db_url: str

    @property
    def uses_shared_backend(self) -> bool:
        return self.backend == "shared" or self.share_data


@dataclass(frozen=True)
class LockSettings:
    """Timing of the local session-file lock."""

    poll_interval_seconds: float
    lease_seconds: float
    timeout_seconds: Optional[float]


@dataclass(frozen=True)
class ApiSettings:
    host: str
    port: int
    log_level: int


def _get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value


def _get_bool(name: str, default: bool) -> bool:
    raw = _get_env(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise RuntimeError(f"{name} must be a boolean (true/false); received '{raw}'.")


def _get_number(name: str, default: Optional[float], *, minimum: float = 0.0) -> Optional[float]:
    raw = _get_env(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number; received '{raw}'.") from exc
    if value <= minimum:
        raise RuntimeError(f"{name} must be greater than {minimum:g}; received '{raw}'.")
    return value


def get_storage_settings() -> StorageSettings:
    """Resolve storage locations and backend selection from the environment."""

    local_dir = Path(_get_env(LOCAL_DATA_PATH_ENV, str(DEFAULT_LOCAL_DATA_DIR))).expanduser()
    staging_dir = Path(_get_env(TEMP_STORAGE_PATH_ENV, str(DEFAULT_STAGING_DIR))).expanduser()
    backend = (_get_env(STORE_BACKEND_ENV, "local") or "local").strip().lower()
    if backend not in STORE_BACKENDS:
        raise RuntimeError(
            f"STORE_BACKEND must be one of {', '.join(STORE_BACKENDS)}; received '{backend}'."
        )
    share_data = _get_bool(SHARE_DATA_ENV, False)
    shared_db_url = _get_env(SHARED_DB_URL_ENV, f"sqlite:///{DEFAULT_SHARED_DB}")
    return StorageSettings(
        local_data_dir=local_dir.resolve(),
        staging_dir=staging_dir.resolve(),
        backend=backend,
        share_data=share_data,
        shared_db_url=shared_db_url,
    )


def get_lock_settings() -> LockSettings:
    poll_ms = _get_number(LOCK_POLL_INTERVAL_ENV, DEFAULT_LOCK_POLL_INTERVAL_MS)
    lease = _get_number(LOCK_LEASE_ENV, DEFAULT_LOCK_LEASE_SECONDS)
    timeout = _get_number(LOCK_TIMEOUT_ENV, None)
    return LockSettings(
        poll_interval_seconds=poll_ms / 1000.0,
        lease_seconds=lease,
        timeout_seconds=timeout,
    )


def get_api_settings() -> ApiSettings:
    """Resolve delegated API bind address and log level."""

    host = _get_env(API_HOST_ENV, DEFAULT_API_HOST)
    raw_port = _get_env(API_PORT_ENV)
    try:
        port = int(raw_port) if raw_port is not None else DEFAULT_API_PORT
    except ValueError as exc:
        raise RuntimeError(f"API_PORT must be an integer; received '{raw_port}'.") from exc
    if not 0 < port < 65536:
        raise RuntimeError(f"API_PORT must be between 1 and 65535; received {port}.")

    level_name = (_get_env(API_LOG_LEVEL_ENV, "INFO") or "INFO").upper()
    log_level = getattr(logging, level_name, None)
    if not isinstance(log_level, int):
        raise RuntimeError(f"API_LOG_LEVEL must be a logging level name; received '{level_name}'.")
    return ApiSettings(host=host, port=port, log_level=log_level)
