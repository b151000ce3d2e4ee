"""Centralized application configuration."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional
import logging
import os
import sys


def get_default_data_dir(
    app_name: str,
    *,
    platform: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
) -> Path:
    """Return an OS-specific user data directory for ``app_name``."""

    platform_id = (platform or sys.platform).lower()
    environ = dict(env or os.environ)
    home_dir = Path(home or Path.home())
    sanitized = app_name.strip() or "app"
    sanitized = sanitized.replace("/", "-").replace("\\", "-")

    if platform_id.startswith("win"):
        base = Path(environ.get("APPDATA") or home_dir / "AppData" / "Roaming")
    elif platform_id == "darwin":
        base = Path(home_dir / "Library" / "Application Support")
    else:
        base = Path(environ.get("XDG_DATA_HOME") or home_dir / ".local" / "share")

    return (base.expanduser() / sanitized)


APP_NAME = "TechTracker"


DATA_DIR = get_default_data_dir(APP_NAME)
LOG_DIR = DATA_DIR / "logs"

for _dir in (DATA_DIR, LOG_DIR):
    _dir.mkdir(parents=True, exist_ok=True)


CACHE_DB_PATH = DATA_DIR / "cache.db"
SYNC_LOG_PATH = LOG_DIR / "sync.log"


@dataclass(frozen=True)
class SyncSettings:
    default_endpoint: str = "http://localhost:5000/api/technologies"
    import_path: str = "import-roadmap"
    stale_after_sec: float = 300.0
    revisit_refresh_sec: float = 300.0
    debounce_sec: float = 2.0
    request_timeout_sec: float = 10.0
    max_backoff_sec: float = 30.0


SYNC = SyncSettings()


@dataclass(frozen=True)
class LoggingSettings:
    path: Path = SYNC_LOG_PATH
    level: int = logging.INFO
    max_bytes: int = 1_000_000
    backup_count: int = 3
    fmt: str = "%(asctime)s [%(levelname)s] %(message)s"


LOGGING = LoggingSettings()


@dataclass(frozen=True)
class CacheKeys:
    data_prefix: str = "data_"
    endpoint: str = "apiEndpoint"
    identity: str = "apiUser"


CACHE_KEYS = CacheKeys()


__all__ = [
    "APP_NAME",
    "DATA_DIR",
    "LOG_DIR",
    "CACHE_DB_PATH",
    "SYNC_LOG_PATH",
    "SYNC",
    "LOGGING",
    "CACHE_KEYS",
    "get_default_data_dir",
]
