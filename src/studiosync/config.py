"""Configuration loading from environment variables and studiosync.toml."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

from studiosync.storage.backends import DEFAULT_MAX_BYTES

_DEFAULT_STATE_DIR = Path.home() / ".studiosync" / "state"
_CONFIG_FILENAME = "studiosync.toml"


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() not in ("0", "false", "no", "off", "")


@dataclass
class StorageConfig:
    """Local cache configuration."""

    root: Path = _DEFAULT_STATE_DIR
    max_bytes: int = DEFAULT_MAX_BYTES
    backend: str = "file"  # "file" | "memory"


@dataclass
class RemoteConfig:
    """Remote entity store. An empty ``base_url`` disables replication."""

    base_url: str = ""
    api_key: str = ""
    timeout: float = 15.0


@dataclass
class JobConfig:
    """Generation job backend and polling budget."""

    api_base: str = ""
    poll_interval: float = 5.0
    max_attempts: int = 60
    timeout: float = 30 * 60
    pending_progress: float = 20.0
    progress_ceiling: float = 90.0


@dataclass
class StudioConfig:
    """Top-level studiosync configuration."""

    storage: StorageConfig = field(default_factory=StorageConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    jobs: JobConfig = field(default_factory=JobConfig)
    log_level: str = "INFO"
    clear_on_logout: bool = True


def load_config(config_path: Path | None = None) -> StudioConfig:
    """Load configuration from environment variables and optional studiosync.toml.

    Priority: environment variables > studiosync.toml > defaults.
    """
    file_data: dict = {}
    if config_path and config_path.exists():
        file_data = tomllib.loads(config_path.read_text())
    else:
        # Search current dir and ~/.studiosync/
        for candidate in [
            Path.cwd() / _CONFIG_FILENAME,
            Path.home() / ".studiosync" / _CONFIG_FILENAME,
        ]:
            if candidate.exists():
                file_data = tomllib.loads(candidate.read_text())
                break

    storage_data = file_data.get("storage", {})
    remote_data = file_data.get("remote", {})
    jobs_data = file_data.get("jobs", {})

    config = StudioConfig(
        storage=StorageConfig(
            root=Path(
                os.getenv("STUDIOSYNC_STATE_DIR", storage_data.get("root", str(_DEFAULT_STATE_DIR)))
            ).expanduser(),
            max_bytes=int(
                os.getenv(
                    "STUDIOSYNC_STORAGE_MAX_BYTES", storage_data.get("max_bytes", DEFAULT_MAX_BYTES)
                )
            ),
            backend=os.getenv("STUDIOSYNC_STORAGE_BACKEND", storage_data.get("backend", "file")),
        ),
        remote=RemoteConfig(
            base_url=os.getenv("STUDIOSYNC_REMOTE_URL", remote_data.get("base_url", "")),
            api_key=os.getenv("STUDIOSYNC_REMOTE_KEY", remote_data.get("api_key", "")),
            timeout=float(os.getenv("STUDIOSYNC_REMOTE_TIMEOUT", remote_data.get("timeout", 15.0))),
        ),
        jobs=JobConfig(
            api_base=os.getenv("STUDIOSYNC_JOBS_URL", jobs_data.get("api_base", "")),
            poll_interval=float(
                os.getenv("STUDIOSYNC_POLL_INTERVAL", jobs_data.get("poll_interval", 5.0))
            ),
            max_attempts=int(
                os.getenv("STUDIOSYNC_JOB_MAX_ATTEMPTS", jobs_data.get("max_attempts", 60))
            ),
            timeout=float(os.getenv("STUDIOSYNC_JOB_TIMEOUT", jobs_data.get("timeout", 30 * 60))),
            pending_progress=float(
                os.getenv("STUDIOSYNC_JOB_PENDING_PROGRESS", jobs_data.get("pending_progress", 20.0))
            ),
            progress_ceiling=float(
                os.getenv("STUDIOSYNC_JOB_PROGRESS_CEILING", jobs_data.get("progress_ceiling", 90.0))
            ),
        ),
        log_level=os.getenv("STUDIOSYNC_LOG_LEVEL", file_data.get("log_level", "INFO")),
        clear_on_logout=_env_flag(
            "STUDIOSYNC_CLEAR_ON_LOGOUT", bool(file_data.get("clear_on_logout", True))
        ),
    )
    return config
