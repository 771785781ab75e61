"""Configuration loading for Quillsync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .models import DEFAULT_TYPES


@dataclass
class BackendConfig:
    url: str = ""
    user_id: str = ""
    assessment_id: str = ""
    context_id: str = ""
    data_token: str = ""
    file_token: str = ""
    changes_path: str = "/writer/changes"
    timeout_seconds: float = 30.0
    retry_max_attempts: int = 1
    server_time_header: str = "longessaytime"
    data_token_header: str = "xlasdatatoken"
    file_token_header: str = "xlasfiletoken"


@dataclass
class HistoryConfig:
    """Thresholds of the save decision for documents."""

    check_interval_ms: int = 1000  # minimum time between two unforced checks
    save_interval_ms: int = 5000  # maximum time to wait for a delta save
    save_distance: int = 10  # edit distance that triggers a delta save
    max_distance: int = 1000  # cumulated delta distance before a full save


@dataclass
class SyncConfig:
    enabled: bool = True
    interval_seconds: float = 1.0
    flush_wait_attempts: int = 5
    flush_wait_delay_seconds: float = 1.0
    entity_types: list[str] = field(default_factory=lambda: list(DEFAULT_TYPES))


@dataclass
class StorageConfig:
    db_path: str = "~/.quillsync/state.db"


@dataclass
class Config:
    backend: BackendConfig = field(default_factory=BackendConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with QUILLSYNC_ prefix."""
    return os.environ.get(f"QUILLSYNC_{key}", default)


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Backend overrides
    if url := _get_env("BACKEND_URL"):
        config.backend.url = url
    if user_id := _get_env("USER_ID"):
        config.backend.user_id = user_id
    if assessment_id := _get_env("ASSESSMENT_ID"):
        config.backend.assessment_id = assessment_id
    if context_id := _get_env("CONTEXT_ID"):
        config.backend.context_id = context_id
    if data_token := _get_env("DATA_TOKEN"):
        config.backend.data_token = data_token

    # Storage overrides
    if db_path := _get_env("DB_PATH"):
        config.storage.db_path = db_path

    # Sync overrides
    if sync_enabled := _get_env("SYNC_ENABLED"):
        config.sync.enabled = sync_enabled.lower() in ("true", "1", "yes")
    if sync_interval := _get_env("SYNC_INTERVAL"):
        config.sync.interval_seconds = float(sync_interval)

    # History overrides
    if save_distance := _get_env("SAVE_DISTANCE"):
        config.history.save_distance = int(save_distance)
    if max_distance := _get_env("MAX_DISTANCE"):
        config.history.max_distance = int(max_distance)

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            # Parse backend config
            if "backend" in data:
                backend_data = data["backend"]
                defaults = config.backend
                config.backend = BackendConfig(
                    url=backend_data.get("url", defaults.url),
                    user_id=str(backend_data.get("user_id", defaults.user_id)),
                    assessment_id=str(
                        backend_data.get("assessment_id", defaults.assessment_id)
                    ),
                    context_id=str(backend_data.get("context_id", defaults.context_id)),
                    data_token=backend_data.get("data_token", defaults.data_token),
                    file_token=backend_data.get("file_token", defaults.file_token),
                    changes_path=backend_data.get("changes_path", defaults.changes_path),
                    timeout_seconds=backend_data.get(
                        "timeout_seconds", defaults.timeout_seconds
                    ),
                    retry_max_attempts=backend_data.get(
                        "retry_max_attempts", defaults.retry_max_attempts
                    ),
                    server_time_header=backend_data.get(
                        "server_time_header", defaults.server_time_header
                    ),
                    data_token_header=backend_data.get(
                        "data_token_header", defaults.data_token_header
                    ),
                    file_token_header=backend_data.get(
                        "file_token_header", defaults.file_token_header
                    ),
                )

            # Parse history config
            if "history" in data:
                history_data = data["history"]
                config.history = HistoryConfig(
                    check_interval_ms=history_data.get(
                        "check_interval_ms", config.history.check_interval_ms
                    ),
                    save_interval_ms=history_data.get(
                        "save_interval_ms", config.history.save_interval_ms
                    ),
                    save_distance=history_data.get(
                        "save_distance", config.history.save_distance
                    ),
                    max_distance=history_data.get(
                        "max_distance", config.history.max_distance
                    ),
                )

            # Parse sync config
            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    enabled=sync_data.get("enabled", config.sync.enabled),
                    interval_seconds=sync_data.get(
                        "interval_seconds", config.sync.interval_seconds
                    ),
                    flush_wait_attempts=sync_data.get(
                        "flush_wait_attempts", config.sync.flush_wait_attempts
                    ),
                    flush_wait_delay_seconds=sync_data.get(
                        "flush_wait_delay_seconds", config.sync.flush_wait_delay_seconds
                    ),
                    entity_types=sync_data.get(
                        "entity_types", config.sync.entity_types
                    ),
                )

            # Parse storage config
            if "storage" in data:
                config.storage = StorageConfig(
                    db_path=data["storage"].get("db_path", config.storage.db_path)
                )

    # Apply environment variable overrides
    config = _apply_env_overrides(config)

    return config
