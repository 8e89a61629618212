"""Runtime configuration for groupshare-sync.

Reads settings from CLI args, environment variables, .env files and the
YAML config.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    GROUPSHARE_REMOTE_ROOT: Shared folder used as the remote store (required)
    GROUPSHARE_APP_ROOT: Top-level folder on the remote (default: GroupShare)
    GROUPSHARE_DEVICE_NAME: Name shown to other members (default: hostname)
    GROUPSHARE_DATA_DIR: Local data directory
    GROUPSHARE_STATE_DIR: Sync state directory
    GROUPSHARE_CONFLICT_WINDOW: Conflict window in seconds (default: 300)
    GROUPSHARE_MAX_PARALLEL_UPLOADS: Concurrent uploads, 1-32 (default: 4)
    GROUPSHARE_MAX_ATTEMPTS: Attempts per remote call, 1-10 (default: 3)
    GROUPSHARE_SYNC_INTERVAL: Seconds between watch sessions (default: 30)
    GROUPSHARE_DEBUG: Enable debug logging
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from .config_schema import UnifiedConfig

logger = logging.getLogger(__name__)


@dataclass
class Config:
    remote_root: str
    app_root: str = "GroupShare"
    device_name: str | None = None
    data_dir: str = ".groupshare/data"
    state_dir: str = ".groupshare/state"
    conflict_window_seconds: int = 300
    max_parallel_uploads: int = 4
    checkpoint_skew_seconds: int = 60
    sync_interval_seconds: int = 30
    max_attempts: int = 3
    initial_delay: float = 1.0
    backoff: float = 2.0
    max_delay: float = 30.0
    log_level: str = "INFO"
    log_file: str | None = None
    debug: bool = False

    @property
    def store_path(self) -> Path:
        return Path(self.data_dir) / "store.json"

    @property
    def files_dir(self) -> Path:
        return Path(self.data_dir) / "files"


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ValueError if invalid."""
    config.remote_root = config.remote_root.strip()
    if not config.remote_root:
        raise ValueError(
            "Remote root cannot be empty. Set GROUPSHARE_REMOTE_ROOT environment variable."
        )

    config.app_root = config.app_root.strip().strip("/")
    if not config.app_root or "/" in config.app_root or config.app_root == "..":
        raise ValueError(
            f"Invalid app root '{config.app_root}': must be a single folder name"
        )

    if config.initial_delay > config.max_delay:
        raise ValueError(
            f"Retry initial delay ({config.initial_delay}s) exceeds "
            f"max delay ({config.max_delay}s)"
        )

    if not Path(config.remote_root).expanduser().is_dir():
        logger.warning(
            "Remote root %s does not exist yet; sync will fail to authenticate",
            config.remote_root,
        )


def _env_bool(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def _env_int(key: str, low: int, high: int) -> int | None:
    raw = os.getenv(key)
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(
            f"Invalid {key} '{raw}': must be a number between {low} and {high}"
        ) from None
    if not (low <= value <= high):
        raise ValueError(
            f"Invalid {key} '{raw}': must be a number between {low} and {high}"
        )
    return value


def _first(*values):
    for value in values:
        if value is not None:
            return value
    return None


def load_config(
    remote_root: str | None = None,
    device_name: str | None = None,
    data_dir: str | None = None,
    debug: bool = False,
    unified: UnifiedConfig | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI arg > env var / .env > YAML (``unified``) > built-in default

    The caller loads ``.env`` (``load_dotenv()``) before calling so its
    values are visible through ``os.getenv()``.

    Args:
        remote_root: Override shared folder path.
        device_name: Override device name.
        data_dir: Override local data directory.
        debug: Enable debug logging (CLI flag).
        unified: Validated YAML config from ``build_config()``.

    Returns:
        Validated Config instance.

    Raises:
        ValueError: If the remote root is missing or a value is out of range.
    """
    yaml_cfg = unified or UnifiedConfig()
    sync = yaml_cfg.sync
    retry = yaml_cfg.retry

    root = _first(remote_root, os.getenv("GROUPSHARE_REMOTE_ROOT"), yaml_cfg.remote.root)
    if not root:
        raise ValueError(
            "Remote root not found. Set GROUPSHARE_REMOTE_ROOT environment variable, "
            "pass --remote-root, or add 'remote.root' to config.yml."
        )

    env_debug = _env_bool("GROUPSHARE_DEBUG")
    final_debug = debug or bool(env_debug)

    config = Config(
        remote_root=root,
        app_root=_first(os.getenv("GROUPSHARE_APP_ROOT"), sync.app_root),
        device_name=_first(
            device_name, os.getenv("GROUPSHARE_DEVICE_NAME"), sync.device_name
        ),
        data_dir=_first(data_dir, os.getenv("GROUPSHARE_DATA_DIR"), sync.data_dir),
        state_dir=_first(os.getenv("GROUPSHARE_STATE_DIR"), sync.state_dir),
        conflict_window_seconds=_first(
            _env_int("GROUPSHARE_CONFLICT_WINDOW", 0, 86400),
            sync.conflict_window_seconds,
        ),
        max_parallel_uploads=_first(
            _env_int("GROUPSHARE_MAX_PARALLEL_UPLOADS", 1, 32),
            sync.max_parallel_uploads,
        ),
        checkpoint_skew_seconds=sync.checkpoint_skew_seconds,
        sync_interval_seconds=_first(
            _env_int("GROUPSHARE_SYNC_INTERVAL", 1, 86400),
            sync.sync_interval_seconds,
        ),
        max_attempts=_first(
            _env_int("GROUPSHARE_MAX_ATTEMPTS", 1, 10), retry.max_attempts
        ),
        initial_delay=retry.initial_delay,
        backoff=retry.backoff,
        max_delay=retry.max_delay,
        log_level="DEBUG" if final_debug else yaml_cfg.logging.level.upper(),
        log_file=yaml_cfg.logging.file,
        debug=final_debug,
    )

    validate_config(config)

    return config
