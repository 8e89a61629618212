"""Pydantic schema for the YAML configuration.

Every section has defaults, so ``UnifiedConfig()`` is a valid zero-config
setup; the remote root is the only value ``load_config()`` insists on.

Usage:
    from groupshare_sync.config_loader import load_hierarchical_config
    from groupshare_sync.config_schema import build_config

    unified = build_config(load_hierarchical_config())
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class SyncSection(BaseModel):
    """Where local data lives and how a sync session behaves."""

    app_root: str = Field(
        default="GroupShare",
        description="Top-level folder on the remote store",
    )
    device_name: str | None = Field(
        default=None,
        description="Human-readable device name (defaults to the hostname)",
    )
    data_dir: str = Field(
        default=".groupshare/data",
        description="Local store and downloaded song files",
    )
    state_dir: str = Field(
        default=".groupshare/state",
        description="Per-group sync state and device identity",
    )
    conflict_window_seconds: int = Field(
        default=300,
        ge=0,
        description="Edits this close together count as simultaneous",
    )
    max_parallel_uploads: int = Field(default=4, ge=1, le=32)
    checkpoint_skew_seconds: int = Field(default=60, ge=0)
    sync_interval_seconds: int = Field(
        default=30,
        ge=1,
        description="Pause between sessions of the watch command",
    )

    model_config = {"frozen": True}


class RetrySection(BaseModel):
    max_attempts: int = Field(default=3, ge=1, le=10)
    initial_delay: float = Field(default=1.0, ge=0)
    backoff: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=30.0, ge=0)

    model_config = {"frozen": True}


class RemoteSection(BaseModel):
    """Shared folder acting as the remote store."""

    root: str | None = Field(default=None, description="Shared folder path")

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    sync: SyncSection = Field(default_factory=SyncSection)
    retry: RetrySection = Field(default_factory=RetrySection)
    remote: RemoteSection = Field(default_factory=RemoteSection)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


def build_config(raw_data: dict) -> UnifiedConfig:
    """Validate the merged dict from ``load_hierarchical_config()``.

    Missing sections get defaults; unknown top-level sections are ignored
    with a warning.

    Raises:
        pydantic.ValidationError: If a known section holds invalid values.
    """
    if not raw_data:
        return UnifiedConfig()

    known = set(UnifiedConfig.model_fields)
    unknown = sorted(set(raw_data) - known)
    if unknown:
        logger.warning("Ignoring unknown config sections: %s", ", ".join(unknown))
    return UnifiedConfig(**{k: v for k, v in raw_data.items() if k in known})
