"""
Layered YAML configuration loader for groupshare_sync.

Finds config files by convention, resolves ``!include`` directives,
substitutes ``${VAR}`` / ``${VAR:-default}`` references and merges the
files so that the most specific one wins per top-level section.

Usage:
    from groupshare_sync.config_loader import load_hierarchical_config

    raw = load_hierarchical_config()
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "GROUPSHARE_CONFIG"
PROJECT_CONFIG = Path(".groupshare") / "config.yml"
USER_CONFIG = Path(".config") / "groupshare" / "config.yml"

# ---------------------------------------------------------------------------
# Environment references
# ---------------------------------------------------------------------------

# ${NAME} or ${NAME:-fallback}
_ENV_REF = re.compile(r"\$\{([^}:]+?)(?::-(.*?))?\}")


def interpolate_env_vars(value: str) -> str:
    """Substitute environment references inside *value*.

    An unset or empty variable falls back to the ``:-`` default, or to the
    empty string when there is none.  An unterminated ``${`` stays as is.
    """

    def _sub(match: re.Match) -> str:
        current = os.environ.get(match.group(1))
        if current:
            return current
        fallback = match.group(2)
        return fallback if fallback is not None else ""

    return _ENV_REF.sub(_sub, value)


def _expand(obj: Any) -> Any:
    if isinstance(obj, str):
        return interpolate_env_vars(obj)
    if isinstance(obj, dict):
        return {key: _expand(item) for key, item in obj.items()}
    if isinstance(obj, list):
        return [_expand(item) for item in obj]
    return obj


# ---------------------------------------------------------------------------
# !include
# ---------------------------------------------------------------------------


class ConfigLoader(yaml.SafeLoader):
    """SafeLoader with an ``!include`` tag, isolated from ``yaml.SafeLoader``."""


def _include(loader: ConfigLoader, node: yaml.ScalarNode) -> Any:
    """Load the file named by ``!include <path>`` (relative to the includer)."""
    raw_path = Path(loader.construct_scalar(node))
    if not raw_path.is_absolute():
        raw_path = Path(loader.name).resolve().parent / raw_path
    target = raw_path.resolve()

    chain: list[Path] = getattr(loader, "_include_chain", [])
    if target in chain:
        cycle = " -> ".join(str(p) for p in [*chain, target])
        raise ValueError(f"Circular include detected: {cycle}")
    if not target.exists():
        raise FileNotFoundError(
            f"Include file not found: {target} "
            f"(referenced from {Path(loader.name).resolve()})"
        )
    return _load_yaml(target, chain=[*chain, target])


ConfigLoader.add_constructor("!include", _include)


def _load_yaml(path: Path, *, chain: list[Path] | None = None) -> Any:
    path = path.resolve()
    with open(path, encoding="utf-8") as fh:
        loader = ConfigLoader(fh)
        loader._include_chain = chain or [path]  # type: ignore[attr-defined]
        try:
            return loader.get_single_data()
        finally:
            loader.dispose()


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def discover_config_files() -> list[Path]:
    """Existing config files, most specific first.

    1. ``$GROUPSHARE_CONFIG``
    2. ``./.groupshare/config.yml``
    3. ``~/.config/groupshare/config.yml``
    """
    candidates: list[Path] = []
    explicit = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        candidates.append(Path(explicit).expanduser().resolve())
    candidates.append(Path.cwd() / PROJECT_CONFIG)
    candidates.append(Path.home() / USER_CONFIG)
    return [p for p in candidates if p.exists()]


_STARTER_CONFIG = """\
# groupshare-sync configuration
#
# Values may reference environment variables: ${HOME}, ${SHARE:-/mnt/share}
#
# sync:
#   app_root: GroupShare
#   device_name: my-laptop
#   data_dir: .groupshare/data
#   state_dir: .groupshare/state
#   conflict_window_seconds: 300
#   max_parallel_uploads: 4
#   checkpoint_skew_seconds: 60
#   sync_interval_seconds: 30
#
# retry:
#   max_attempts: 3
#   initial_delay: 1.0
#   backoff: 2.0
#   max_delay: 30.0
#
# remote:
#   root: /mnt/shared/groupshare
#
# logging:
#   level: INFO
#   file: null
"""


def ensure_config(target: Path | None = None) -> Path:
    """Return the active config file, writing a commented starter if none exists."""
    existing = discover_config_files()
    if existing:
        return existing[0]
    path = target or Path.cwd() / PROJECT_CONFIG
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_STARTER_CONFIG, encoding="utf-8")
    logger.info("Created starter config: %s", path)
    return path


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------


def load_hierarchical_config() -> dict[str, Any]:
    """Load every discovered file and merge them.

    Files are applied from least to most specific; a top-level section in a
    more specific file replaces the whole section of a less specific one.
    Environment references are expanded after merging.

    Returns an empty dict when no config file exists.
    """
    paths = discover_config_files()
    if not paths:
        logger.debug("No config files found, using defaults")
        return {}

    merged: dict[str, Any] = {}
    for path in reversed(paths):
        logger.debug("Loading config: %s", path)
        data = _load_yaml(path)
        if isinstance(data, dict):
            merged.update(data)
        elif data is not None:
            logger.warning(
                "Config file %s has a %s root, expected a mapping; skipping",
                path,
                type(data).__name__,
            )
    return _expand(merged)
