"""Configuration loading and merging for treesync.

Handles TOML loading, deep merging, and environment overlay.
"""

from __future__ import annotations

import os
import sys
import warnings
from pathlib import Path
from typing import Any, Dict, Optional, Union

# TOML loading: tomllib (3.11+) with the tomli backport on 3.10
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from pydantic import ValidationError

from .config_schema import TreesyncConfig
from .errors import ConfigError


CONFIG_FILENAME = "config.toml"
USER_CONFIG_DIR = ".treesync"
ENV_CONFIG_PATH = "TREESYNC_CONFIG"

# Environment variable -> (section, key)
ENV_MAPPING: Dict[str, tuple[str, str]] = {
    # Sync
    "TREESYNC_REPO": ("sync", "repo"),
    "TREESYNC_REV": ("sync", "rev"),
    "TREESYNC_ROOT": ("sync", "root"),
    "TREESYNC_LINK": ("sync", "link"),
    "TREESYNC_DEPTH": ("sync", "depth"),
    "TREESYNC_PERIOD": ("sync", "period"),
    "TREESYNC_SYNC_TIMEOUT": ("sync", "sync_timeout"),
    "TREESYNC_ONE_TIME": ("sync", "one_time"),
    "TREESYNC_SUBMODULES": ("sync", "submodules"),
    "TREESYNC_SUBMODULES_REMOTE_TRACKING": ("sync", "submodules_remote_tracking"),
    "TREESYNC_GIT": ("sync", "git"),
    "TREESYNC_GIT_GC": ("sync", "git_gc"),
    "TREESYNC_WORKTREE_GRACE_PERIOD": ("sync", "worktree_grace_period"),
    "TREESYNC_TOUCH_FILE": ("sync", "touch_file"),
    "TREESYNC_WEBHOOK_URL": ("sync", "webhook_url"),
    # Auth
    "TREESYNC_SSH_KEY": ("auth", "ssh_key"),
    "TREESYNC_SSH_KNOWN_HOSTS": ("auth", "ssh_known_hosts"),
    "TREESYNC_SSH_KNOWN_HOSTS_FILE": ("auth", "ssh_known_hosts_file"),
    "TREESYNC_USERNAME": ("auth", "username"),
    "TREESYNC_PASSWORD": ("auth", "password"),
    "TREESYNC_ASKPASS_URL": ("auth", "askpass_url"),
    # Health
    "TREESYNC_STALE_AFTER": ("health", "stale_after"),
    "TREESYNC_MAX_FAILURES": ("health", "max_failures"),
    # Logging
    "TREESYNC_LOG_LEVEL": ("logging", "level"),
    "TREESYNC_LOG_DIR": ("logging", "dir"),
    "TREESYNC_LOG_MAX_BYTES": ("logging", "max_bytes"),
    "TREESYNC_LOG_BACKUP_COUNT": ("logging", "backup_count"),
}


def _get_user_config_dir() -> Path:
    """Get user-level config directory (~/.treesync/)."""
    return Path.home() / USER_CONFIG_DIR


def _load_toml(path: Path) -> Dict[str, Any]:
    """Load a TOML file.

    Raises:
        ConfigError: If file cannot be loaded or parsed
    """
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}")
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}")


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries.

    Override values take precedence. Nested dicts are merged recursively.
    Lists are replaced, not merged.
    """
    result = base.copy()

    for key, value in override.items():
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def _apply_env_overlay(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides to config dict.

    Values stay strings; type conversion happens during Pydantic validation.
    """
    result = {
        key: dict(value) if isinstance(value, dict) else value
        for key, value in config_dict.items()
    }

    for env_var, (section, key_name) in ENV_MAPPING.items():
        value = os.getenv(env_var)
        if value is None:
            continue
        result.setdefault(section, {})[key_name] = value

    return result


def load_config(
    config_path: Optional[Union[str, Path]] = None,
    skip_env: bool = False,
    overrides: Optional[Dict[str, Any]] = None,
) -> TreesyncConfig:
    """Load and merge treesync configuration.

    Discovery order (later sources override earlier):
    1. Built-in defaults
    2. User config (~/.treesync/config.toml)
    3. Explicit config file (config_path, else $TREESYNC_CONFIG)
    4. Environment variables (unless skip_env=True)
    5. ``overrides`` (used by embedding code and tests)

    Raises:
        ConfigError: If config files are invalid or required settings are missing
    """
    config_dict: Dict[str, Any] = {}

    user_config_path = _get_user_config_dir() / CONFIG_FILENAME
    if user_config_path.exists():
        try:
            config_dict = _deep_merge(config_dict, _load_toml(user_config_path))
        except ConfigError as e:
            # User config is optional, warn but continue
            warnings.warn(
                f"Skipping invalid user config at {user_config_path}: {e}",
                UserWarning,
            )

    if config_path is None and not skip_env:
        config_path = os.getenv(ENV_CONFIG_PATH) or None
    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_toml(Path(config_path).expanduser()))

    if not skip_env:
        config_dict = _apply_env_overlay(config_dict)

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)

    try:
        return TreesyncConfig.model_validate(config_dict)
    except ValidationError as e:
        raise ConfigError(f"Config validation failed:\n{e}")
