"""Configuration schema for treesync.

Defines all configuration options with types, defaults, and validation.
Uses Pydantic for schema enforcement and clear error messages.
"""

from __future__ import annotations

import re
import warnings
from enum import Enum
from pathlib import Path
from typing import Any, List, Literal

from pydantic import BaseModel, Field, field_validator


class SubmodulePolicy(str, Enum):
    """How nested repositories are materialized."""

    OFF = "off"
    SHALLOW = "shallow"  # first level only
    RECURSIVE = "recursive"


class GitGC(str, Enum):
    """Garbage collection run after superseded worktrees are pruned."""

    AUTO = "auto"
    ALWAYS = "always"
    AGGRESSIVE = "aggressive"
    OFF = "off"


_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}

_SHA_RE = re.compile(r"^(?:[0-9a-f]{40}|[0-9a-f]{64})$")


def parse_duration(value: Any) -> Any:
    """Accept plain seconds or strings like ``100ms``, ``10s``, ``1m``."""
    if isinstance(value, str):
        match = _DURATION_RE.match(value)
        if not match:
            raise ValueError(f"invalid duration: {value!r}")
        return float(match.group(1)) * _DURATION_UNITS[match.group(2)]
    return value


class SyncConfig(BaseModel):
    """What to mirror, where, and how often."""

    repo: str = Field(description="Remote repository URL (or local path)")
    rev: str = Field(
        default="HEAD",
        description="Branch, tag, full ref, commit (optionally 'sha:<hex>'), or HEAD",
    )
    root: str = Field(description="Root directory owning the store, worktrees and link")
    link: str = Field(
        default="current",
        description="Name of the published symlink under root",
    )
    depth: int = Field(
        default=1,
        ge=0,
        description="History depth to fetch (0 = full history)",
    )
    period: float = Field(
        default=10.0,
        gt=0,
        description="Seconds between cycles in periodic mode",
    )
    sync_timeout: float = Field(
        default=120.0,
        gt=0,
        description="Upper bound for one complete cycle, in seconds",
    )
    one_time: bool = Field(
        default=False,
        description="Run exactly one cycle and exit with its outcome",
    )
    submodules: SubmodulePolicy = Field(
        default=SubmodulePolicy.RECURSIVE,
        description="Submodule policy: off, shallow (first level) or recursive",
    )
    submodules_remote_tracking: List[str] = Field(
        default_factory=list,
        description="Submodule names resolved against their own branch instead of the pinned commit",
    )
    git: str = Field(
        default="git",
        description="git executable used for every git subprocess",
    )
    git_gc: GitGC = Field(
        default=GitGC.AUTO,
        description="Garbage collection after pruning: auto, always, aggressive, off",
    )
    worktree_grace_period: float = Field(
        default=30.0,
        ge=0,
        description="Seconds a superseded worktree is kept before it is pruned",
    )
    touch_file: str = Field(
        default="",
        description="File whose mtime is bumped after each publish (empty = disabled)",
    )
    webhook_url: str = Field(
        default="",
        description="URL called after each publish (empty = disabled)",
    )
    webhook_method: Literal["GET", "POST", "PUT"] = Field(
        default="POST",
        description="HTTP method for the webhook",
    )
    webhook_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Seconds before a webhook call is abandoned",
    )

    @field_validator("period", "sync_timeout", "worktree_grace_period", "webhook_timeout", mode="before")
    @classmethod
    def coerce_duration(cls, v: Any) -> Any:
        return parse_duration(v)

    @field_validator("submodules_remote_tracking", mode="before")
    @classmethod
    def split_names(cls, v: Any) -> Any:
        """Allow a comma-separated string (environment variables)."""
        if isinstance(v, str):
            return [part.strip() for part in v.split(",") if part.strip()]
        return v

    @field_validator("repo", "root")
    @classmethod
    def require_value(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @field_validator("rev")
    @classmethod
    def validate_rev(cls, v: str) -> str:
        v = v.strip()
        if not v:
            return "HEAD"
        if v.startswith("sha:") and not _SHA_RE.match(v[4:].lower()):
            raise ValueError(f"'sha:' must be followed by a full commit id: {v!r}")
        return v

    @field_validator("link")
    @classmethod
    def validate_link(cls, v: str) -> str:
        """The link must be a plain name that cannot collide with the layout."""
        v = v.strip()
        if not v or "/" in v or "\\" in v or v in {".", ".."}:
            raise ValueError(f"link must be a single path component: {v!r}")
        if v in {".git", "worktrees"}:
            raise ValueError(f"link name is reserved: {v!r}")
        return v


class AuthConfig(BaseModel):
    """Transport credentials. The first configured mechanism wins: ssh, password, askpass URL."""

    ssh_key: str = Field(
        default="",
        description="Path to SSH private key (empty = ssh disabled)",
    )
    ssh_known_hosts: bool = Field(
        default=True,
        description="Verify the remote host key",
    )
    ssh_known_hosts_file: str = Field(
        default="",
        description="known_hosts file used when verification is on (empty = ssh default)",
    )
    username: str = Field(default="", description="HTTP username")
    password: str = Field(default="", description="HTTP password or token")
    askpass_url: str = Field(
        default="",
        description="Endpoint returning 'username=' and 'password=' lines, queried every cycle",
    )
    askpass_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Seconds before a credential endpoint request is abandoned",
    )

    @field_validator("askpass_timeout", mode="before")
    @classmethod
    def coerce_duration(cls, v: Any) -> Any:
        return parse_duration(v)

    @field_validator("ssh_key", "ssh_known_hosts_file")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Warn if a referenced file doesn't exist (it may be mounted later)."""
        if v:
            path = Path(v).expanduser()
            if not path.exists():
                warnings.warn(
                    f"File does not exist: {v}",
                    UserWarning,
                )
        return v


class HealthConfig(BaseModel):
    """Thresholds that turn a healthy mirror stale."""

    stale_after: float = Field(
        default=300.0,
        gt=0,
        description="Seconds since the last successful cycle before health goes stale",
    )
    max_failures: int = Field(
        default=3,
        ge=0,
        description="Consecutive failed cycles tolerated before health goes stale",
    )

    @field_validator("stale_after", mode="before")
    @classmethod
    def coerce_duration(cls, v: Any) -> Any:
        return parse_duration(v)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Log level",
    )
    dir: str = Field(
        default="",
        description="Log directory (empty = stderr only)",
    )
    max_bytes: int = Field(
        default=10485760,  # 10MB
        ge=1024,
        description="Max log file size before rotation",
    )
    backup_count: int = Field(
        default=5,
        ge=0,
        description="Number of backup log files to keep",
    )

    @field_validator("level", mode="before")
    @classmethod
    def upper_level(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


class TreesyncConfig(BaseModel):
    """Root configuration model."""

    version: int = Field(
        default=1,
        description="Config schema version",
    )
    sync: SyncConfig
    auth: AuthConfig = Field(default_factory=AuthConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def for_repo(cls, repo: str, root: str, **sync: Any) -> "TreesyncConfig":
        """Build a config for a repo/root pair with defaults elsewhere."""
        return cls.model_validate({"sync": {"repo": repo, "root": root, **sync}})
