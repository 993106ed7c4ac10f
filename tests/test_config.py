"""Tests for config_schema and config_loader."""

from __future__ import annotations

from pathlib import Path

import pytest

from treesync.config_loader import (
    ENV_CONFIG_PATH,
    _apply_env_overlay,
    _deep_merge,
    _get_user_config_dir,
    load_config,
)
from treesync.config_schema import (
    AuthConfig,
    GitGC,
    SubmodulePolicy,
    SyncConfig,
    TreesyncConfig,
    parse_duration,
)
from treesync.errors import ConfigError


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


class TestDeepMerge:
    def test_nested_merge(self):
        base = {"sync": {"repo": "a", "depth": 1}}
        override = {"sync": {"depth": 0}, "health": {"max_failures": 1}}
        assert _deep_merge(base, override) == {
            "sync": {"repo": "a", "depth": 0},
            "health": {"max_failures": 1},
        }

    def test_list_replacement(self):
        base = {"sync": {"submodules_remote_tracking": ["a", "b"]}}
        override = {"sync": {"submodules_remote_tracking": ["c"]}}
        assert _deep_merge(base, override)["sync"]["submodules_remote_tracking"] == ["c"]

    def test_base_unchanged(self):
        base = {"sync": {"repo": "a"}}
        _deep_merge(base, {"sync": {"repo": "b"}})
        assert base == {"sync": {"repo": "a"}}


class TestDuration:
    @pytest.mark.parametrize(
        "value,expected",
        [("100ms", 0.1), ("10s", 10.0), ("1m", 60.0), ("2h", 7200.0), ("5", 5.0), (3, 3)],
    )
    def test_parse(self, value, expected):
        assert parse_duration(value) == pytest.approx(expected)

    def test_invalid(self):
        with pytest.raises(ValueError):
            parse_duration("soon")


class TestSyncConfig:
    def test_defaults(self):
        sync = SyncConfig(repo="https://example.com/r.git", root="/srv/r")
        assert sync.rev == "HEAD"
        assert sync.link == "current"
        assert sync.depth == 1
        assert sync.submodules is SubmodulePolicy.RECURSIVE
        assert sync.git_gc is GitGC.AUTO
        assert sync.one_time is False

    def test_durations_accept_units(self):
        sync = SyncConfig(repo="r", root="/x", period="100ms", sync_timeout="1m")
        assert sync.period == pytest.approx(0.1)
        assert sync.sync_timeout == 60.0

    @pytest.mark.parametrize("link", ["", "a/b", "..", ".git", "worktrees"])
    def test_link_must_be_plain_name(self, link):
        with pytest.raises(ValueError):
            SyncConfig(repo="r", root="/x", link=link)

    def test_depth_not_negative(self):
        with pytest.raises(ValueError):
            SyncConfig(repo="r", root="/x", depth=-1)

    def test_sha_prefix_requires_full_id(self):
        with pytest.raises(ValueError):
            SyncConfig(repo="r", root="/x", rev="sha:abc123")
        sync = SyncConfig(repo="r", root="/x", rev="sha:" + "a" * 40)
        assert sync.rev == "sha:" + "a" * 40

    def test_empty_rev_means_head(self):
        assert SyncConfig(repo="r", root="/x", rev="  ").rev == "HEAD"

    def test_remote_tracking_from_comma_string(self):
        sync = SyncConfig(repo="r", root="/x", submodules_remote_tracking="lib, vendor,,")
        assert sync.submodules_remote_tracking == ["lib", "vendor"]

    def test_repo_required(self):
        with pytest.raises(ValueError):
            SyncConfig(repo=" ", root="/x")


def test_missing_ssh_key_warns(tmp_path):
    with pytest.warns(UserWarning, match="does not exist"):
        AuthConfig(ssh_key=str(tmp_path / "missing"))


def test_for_repo():
    config = TreesyncConfig.for_repo("r", "/x", depth=0, one_time=True)
    assert config.sync.depth == 0
    assert config.sync.one_time is True
    assert config.health.max_failures == 3


class TestLoadConfig:
    def test_user_config_dir_under_home(self, isolated_git):
        assert _get_user_config_dir() == Path(isolated_git) / ".treesync"

    def test_explicit_file(self, tmp_path):
        path = _write(
            tmp_path / "c.toml",
            '[sync]\nrepo = "https://example.com/r.git"\nroot = "/srv/r"\nperiod = "30s"\n'
            '[health]\nmax_failures = 5\n',
        )
        config = load_config(path)
        assert config.sync.repo == "https://example.com/r.git"
        assert config.sync.period == 30.0
        assert config.health.max_failures == 5

    def test_user_config_is_merged_first(self, isolated_git, tmp_path):
        _write(Path(isolated_git) / ".treesync" / "config.toml", '[sync]\nrepo = "user"\nlink = "live"\n')
        path = _write(tmp_path / "c.toml", '[sync]\nrepo = "explicit"\nroot = "/srv/r"\n')
        config = load_config(path)
        assert config.sync.repo == "explicit"
        assert config.sync.link == "live"

    def test_invalid_user_config_is_skipped(self, isolated_git):
        _write(Path(isolated_git) / ".treesync" / "config.toml", "not = [toml")
        with pytest.warns(UserWarning, match="Skipping invalid user config"):
            config = load_config(overrides={"sync": {"repo": "r", "root": "/x"}})
        assert config.sync.repo == "r"

    def test_env_config_path(self, monkeypatch, tmp_path):
        path = _write(tmp_path / "env.toml", '[sync]\nrepo = "from-env-file"\nroot = "/x"\n')
        monkeypatch.setenv(ENV_CONFIG_PATH, str(path))
        assert load_config().sync.repo == "from-env-file"

    def test_env_overlay(self, monkeypatch):
        monkeypatch.setenv("TREESYNC_REPO", "https://example.com/r.git")
        monkeypatch.setenv("TREESYNC_ROOT", "/srv/r")
        monkeypatch.setenv("TREESYNC_DEPTH", "0")
        monkeypatch.setenv("TREESYNC_ONE_TIME", "true")
        monkeypatch.setenv("TREESYNC_SUBMODULES", "off")
        monkeypatch.setenv("TREESYNC_STALE_AFTER", "1m")
        config = load_config()
        assert config.sync.depth == 0
        assert config.sync.one_time is True
        assert config.sync.submodules is SubmodulePolicy.OFF
        assert config.health.stale_after == 60.0

    def test_skip_env(self, monkeypatch):
        monkeypatch.setenv("TREESYNC_REPO", "ignored")
        config = load_config(skip_env=True, overrides={"sync": {"repo": "r", "root": "/x"}})
        assert config.sync.repo == "r"

    def test_overlay_does_not_mutate_input(self, monkeypatch):
        monkeypatch.setenv("TREESYNC_LINK", "live")
        original = {"sync": {"repo": "r"}}
        result = _apply_env_overlay(original)
        assert result["sync"]["link"] == "live"
        assert "link" not in original["sync"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.toml")

    def test_invalid_toml(self, tmp_path):
        path = _write(tmp_path / "bad.toml", "[sync\n")
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(path)

    def test_validation_error(self):
        with pytest.raises(ConfigError, match="validation failed"):
            load_config(overrides={"sync": {"repo": "r"}})
