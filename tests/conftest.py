from __future__ import annotations

import os
import stat
import sys
from pathlib import Path
from typing import Dict, Optional

import pytest


def pytest_sessionstart(session):  # type: ignore[override]
    root = Path(__file__).resolve().parents[1]
    src = root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))
    os.environ.setdefault("PYTHONPATH", str(src))


@pytest.fixture(autouse=True)
def isolated_git(tmp_path_factory, monkeypatch):
    """Keep git and treesync away from the developer's config."""
    home = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    for var in ("GIT_AUTHOR_NAME", "GIT_COMMITTER_NAME"):
        monkeypatch.setenv(var, "Treesync Test")
    for var in ("GIT_AUTHOR_EMAIL", "GIT_COMMITTER_EMAIL"):
        monkeypatch.setenv(var, "test@example.com")
    for var in list(os.environ):
        if var.startswith("TREESYNC_"):
            monkeypatch.delenv(var, raising=False)
    return home


class RemoteRepo:
    """A non-bare repository standing in for the remote."""

    def __init__(self, path: Path, branch: str = "main"):
        from git import Repo

        path.mkdir(parents=True, exist_ok=True)
        self.path = path
        self.repo = Repo.init(path, initial_branch=branch)

    @property
    def url(self) -> str:
        return self.path.as_uri()

    @property
    def head(self) -> str:
        return self.repo.head.commit.hexsha

    def commit(self, files: Optional[Dict[str, str]] = None, message: str = "update") -> str:
        files = files or {"file": message}
        for name, content in files.items():
            target = self.path / name
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        self.repo.git.add("--", *files)
        self.repo.git.commit("-q", "--allow-empty", "-m", message)
        return self.head

    def remove(self, name: str, message: str = "remove") -> str:
        self.repo.git.rm("-q", "-r", "--", name)
        self.repo.git.commit("-q", "-m", message)
        return self.head

    def reset(self, sha: str) -> None:
        self.repo.git.reset("-q", "--hard", sha)

    def add_submodule(
        self,
        name: str,
        path: str,
        url: str,
        sha: str,
        *,
        branch: Optional[str] = None,
        shallow: bool = False,
        message: str = "add submodule",
    ) -> str:
        """Record a gitlink plus its .gitmodules entry without cloning."""
        git = self.repo.git
        git.config("-f", ".gitmodules", f"submodule.{name}.path", path)
        git.config("-f", ".gitmodules", f"submodule.{name}.url", url)
        if branch:
            git.config("-f", ".gitmodules", f"submodule.{name}.branch", branch)
        if shallow:
            git.config("-f", ".gitmodules", f"submodule.{name}.shallow", "true")
        git.update_index("--add", "--cacheinfo", f"160000,{sha},{path}")
        git.add(".gitmodules")
        git.commit("-q", "-m", message)
        return self.head

    def bump_submodule(self, path: str, sha: str, message: str = "bump submodule") -> str:
        self.repo.git.update_index("--cacheinfo", f"160000,{sha},{path}")
        self.repo.git.commit("-q", "-m", message)
        return self.head

    def drop_submodule(self, name: str, path: str, message: str = "drop submodule") -> str:
        git = self.repo.git
        git.config("-f", ".gitmodules", "--remove-section", f"submodule.{name}")
        git.update_index("--force-remove", path)
        git.add(".gitmodules")
        git.commit("-q", "-m", message)
        return self.head


@pytest.fixture
def make_remote(tmp_path):
    def factory(name: str = "remote", branch: str = "main") -> RemoteRepo:
        return RemoteRepo(tmp_path / name, branch=branch)

    return factory


@pytest.fixture
def remote(make_remote) -> RemoteRepo:
    repo = make_remote()
    repo.commit({"file": "v1"}, "v1")
    return repo


def write_script(path: Path, body: str) -> Path:
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def slow_git(tmp_path):
    """git wrapper that stalls transport commands for two seconds."""
    return write_script(
        tmp_path / "slow-git",
        'case "$1" in\n'
        "  ls-remote|fetch) sleep 2 ;;\n"
        "esac\n"
        'exec git "$@"\n',
    )


@pytest.fixture
def stalled_fetch_git(tmp_path):
    """git wrapper whose fetch takes shallow.lock and then hangs, like a transfer cut off mid-way."""
    return write_script(
        tmp_path / "stalled-fetch-git",
        'if [ "$1" = fetch ]; then\n'
        '  if [ -d .git ]; then touch .git/shallow.lock; else touch shallow.lock; fi\n'
        "  sleep 30\n"
        "fi\n"
        'exec git "$@"\n',
    )


@pytest.fixture
def full_disk_git(tmp_path):
    """git wrapper that fails every checkout of a new worktree."""
    return write_script(
        tmp_path / "full-disk-git",
        'if [ "$1" = worktree ] && [ "$2" = add ]; then\n'
        '  echo "fatal: could not create work tree dir: No space left on device" >&2\n'
        "  exit 128\n"
        "fi\n"
        'exec git "$@"\n',
    )


@pytest.fixture
def askpass_git(tmp_path):
    """git wrapper that insists on my-username/my-password via GIT_ASKPASS."""
    return write_script(
        tmp_path / "askpass-git",
        'case "$1" in\n'
        "  ls-remote|fetch)\n"
        '    user=$("$GIT_ASKPASS" "Username for \'https://example.com\': ")\n'
        '    pass=$("$GIT_ASKPASS" "Password for \'https://example.com\': ")\n'
        '    if [ "$user" != "my-username" ] || [ "$pass" != "my-password" ]; then\n'
        '      echo "fatal: Authentication failed for \'https://example.com\'" >&2\n'
        "      exit 128\n"
        "    fi\n"
        "    ;;\n"
        "esac\n"
        'exec git "$@"\n',
    )
