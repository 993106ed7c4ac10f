"""Nested repositories.

Submodules are not checked out with ``git submodule update``. Each submodule
URL gets its own bare store under the root's metadata directory, and every
entry is materialized as a detached worktree of that store inside the parent
tree. Work happens in two passes:

* :meth:`SubmoduleSynchronizer.plan` reads ``.gitmodules`` from the commit,
  decides the commit for each entry (pinned gitlink or remote-tracking branch
  head), fetches it, and recurses. Everything that talks to a remote happens
  here.
* :meth:`SubmoduleSynchronizer.materialize` adds the worktrees; local only.

The plan is part of a tree's identity (see :func:`tree_identifier`), so a
tree whose nested commits differ is built in a fresh directory and published
trees are never modified.
"""

from __future__ import annotations

import hashlib
import posixpath
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

from git import Repo
from git.exc import BadName, BadObject, InvalidGitRepositoryError, NoSuchPathError

from .command import GitRunner
from .config_schema import SubmodulePolicy
from .errors import CorruptState, CycleError, SubmoduleError, SyncTimeout
from .observability import log_debug, log_warning
from .refs import HEAD, RefResolver
from .store import fetch_commit, init_store, prune_worktrees, remove_stale_locks

GITMODULES = ".gitmodules"
GITLINK_MODE = "160000"


class SubmoduleMode(str, Enum):
    PINNED = "pinned"
    REMOTE_TRACKING = "remote-tracking"


@dataclass(frozen=True)
class SubmoduleSpec:
    """One ``.gitmodules`` entry, with the mode chosen for this cycle."""

    name: str
    path: str
    url: str
    mode: SubmoduleMode = SubmoduleMode.PINNED
    shallow: bool = False
    branch: Optional[str] = None


@dataclass(frozen=True)
class SubmodulePlan:
    spec: SubmoduleSpec
    commit: str
    url: str
    store: Path
    depth: int
    children: Tuple["SubmodulePlan", ...] = ()

    def walk(self, prefix: str = "") -> Iterator[Tuple[str, "SubmodulePlan"]]:
        path = posixpath.join(prefix, self.spec.path) if prefix else self.spec.path
        yield path, self
        for child in self.children:
            yield from child.walk(path)


def _normalize_bool(value: Optional[str]) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_gitmodules(listing: str) -> Dict[str, Dict[str, str]]:
    """Group ``git config -z --list`` output of a .gitmodules blob by submodule name.

    Names may contain dots, so the variable is split off the right.
    """
    entries: Dict[str, Dict[str, str]] = {}
    for record in listing.split("\0"):
        if not record:
            continue
        key, _, value = record.partition("\n")
        if not key.startswith("submodule."):
            continue
        name, dot, var = key[len("submodule."):].rpartition(".")
        if not dot or not name:
            continue
        entries.setdefault(name, {})[var] = value
    return entries


def parse_gitlinks(listing: str) -> Dict[str, str]:
    """Map path -> pinned commit from ``git ls-tree -z`` output."""
    links: Dict[str, str] = {}
    for record in listing.split("\0"):
        meta, sep, path = record.partition("\t")
        if not sep:
            continue
        parts = meta.split()
        if len(parts) == 3 and parts[0] == GITLINK_MODE:
            links[path] = parts[2]
    return links


def resolve_url(base: str, url: str) -> str:
    """Resolve a relative submodule URL (``./x``, ``../x``) against the parent URL."""
    if not url.startswith(("./", "../")):
        return url

    parts = urlsplit(base)
    if parts.scheme and "://" in base:
        path = posixpath.normpath(posixpath.join(parts.path or "/", url))
        return urlunsplit(parts._replace(path=path))

    # scp-like "user@host:path"
    if ":" in base and not base.startswith("/"):
        host, _, path = base.partition(":")
        return f"{host}:{posixpath.normpath(posixpath.join(path, url))}"

    return posixpath.normpath(posixpath.join(base, url))


def _safe_relpath(path: str) -> str:
    normalized = posixpath.normpath(path.strip())
    if (
        not normalized
        or normalized == "."
        or posixpath.isabs(normalized)
        or normalized.split("/")[0] == ".."
    ):
        raise SubmoduleError(f"refusing submodule path outside the tree: {path!r}")
    return normalized


def plan_digest(plan: Iterable[SubmodulePlan]) -> str:
    lines = sorted(
        f"{path} {node.commit}"
        for top in plan
        for path, node in top.walk()
    )
    return hashlib.sha1("\n".join(lines).encode("utf-8")).hexdigest()


def tree_identifier(commit: str, plan: Tuple[SubmodulePlan, ...]) -> str:
    """Directory name for a tree: the commit, suffixed when submodules are materialized."""
    if not plan:
        return commit
    return f"{commit}-{plan_digest(plan)[:12]}"


class SubmoduleSynchronizer:
    """Plans and materializes submodules for one root.

    Args:
        policy: off, shallow (first level only) or recursive
        remote_tracking: Submodule names resolved against their own branch
        depth: Top-level fetch depth, inherited unless an entry sets ``shallow``
        modules_dir: Directory holding one bare store per submodule URL
    """

    def __init__(
        self,
        policy: SubmodulePolicy,
        remote_tracking: Iterable[str],
        depth: int,
        modules_dir: Path,
    ):
        self.policy = policy
        self.remote_tracking = frozenset(remote_tracking)
        self.depth = depth
        self.modules_dir = modules_dir
        self._active_stores: set[Path] = set()

    @property
    def enabled(self) -> bool:
        return self.policy is not SubmodulePolicy.OFF

    # -- planning ---------------------------------------------------------

    def plan(
        self,
        runner: GitRunner,
        store: Path,
        commit: str,
        url: str,
        branch: Optional[str] = None,
    ) -> Tuple[SubmodulePlan, ...]:
        """Resolve and fetch every submodule reachable from ``commit``.

        Raises:
            SubmoduleError: Any entry could not be resolved or fetched
            SyncTimeout: The cycle ran out of time
            CorruptState: A store is inconsistent after fetching
        """
        if not self.enabled:
            return ()
        self._active_stores = set()
        plan = self._plan_level(runner, store, commit, url, branch)
        log_debug("SUBMODULE_PLAN", commit=commit, entries=[p for top in plan for p, _ in top.walk()])
        return plan

    def read_manifest(self, runner: GitRunner, store: Path, commit: str) -> List[SubmoduleSpec]:
        blob = f"{commit}:{GITMODULES}"
        if not runner.run(["cat-file", "-e", blob], cwd=store, check=False).ok:
            return []
        listing = runner.run(
            ["config", "--blob", blob, "-z", "--list"],
            cwd=store,
            error=SubmoduleError,
        ).stdout

        specs: List[SubmoduleSpec] = []
        for name, values in sorted(parse_gitmodules(listing).items()):
            if not values.get("path"):
                log_warning("SUBMODULE_NO_PATH", name=name, commit=commit)
                continue
            mode = SubmoduleMode.REMOTE_TRACKING if name in self.remote_tracking else SubmoduleMode.PINNED
            specs.append(
                SubmoduleSpec(
                    name=name,
                    path=_safe_relpath(values["path"]),
                    url=values.get("url", ""),
                    mode=mode,
                    shallow=_normalize_bool(values.get("shallow")),
                    branch=values.get("branch") or None,
                )
            )
        return specs

    def _plan_level(
        self,
        runner: GitRunner,
        store: Path,
        commit: str,
        url: str,
        branch: Optional[str],
    ) -> Tuple[SubmodulePlan, ...]:
        specs = self.read_manifest(runner, store, commit)
        if not specs:
            return ()

        output = runner.run(
            ["ls-tree", "-z", "--full-tree", commit, "--", *(s.path for s in specs)],
            cwd=store,
            error=SubmoduleError,
        ).stdout
        gitlinks = parse_gitlinks(output)

        nodes: List[SubmodulePlan] = []
        for spec in specs:
            pinned = gitlinks.get(spec.path)
            if pinned is None:
                # Declared but no longer in the tree: nothing to materialize
                log_debug("SUBMODULE_NOT_IN_TREE", name=spec.name, path=spec.path)
                continue
            try:
                nodes.append(self._plan_entry(runner, spec, pinned, url, branch))
            except (SyncTimeout, CorruptState, SubmoduleError):
                raise
            except CycleError as exc:
                raise SubmoduleError(
                    f"submodule {spec.name} ({spec.path}): {exc}",
                    command=exc.command,
                    stderr=exc.stderr,
                ) from exc
        return tuple(nodes)

    def _plan_entry(
        self,
        runner: GitRunner,
        spec: SubmoduleSpec,
        pinned: str,
        parent_url: str,
        parent_branch: Optional[str],
    ) -> SubmodulePlan:
        if not spec.url:
            raise SubmoduleError(f"submodule {spec.name} ({spec.path}) has no url")
        url = resolve_url(parent_url, spec.url)

        branch = spec.branch
        if branch == ".":
            branch = parent_branch
        if spec.mode is SubmoduleMode.REMOTE_TRACKING:
            resolution = RefResolver(runner).resolve(url, branch or HEAD)
            commit = resolution.commit
            branch = resolution.branch
            if commit != pinned:
                log_debug("SUBMODULE_TRACKING", name=spec.name, pinned=pinned, tracked=commit)
        else:
            commit = pinned

        depth = 1 if spec.shallow else self.depth
        store = self.module_store(runner, url)
        fetch_commit(runner, store, url, commit, depth)

        children: Tuple[SubmodulePlan, ...] = ()
        if self.policy is SubmodulePolicy.RECURSIVE:
            children = self._plan_level(runner, store, commit, url, branch)
        return SubmodulePlan(spec, commit, url, store, depth, children)

    def module_store(self, runner: GitRunner, url: str) -> Path:
        """Bare store for ``url``, recreated if it is not a usable bare repository."""
        store = self.modules_dir / hashlib.sha1(url.encode("utf-8")).hexdigest()[:16]
        self._active_stores.add(store)
        if store.exists():
            if _is_bare_store(store):
                remove_stale_locks(store)
                return store
            log_warning("MODULE_STORE_INVALID", store=str(store), url=url)
            shutil.rmtree(store)
        init_store(runner, store, bare=True)
        return store

    # -- materializing ----------------------------------------------------

    def materialize(self, runner: GitRunner, tree: Path, plan: Tuple[SubmodulePlan, ...]) -> None:
        """Add a worktree for every planned entry below ``tree``."""
        for node in plan:
            target = tree / node.spec.path
            try:
                self._materialize_entry(runner, target, node)
            except (SyncTimeout, CorruptState, SubmoduleError):
                raise
            except CycleError as exc:
                raise SubmoduleError(
                    f"submodule {node.spec.name} ({node.spec.path}): {exc}",
                    command=exc.command,
                    stderr=exc.stderr,
                ) from exc

    def _materialize_entry(self, runner: GitRunner, target: Path, node: SubmodulePlan) -> None:
        if target.is_dir() and not target.is_symlink() and not any(target.iterdir()):
            target.rmdir()
        elif target.exists() or target.is_symlink():
            raise SubmoduleError(f"submodule path {target} is not an empty gitlink directory")
        runner.run(
            ["worktree", "add", "--force", "--detach", str(target), node.commit],
            cwd=node.store,
            error=SubmoduleError,
        )
        self.materialize(runner, target, node.children)

    def verify(self, tree: Path, plan: Tuple[SubmodulePlan, ...]) -> bool:
        """True when every planned entry is checked out at its planned commit."""
        for node in plan:
            target = tree / node.spec.path
            if not _worktree_at(target, node.commit, node.store):
                return False
            if not self.verify(target, node.children):
                return False
        return True

    # -- housekeeping -----------------------------------------------------

    def prune_stores(self, runner: GitRunner) -> List[Path]:
        """Forget worktrees of deleted trees; drop stores nothing uses any more."""
        removed: List[Path] = []
        if not self.modules_dir.is_dir():
            return removed
        for store in sorted(self.modules_dir.iterdir()):
            if not store.is_dir():
                continue
            prune_worktrees(runner, store)
            registered = store / "worktrees"
            in_use = registered.is_dir() and any(registered.iterdir())
            if not in_use and store not in self._active_stores:
                shutil.rmtree(store)
                removed.append(store)
        if removed:
            log_debug("MODULE_STORES_REMOVED", stores=[str(s) for s in removed])
        return removed


def _is_bare_store(path: Path) -> bool:
    try:
        repo = Repo(path)
    except (InvalidGitRepositoryError, NoSuchPathError):
        return False
    try:
        return repo.bare and Path(repo.git_dir).resolve() == path.resolve()
    finally:
        repo.close()


def _worktree_at(path: Path, commit: str, common_dir: Path) -> bool:
    """True if ``path`` is a worktree of ``common_dir`` with HEAD at ``commit``."""
    if path.is_symlink() or not (path / ".git").is_file():
        return False
    try:
        repo = Repo(path)
    except (InvalidGitRepositoryError, NoSuchPathError):
        return False
    try:
        if Path(repo.common_dir).resolve() != common_dir.resolve():
            return False
        return repo.head.commit.hexsha == commit
    except (ValueError, OSError, BadName, BadObject):
        return False
    finally:
        repo.close()
