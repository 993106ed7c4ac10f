"""The root directory: one shared store plus one worktree per synced tree.

Layout::

    <root>/.git/                      store (history shared by all worktrees)
    <root>/.git/treesync/             our own metadata (module stores, prune ledger)
    <root>/worktrees/<identifier>/    checked-out trees
    <root>/<link>                     published symlink (owned by AtomicPublisher)

Anything in the root that does not fit this layout is a reason to wipe the
root and start over; we never try to repair a store in place.
"""

from __future__ import annotations

import json
import os
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from git import Repo
from git.exc import BadName, BadObject, InvalidGitRepositoryError, NoSuchPathError

from .command import GitRunner
from .config_schema import GitGC, SubmodulePolicy
from .errors import AuthFailed, CorruptState, ResourceError, RevisionNotFound, TransportError
from .observability import log_action, log_debug, log_warning
from .refs import Resolution
from .store import collect_garbage, fetch_commit, init_store, prune_worktrees, remove_stale_locks
from .submodules import SubmodulePlan, SubmoduleSynchronizer, plan_digest, tree_identifier

WORKTREES_DIR = "worktrees"
METADATA_DIR = "treesync"
MARKER_FILE = "treesync-tree.json"
LEDGER_FILE = "superseded.json"


def normalize_root(root: str) -> Path:
    """Absolute, normalized root path (``../../x/../../x`` and friends)."""
    return Path(os.path.abspath(os.path.expanduser(root)))


@dataclass(frozen=True)
class Worktree:
    """A fully built tree under ``<root>/worktrees``."""

    identifier: str
    commit: str
    path: Path
    reused: bool = False


@dataclass(frozen=True)
class RegisteredWorktree:
    path: Path
    commit: str
    prunable: bool = False


def parse_worktree_list(output: str) -> List[RegisteredWorktree]:
    """Parse ``git worktree list --porcelain``."""
    worktrees: List[RegisteredWorktree] = []
    current: Dict[str, object] = {}

    def flush() -> None:
        if "path" in current:
            worktrees.append(
                RegisteredWorktree(
                    path=Path(str(current["path"])),
                    commit=str(current.get("commit", "")),
                    prunable=bool(current.get("prunable", False)),
                )
            )
        current.clear()

    for line in output.splitlines():
        line = line.strip()
        if not line:
            flush()
            continue
        if line.startswith("worktree "):
            flush()
            current["path"] = line[len("worktree "):]
        elif line.startswith("HEAD "):
            current["commit"] = line[len("HEAD "):]
        elif line == "prunable" or line.startswith("prunable "):
            current["prunable"] = True
    flush()
    return worktrees


def _remove_path(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.exists():
        shutil.rmtree(path)


class WorktreePool:
    """Owns the store and worktrees under one root.

    Args:
        root: Root directory (normalized to an absolute path)
        url: Remote repository URL
        link: Name of the published link, removed first when the root is wiped
        depth: Fetch depth (0 = full history)
        submodules: Submodule policy
        remote_tracking: Submodule names resolved against their own branch
    """

    def __init__(
        self,
        root: str | Path,
        url: str,
        *,
        link: str,
        depth: int = 0,
        submodules: SubmodulePolicy = SubmodulePolicy.OFF,
        remote_tracking: Iterable[str] = (),
    ):
        self.root = normalize_root(str(root))
        self.url = url
        self.link = link
        self.depth = depth
        self.git_dir = self.root / ".git"
        self.worktrees_dir = self.root / WORKTREES_DIR
        self.metadata_dir = self.git_dir / METADATA_DIR
        self.submodules = SubmoduleSynchronizer(submodules, remote_tracking, depth, self.modules_dir)

    @property
    def modules_dir(self) -> Path:
        return self.git_dir / METADATA_DIR / "modules"

    # -- root -------------------------------------------------------------

    def ensure_root(self, runner: GitRunner) -> None:
        """Make sure the root holds a usable store, wiping it if it doesn't."""
        if not self.root.exists() or (self.root.is_dir() and not any(self.root.iterdir())):
            log_debug("ROOT_CREATE", root=str(self.root))
            self.root.mkdir(parents=True, exist_ok=True)
            init_store(runner, self.root)
            return

        if self.git_dir.is_dir():
            remove_stale_locks(self.root)
        problem = self._store_problem(runner)
        if problem:
            self.reinitialize(runner, reason=problem)

    def _store_problem(self, runner: GitRunner) -> Optional[str]:
        if not self.root.is_dir():
            return "root is not a directory"
        if not self.git_dir.is_dir():
            # Includes a root nested inside some other repository: never adopt it
            return "no store"
        try:
            repo = Repo(self.root)
        except (InvalidGitRepositoryError, NoSuchPathError) as exc:
            return f"invalid store: {exc}"
        try:
            if Path(repo.git_dir).resolve() != self.git_dir.resolve():
                return f"store belongs to {repo.git_dir}"
            if repo.bare or Path(repo.working_tree_dir or "").resolve() != self.root.resolve():
                return "store is not rooted at root"
        finally:
            repo.close()

        toplevel = runner.run(["rev-parse", "--show-toplevel"], cwd=self.root, check=False)
        if not toplevel.ok or Path(toplevel.stdout.strip()).resolve() != self.root.resolve():
            return f"rev-parse failed: {toplevel.stderr.strip() or toplevel.stdout.strip()}"
        if not runner.run(["worktree", "prune"], cwd=self.root, check=False).ok:
            return "worktree prune failed"
        fsck = runner.run(
            ["fsck", "--connectivity-only", "--no-dangling", "--no-progress"],
            cwd=self.root,
            check=False,
        )
        if not fsck.ok:
            return f"fsck failed: {fsck.stderr.strip()[:200]}"
        return None

    def reinitialize(self, runner: GitRunner, *, reason: str) -> None:
        """Wipe everything under root and create a fresh store.

        The published link goes first so it never points into a half-deleted tree.
        """
        log_warning("ROOT_REINIT", root=str(self.root), reason=reason)
        if self.root.exists() and not self.root.is_dir():
            self.root.unlink()
        self.root.mkdir(parents=True, exist_ok=True)
        link = self.root / self.link
        if link.is_symlink() or link.exists():
            _remove_path(link)
        for child in sorted(self.root.iterdir()):
            _remove_path(child)
        init_store(runner, self.root)
        log_action("root.reinit", outcome="ok", root=str(self.root), reason=reason)

    # -- building ---------------------------------------------------------

    def build(self, runner: GitRunner, resolution: Resolution) -> Worktree:
        """Fetch and materialize the tree for ``resolution``.

        Corruption found along the way gets exactly one wipe-and-rebuild.

        Raises:
            TransportError: Fetching failed; nothing under root was published
            RevisionNotFound: An unadvertised literal commit could not be fetched
            CorruptState: Still corrupt after one rebuild
            ResourceError: Checking out the tree failed (disk, permissions);
                the store and other trees are left as they are
            SubmoduleError: A nested repository failed
        """
        healed = False
        while True:
            self.ensure_root(runner)
            try:
                return self._build(runner, resolution)
            except CorruptState as exc:
                if healed:
                    raise
                healed = True
                self.reinitialize(runner, reason=str(exc))

    def _build(self, runner: GitRunner, resolution: Resolution) -> Worktree:
        commit = resolution.commit
        try:
            fetch_commit(runner, self.root, self.url, commit, self.depth)
        except TransportError as exc:
            if resolution.advertised or isinstance(exc, AuthFailed):
                raise
            raise RevisionNotFound(
                f"commit {commit} could not be fetched from {self.url}",
                command=exc.command,
                stderr=exc.stderr,
            ) from exc

        plan = self.submodules.plan(runner, self.root, commit, self.url, resolution.branch)
        identifier = tree_identifier(commit, plan)
        path = self.worktrees_dir / identifier
        digest = plan_digest(plan) if plan else ""

        if path.exists() or path.is_symlink():
            if self.is_valid(runner, path, commit, digest, plan):
                log_debug("WORKTREE_REUSE", identifier=identifier)
                return Worktree(identifier, commit, path, reused=True)

        # Absent is allowed for the published link; pointing into a half-built tree is not
        self._unpublish(path)
        if path.exists() or path.is_symlink():
            log_warning("WORKTREE_DISCARD", path=str(path), reason="not a valid registered worktree")
            self._discard(runner, path)

        try:
            self.worktrees_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ResourceError(f"cannot create {self.worktrees_dir}: {exc}") from exc
        try:
            runner.run(
                ["worktree", "add", "--force", "--detach", str(path), commit],
                cwd=self.root,
                error=ResourceError,
            )
            self.submodules.materialize(runner, path, plan)
            self._write_marker(path, commit, identifier, digest)
            if not self.is_valid(runner, path, commit, digest, plan):
                raise CorruptState(f"worktree {path} failed validation after checkout")
        except Exception:
            self._discard(runner, path, quiet=True)
            raise

        log_action("worktree.add", outcome="ok", identifier=identifier, commit=commit)
        return Worktree(identifier, commit, path)

    def is_valid(
        self,
        runner: GitRunner,
        path: Path,
        commit: str,
        digest: str,
        plan: Tuple[SubmodulePlan, ...] = (),
    ) -> bool:
        """True if ``path`` is a registered worktree of our store at ``commit``."""
        if path.is_symlink() or not path.is_dir() or not (path / ".git").is_file():
            return False

        try:
            repo = Repo(path)
        except (InvalidGitRepositoryError, NoSuchPathError):
            return False
        try:
            git_dir = Path(repo.git_dir)
            if Path(repo.common_dir).resolve() != self.git_dir.resolve():
                return False
            if repo.head.commit.hexsha != commit:
                return False
        except (ValueError, OSError, BadName, BadObject):
            return False
        finally:
            repo.close()

        listing = runner.run(["worktree", "list", "--porcelain"], cwd=self.root, check=False)
        if not listing.ok:
            return False
        resolved = path.resolve()
        registered = [
            wt for wt in parse_worktree_list(listing.stdout)
            if wt.path.resolve() == resolved and wt.commit == commit and not wt.prunable
        ]
        if not registered:
            return False

        marker = self._read_marker(git_dir)
        if marker.get("commit") != commit or marker.get("plan", "") != digest:
            return False
        return self.submodules.verify(path, plan)

    def _write_marker(self, path: Path, commit: str, identifier: str, digest: str) -> None:
        repo = Repo(path)
        try:
            git_dir = Path(repo.git_dir)
        finally:
            repo.close()
        payload = {"commit": commit, "identifier": identifier, "plan": digest}
        try:
            (git_dir / MARKER_FILE).write_text(json.dumps(payload, sort_keys=True), encoding="utf-8")
        except OSError as exc:
            raise ResourceError(f"cannot write marker for {path}: {exc}") from exc

    @staticmethod
    def _read_marker(git_dir: Path) -> Dict[str, str]:
        try:
            return json.loads((git_dir / MARKER_FILE).read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}

    def _unpublish(self, path: Path) -> None:
        """Remove the published link if it points at ``path``."""
        link = self.root / self.link
        if not link.is_symlink():
            return
        target = os.path.normpath(os.path.join(self.root, os.readlink(link)))
        if target != os.path.normpath(str(path)):
            return
        log_warning("LINK_UNPUBLISHED", link=str(link), target=target, reason="tree is being rebuilt")
        try:
            link.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise ResourceError(f"cannot remove published link {link}: {exc}") from exc

    def _discard(self, runner: GitRunner, path: Path, *, quiet: bool = False) -> None:
        if quiet:
            # Already failing; the next sanity check prunes the registration
            shutil.rmtree(path, ignore_errors=True)
            return
        _remove_path(path)
        prune_worktrees(runner, self.root)

    # -- pruning ----------------------------------------------------------

    def prune(
        self,
        runner: GitRunner,
        keep: str,
        *,
        grace_period: float,
        gc: GitGC = GitGC.AUTO,
        now: Optional[float] = None,
    ) -> List[str]:
        """Delete worktrees superseded more than ``grace_period`` seconds ago.

        The tree named ``keep`` (the published one) is never touched. When a
        tree was first seen superseded is recorded in the store's metadata so
        the grace period also holds across restarts and one-shot runs.
        """
        now = time.time() if now is None else now
        ledger = self._load_ledger()
        removed: List[str] = []
        present = set()

        if self.worktrees_dir.is_dir():
            for child in sorted(self.worktrees_dir.iterdir()):
                name = child.name
                if name == keep:
                    continue
                present.add(name)
                since = ledger.setdefault(name, now)
                if now - since >= grace_period:
                    _remove_path(child)
                    removed.append(name)

        ledger = {name: ts for name, ts in ledger.items() if name in present and name not in removed}
        self._save_ledger(ledger)

        prune_worktrees(runner, self.root)
        stores = self.submodules.prune_stores(runner)
        if removed or stores:
            collect_garbage(runner, self.root, gc)
        if removed:
            log_action("sync.prune", outcome="ok", removed=removed, kept=keep)
        return removed

    def _load_ledger(self) -> Dict[str, float]:
        try:
            data = json.loads((self.metadata_dir / LEDGER_FILE).read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): float(v) for k, v in data.items() if isinstance(v, (int, float))}

    def _save_ledger(self, ledger: Dict[str, float]) -> None:
        self.metadata_dir.mkdir(parents=True, exist_ok=True)
        target = self.metadata_dir / LEDGER_FILE
        tmp = target.with_suffix(".tmp")
        tmp.write_text(json.dumps(ledger, sort_keys=True), encoding="utf-8")
        os.replace(tmp, target)
