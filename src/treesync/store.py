"""Operations on a history store (the root's ``.git`` or a bare module store)."""

from __future__ import annotations

from pathlib import Path
from typing import List

from .command import GitRunner
from .config_schema import GitGC
from .errors import CorruptState, ResourceError, TransportError
from .observability import log_debug, log_warning, timeit

# Locks git takes in a git dir; refs/, logs/ and worktrees/ are searched recursively
LOCK_FILES = (
    "shallow.lock",
    "index.lock",
    "config.lock",
    "packed-refs.lock",
    "HEAD.lock",
    "FETCH_HEAD.lock",
    "ORIG_HEAD.lock",
    "objects/info/commit-graph.lock",
)
LOCK_DIRS = ("refs", "logs", "worktrees")

# gc must not detach: a background gc would outlive the deadline and hold locks
_GC_ARGS = {
    GitGC.AUTO: ["-c", "gc.autoDetach=false", "gc", "--auto", "--quiet"],
    GitGC.ALWAYS: ["gc", "--prune=now", "--quiet"],
    GitGC.AGGRESSIVE: ["gc", "--aggressive", "--prune=now", "--quiet"],
}


def init_store(runner: GitRunner, path: Path, *, bare: bool = False) -> None:
    path.mkdir(parents=True, exist_ok=True)
    args = ["init", "-q"]
    if bare:
        args.append("--bare")
    runner.run([*args, str(path)], cwd=path, error=ResourceError)


def is_shallow(runner: GitRunner, store: Path) -> bool:
    output = runner.output(["rev-parse", "--is-shallow-repository"], cwd=store, error=CorruptState)
    return output == "true"


def fetch_commit(runner: GitRunner, store: Path, url: str, commit: str, depth: int) -> None:
    """Fetch ``commit`` from ``url`` into ``store`` with the requested depth.

    ``depth=0`` means full history; a shallow store is explicitly unshallowed
    so a store is never left part shallow, part full.

    Raises:
        TransportError: The fetch itself failed
        CorruptState: The store is inconsistent after a successful fetch
    """
    shallow = is_shallow(runner, store)
    args: List[str] = ["fetch", "--quiet", "--no-tags", "--no-auto-gc"]
    if depth > 0:
        args += ["--depth", str(depth)]
    elif shallow:
        args.append("--unshallow")
    args += ["--", url, commit]

    with timeit("git.fetch", commit=commit, depth=depth, unshallow=depth == 0 and shallow):
        runner.run(args, cwd=store, error=TransportError)

    if depth == 0 and is_shallow(runner, store):
        raise CorruptState(f"store {store} is still shallow after a full fetch")
    runner.run(["cat-file", "-e", f"{commit}^{{commit}}"], cwd=store, error=CorruptState)
    log_debug("FETCHED", store=str(store), commit=commit, depth=depth)


def prune_worktrees(runner: GitRunner, store: Path) -> None:
    runner.run(["worktree", "prune"], cwd=store, error=CorruptState)


def collect_garbage(runner: GitRunner, store: Path, mode: GitGC) -> None:
    args = _GC_ARGS.get(mode)
    if args is None:
        return
    with timeit("git.gc", store=str(store), mode=mode.value):
        runner.run(args, cwd=store, error=CorruptState)


def git_dir_of(store: Path) -> Path:
    """The git dir of a store: ``<store>/.git`` for the root, the store itself when bare."""
    dot_git = store / ".git"
    return dot_git if dot_git.is_dir() else store


def remove_stale_locks(store: Path) -> List[Path]:
    """Delete lock files a killed git process left in ``store``.

    Only one cycle touches a root at a time and every git command it starts
    has exited (or been killed) before the runner returns, so any lock found
    between commands belongs to nobody. Left alone, a ``shallow.lock`` from a
    killed ``fetch --depth`` fails every later fetch.
    """
    git_dir = git_dir_of(store)
    candidates = [git_dir / name for name in LOCK_FILES]
    for name in LOCK_DIRS:
        base = git_dir / name
        if base.is_dir():
            candidates.extend(sorted(base.rglob("*.lock")))
    # We never lock worktrees; a "locked" file is what a killed `worktree add` leaves
    worktrees = git_dir / "worktrees"
    if worktrees.is_dir():
        candidates.extend(sorted(worktrees.glob("*/locked")))

    removed: List[Path] = []
    for path in candidates:
        if path.is_file() or path.is_symlink():
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise ResourceError(f"cannot remove stale lock {path}: {exc}") from exc
            removed.append(path)
    if removed:
        log_warning("STALE_LOCKS_REMOVED", store=str(store), locks=[str(p) for p in removed])
    return removed
