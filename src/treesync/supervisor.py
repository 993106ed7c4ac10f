"""The sync loop.

A cycle is: credentials -> resolve -> fetch and build -> publish -> hooks and
housekeeping. Cycles never overlap, each one is bounded by the sync timeout,
and every failure other than a configuration error ends up in the snapshot
instead of propagating.
"""

from __future__ import annotations

import shutil
import threading
import time
from dataclasses import dataclass
from typing import Optional

import httpx

from .auth import AuthBroker
from .command import Deadline, GitRunner
from .config_schema import TreesyncConfig
from .errors import ConfigError, CycleError, ResourceError
from .health import HealthStatus, SyncSnapshot, evaluate, health_report, metrics
from .hooks import PublishHooks
from .observability import log_action, log_error, log_warning
from .publish import AtomicPublisher
from .refs import RefResolver
from .worktrees import Worktree, WorktreePool


@dataclass(frozen=True)
class CycleResult:
    """Outcome of one cycle, as surfaced to the process boundary."""

    ok: bool
    identifier: Optional[str] = None
    commit: Optional[str] = None
    published: bool = False
    error: Optional[CycleError] = None
    duration: float = 0.0


class SyncSupervisor:
    """Drives sync cycles for one configured repository.

    Args:
        config: Validated configuration
        http_transport: Optional httpx transport for the credential endpoint
            and webhook (tests pass ``httpx.MockTransport``)

    Raises:
        ConfigError: The configuration cannot work (missing git, bad auth combination)
    """

    def __init__(
        self,
        config: TreesyncConfig,
        *,
        http_transport: Optional[httpx.BaseTransport] = None,
    ):
        self.config = config
        sync = config.sync
        if shutil.which(sync.git) is None:
            raise ConfigError(f"git executable not found: {sync.git}")

        self.auth = AuthBroker(config.auth, transport=http_transport)
        self.pool = WorktreePool(
            sync.root,
            sync.repo,
            link=sync.link,
            depth=sync.depth,
            submodules=sync.submodules,
            remote_tracking=sync.submodules_remote_tracking,
        )
        self.publisher = AtomicPublisher(sync.root, sync.link)
        self.hooks = PublishHooks(sync, transport=http_transport)

        self._snapshot = SyncSnapshot()
        self._cycle_lock = threading.Lock()
        self._stop_event = threading.Event()

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def snapshot(self) -> SyncSnapshot:
        """Current state; safe to call from any thread."""
        return self._snapshot

    def status(self, now: Optional[float] = None) -> HealthStatus:
        return evaluate(self._snapshot, self.config.health, now)

    def health(self, now: Optional[float] = None) -> dict:
        return health_report(self._snapshot, self.config.health, now)

    def metrics(self) -> dict:
        return metrics(self._snapshot)

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def run(self) -> int:
        """Run according to config: one cycle (exit code) or until stopped."""
        if self.config.sync.one_time:
            return 0 if self.run_once().ok else 1
        self.run_forever()
        return 0

    def run_once(self) -> CycleResult:
        """Run exactly one cycle. Concurrent callers wait their turn."""
        with self._cycle_lock:
            return self._cycle()

    def run_forever(self) -> None:
        sync = self.config.sync
        log_action("sync.start", repo=sync.repo, rev=sync.rev, root=str(self.pool.root), period=sync.period)
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception as exc:  # pragma: no cover
                log_error("CYCLE_CRASHED", error=repr(exc))
                self._snapshot = self._snapshot.record_failure(
                    kind="internal", message=repr(exc), duration=0.0
                )
            self._stop_event.wait(sync.period)
        log_action("sync.stop", repo=sync.repo)

    def stop(self) -> None:
        """Ask the loop to exit; an in-flight git command is killed."""
        self._stop_event.set()

    def close(self) -> None:
        self.stop()
        self.auth.close()

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    def _cycle(self) -> CycleResult:
        sync = self.config.sync
        started = time.monotonic()
        deadline = Deadline(sync.sync_timeout, cancel=self._stop_event)

        try:
            env = self.auth.environment(deadline)
            runner = GitRunner(sync.git, env=env, deadline=deadline)
            resolution = RefResolver(runner).resolve(sync.repo, sync.rev)
            worktree = self.pool.build(runner, resolution)
            deadline.check("publish")
            published = self.publisher.publish(worktree)
        except CycleError as exc:
            return self._fail(exc, started)
        except OSError as exc:
            return self._fail(ResourceError(str(exc)), started)

        if published.changed:
            for _ in self.hooks.run(worktree):
                self._snapshot = self._snapshot.record_hook_failure()
        self._housekeeping(runner, worktree)

        duration = time.monotonic() - started
        self._snapshot = self._snapshot.record_success(
            identifier=worktree.identifier,
            commit=worktree.commit,
            published=published.changed,
            now=time.time(),
            duration=duration,
        )
        log_action(
            "sync.cycle",
            outcome="ok",
            duration_ms=duration * 1000.0,
            rev=sync.rev,
            identifier=worktree.identifier,
            commit=worktree.commit,
            published=published.changed,
            reused=worktree.reused,
        )
        return CycleResult(
            ok=True,
            identifier=worktree.identifier,
            commit=worktree.commit,
            published=published.changed,
            duration=duration,
        )

    def _housekeeping(self, runner: GitRunner, worktree: Worktree) -> None:
        """Prune superseded trees. Failures here never undo a publish."""
        try:
            self.publisher.remove_stale_temporaries()
            self.pool.prune(
                runner,
                keep=worktree.identifier,
                grace_period=self.config.sync.worktree_grace_period,
                gc=self.config.sync.git_gc,
            )
        except (CycleError, OSError) as exc:
            log_warning("HOUSEKEEPING_FAILED", error=str(exc), kind=getattr(exc, "kind", "resource"))

    def _fail(self, exc: CycleError, started: float) -> CycleResult:
        duration = time.monotonic() - started
        self._snapshot = self._snapshot.record_failure(
            kind=exc.kind,
            message=str(exc),
            detail=exc.stderr,
            duration=duration,
        )
        log_action(
            "sync.cycle",
            outcome="error",
            duration_ms=duration * 1000.0,
            rev=self.config.sync.rev,
            error=str(exc),
            kind=exc.kind,
            consecutive_failures=self._snapshot.consecutive_failures,
        )
        return CycleResult(ok=False, error=exc, duration=duration)
