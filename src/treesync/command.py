"""One place where git subprocesses are started, bounded and killed."""

from __future__ import annotations

import os
import re
import shlex
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from subprocess import TimeoutExpired
from typing import Mapping, Optional, Sequence, Type

from .errors import (
    AuthFailed,
    CycleError,
    ResourceError,
    SyncCancelled,
    SyncTimeout,
    TransportError,
)
from .observability import log_debug

# How often a running command wakes up to look at the deadline and cancel flag
_POLL_INTERVAL = 0.25

_URL_USERINFO = re.compile(r"(://)[^/@\s]+@")

# Only used to refine a transport failure for reporting
_AUTH_MARKERS = (
    "authentication failed",
    "could not read username",
    "could not read password",
    "permission denied (publickey",
    "host key verification failed",
    "invalid username or password",
    "http basic: access denied",
)


def redact(text: str) -> str:
    """Hide ``user:password@`` in URLs."""
    return _URL_USERINFO.sub(r"\1***@", text)


def looks_like_auth_failure(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(marker in lowered for marker in _AUTH_MARKERS)


class Deadline:
    """Time budget for a whole cycle, optionally tied to a cancel flag."""

    def __init__(self, seconds: float, *, cancel: Optional[threading.Event] = None):
        self.seconds = seconds
        self._expires = time.monotonic() + seconds
        self._cancel = cancel

    def remaining(self) -> float:
        return self._expires - time.monotonic()

    @property
    def cancelled(self) -> bool:
        return self._cancel is not None and self._cancel.is_set()

    def check(self, what: str) -> None:
        """Raise if the cycle must stop before starting ``what``."""
        if self.cancelled:
            raise SyncCancelled(f"cancelled before {what}")
        if self.remaining() <= 0:
            raise SyncTimeout(f"sync timeout ({self.seconds:g}s) exceeded before {what}")


@dataclass(frozen=True)
class CommandResult:
    args: Sequence[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def _preview(text: str) -> str:
    lines = text.strip().splitlines()
    return lines[0][:160] if lines else ""


def _kill_tree(proc: subprocess.Popen) -> None:
    """Kill the command and everything it spawned (ssh, remote helpers)."""
    if sys.platform != "win32":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
            return
        except ProcessLookupError:
            return
        except PermissionError:
            pass
    proc.kill()


class GitRunner:
    """Runs git subcommands with a shared environment and deadline.

    Every command is bounded by the cycle :class:`Deadline`: when the budget
    runs out, or the supervisor cancels, the whole process group is killed
    and :class:`SyncTimeout` (or :class:`SyncCancelled`) is raised.

    Callers choose the error class for a non-zero exit, so the meaning of a
    failure comes from *which* command failed, not from parsing its output.
    """

    def __init__(
        self,
        git: str = "git",
        *,
        env: Optional[Mapping[str, str]] = None,
        deadline: Optional[Deadline] = None,
    ):
        self.git = git
        self.deadline = deadline
        self._env = os.environ.copy()
        # Stable, untranslated diagnostics
        self._env["LC_ALL"] = "C"
        self._env["LANGUAGE"] = "C"
        if env:
            self._env.update(env)

    def run(
        self,
        args: Sequence[str],
        *,
        cwd: Optional[Path] = None,
        check: bool = True,
        error: Type[CycleError] = TransportError,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run ``git <args>`` and return its captured output.

        Args:
            args: git arguments (without the executable)
            cwd: Working directory
            check: Raise ``error`` on a non-zero exit
            error: Exception class for a non-zero exit
            timeout: Optional bound tighter than the cycle deadline

        Raises:
            SyncTimeout: The deadline (or ``timeout``) expired; the command was killed
            SyncCancelled: The deadline's cancel flag was set
            ResourceError: The command could not be started
            CycleError: ``error`` for a non-zero exit when ``check`` is set
        """
        cmd = [self.git, *args]
        quoted = redact(" ".join(shlex.quote(part) for part in cmd))
        if self.deadline is not None:
            self.deadline.check(quoted)

        limit = timeout
        if self.deadline is not None:
            remaining = self.deadline.remaining()
            limit = remaining if limit is None else min(limit, remaining)

        log_debug("GIT_OP_START", cmd=quoted, cwd=str(cwd) if cwd else None)
        start = time.monotonic()
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=str(cwd) if cwd is not None else None,
                env=self._env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=sys.platform != "win32",
            )
        except OSError as exc:
            raise ResourceError(f"cannot run {quoted}: {exc}", command=quoted) from exc

        stdout, stderr = self._communicate(proc, quoted, start, limit)
        elapsed = time.monotonic() - start
        log_debug(
            "GIT_OP_END",
            cmd=quoted,
            rc=proc.returncode,
            elapsed=round(elapsed, 3),
            stdout=_preview(stdout),
            stderr=_preview(stderr),
        )

        result = CommandResult(cmd, proc.returncode, stdout, stderr)
        if check and not result.ok:
            message = f"{quoted} failed (rc={proc.returncode}): {_preview(stderr) or _preview(stdout)}"
            cls = error
            if issubclass(cls, TransportError) and not issubclass(cls, AuthFailed):
                if looks_like_auth_failure(stderr):
                    cls = AuthFailed
            raise cls(message, command=quoted, stderr=redact(stderr))
        return result

    def output(self, args: Sequence[str], **kwargs) -> str:
        """Run a command and return its stripped stdout."""
        return self.run(args, **kwargs).stdout.strip()

    def _communicate(
        self,
        proc: subprocess.Popen,
        quoted: str,
        start: float,
        limit: Optional[float],
    ) -> tuple[str, str]:
        while True:
            wait = _POLL_INTERVAL
            if limit is not None:
                wait = max(0.0, min(wait, limit - (time.monotonic() - start)))
            try:
                return proc.communicate(timeout=wait)
            except TimeoutExpired:
                pass

            cancelled = self.deadline is not None and self.deadline.cancelled
            timed_out = limit is not None and time.monotonic() - start >= limit
            if not (cancelled or timed_out):
                continue

            _kill_tree(proc)
            _, stderr = proc.communicate()
            elapsed = time.monotonic() - start
            log_debug("GIT_OP_KILLED", cmd=quoted, elapsed=round(elapsed, 3), cancelled=cancelled)
            if cancelled:
                raise SyncCancelled(f"cancelled: {quoted}", command=quoted, stderr=redact(stderr or ""))
            raise SyncTimeout(
                f"{quoted} killed after {elapsed:.2f}s (sync timeout)",
                command=quoted,
                stderr=redact(stderr or ""),
            )
