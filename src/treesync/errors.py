"""Error taxonomy for treesync.

Only :class:`ConfigError` is fatal. Every :class:`CycleError` is contained
within a single sync cycle: the cycle fails, the published link is left
alone, and the supervisor retries on the next period.
"""

from __future__ import annotations

from typing import Optional


class TreesyncError(Exception):
    """Base exception for treesync."""

    kind = "error"


class ConfigError(TreesyncError):
    """Configuration loading or validation error."""

    kind = "config"


class CycleError(TreesyncError):
    """A recoverable failure that aborts the current cycle only.

    Attributes:
        command: The git command that failed, if any (already redacted)
        stderr: Captured diagnostic output, for reporting only
    """

    kind = "cycle"

    def __init__(
        self,
        message: str,
        *,
        command: Optional[str] = None,
        stderr: Optional[str] = None,
    ):
        super().__init__(message)
        self.command = command
        self.stderr = stderr


class TransportError(CycleError):
    """Talking to the remote failed (network, protocol, missing objects)."""

    kind = "transport"


class AuthFailed(TransportError):
    """The remote rejected our credentials, or they could not be obtained."""

    kind = "auth"


class SyncTimeout(CycleError):
    """The cycle ran past its sync timeout."""

    kind = "timeout"


class SyncCancelled(SyncTimeout):
    """The cycle was cancelled because the supervisor is stopping."""

    kind = "cancelled"


class CorruptState(CycleError):
    """The local store or a worktree is not in a state we can trust."""

    kind = "corrupt"


class SubmoduleError(CycleError):
    """Resolving or materializing a nested repository failed."""

    kind = "submodule"


class ResourceError(CycleError):
    """Disk or permission failure."""

    kind = "resource"


class RevisionError(CycleError):
    kind = "revision"


class RevisionNotFound(RevisionError):
    """No remote ref or commit matches the revision."""

    kind = "revision_not_found"


class AmbiguousRevision(RevisionError):
    """More than one remote ref matches the revision at the same rank."""

    kind = "revision_ambiguous"
