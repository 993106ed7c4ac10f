"""Atomic publication of a worktree through a symlink under root."""

from __future__ import annotations

import os
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .errors import ResourceError
from .observability import log_action, log_warning
from .worktrees import Worktree, normalize_root

TMP_MARKER = ".tmp-"


@dataclass(frozen=True)
class PublishResult:
    identifier: str
    changed: bool
    previous: Optional[str] = None


class AtomicPublisher:
    """Points ``<root>/<link>`` at a worktree with a single rename.

    The link target is relative (``worktrees/<identifier>``) so the root can
    be mounted elsewhere. Readers see the old target or the new one, nothing
    in between.
    """

    def __init__(self, root: str | Path, link: str):
        self.root = normalize_root(str(root))
        self.link = link
        self.path = self.root / link

    def current_target(self) -> Optional[Path]:
        """Absolute path the link points at, or None without a link."""
        if not self.path.is_symlink():
            return None
        target = os.readlink(self.path)
        return Path(os.path.normpath(os.path.join(self.root, target)))

    def current(self) -> Optional[str]:
        """Identifier of the published worktree, if the link points into worktrees/."""
        target = self.current_target()
        if target is None or target.parent != self.root / "worktrees":
            return None
        return target.name

    def publish(self, worktree: Worktree) -> PublishResult:
        """Swap the link over to ``worktree``; a no-op if it already points there.

        Raises:
            ResourceError: The link could not be written
        """
        previous = self.current()
        target = self.current_target()
        if target is not None and target == worktree.path and self.path.exists():
            return PublishResult(worktree.identifier, changed=False, previous=previous)

        relative = os.path.relpath(worktree.path, self.root)
        tmp = self.root / f".{self.link}{TMP_MARKER}{uuid.uuid4().hex[:12]}"
        try:
            os.symlink(relative, tmp)
            if self.path.is_dir() and not self.path.is_symlink():
                # A real directory squatting on the link name cannot be renamed over
                log_warning("LINK_IS_DIRECTORY", path=str(self.path))
                shutil.rmtree(self.path)
            os.replace(tmp, self.path)
        except OSError as exc:
            if tmp.is_symlink():
                tmp.unlink()
            raise ResourceError(f"cannot publish {self.path} -> {relative}: {exc}") from exc

        log_action(
            "sync.publish",
            outcome="ok",
            identifier=worktree.identifier,
            commit=worktree.commit,
            previous=previous,
        )
        return PublishResult(worktree.identifier, changed=True, previous=previous)

    def remove_stale_temporaries(self) -> int:
        """Delete temporary links left behind by an interrupted publish."""
        removed = 0
        if not self.root.is_dir():
            return removed
        for entry in self.root.glob(f".{self.link}{TMP_MARKER}*"):
            if entry.is_symlink():
                entry.unlink()
                removed += 1
        return removed
