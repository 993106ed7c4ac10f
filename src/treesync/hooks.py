"""Notifications sent after the published link changes."""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

import httpx

from .config_schema import SyncConfig
from .observability import log_action, log_warning
from .worktrees import Worktree

IDENTIFIER_HEADER = "X-Treesync-Identifier"
COMMIT_HEADER = "X-Treesync-Commit"


class PublishHooks:
    """Touch file and webhook, run once per link change.

    A hook failing does not undo the publish; failures are logged and
    returned so the supervisor can count them.
    """

    def __init__(
        self,
        config: SyncConfig,
        *,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.touch_file = Path(config.touch_file).expanduser() if config.touch_file else None
        self.webhook_url = config.webhook_url or None
        self.webhook_method = config.webhook_method
        self.webhook_timeout = config.webhook_timeout
        self._transport = transport

    def run(self, worktree: Worktree) -> List[str]:
        """Run every configured hook; return descriptions of those that failed."""
        failures: List[str] = []
        if self.touch_file is not None:
            try:
                self._touch(self.touch_file)
            except OSError as exc:
                log_warning("HOOK_TOUCH_FAILED", path=str(self.touch_file), error=str(exc))
                failures.append(f"touch: {exc}")
        if self.webhook_url:
            error = self._call_webhook(worktree)
            if error:
                failures.append(f"webhook: {error}")
        return failures

    @staticmethod
    def _touch(path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.touch(exist_ok=True)
        os.utime(path)

    def _call_webhook(self, worktree: Worktree) -> Optional[str]:
        headers = {
            IDENTIFIER_HEADER: worktree.identifier,
            COMMIT_HEADER: worktree.commit,
        }
        try:
            with httpx.Client(transport=self._transport, timeout=self.webhook_timeout) as client:
                response = client.request(self.webhook_method, self.webhook_url, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            log_warning("HOOK_WEBHOOK_FAILED", url=self.webhook_url, error=str(exc))
            return str(exc)
        log_action("hook.webhook", outcome="ok", status=response.status_code, identifier=worktree.identifier)
        return None
