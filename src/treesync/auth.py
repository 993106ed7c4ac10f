"""Transport credentials for git subprocesses.

Credentials reach git only through the environment: ``GIT_SSH_COMMAND``
for key-based auth and a ``GIT_ASKPASS`` helper that echoes values passed
in ``TREESYNC_ASKPASS_USERNAME`` / ``TREESYNC_ASKPASS_PASSWORD``. Nothing is
written into the store's config.
"""

from __future__ import annotations

import atexit
import os
import shlex
import shutil
import stat
import sys
import tempfile
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Tuple

import httpx

from .command import Deadline
from .config_schema import AuthConfig
from .errors import AuthFailed, ConfigError, TransportError
from .observability import log_debug, log_warning

ENV_ASKPASS_USERNAME = "TREESYNC_ASKPASS_USERNAME"
ENV_ASKPASS_PASSWORD = "TREESYNC_ASKPASS_PASSWORD"

_ASKPASS_HELPER = """#!{python}
import os
import sys

prompt = sys.argv[1] if len(sys.argv) > 1 else ""
key = "{user_var}" if prompt.lower().startswith("username") else "{pass_var}"
sys.stdout.write(os.environ.get(key, "") + "\\n")
"""


class AuthMethod(str, Enum):
    NONE = "none"
    SSH = "ssh"
    PASSWORD = "password"
    ASKPASS_URL = "askpass_url"


def select_method(config: AuthConfig) -> AuthMethod:
    """Pick the configured mechanism by priority: ssh, password, askpass URL."""
    configured = []
    if config.ssh_key:
        configured.append(AuthMethod.SSH)
    if config.password:
        if not config.username:
            raise ConfigError("auth.password requires auth.username")
        configured.append(AuthMethod.PASSWORD)
    if config.askpass_url:
        configured.append(AuthMethod.ASKPASS_URL)
    elif config.username and not config.password:
        raise ConfigError("auth.username requires auth.password or auth.askpass_url")

    if not configured:
        return AuthMethod.NONE
    if len(configured) > 1:
        log_warning(
            "AUTH_MULTIPLE_METHODS",
            using=configured[0].value,
            ignored=[m.value for m in configured[1:]],
        )
    return configured[0]


def parse_credentials(body: str) -> Tuple[Optional[str], Optional[str]]:
    """Parse ``username=`` / ``password=`` lines from a credential endpoint."""
    username = password = None
    for line in body.splitlines():
        key, sep, value = line.strip().partition("=")
        if not sep:
            continue
        if key == "username":
            username = value
        elif key == "password":
            password = value
    return username, password


class AuthBroker:
    """Builds the git environment for one cycle.

    The askpass endpoint is queried on every call to :meth:`environment`;
    its answer is never kept past the cycle that asked for it.
    """

    def __init__(
        self,
        config: AuthConfig,
        *,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.config = config
        self.method = select_method(config)
        self._transport = transport
        self._helper_dir: Optional[Path] = None
        self._helper: Optional[Path] = None
        if self.method in (AuthMethod.PASSWORD, AuthMethod.ASKPASS_URL):
            atexit.register(self.close)
            self._helper = self._write_helper()

    def _write_helper(self) -> Path:
        self._helper_dir = Path(tempfile.mkdtemp(prefix="treesync-askpass-"))
        helper = self._helper_dir / "askpass"
        helper.write_text(
            _ASKPASS_HELPER.format(
                python=sys.executable,
                user_var=ENV_ASKPASS_USERNAME,
                pass_var=ENV_ASKPASS_PASSWORD,
            ),
            encoding="utf-8",
        )
        helper.chmod(stat.S_IRWXU)
        return helper

    def close(self) -> None:
        if self._helper_dir is not None:
            shutil.rmtree(self._helper_dir, ignore_errors=True)
            self._helper_dir = None
        self._helper = None

    def environment(self, deadline: Optional[Deadline] = None) -> Dict[str, str]:
        """Return environment overrides for git commands of this cycle.

        Raises:
            AuthFailed: The credential endpoint answered without usable credentials
            TransportError: The credential endpoint could not be reached
        """
        env: Dict[str, str] = {
            # Fail fast instead of prompting on a terminal nobody watches
            "GIT_TERMINAL_PROMPT": "0",
            "GCM_INTERACTIVE": "never",
            "GIT_HTTP_LOW_SPEED_LIMIT": "1",
            "GIT_HTTP_LOW_SPEED_TIME": "30",
            "GIT_SSH_COMMAND": self._ssh_command(),
        }

        if self.method is AuthMethod.PASSWORD:
            env.update(self._askpass_env(self.config.username, self.config.password))
        elif self.method is AuthMethod.ASKPASS_URL:
            username, password = self._fetch_credentials(deadline)
            env.update(self._askpass_env(username, password))
        else:
            # No password source: an empty answer makes git fail instead of hang
            env["GIT_ASKPASS"] = "true"

        return env

    def _askpass_env(self, username: str, password: str) -> Dict[str, str]:
        # Rewritten after close() so a closed broker keeps working
        if self._helper is None or not self._helper.exists():
            self._helper = self._write_helper()
        return {
            "GIT_ASKPASS": str(self._helper),
            ENV_ASKPASS_USERNAME: username,
            ENV_ASKPASS_PASSWORD: password,
        }

    def _ssh_command(self) -> str:
        parts = ["ssh", "-o", "BatchMode=yes"]
        if self.method is AuthMethod.SSH:
            key = str(Path(self.config.ssh_key).expanduser())
            parts += ["-i", key, "-o", "IdentitiesOnly=yes"]
            if self.config.ssh_known_hosts:
                parts += ["-o", "StrictHostKeyChecking=yes"]
                if self.config.ssh_known_hosts_file:
                    known = str(Path(self.config.ssh_known_hosts_file).expanduser())
                    parts += ["-o", f"UserKnownHostsFile={known}"]
            else:
                parts += [
                    "-o", "StrictHostKeyChecking=no",
                    "-o", f"UserKnownHostsFile={os.devnull}",
                ]
        return " ".join(shlex.quote(part) for part in parts)

    def _fetch_credentials(self, deadline: Optional[Deadline]) -> Tuple[str, str]:
        url = self.config.askpass_url
        timeout = self.config.askpass_timeout
        if deadline is not None:
            deadline.check("credential request")
            timeout = min(timeout, deadline.remaining())

        try:
            with httpx.Client(transport=self._transport, timeout=timeout) as client:
                response = client.get(url)
        except httpx.TimeoutException as exc:
            raise TransportError(f"credential endpoint timed out: {url}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"credential endpoint unreachable: {url}: {exc}") from exc

        if response.status_code in (401, 403):
            raise AuthFailed(f"credential endpoint refused request: HTTP {response.status_code}")
        if response.status_code >= 400:
            raise TransportError(f"credential endpoint failed: HTTP {response.status_code}")

        username, password = parse_credentials(response.text)
        username = username or self.config.username
        if not username or password is None:
            raise AuthFailed("credential endpoint returned no username/password")
        log_debug("AUTH_CREDENTIALS_FETCHED", url=url, username=username)
        return username, password
