"""treesync: keep a directory tree in sync with a remote git ref."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("treesync")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"  # Fallback for source checkouts without metadata

from .config_loader import load_config  # noqa: F401
from .config_schema import TreesyncConfig  # noqa: F401
from .errors import ConfigError, CycleError  # noqa: F401
from .health import HealthStatus, SyncSnapshot  # noqa: F401
from .supervisor import CycleResult, SyncSupervisor  # noqa: F401

__all__ = [
    "ConfigError",
    "CycleError",
    "CycleResult",
    "HealthStatus",
    "SyncSnapshot",
    "SyncSupervisor",
    "TreesyncConfig",
    "load_config",
    "__version__",
]
