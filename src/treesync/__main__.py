"""Entry point: python -m treesync [config.toml]"""

import signal
import sys

# Enforce runtime requirement early to avoid import-time errors on 3.9
if sys.version_info < (3, 10):
    print(
        f"treesync requires Python 3.10+; found {sys.version.split()[0]}",
        file=sys.stderr,
    )
    sys.exit(1)

from .config_loader import load_config
from .errors import ConfigError
from .observability import configure_logging
from .supervisor import SyncSupervisor


def main(argv=None) -> int:
    """Load configuration and run the sync loop.

    The only argument is an optional config file; everything else comes from
    the config files and TREESYNC_* environment variables.
    """
    args = sys.argv[1:] if argv is None else list(argv)
    try:
        config = load_config(args[0] if args else None)
        configure_logging(config.logging)
        supervisor = SyncSupervisor(config)
    except ConfigError as exc:
        print(f"treesync: configuration error: {exc}", file=sys.stderr)
        return 2

    # SIGTERM ends the loop after killing any in-flight git command
    previous = signal.signal(signal.SIGTERM, lambda signum, frame: supervisor.stop())
    try:
        return supervisor.run()
    except KeyboardInterrupt:
        return 130
    finally:
        signal.signal(signal.SIGTERM, previous)
        supervisor.close()


if __name__ == "__main__":
    sys.exit(main())
