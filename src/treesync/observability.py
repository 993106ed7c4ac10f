from __future__ import annotations

import json
import logging
import os
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from .config_schema import LoggingConfig


LOGGER_NAME = "treesync"

# Environment variables for configuration
ENV_LOG_DIR = "TREESYNC_LOG_DIR"
ENV_LOG_LEVEL = "TREESYNC_LOG_LEVEL"
ENV_LOG_MAX_BYTES = "TREESYNC_LOG_MAX_BYTES"
ENV_LOG_BACKUP_COUNT = "TREESYNC_LOG_BACKUP_COUNT"

# Defaults
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
DEFAULT_BACKUP_COUNT = 5

_logger_initialized = False
_session_start: Optional[str] = None
_overrides: Dict[str, Any] = {}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _setting(key: str, env_var: str, default: Any) -> Any:
    if _overrides.get(key) not in (None, ""):
        return _overrides[key]
    return os.getenv(env_var, default)


def _get_log_level() -> int:
    """Get log level from config or environment, defaulting to INFO."""
    level_name = str(_setting("level", ENV_LOG_LEVEL, DEFAULT_LOG_LEVEL)).upper()
    return getattr(logging, level_name, logging.INFO)


def _get_log_file_path() -> Optional[Path]:
    """Get the log file path, creating directories if needed.

    File logging is off unless a log directory is configured; a sidecar
    normally ships its stderr to the platform's log collector.
    """
    global _session_start
    log_dir = _setting("dir", ENV_LOG_DIR, "")
    if not log_dir:
        return None

    path = Path(log_dir).expanduser()
    path.mkdir(parents=True, exist_ok=True)

    if _session_start is None:
        _session_start = _utcnow().strftime("%Y-%m-%d_%H%M%S")
    # Session-based filename: treesync_2024-01-15_143022.log
    return path / f"treesync_{_session_start}.log"


def _get_logger() -> logging.Logger:
    """Get or initialize the treesync logger.

    Configuration via environment variables (or :func:`configure_logging`):
    - TREESYNC_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
    - TREESYNC_LOG_DIR: Directory for rotating log files (default: unset, stderr only)
    - TREESYNC_LOG_MAX_BYTES: Max log file size before rotation (default: 10MB)
    - TREESYNC_LOG_BACKUP_COUNT: Number of backup files to keep (default: 5)
    """
    global _logger_initialized
    logger = logging.getLogger(LOGGER_NAME)

    if not _logger_initialized:
        _logger_initialized = True
        logger.handlers.clear()

        log_level = _get_log_level()
        logger.setLevel(log_level)

        formatter = logging.Formatter(
            "[%(levelname)s %(asctime)s] %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S"
        )

        log_file = _get_log_file_path()
        if log_file:
            max_bytes = int(_setting("max_bytes", ENV_LOG_MAX_BYTES, DEFAULT_MAX_BYTES))
            backup_count = int(_setting("backup_count", ENV_LOG_BACKUP_COUNT, DEFAULT_BACKUP_COUNT))

            file_handler = RotatingFileHandler(
                str(log_file),
                maxBytes=max_bytes,
                backupCount=backup_count,
            )
            file_handler.setFormatter(formatter)
            file_handler.setLevel(log_level)
            logger.addHandler(file_handler)

        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        stream_handler.setLevel(log_level)
        logger.addHandler(stream_handler)

    return logger


def configure_logging(config: "LoggingConfig") -> None:
    """Apply the ``[logging]`` config section and rebuild handlers.

    Values left empty fall back to the TREESYNC_LOG_* environment variables.
    """
    global _logger_initialized
    _overrides.clear()
    _overrides.update(
        level=config.level,
        dir=config.dir,
        max_bytes=config.max_bytes,
        backup_count=config.backup_count,
    )
    _logger_initialized = False
    _get_logger()


def _with_fields(message: str, fields: Dict[str, Any]) -> str:
    if not fields:
        return message
    return f"{message} " + json.dumps(fields, separators=(",", ":"), sort_keys=True, default=str)


def log_action(
    action: str,
    *,
    outcome: str = "ok",
    duration_ms: Optional[float] = None,
    **fields: Any,
) -> None:
    """Emit a structured log line for an action.

    Fields are serialized to JSON for safety. Keep schema lightweight.

    Args:
        action: Name of the action being logged (``sync.cycle``, ``git.fetch``)
        outcome: Result status ("ok", "error", "noop", ...)
        duration_ms: How long the action took in milliseconds
        **fields: Additional fields to include
    """
    payload: Dict[str, Any] = {
        "ts": _utcnow().isoformat().replace("+00:00", "Z"),
        "action": action,
        "outcome": outcome,
    }
    if duration_ms is not None:
        payload["duration_ms"] = round(duration_ms, 2)
    if fields:
        payload.update(fields)

    _get_logger().info(json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str))


def log_debug(message: str, **fields: Any) -> None:
    """Log a debug message with optional structured fields.

    Only emitted when log level is DEBUG.
    """
    logger = _get_logger()
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(_with_fields(message, fields))


def log_warning(message: str, **fields: Any) -> None:
    """Log a warning message with optional structured fields."""
    _get_logger().warning(_with_fields(message, fields))


def log_error(message: str, **fields: Any) -> None:
    """Log an error message with optional structured fields."""
    _get_logger().error(_with_fields(message, fields))


@contextmanager
def timeit(action: str, **fields: Any):
    """Time a block and emit a structured log on exit.

    On exception, logs outcome="error" with the exception class and re-raises.

    Yields:
        A dict whose entries are added to the emitted log line
    """
    start = time.perf_counter()
    result_info: Dict[str, Any] = {}
    try:
        yield result_info
    except Exception as exc:
        duration_ms = (time.perf_counter() - start) * 1000.0
        extra = {**fields, **result_info, "error": type(exc).__name__}
        log_action(action, outcome="error", duration_ms=duration_ms, **extra)
        raise
    duration_ms = (time.perf_counter() - start) * 1000.0
    log_action(action, outcome="ok", duration_ms=duration_ms, **{**fields, **result_info})
