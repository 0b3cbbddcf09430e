"""Centralized logging configuration for Automaker.

Configures the root logger with both console and file output.
All modules use ``logging.getLogger(__name__)``; this module owns handler
setup so nothing else calls ``logging.basicConfig``.

The service log is written to ``logs/automaker.log`` under the data directory
(``~/.automaker`` unless given), rotated at 5 MB with 3 backups kept.

Feature runs can additionally get their own log file. Runs execute
concurrently on one event loop, so a per-feature handler filters on the
feature bound to the current context rather than on the logger name.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path

_configured = False

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
FEATURE_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s [%(feature_id)s]: %(message)s"
LOG_DIR_NAME = "logs"
LOG_FILE_NAME = "automaker.log"
MAX_BYTES = 5 * 1024 * 1024  # 5 MB
BACKUP_COUNT = 3

current_feature: ContextVar[str | None] = ContextVar("current_feature", default=None)


def _parse_level(level: str | int) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.INFO)
    return level


def setup_logging(
    level: str | int = "INFO",
    data_dir: str | Path | None = None,
) -> None:
    """Configure root logger with console and rotating file handlers.

    Subsequent calls are no-ops until ``reset()`` is called.
    """
    global _configured
    if _configured:
        return
    _configured = True

    level = _parse_level(level)
    root = logging.getLogger()
    root.setLevel(level)

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(console)

    log_dir = Path(data_dir or Path.home() / ".automaker") / LOG_DIR_NAME
    log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        log_dir / LOG_FILE_NAME,
        maxBytes=MAX_BYTES,
        backupCount=BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(file_handler)


class FeatureFilter(logging.Filter):
    """Pass only records emitted while ``feature_id`` is the current feature."""

    def __init__(self, feature_id: str):
        super().__init__()
        self.feature_id = feature_id

    def filter(self, record: logging.LogRecord) -> bool:
        if current_feature.get() != self.feature_id:
            return False
        record.feature_id = self.feature_id
        return True


def create_feature_handler(
    feature_id: str,
    log_dir: str | Path,
    file_name: str | None = None,
    level: str | int = "DEBUG",
) -> logging.FileHandler:
    """Create a file handler that writes one feature's run to ``{log_dir}/{file_name}``.

    Attach to the root logger while the run executes and remove it in a
    ``finally`` block.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_dir / (file_name or f"{feature_id}.log"), encoding="utf-8")
    handler.setLevel(_parse_level(level))
    handler.setFormatter(logging.Formatter(FEATURE_LOG_FORMAT))
    handler.addFilter(FeatureFilter(feature_id))
    return handler


@contextmanager
def feature_log(feature_id: str, log_dir: str | Path | None = None, file_name: str | None = None):
    """Bind ``feature_id`` to the current context for the duration of the block.

    With ``log_dir`` given, the block's records for that feature also go to
    its own file. A log directory that cannot be created only costs the file.
    """
    token = current_feature.set(feature_id)
    handler = None
    if log_dir is not None:
        try:
            handler = create_feature_handler(feature_id, log_dir, file_name)
        except OSError as e:
            logging.getLogger(__name__).warning(f"Could not open run log for {feature_id}: {e}")
        else:
            logging.getLogger().addHandler(handler)
    try:
        yield handler
    finally:
        if handler is not None:
            logging.getLogger().removeHandler(handler)
            handler.close()
        current_feature.reset(token)


def reset() -> None:
    """Reset the configuration flag. For tests only."""
    global _configured
    _configured = False
