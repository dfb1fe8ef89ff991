"""Logging setup for hosts embedding the switchboard engine."""

from __future__ import annotations

import logging
import logging.handlers
import os
from dataclasses import dataclass
from pathlib import Path

__all__ = ["setup_logging", "get_logger", "get_log_path"]

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_DIR_ENV = "SWITCHBOARD_LOG_DIR"

# HTTP and SDK loggers that drown out engine events below WARNING
TRANSPORT_LOGGERS = ("asyncio", "httpx", "httpcore", "openai")


@dataclass(slots=True)
class _ActiveConfig:
    log_path: Path | None = None


_ACTIVE = _ActiveConfig()


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Route the root logger to ``switchboard.log`` and optionally stderr.

    The directory is ``log_dir``, else ``$SWITCHBOARD_LOG_DIR``, else
    ``~/.switchboard/logs``. Once configured, later calls are no-ops returning
    the same path unless ``force`` is set.
    """

    if _ACTIVE.log_path is not None and not force:
        return _ACTIVE.log_path

    directory = Path(log_dir or os.environ.get(LOG_DIR_ENV) or Path.home() / ".switchboard" / "logs").expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / "switchboard.log"

    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    ]
    if console:
        handlers.append(logging.StreamHandler())
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
    logging.basicConfig(level=level, handlers=handlers, force=True)

    for name in TRANSPORT_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, level))

    _ACTIVE.log_path = log_path
    return log_path


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def get_log_path() -> Path | None:
    """Return the active log file, or ``None`` before :func:`setup_logging` ran."""

    return _ACTIVE.log_path
