"""Logging setup for the PersonaLab server and CLI.

The service logs to a rotating file next to its data (``<data_dir>/logs``
unless ``PERSONALAB_LOG_DIR`` says otherwise) and, for interactive runs, to
stderr. Handlers installed here are tracked so a second call (for example
once settings have been loaded) swaps them instead of stacking duplicates.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
from pathlib import Path

__all__ = ["setup_logging", "reset_logging", "resolve_log_dir", "get_log_path", "LOG_FILENAME"]

LOG_FILENAME = "personalab.log"
_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_FALLBACK_LOG_DIR = Path.home() / ".personalab" / "logs"
_ROTATE_BYTES = 2_000_000
_ROTATE_BACKUPS = 5

# Client libraries log every request at INFO/DEBUG.
_CLIENT_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")

_installed: list[logging.Handler] = []
_log_path: Path | None = None


def resolve_log_dir(data_dir: Path | str | None = None) -> Path:
    """Pick the log directory: env override, then ``<data_dir>/logs``, then ``~/.personalab/logs``."""

    override = os.environ.get("PERSONALAB_LOG_DIR")
    if override:
        return Path(override).expanduser()
    if data_dir:
        return Path(data_dir).expanduser() / "logs"
    return _FALLBACK_LOG_DIR


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    access_log: bool = False,
) -> Path:
    """Install the service's file (and optional stderr) handlers on the root logger.

    ``access_log`` lets aiohttp's per-request lines through; otherwise only
    warnings from ``aiohttp.access`` are kept. Returns the log file path.
    """

    global _log_path
    reset_logging()

    target_dir = Path(log_dir).expanduser() if log_dir else resolve_log_dir()
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / LOG_FILENAME

    formatter = logging.Formatter(fmt=_LOG_FORMAT, datefmt=_DATE_FORMAT)
    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            log_path, maxBytes=_ROTATE_BYTES, backupCount=_ROTATE_BACKUPS, encoding="utf-8"
        )
    ]
    if console:
        handlers.append(logging.StreamHandler(sys.stderr))

    root = logging.getLogger()
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
        _installed.append(handler)
    root.setLevel(level)
    logging.captureWarnings(True)

    quiet_level = max(level, logging.WARNING)
    for name in _CLIENT_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)
    logging.getLogger("aiohttp.access").setLevel(logging.INFO if access_log else logging.WARNING)

    _log_path = log_path
    return log_path


def reset_logging() -> None:
    """Detach and close every handler installed by :func:`setup_logging`."""

    global _log_path
    root = logging.getLogger()
    while _installed:
        handler = _installed.pop()
        root.removeHandler(handler)
        handler.close()
    _log_path = None


def get_log_path() -> Path | None:
    """Return the active log file, if logging has been set up."""

    return _log_path
